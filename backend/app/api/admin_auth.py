import logging
import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.security.utils import get_authorization_scheme_param

from app.infra.logging import update_log_context
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


class AdminAuthException(HTTPException):
    def __init__(self, *, reason: str, detail: str = "Invalid authentication") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Basic"},
        )
        self.reason = reason


@dataclass
class AdminIdentity:
    username: str
    auth_method: str = "basic"


security = HTTPBasic(auto_error=False)


def _resolve_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return request.headers.get("X-Request-ID")


def _log_auth_failure(request: Request, *, scope: str, reason: str) -> None:
    authorization_header = request.headers.get("Authorization")
    scheme, _ = get_authorization_scheme_param(authorization_header)
    logger.warning(
        f"{scope}_auth_failed",
        extra={
            "extra": {
                "reason": reason,
                "path": request.url.path,
                "method": request.method,
                "request_id": _resolve_request_id(request),
                "has_authorization_header": authorization_header is not None,
                "auth_scheme": scheme.lower() if scheme else None,
            }
        },
    )
    metrics.record_auth_failure(scope, reason)


def _authenticate_credentials(credentials: HTTPBasicCredentials | None) -> AdminIdentity:
    username = settings.admin_basic_username
    password = settings.admin_basic_password
    if not username or not password:
        raise AdminAuthException(reason="unconfigured_credentials", detail="Admin access is not configured")
    if credentials is None:
        raise AdminAuthException(reason="missing_credentials")
    username_ok = secrets.compare_digest(credentials.username.encode(), username.encode())
    password_ok = secrets.compare_digest(credentials.password.encode(), password.encode())
    if not (username_ok and password_ok):
        raise AdminAuthException(reason="invalid_credentials")
    return AdminIdentity(username=credentials.username)


async def require_admin(
    request: Request, credentials: HTTPBasicCredentials | None = Depends(security)
) -> AdminIdentity:
    cached: AdminIdentity | None = getattr(request.state, "admin_identity", None)
    if cached:
        return cached
    try:
        identity = _authenticate_credentials(credentials)
    except AdminAuthException as exc:
        _log_auth_failure(request, scope="admin", reason=exc.reason)
        raise
    request.state.admin_identity = identity
    update_log_context(role="admin", auth_method=identity.auth_method)
    return identity


async def require_cron_secret(request: Request) -> None:
    """Bearer check for external schedulers hitting the cron endpoints."""
    secret = settings.cron_secret
    if not secret:
        _log_auth_failure(request, scope="cron", reason="unconfigured_secret")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron secret not configured")
    scheme, token = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer" or not token:
        _log_auth_failure(request, scope="cron", reason="missing_token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not secrets.compare_digest(token.encode(), secret.encode()):
        _log_auth_failure(request, scope="cron", reason="invalid_token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

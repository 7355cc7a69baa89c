from __future__ import annotations

import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

import anyio

from app.infra.stripe_resilience import stripe_circuit
from app.settings import settings


MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "cancel_",
    "expire_",
    "refund_",
    "update_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "list_",
    "verify_",
)

# Stripe rejects checkout sessions that expire sooner than this.
CHECKOUT_MIN_TTL = timedelta(minutes=30)
CHECKOUT_EXPIRY_MARGIN = timedelta(minutes=1)

METADATA_TYPE_RESERVATION = "reservation_deposit"
METADATA_TYPE_ORDER = "shop_order"


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


def checkout_expires_at(hold_expires_at: datetime | None, now: datetime) -> int:
    """Unix timestamp for a checkout session tied to a hold.

    The session should not outlive the hold, but Stripe enforces a 30 minute
    floor, so short holds get the floor and rely on the janitor instead.
    """
    floor = now + CHECKOUT_MIN_TTL + CHECKOUT_EXPIRY_MARGIN
    target = hold_expires_at if hold_expires_at and hold_expires_at > floor else floor
    return int(target.astimezone(timezone.utc).timestamp())


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _require_secret_key(self) -> None:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        request_kwargs = dict(kwargs)

        def _sync_call() -> Any:
            return fn(*args, **request_kwargs)

        return await stripe_circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    async def _create_session(
        self,
        *,
        line_items: list[dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: str | None,
        expires_at: int | None,
        idempotency_key: str | None,
    ) -> Any:
        self._require_secret_key()
        payload: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": line_items,
            "metadata": metadata,
            "payment_intent_data": {"metadata": dict(metadata)},
        }
        if customer_email:
            payload["customer_email"] = customer_email
        if expires_at is not None:
            payload["expires_at"] = expires_at
        extra: dict[str, Any] = {}
        if idempotency_key:
            extra["idempotency_key"] = idempotency_key
        return await self._call(self.stripe.checkout.Session.create, **payload, **extra)

    async def create_deposit_checkout(
        self,
        *,
        reservation_id: str,
        service_name: str,
        description: str | None,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
        expires_at: int | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        product_data: dict[str, Any] = {"name": f"Deposit: {service_name}"}
        if description:
            product_data["description"] = description
        return await self._create_session(
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": product_data,
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"type": METADATA_TYPE_RESERVATION, "reservation_id": reservation_id},
            customer_email=customer_email,
            expires_at=expires_at,
            idempotency_key=idempotency_key,
        )

    async def create_order_checkout(
        self,
        *,
        order_id: str,
        lines: Sequence[dict[str, Any]],
        currency: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": line["name"]},
                    "unit_amount": line["unit_amount"],
                },
                "quantity": line["quantity"],
            }
            for line in lines
        ]
        return await self._create_session(
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"type": METADATA_TYPE_ORDER, "order_id": order_id},
            customer_email=customer_email,
            expires_at=None,
            idempotency_key=idempotency_key,
        )

    async def expire_checkout_session(self, session_id: str, *, idempotency_key: str | None = None) -> Any:
        """Stop an open checkout session from collecting payment."""
        self._require_secret_key()
        extra: dict[str, Any] = {}
        if idempotency_key:
            extra["idempotency_key"] = idempotency_key
        return await self._call(self.stripe.checkout.Session.expire, session_id, **extra)

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        # Signature verification is local; it does not count against the breaker.
        return await anyio.to_thread.run_sync(
            lambda: self.stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        )


def resolve_client(app_state: Any) -> Any:
    """Return the Stripe client for the running app.

    ``app.state.stripe_client`` wins so tests can install a stub; otherwise
    the client built with the app services is used, and a fresh one is created
    from settings as a last resort.
    """
    state = getattr(app_state, "state", app_state)
    client = getattr(state, "stripe_client", None)
    if client is not None:
        return client
    services = getattr(state, "services", None)
    if services is not None and getattr(services, "stripe_client", None) is not None:
        return services.stripe_client
    client = StripeClient(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
    state.stripe_client = client
    return client


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")

    if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
        raise ValueError(
            f"Stripe mutation '{method_name}' requires idempotency_key to be provided"
        )

    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


def stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object, a dict, or a SimpleNamespace stub."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    getter = getattr(obj, "get", None)
    if callable(getter):
        try:
            return getter(key, default)
        except TypeError:
            pass
    return getattr(obj, key, default)

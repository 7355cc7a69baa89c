import asyncio
import base64
import json
import sys
from datetime import datetime, time, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from app.dependencies import get_now
from app.domain.catalog.db_models import Product, ProductVariant, Service
from app.domain.reservations.db_models import AvailabilityRule, Reservation, ReservationSettingsRecord
from app.domain.reservations.statuses import ReservationStatus
from app.infra.db import Base, get_db_session
from app.main import app
from app.settings import settings

# Monday 2030-01-07, 08:00 in America/Edmonton.
FROZEN_NOW = datetime(2030, 1, 7, 15, 0, tzinfo=timezone.utc)
SERVICE_ID = "svc-consult-60"
SERVICE_PRICE_CENTS = 15000
SERVICE_DEPOSIT_CENTS = 3000
PRODUCT_ID = "prod-candle"
VARIANT_ID = "var-candle-large"
VARIANT_STOCK = 5
VARIANT_PRICE_CENTS = 2500
VALID_SIGNATURE = "t=1,v1=valid"
ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "secret"
CRON_SECRET = "cron-secret"
OPERATOR_EMAIL = "ops@example.com"


def local_start(day: int, hour: int) -> datetime:
    """UTC instant for ``hour`` o'clock Edmonton time on 2030-01-``day`` (UTC-7 in January)."""
    return datetime(2030, 1, day, hour, 0, tzinfo=timezone.utc) + timedelta(hours=7)


def naive_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


async def seed_reference_data(session) -> None:
    session.add(
        ReservationSettingsRecord(
            id=1,
            timezone="America/Edmonton",
            min_notice_minutes=60,
            buffer_minutes=15,
            max_days_out=30,
            hold_minutes=15,
            deposits_enabled=True,
            default_deposit_type="percent",
            default_deposit_value=20,
        )
    )
    session.add(
        Service(
            service_id=SERVICE_ID,
            name="Consultation",
            duration_minutes=60,
            price_cents=SERVICE_PRICE_CENTS,
            position=1,
            is_active=True,
        )
    )
    session.add_all(
        AvailabilityRule(day_of_week=day, start_time=time(9, 0), end_time=time(17, 0), is_active=True)
        for day in range(1, 6)
    )
    session.add(Product(product_id=PRODUCT_ID, handle="soy-candle", title="Soy Candle", is_active=True))
    await session.flush()
    session.add(
        ProductVariant(
            variant_id=VARIANT_ID,
            product_id=PRODUCT_ID,
            title="Large",
            sku="CANDLE-L",
            price_cents=VARIANT_PRICE_CENTS,
            inventory_quantity=VARIANT_STOCK,
        )
    )
    await session.commit()


async def reset_database(engine) -> None:
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    seed_session_factory = async_sessionmaker(engine, expire_on_commit=False)
    async with seed_session_factory() as session:
        await seed_reference_data(session)


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    asyncio.run(reset_database(test_engine))
    yield


@pytest.fixture()
def concurrent_session_maker():
    """Sessions on a file database with one connection each, so writers really contend."""
    db_path = Path("test_concurrency.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test_concurrency.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await reset_database(engine)

    asyncio.run(init_models())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(autouse=True)
def configure_settings(monkeypatch):
    monkeypatch.setattr(settings, "testing", True)
    monkeypatch.setattr(settings, "app_env", "dev")
    monkeypatch.setattr(settings, "admin_basic_username", ADMIN_USERNAME)
    monkeypatch.setattr(settings, "admin_basic_password", ADMIN_PASSWORD)
    monkeypatch.setattr(settings, "cron_secret", CRON_SECRET)
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "admin_notification_email", OPERATOR_EMAIL)
    monkeypatch.setattr(settings, "public_base_url", "https://shop.example.com")
    monkeypatch.setattr(settings, "metrics_token", None)
    yield


@pytest.fixture(autouse=True)
def restore_app_state():
    """Restore app.state after each test to prevent state pollution."""
    original_metrics = getattr(app.state, "metrics", None)
    original_app_settings = getattr(app.state, "app_settings", None)
    yield
    if original_metrics is not None:
        app.state.metrics = original_metrics
    elif hasattr(app.state, "metrics"):
        delattr(app.state, "metrics")

    if original_app_settings is not None:
        app.state.app_settings = original_app_settings
    elif hasattr(app.state, "app_settings"):
        delattr(app.state, "app_settings")


class RecordingEmailAdapter:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    async def send_email(self, recipient, subject, body, *, headers=None) -> bool:
        if self.fail:
            raise RuntimeError("smtp unavailable")
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})
        return True


class StubStripeClient:
    configured = True

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None
        self._counter = 0

    def _next_session(self) -> dict:
        self._counter += 1
        session_id = f"cs_test_{self._counter}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    async def create_deposit_checkout(self, **kwargs):
        self.calls.append(("create_deposit_checkout", kwargs))
        if self.fail_with is not None:
            raise self.fail_with
        return self._next_session()

    async def create_order_checkout(self, **kwargs):
        self.calls.append(("create_order_checkout", kwargs))
        if self.fail_with is not None:
            raise self.fail_with
        return self._next_session()

    async def expire_checkout_session(self, session_id, *, idempotency_key=None):
        self.calls.append(("expire_checkout_session", {"session_id": session_id}))
        return {"id": session_id, "status": "expired"}

    def verify_webhook(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise ValueError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


@pytest.fixture()
def email_adapter():
    adapter = RecordingEmailAdapter()
    original = getattr(app.state, "email_adapter", None)
    app.state.email_adapter = adapter
    yield adapter
    app.state.email_adapter = original


@pytest.fixture()
def stripe_stub():
    stub = StubStripeClient()
    original = getattr(app.state, "stripe_client", None)
    app.state.stripe_client = stub
    yield stub
    app.state.stripe_client = original


def _install_overrides(async_session_maker) -> None:
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_now] = lambda: FROZEN_NOW


@pytest.fixture()
def client(async_session_maker, email_adapter, stripe_stub):
    ensure_event_loop()
    _install_overrides(async_session_maker)
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker, email_adapter, stripe_stub):
    """Test client that returns HTTP responses instead of raising server exceptions."""
    ensure_event_loop()
    _install_overrides(async_session_maker)
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


def _basic_auth(username: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return _basic_auth(ADMIN_USERNAME, ADMIN_PASSWORD)


@pytest.fixture()
def make_reservation(async_session_maker):
    """Insert a reservation directly, bypassing the hold path."""

    def _make(
        start: datetime,
        *,
        status: ReservationStatus = ReservationStatus.CONFIRMED,
        hold_expires_at: datetime | None = None,
        deposit_amount_cents: int = SERVICE_DEPOSIT_CENTS,
        checkout_session_id: str | None = None,
        customer_email: str | None = "customer@example.com",
    ) -> str:
        async def _insert() -> str:
            async with async_session_maker() as session:
                if status == ReservationStatus.HOLD and hold_expires_at is None:
                    expires = FROZEN_NOW + timedelta(minutes=15)
                else:
                    expires = hold_expires_at
                reservation = Reservation(
                    service_id=SERVICE_ID,
                    start_ts=start,
                    end_ts=start + timedelta(minutes=60),
                    customer_name="Dana Client",
                    customer_phone="780-555-0100",
                    customer_email=customer_email,
                    status=status.value,
                    hold_expires_at=expires if status == ReservationStatus.HOLD else None,
                    deposit_amount_cents=deposit_amount_cents,
                    stripe_checkout_session_id=checkout_session_id,
                    confirmed_at=FROZEN_NOW if status == ReservationStatus.CONFIRMED else None,
                )
                session.add(reservation)
                await session.commit()
                return reservation.reservation_id

        return asyncio.run(_insert())

    return _make


@pytest.fixture()
def fetch_reservation(async_session_maker):
    def _fetch(reservation_id: str) -> Reservation:
        async def _load() -> Reservation:
            async with async_session_maker() as session:
                reservation = await session.get(Reservation, reservation_id)
                assert reservation is not None
                return reservation

        return asyncio.run(_load())

    return _fetch


@pytest.fixture()
def count_rows(async_session_maker):
    def _count(model, *conditions) -> int:
        async def _run() -> int:
            async with async_session_maker() as session:
                stmt = sa.select(sa.func.count()).select_from(model)
                if conditions:
                    stmt = stmt.where(*conditions)
                return int(await session.scalar(stmt) or 0)

        return asyncio.run(_run())

    return _count


def make_checkout_event(
    event_id: str,
    *,
    event_type: str = "checkout.session.completed",
    reservation_id: str | None = None,
    order_id: str | None = None,
    session_id: str = "cs_test_1",
    amount_total: int = SERVICE_DEPOSIT_CENTS,
    payment_status: str = "paid",
    payment_intent: str = "pi_test_1",
) -> dict:
    metadata: dict[str, str] = {}
    if reservation_id is not None:
        metadata = {"type": "reservation_deposit", "reservation_id": reservation_id}
    if order_id is not None:
        metadata = {"type": "shop_order", "order_id": order_id}
    return {
        "id": event_id,
        "type": event_type,
        "created": int(FROZEN_NOW.timestamp()),
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": payment_intent,
                "payment_status": payment_status,
                "amount_total": amount_total,
                "metadata": metadata,
            }
        },
    }


def post_webhook(client, event: dict, *, signature: str = VALID_SIGNATURE):
    return client.post(
        "/v1/payments/stripe/webhook",
        content=json.dumps(event, sort_keys=True).encode(),
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )

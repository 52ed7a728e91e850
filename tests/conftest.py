"""Test configuration."""
import copy
import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///./storebox_test.db")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("STRIPE_ENABLED", "true")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("LOCK_PIN_PROVIDER", "stub")
os.environ.setdefault("LOCK_PIN_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("SESSION_JWT_SECRET", "test-session-secret")

from app.main import app  # noqa: E402
from app.db import enable_sqlite_savepoints, get_db  # noqa: E402
from app.models import Box, Location, User, UserRole  # noqa: E402
from app.services.psp_stripe import StripeClient  # noqa: E402

DB_PATH = Path("./storebox_test.db")
WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]

DEFAULT_METADATA = {
    "boxId": "C1",
    "startDate": "2030-06-01",
    "startTime": "10:00",
    "endDate": "2030-06-03",
    "endTime": "18:00",
    "amount": "150.00",
}


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file per test session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
)
enable_sqlite_savepoints(engine)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

# --- (2) Schema comes from Alembic only
_run_migrations()


@pytest.fixture
def db_session() -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    # Unhandled errors are answered by the 500 handler; don't re-raise them into the test.
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def location_owner(db_session: Session) -> User:
    owner = User(email="owner@storebox.test", full_name="Box Owner", role=UserRole.DISTRIBUTOR)
    db_session.add(owner)
    db_session.commit()
    return owner


@pytest.fixture
def storage_box(db_session: Session, location_owner: User) -> Box:
    """Compartment ``C1`` at a location owned by ``location_owner``."""

    location = Location(name="Central Station", address="Centralplan 1", owner_user_id=location_owner.id)
    db_session.add(location)
    db_session.flush()
    box = Box(code="C1", label="Locker C1", location_id=location.id)
    db_session.add(box)
    db_session.commit()
    return box


def build_intent(
    payment_intent_id: str,
    *,
    charge_id: str | None,
    amount: int = 15000,
    status: str = "succeeded",
    currency: str = "sek",
    livemode: bool = False,
    metadata: dict[str, Any] | None = None,
    receipt_email: str | None = None,
    billing_email: str | None = None,
) -> dict[str, Any]:
    """Expanded PaymentIntent as returned by ``PaymentIntent.retrieve``."""

    billing = {"email": billing_email, "name": "Ada Payer", "phone": "+46700000000", "address": None}
    return {
        "id": payment_intent_id,
        "object": "payment_intent",
        "status": status,
        "amount": amount,
        "amount_received": amount if status == "succeeded" else 0,
        "currency": currency,
        "livemode": livemode,
        "metadata": dict(DEFAULT_METADATA if metadata is None else metadata),
        "receipt_email": receipt_email,
        "payment_method": {"id": "pm_test", "billing_details": billing},
        "latest_charge": {"id": charge_id, "billing_details": billing} if charge_id else None,
    }


class FakeGateway:
    """In-memory stand-in for Stripe's PaymentIntent API."""

    def __init__(self) -> None:
        self.intents: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.errors: dict[str, Exception] = {}

    def add(self, payment_intent_id: str, **kwargs: Any) -> dict[str, Any]:
        intent = build_intent(payment_intent_id, **kwargs)
        self.intents[payment_intent_id] = intent
        return intent

    def fail(self, payment_intent_id: str, error: Exception) -> None:
        self.errors[payment_intent_id] = error

    def retrieve(self, payment_intent_id: str) -> dict[str, Any] | None:
        self.calls.append(payment_intent_id)
        if payment_intent_id in self.errors:
            raise self.errors[payment_intent_id]
        intent = self.intents.get(payment_intent_id)
        return copy.deepcopy(intent) if intent is not None else None


@pytest.fixture
def fake_gateway(monkeypatch) -> FakeGateway:
    gateway = FakeGateway()
    monkeypatch.setattr(
        StripeClient,
        "retrieve_payment_intent",
        lambda self, payment_intent_id: gateway.retrieve(payment_intent_id),
    )
    return gateway


@pytest.fixture
def stripe_client(fake_gateway: FakeGateway) -> StripeClient:
    return StripeClient.from_env()


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe signs deliveries."""

    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def make_event() -> Callable[..., str]:
    def _factory(
        event_type: str,
        obj: dict[str, Any],
        *,
        event_id: str = "evt_test_1",
        livemode: bool = False,
    ) -> str:
        return json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "livemode": livemode,
                "data": {"object": obj},
            }
        )

    return _factory


@pytest.fixture
def stripe_signature() -> Callable[..., str]:
    return sign_payload

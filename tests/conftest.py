"""Test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (tables created from the ORM
metadata). The Stripe gateway and Redis are replaced with ``unittest.mock``
doubles, so no external services are needed.
"""

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from joserfc import jwt
from joserfc.jwk import OctKey
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from taskpay.auth.rate_limit import get_redis
from taskpay.config import settings
from taskpay.database import Base, get_db
from taskpay.main import app
from taskpay.models.dispute import Dispute, DisputeStatus
from taskpay.models.notification import Notification  # noqa: F401
from taskpay.models.payment import EscrowStatus, Payment, PaymentStatus
from taskpay.models.payout_account import PayoutAccount, PayoutAccountStatus
from taskpay.models.profile import Profile
from taskpay.models.task import Booking, BookingStatus, Task, TaskStatus
from taskpay.services import payment_gateway
from taskpay.services.fees import calculate_fees
from taskpay.services.payment_gateway import PaymentIntentResult, RefundResult, TransferResult

# Fixed reference time for timeline tests.
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Settings / database
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        settings.test_database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


# ---------------------------------------------------------------------------
# External service doubles
# ---------------------------------------------------------------------------

class FakeGateway:
    """In-memory stand-in for the Stripe adapter. Every function is an AsyncMock."""

    def __init__(self) -> None:
        self.intents: dict[str, PaymentIntentResult] = {}
        self.get_or_create_customer = AsyncMock(side_effect=self._customer)
        self.create_payment_intent = AsyncMock(side_effect=self._create_intent)
        self.retrieve_payment_intent = AsyncMock(side_effect=self._retrieve)
        self.cancel_payment_intent = AsyncMock(side_effect=self._cancel)
        self.create_transfer = AsyncMock(side_effect=self._transfer)
        self.create_refund = AsyncMock(side_effect=self._refund)

    async def _customer(self, email, user_id, existing_id=None):  # type: ignore[no-untyped-def]
        return existing_id or f"cus_{user_id[:8]}"

    async def _create_intent(self, amount_cents, currency, customer_id, metadata, idempotency_key):  # type: ignore[no-untyped-def]
        intent = PaymentIntentResult(
            id=f"pi_{uuid.uuid4().hex[:20]}",
            status="requires_payment_method",
            amount_cents=amount_cents,
            currency=currency,
            client_secret="pi_secret_test",
            metadata=metadata,
        )
        self.intents[intent.id] = intent
        return intent

    async def _retrieve(self, payment_intent_id):  # type: ignore[no-untyped-def]
        return self.intents[payment_intent_id]

    async def _cancel(self, payment_intent_id, idempotency_key):  # type: ignore[no-untyped-def]
        intent = self.intents[payment_intent_id]
        intent.status = "canceled"
        return intent

    async def _transfer(self, amount_cents, currency, destination, metadata, idempotency_key):  # type: ignore[no-untyped-def]
        return TransferResult(
            id=f"tr_{uuid.uuid4().hex[:20]}",
            amount_cents=amount_cents,
            currency=currency,
            destination_account=destination,
        )

    async def _refund(self, payment_intent_id, idempotency_key, metadata=None, reason="requested_by_customer"):  # type: ignore[no-untyped-def]
        intent = self.intents.get(payment_intent_id)
        return RefundResult(
            id=f"re_{uuid.uuid4().hex[:20]}",
            amount_cents=intent.amount_cents if intent else 0,
            status="succeeded",
            payment_intent_id=payment_intent_id,
        )

    def register(self, payment: Payment, status: str = "succeeded") -> PaymentIntentResult:
        """Make the processor aware of a payment inserted directly into the DB."""
        intent = PaymentIntentResult(
            id=payment.external_charge_ref,
            status=status,
            amount_cents=int(payment.amount * 100),
            currency=payment.currency,
            client_secret="pi_secret_test",
        )
        self.intents[intent.id] = intent
        return intent

    def succeed(self, intent_id: str) -> None:
        self.intents[intent_id].status = "succeeded"


@pytest.fixture(autouse=True)
def gateway(monkeypatch: pytest.MonkeyPatch) -> FakeGateway:
    """Replace every processor call; no test talks to Stripe."""
    fake = FakeGateway()
    for name in (
        "get_or_create_customer",
        "create_payment_intent",
        "retrieve_payment_intent",
        "cancel_payment_intent",
        "create_transfer",
        "create_refund",
    ):
        monkeypatch.setattr(payment_gateway, name, getattr(fake, name))
    return fake


@pytest.fixture
def fake_redis() -> AsyncMock:
    """Redis double: the token bucket always allows the request."""
    redis = AsyncMock()
    redis.eval.return_value = [1, 10, 0]
    return redis


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    fake_redis: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB and Redis dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_token(user_id: uuid.UUID, expires_in: int = 3600, **claims) -> str:
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": str(user_id),
        "aud": settings.auth_jwt_audience,
        "iat": now,
        "exp": now + expires_in,
        **claims,
    }
    return jwt.encode({"alg": "HS256"}, payload, OctKey.import_key(settings.auth_jwt_secret))


def auth_headers(user_id: uuid.UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@dataclass
class Marketplace:
    requester: Profile
    tasker: Profile
    admin: Profile
    task: Task
    booking: Booking


async def make_marketplace(
    db: AsyncSession,
    pay_amount: str = "100.00",
    scheduled_date: datetime | None = None,
    payout_status: PayoutAccountStatus | None = PayoutAccountStatus.ACTIVE,
) -> Marketplace:
    """Requester, tasker (with payout account), admin, task and accepted booking."""
    requester = Profile(user_id=uuid.uuid4(), email="requester@example.com", display_name="Requester")
    tasker = Profile(user_id=uuid.uuid4(), email="tasker@example.com", display_name="Tasker")
    admin = Profile(user_id=uuid.uuid4(), email="admin@example.com", display_name="Admin", is_admin=True)
    db.add_all([requester, tasker, admin])

    task = Task(
        task_id=uuid.uuid4(),
        task_giver_id=requester.user_id,
        title="Assemble bookshelf",
        pay_amount=Decimal(pay_amount),
        scheduled_date=scheduled_date or T0 + timedelta(days=7),
        status=TaskStatus.ASSIGNED,
    )
    booking = Booking(
        booking_id=uuid.uuid4(),
        task_id=task.task_id,
        task_doer_id=tasker.user_id,
        status=BookingStatus.ACCEPTED,
    )
    db.add_all([task, booking])

    if payout_status is not None:
        db.add(PayoutAccount(
            user_id=tasker.user_id,
            stripe_account_id=f"acct_{uuid.uuid4().hex[:16]}",
            account_status=payout_status,
        ))
    await db.commit()
    return Marketplace(requester=requester, tasker=tasker, admin=admin, task=task, booking=booking)


async def make_payment(
    db: AsyncSession,
    mk: Marketplace,
    task_amount: str = "100.00",
    confirmed: bool = True,
    paid_at: datetime = T0,
    escrow_status: EscrowStatus = EscrowStatus.HELD,
) -> Payment:
    """Insert a payment row directly, as if created and (optionally) confirmed."""
    fees = calculate_fees(Decimal(task_amount))
    payment = Payment(
        payment_id=uuid.uuid4(),
        booking_id=mk.booking.booking_id,
        task_id=mk.task.task_id,
        payer_id=mk.requester.user_id,
        payee_id=mk.tasker.user_id,
        task_amount=fees.task_amount,
        amount=fees.total_charge,
        platform_fee=fees.platform_fee,
        tax_amount=fees.tax,
        payout_amount=fees.payout_amount,
        currency="cad",
        status=PaymentStatus.COMPLETED if confirmed else PaymentStatus.PENDING,
        escrow_status=escrow_status,
        external_charge_ref=f"pi_{uuid.uuid4().hex[:20]}",
        paid_at=paid_at if confirmed else None,
        auto_release_at=paid_at + timedelta(hours=settings.auto_release_hours) if confirmed else None,
    )
    db.add(payment)
    await db.commit()
    return payment


async def open_dispute(
    db: AsyncSession, mk: Marketplace, status: DisputeStatus = DisputeStatus.OPEN,
) -> Dispute:
    dispute = Dispute(
        dispute_id=uuid.uuid4(),
        booking_id=mk.booking.booking_id,
        raised_by=mk.requester.user_id,
        reason="Work not finished",
        status=status,
    )
    db.add(dispute)
    await db.commit()
    return dispute

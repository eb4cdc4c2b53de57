"""Shared test fixtures — async SQLite engine, fixed clock, fake payment processor, test client."""

import os

# Set env vars BEFORE importing app modules (config reads at import time)
os.environ.setdefault("KORPO_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["KORPO_STRIPE_SECRET_KEY"] = ""
os.environ["KORPO_STRIPE_WEBHOOK_SECRET"] = "whsec_test"

import asyncio
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException, Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from korpo_billing.api.deps import get_current_user_id, get_services  # noqa: E402
from korpo_billing.config import settings  # noqa: E402
from korpo_billing.database import Base  # noqa: E402
from korpo_billing.errors import PaymentProcessorError  # noqa: E402
from korpo_billing.main import app  # noqa: E402
from korpo_billing.models import UsageEvent, UserAccount  # noqa: E402
from korpo_billing.services.metering import build_services  # noqa: E402
from korpo_billing.services.payments import CheckoutIntent, ProcessorInvoice  # noqa: E402

# Use SelectorEventLoop on Windows to avoid ProactorEventLoop cleanup hangs
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Async SQLite engine for tests (in-memory, fast)
test_engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

# Mid-month, mid-day, so day and month rollovers are explicit in tests
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


class FakeClock:
    """Settable clock injected as ``now`` into the services."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def set(self, moment: datetime) -> None:
        self.moment = moment

    def advance(self, **kwargs) -> datetime:
        self.moment = self.moment + timedelta(**kwargs)
        return self.moment


class FakePaymentProcessor:
    """In-memory PaymentProcessor. Flip the ``fail_*`` flags to simulate Stripe errors."""

    def __init__(self):
        self.checkouts: list[dict] = []
        self.cancelled: list[str] = []
        self.invoices: list[dict] = []
        self.paid: list[str] = []
        self.one_off: list[dict] = []
        self.fail_invoice = False
        self.fail_pay = False
        self.fail_checkout = False
        self.fail_cancel = False

    async def create_recurring_checkout(self, user_id, *, email, customer_id, success_url, cancel_url):
        customer_id = customer_id or f"cus_{user_id}"
        self.checkouts.append({
            "user_id": user_id,
            "email": email,
            "customer_id": customer_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        return CheckoutIntent(
            checkout_url=f"https://checkout.test/{user_id}",
            session_id=f"cs_test_{len(self.checkouts)}",
            customer_id=customer_id,
        )

    async def cancel_subscription(self, subscription_id):
        if self.fail_cancel:
            raise PaymentProcessorError("Subscription cancel failed")
        self.cancelled.append(subscription_id)

    async def create_invoice(
        self, customer_id, lines, *, description, metadata, charge_automatically=False, days_until_due=None
    ):
        if self.fail_invoice:
            raise PaymentProcessorError("Invoice creation failed")
        invoice_id = f"in_test_{len(self.invoices) + 1}"
        self.invoices.append({
            "id": invoice_id,
            "customer_id": customer_id,
            "lines": list(lines),
            "description": description,
            "metadata": dict(metadata),
            "charge_automatically": charge_automatically,
            "days_until_due": days_until_due,
        })
        return ProcessorInvoice(
            invoice_id=invoice_id,
            hosted_url=f"https://invoice.test/{invoice_id}",
            metadata=dict(metadata),
        )

    async def pay_invoice_immediately(self, invoice_id):
        if self.fail_pay:
            raise PaymentProcessorError("Card declined")
        self.paid.append(invoice_id)

    async def create_one_off_checkout(
        self, customer_id, amount, *, description, metadata, success_url, cancel_url
    ):
        if self.fail_checkout:
            raise PaymentProcessorError("Checkout creation failed")
        self.one_off.append({"customer_id": customer_id, "amount": amount, "metadata": dict(metadata)})
        return CheckoutIntent(
            checkout_url=f"https://checkout.test/pay/{len(self.one_off)}",
            session_id=f"cs_pay_{len(self.one_off)}",
            customer_id=customer_id,
        )


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def payments():
    return FakePaymentProcessor()


@pytest.fixture
def services(clock, payments):
    return build_services(TestSession, settings=settings, payments=payments, now=clock)


async def _header_user_id(request: Request) -> str:
    """Stand-in for the upstream auth middleware: user id from the X-User-Id header."""
    user_id = request.headers.get("x-user-id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


@pytest.fixture
async def client(services):
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_current_user_id] = _header_user_id
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def db():
    async with TestSession() as session:
        yield session


def user_headers(user_id: str) -> dict:
    """Helper: headers identifying the calling user."""
    return {"X-User-Id": user_id}


def at(day: int, hour: int = 12, minute: int = 0, month: int = 1) -> datetime:
    """Helper: a UTC moment in 2026."""
    return datetime(2026, month, day, hour, minute, tzinfo=timezone.utc)


def iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


async def create_account(user_id: str = "user-1", plan: str = "free", **fields) -> UserAccount:
    """Helper: insert a user account directly."""
    async with TestSession() as session:
        account = UserAccount(id=user_id, plan=plan, email=f"{user_id}@test.com", **fields)
        session.add(account)
        await session.commit()
        return account


async def load_account(user_id: str) -> UserAccount:
    async with TestSession() as session:
        return await session.get(UserAccount, user_id)


async def add_usage_event(
    user_id: str,
    cost: float,
    occurred_at: datetime,
    model: str = "gpt-4o",
    tokens: int = 1000,
) -> None:
    """Helper: append a raw usage event without touching the monthly ledger."""
    async with TestSession() as session:
        session.add(
            UsageEvent(
                user_id=user_id,
                model=model,
                prompt_tokens=tokens,
                completion_tokens=0,
                cached_tokens=0,
                total_tokens=tokens,
                cost_usd=cost,
                occurred_at=occurred_at,
                recorded_at=occurred_at,
            )
        )
        await session.commit()

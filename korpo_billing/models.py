"""SQLAlchemy models for accounts, usage ledgers, plan changes and invoices."""

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from korpo_billing.database import Base
from korpo_billing.periods import utcnow


class Plan(str, enum.Enum):
    FREE = "free"
    PREMIUM = "premium"

    @classmethod
    def parse(cls, value: "str | Plan | None") -> "Plan":
        """Read a stored plan string; legacy 'premier' is premium, anything unknown is free."""
        if isinstance(value, Plan):
            return value
        normalized = (value or "").strip().lower()
        if normalized in ("premium", "premier"):
            return cls.PREMIUM
        return cls.FREE


class SubscriptionStatus(str, enum.Enum):
    NONE = "none"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class PlanAction(str, enum.Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class InvoiceKind(str, enum.Enum):
    MONTHLY = "monthly"
    FINAL_PRORATION = "final_proration"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"


class UserAccount(Base):
    """Billing view of a user. Identity and auth live with the external auth provider."""

    __tablename__ = "user_accounts"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Stored as a plain string so legacy plan names still load
    plan: Mapped[str] = mapped_column(String(20), default=Plan.FREE.value, nullable=False, index=True)
    limits: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    limits_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Billing cycle
    billing_anniversary_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.NONE, nullable=False
    )
    upgraded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    downgraded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_platform_fee_paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Stripe
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit trail of the last downgrade
    previous_plan: Mapped[str | None] = mapped_column(String(20), nullable=True)
    previous_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def plan_enum(self) -> Plan:
        return Plan.parse(self.plan)


class UsageRecord(Base):
    """Per-user-per-month counters. Only the usage ledger mutates these rows."""

    __tablename__ = "usage_records"

    user_id: Mapped[str] = mapped_column(ForeignKey("user_accounts.id"), primary_key=True)
    month: Mapped[str] = mapped_column(String(7), primary_key=True)  # YYYY-MM, UTC

    # {"YYYY-MM-DD": tokens}
    daily_token_usage: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    monthly_token_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # {"YYYY-MM-DD": {"voice": n, "chat": n}}
    daily_request_counts: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    monthly_voice_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_chat_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    total_cost_usd: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_reset_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def monthly_request_totals(self) -> dict[str, int]:
        return {"voice": self.monthly_voice_requests or 0, "chat": self.monthly_chat_requests or 0}


class UsageEvent(Base):
    """Raw per-call cost entry. Append-only; proration sums these over arbitrary windows."""

    __tablename__ = "usage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("user_accounts.id"), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    cached_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class PlanChangeEvent(Base):
    """Append-only log of upgrades and downgrades."""

    __tablename__ = "plan_change_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("user_accounts.id"), nullable=False, index=True)
    action: Mapped[PlanAction] = mapped_column(Enum(PlanAction), nullable=False)
    from_plan: Mapped[str] = mapped_column(String(20), nullable=False)
    to_plan: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    new_limits: Mapped[dict] = mapped_column(JSON, nullable=False)
    billing_anniversary_day: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Downgrade only
    final_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    final_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    days_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_period: Mapped[str | None] = mapped_column(String(100), nullable=True)

    usage_before_change: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    usage_adjustments: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class Invoice(Base):
    """Monthly (platform fee + API usage) or final proration (API usage only) invoice."""

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("user_accounts.id"), nullable=False, index=True)
    kind: Mapped[InvoiceKind] = mapped_column(Enum(InvoiceKind), nullable=False)
    month: Mapped[str | None] = mapped_column(String(7), nullable=True)  # billing month for MONTHLY
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    days_used: Mapped[int | None] = mapped_column(Integer, nullable=True)

    platform_fee: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    api_usage_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)

    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.DRAFT, nullable=False
    )
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "month", name="uq_invoice_user_kind_month"),
    )
    __mapper_args__ = {"version_id_col": version}


@event.listens_for(UsageEvent, "before_update")
@event.listens_for(PlanChangeEvent, "before_update")
def _reject_update(mapper, connection, target):
    raise ValueError(f"{type(target).__name__} rows are immutable")

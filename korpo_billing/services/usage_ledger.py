"""Usage ledger — authoritative per-user-per-month token and request counters.

One ``UsageRecord`` row per (user_id, month). Every read-check-increment runs as a
single transaction under a per-key lock, with a row version check as the
cross-process guard, so two concurrent reports can never both pass the cap
check and jointly overshoot it.

Counters roll over implicitly: the month key picks the row and the day key picks
the bucket, so there is no scheduled reset.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from korpo_billing.database import KeyedLocks, run_in_transaction
from korpo_billing.errors import (
    DailyLimitExceeded,
    DuplicateOrOutOfOrderReport,
    MonthlyLimitExceeded,
    RequestLimitExceeded,
    ValidationError,
)
from korpo_billing.models import UsageEvent, UsageRecord
from korpo_billing.periods import as_utc, day_key, month_key, parse_iso, to_iso, utcnow
from korpo_billing.services.pricing import PricingTable

logger = logging.getLogger(__name__)

REQUEST_TYPES = ("voice", "chat")


@dataclass(frozen=True)
class TokenUsageReport:
    """One completed upstream AI call, as reported for metering."""

    model: str
    prompt_tokens: int
    completion_tokens: int
    timestamp: str
    cached_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class UsageOutcome:
    tokens_added: int
    cost_added: float
    new_daily_total: int
    new_monthly_total: int
    month: str
    day: str


@dataclass(frozen=True)
class RequestOutcome:
    request_type: str
    count_added: int
    new_daily_count: int
    daily_limit: int
    new_monthly_count: int


def blank_record(user_id: str, month: str) -> UsageRecord:
    """Zero-valued record for a month with no usage yet. Not added to any session."""
    return UsageRecord(
        user_id=user_id,
        month=month,
        daily_token_usage={},
        monthly_token_total=0,
        daily_request_counts={},
        monthly_voice_requests=0,
        monthly_chat_requests=0,
        total_cost_usd=0.0,
        last_reported_at=None,
    )


def _add_cost(total: float, cost: float) -> float:
    return float(Decimal(str(total or 0)) + Decimal(str(cost)))


class UsageLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pricing: PricingTable,
        *,
        now: Callable[[], datetime] = utcnow,
        max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self._pricing = pricing
        self._now = now
        self._max_retries = max_retries
        self._locks = KeyedLocks()

    def current_period(self) -> tuple[str, str]:
        """(month, day) keys for the current UTC moment."""
        moment = self._now()
        return month_key(moment), day_key(moment)

    async def get_or_create(self, user_id: str, month: str | None = None) -> UsageRecord:
        """The stored record for the month, or a zero-valued one that is not persisted."""
        month = month or self.current_period()[0]
        async with self._session_factory() as session:
            record = await session.get(UsageRecord, (user_id, month))
        return record if record is not None else blank_record(user_id, month)

    async def _load_for_update(self, session: AsyncSession, user_id: str, month: str) -> UsageRecord:
        record = await session.get(UsageRecord, (user_id, month), with_for_update=True)
        if record is None:
            record = blank_record(user_id, month)
            session.add(record)
        return record

    # --- Token usage ---

    def validate_report(self, report: TokenUsageReport) -> datetime:
        """Reject malformed reports before any state is touched. Returns the parsed timestamp."""
        self._pricing.price(report.model)
        for name, value in (
            ("promptTokens", report.prompt_tokens),
            ("completionTokens", report.completion_tokens),
            ("cachedTokens", report.cached_tokens),
        ):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer")
            if value < 0:
                raise ValidationError(f"{name} must be >= 0")
        if report.cached_tokens > report.prompt_tokens:
            raise ValidationError("cachedTokens cannot exceed promptTokens")
        if report.total_tokens <= 0:
            raise ValidationError("report must contain at least one token")
        try:
            return parse_iso(report.timestamp)
        except (TypeError, ValueError):
            raise ValidationError("timestamp must be a valid ISO-8601 string") from None

    async def record_usage(
        self,
        user_id: str,
        report: TokenUsageReport,
        daily_limit: int,
        monthly_limit: int,
    ) -> UsageOutcome:
        """Apply a token report to the current month's ledger, or reject it without mutation."""
        reported_at = self.validate_report(report)
        cost = self._pricing.cost(
            report.model, report.prompt_tokens, report.completion_tokens, report.cached_tokens
        )
        total = report.total_tokens
        month, today = self.current_period()

        async def work(session: AsyncSession) -> UsageOutcome:
            record = await self._load_for_update(session, user_id, month)

            last = as_utc(record.last_reported_at)
            if last is not None and reported_at <= last:
                raise DuplicateOrOutOfOrderReport(report.timestamp, to_iso(last))

            daily_used = int(record.daily_token_usage.get(today, 0))
            monthly_used = record.monthly_token_total or 0
            if daily_used + total > daily_limit:
                raise DailyLimitExceeded(daily_used, daily_limit, total)
            if monthly_used + total > monthly_limit:
                raise MonthlyLimitExceeded(monthly_used, monthly_limit, total)

            daily = dict(record.daily_token_usage)
            daily[today] = daily_used + total
            record.daily_token_usage = daily
            record.monthly_token_total = monthly_used + total
            record.total_cost_usd = _add_cost(record.total_cost_usd, cost)
            record.last_reported_at = reported_at

            session.add(
                UsageEvent(
                    user_id=user_id,
                    model=report.model,
                    prompt_tokens=report.prompt_tokens,
                    completion_tokens=report.completion_tokens,
                    cached_tokens=report.cached_tokens,
                    total_tokens=total,
                    cost_usd=cost,
                    occurred_at=reported_at,
                    recorded_at=self._now(),
                )
            )
            return UsageOutcome(
                tokens_added=total,
                cost_added=cost,
                new_daily_total=daily_used + total,
                new_monthly_total=monthly_used + total,
                month=month,
                day=today,
            )

        async with self._locks("usage", user_id, month):
            outcome = await run_in_transaction(
                self._session_factory, work, retries=self._max_retries, label=f"usage {user_id}/{month}"
            )
        logger.info(
            "Recorded usage for %s: +%d tokens, $%.4f (day=%d month=%d)",
            user_id, outcome.tokens_added, outcome.cost_added,
            outcome.new_daily_total, outcome.new_monthly_total,
        )
        return outcome

    # --- Request counts ---

    async def record_request(
        self, user_id: str, request_type: str, daily_limit: int, count: int = 1
    ) -> RequestOutcome:
        """Count voice/chat requests against the per-type daily cap. No monthly request cap."""
        if request_type not in REQUEST_TYPES:
            raise ValidationError(f"requestType must be one of {', '.join(REQUEST_TYPES)}")
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError("count must be a positive integer")
        month, today = self.current_period()

        async def work(session: AsyncSession) -> RequestOutcome:
            record = await self._load_for_update(session, user_id, month)
            day_counts = dict(record.daily_request_counts.get(today) or {})
            used = int(day_counts.get(request_type, 0))
            if used + count > daily_limit:
                raise RequestLimitExceeded(request_type, used, daily_limit, count)

            day_counts[request_type] = used + count
            counts = dict(record.daily_request_counts)
            counts[today] = day_counts
            record.daily_request_counts = counts
            if request_type == "voice":
                record.monthly_voice_requests = (record.monthly_voice_requests or 0) + count
                monthly = record.monthly_voice_requests
            else:
                record.monthly_chat_requests = (record.monthly_chat_requests or 0) + count
                monthly = record.monthly_chat_requests
            return RequestOutcome(
                request_type=request_type,
                count_added=count,
                new_daily_count=used + count,
                daily_limit=daily_limit,
                new_monthly_count=monthly,
            )

        async with self._locks("usage", user_id, month):
            return await run_in_transaction(
                self._session_factory, work, retries=self._max_retries, label=f"usage {user_id}/{month}"
            )

    # --- Plan-change adjustments ---

    async def reset_daily_usage(self, user_id: str, reason: str = "plan_change") -> dict:
        """Overwrite today's token bucket and request counts with zero.

        The zeroed amounts are also taken off the monthly totals so the monthly
        total stays the sum of the daily buckets. Cost is never reset.
        """
        month, today = self.current_period()

        async def work(session: AsyncSession) -> dict:
            record = await session.get(UsageRecord, (user_id, month), with_for_update=True)
            if record is None:
                return {"reset_tokens": 0, "reset_voice_requests": 0, "reset_chat_requests": 0,
                        "reset_date": today, "reason": reason}

            reset_tokens = int(record.daily_token_usage.get(today, 0))
            day_counts = record.daily_request_counts.get(today) or {}
            reset_voice = int(day_counts.get("voice", 0))
            reset_chat = int(day_counts.get("chat", 0))

            daily = dict(record.daily_token_usage)
            daily[today] = 0
            record.daily_token_usage = daily
            counts = dict(record.daily_request_counts)
            counts[today] = {"voice": 0, "chat": 0}
            record.daily_request_counts = counts

            record.monthly_token_total = max(0, (record.monthly_token_total or 0) - reset_tokens)
            record.monthly_voice_requests = max(0, (record.monthly_voice_requests or 0) - reset_voice)
            record.monthly_chat_requests = max(0, (record.monthly_chat_requests or 0) - reset_chat)
            record.last_reset_at = self._now()
            record.last_reset_reason = reason
            return {"reset_tokens": reset_tokens, "reset_voice_requests": reset_voice,
                    "reset_chat_requests": reset_chat, "reset_date": today, "reason": reason}

        async with self._locks("usage", user_id, month):
            result = await run_in_transaction(
                self._session_factory, work, retries=self._max_retries, label=f"usage {user_id}/{month}"
            )
        logger.info(
            "Reset daily usage for %s (%s): %d tokens, %d voice, %d chat",
            user_id, reason, result["reset_tokens"],
            result["reset_voice_requests"], result["reset_chat_requests"],
        )
        return result

    async def reset_monthly_usage(self, user_id: str, reason: str = "plan_change") -> dict:
        """Zero this month's token and request counters. Accrued cost and the last report timestamp stay."""
        month, _ = self.current_period()

        async def work(session: AsyncSession) -> dict:
            record = await session.get(UsageRecord, (user_id, month), with_for_update=True)
            if record is None:
                return {"reset_tokens": 0, "reset_voice_requests": 0, "reset_chat_requests": 0,
                        "reset_month": month, "reason": reason}
            result = {
                "reset_tokens": record.monthly_token_total or 0,
                "reset_voice_requests": record.monthly_voice_requests or 0,
                "reset_chat_requests": record.monthly_chat_requests or 0,
                "reset_month": month,
                "reason": reason,
            }
            record.daily_token_usage = {}
            record.monthly_token_total = 0
            record.daily_request_counts = {}
            record.monthly_voice_requests = 0
            record.monthly_chat_requests = 0
            record.last_reset_at = self._now()
            record.last_reset_reason = reason
            return result

        async with self._locks("usage", user_id, month):
            result = await run_in_transaction(
                self._session_factory, work, retries=self._max_retries, label=f"usage {user_id}/{month}"
            )
        logger.info("Reset monthly usage for %s (%s): %d tokens", user_id, reason, result["reset_tokens"])
        return result

    async def usage_for_plan_change(self, user_id: str) -> dict:
        """Snapshot of current counters, stored on plan change events."""
        month, today = self.current_period()
        record = await self.get_or_create(user_id, month)
        day_counts = record.daily_request_counts.get(today) or {}
        return {
            "daily_tokens": int(record.daily_token_usage.get(today, 0)),
            "monthly_tokens": record.monthly_token_total or 0,
            "daily_voice_requests": int(day_counts.get("voice", 0)),
            "daily_chat_requests": int(day_counts.get("chat", 0)),
            "monthly_voice_requests": record.monthly_voice_requests or 0,
            "monthly_chat_requests": record.monthly_chat_requests or 0,
            "monthly_cost": record.total_cost_usd or 0.0,
            "current_month": month,
            "today": today,
        }

    # --- Reads for billing ---

    async def events_between(self, user_id: str, start: datetime, end: datetime) -> list[UsageEvent]:
        """Usage events with ``start <= occurred_at < end``, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(UsageEvent)
                .where(
                    UsageEvent.user_id == user_id,
                    UsageEvent.occurred_at >= start,
                    UsageEvent.occurred_at < end,
                )
                .order_by(UsageEvent.occurred_at, UsageEvent.id)
            )
            return list(result.scalars().all())

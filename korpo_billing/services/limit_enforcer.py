"""Limit enforcer — read-only "can this user act now?" decisions.

Reads the same ledger record and limits snapshot the recording path uses, so a
user allowed here is judged against the same caps when the usage is recorded.
The per-request token ceiling is only checked here, before the upstream call:
a completed call is always booked whatever its size.
"""

import logging
from dataclasses import dataclass

from korpo_billing.models import UsageRecord
from korpo_billing.services.limits import PlanLimits
from korpo_billing.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnforcementResult:
    allowed_chat: bool
    allowed_voice: bool
    remaining_daily_tokens: int
    remaining_monthly_tokens: int
    daily_used: int
    daily_limit: int
    monthly_used: int
    monthly_limit: int
    voice_requests_today: int
    chat_requests_today: int
    reason: str | None = None
    request_within_limit: bool = True

    @property
    def allowed(self) -> bool:
        """Token gate only; request-type gates are ``allowed_chat`` / ``allowed_voice``."""
        return (
            self.remaining_daily_tokens > 0
            and self.remaining_monthly_tokens > 0
            and self.request_within_limit
        )


class LimitEnforcer:
    def __init__(self, ledger: UsageLedger):
        self._ledger = ledger

    @staticmethod
    def evaluate(
        record: UsageRecord, today: str, limits: PlanLimits, requested_tokens: int = 0
    ) -> EnforcementResult:
        daily_used = int(record.daily_token_usage.get(today, 0))
        monthly_used = record.monthly_token_total or 0
        day_counts = record.daily_request_counts.get(today) or {}
        voice_today = int(day_counts.get("voice", 0))
        chat_today = int(day_counts.get("chat", 0))

        request_ok = requested_tokens <= limits.max_tokens_per_request
        tokens_ok = (
            daily_used < limits.chat_tokens_daily
            and monthly_used < limits.chat_tokens_monthly
            and request_ok
        )
        voice_ok = voice_today < limits.voice_requests_daily
        chat_ok = chat_today < limits.chat_requests_daily

        reason = None
        if daily_used >= limits.chat_tokens_daily:
            reason = "Daily token limit reached"
        elif monthly_used >= limits.chat_tokens_monthly:
            reason = "Monthly token limit reached"
        elif not request_ok:
            reason = "Request exceeds per-request token limit"
        elif not chat_ok and not voice_ok:
            reason = "Daily chat and voice request limits reached"
        elif not chat_ok:
            reason = "Daily chat request limit reached"
        elif not voice_ok:
            reason = "Daily voice request limit reached"

        return EnforcementResult(
            allowed_chat=tokens_ok and chat_ok,
            allowed_voice=tokens_ok and voice_ok,
            remaining_daily_tokens=max(0, limits.chat_tokens_daily - daily_used),
            remaining_monthly_tokens=max(0, limits.chat_tokens_monthly - monthly_used),
            daily_used=daily_used,
            daily_limit=limits.chat_tokens_daily,
            monthly_used=monthly_used,
            monthly_limit=limits.chat_tokens_monthly,
            voice_requests_today=voice_today,
            chat_requests_today=chat_today,
            reason=reason,
            request_within_limit=request_ok,
        )

    async def can_use(self, user_id: str, limits: PlanLimits, requested_tokens: int = 0) -> EnforcementResult:
        month, today = self._ledger.current_period()
        record = await self._ledger.get_or_create(user_id, month)
        result = self.evaluate(record, today, limits, requested_tokens)
        if result.reason:
            logger.debug("Usage gate for %s: %s", user_id, result.reason)
        return result

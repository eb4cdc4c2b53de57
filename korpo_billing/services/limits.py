"""Per-plan limits registry.

Daily and monthly token caps are configured independently; the monthly cap is
not derived from the daily one.
"""

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from types import MappingProxyType

from korpo_billing.models import Plan


@dataclass(frozen=True)
class PlanLimits:
    chat_tokens_daily: int
    chat_tokens_monthly: int
    max_tokens_per_request: int
    max_requests_per_minute: int
    voice_requests_daily: int
    chat_requests_daily: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping, fallback: "PlanLimits") -> "PlanLimits":
        """Build from a stored snapshot; missing or malformed fields come from ``fallback``."""
        values = {}
        for name, default in asdict(fallback).items():
            raw = data.get(name, default)
            values[name] = raw if isinstance(raw, int) and not isinstance(raw, bool) else default
        return cls(**values)

    def daily_request_cap(self, request_type: str) -> int:
        if request_type == "voice":
            return self.voice_requests_daily
        return self.chat_requests_daily


DEFAULT_LIMITS: dict[Plan, PlanLimits] = {
    Plan.FREE: PlanLimits(
        chat_tokens_daily=1_000_000,
        chat_tokens_monthly=30_000_000,
        max_tokens_per_request=50_000,
        max_requests_per_minute=1_000,
        voice_requests_daily=50,
        chat_requests_daily=500,
    ),
    Plan.PREMIUM: PlanLimits(
        chat_tokens_daily=3_000_000,
        chat_tokens_monthly=90_000_000,
        max_tokens_per_request=100_000,
        max_requests_per_minute=5_000,
        voice_requests_daily=500,
        chat_requests_daily=5_000,
    ),
}


class LimitsRegistry:
    def __init__(self, limits: Mapping[Plan, PlanLimits] | None = None):
        table = dict(limits or DEFAULT_LIMITS)
        if Plan.FREE not in table:
            raise ValueError("limits registry needs a free tier")
        self._limits = MappingProxyType(table)

    def for_plan(self, plan: "str | Plan | None") -> PlanLimits:
        """Limits for a plan; unknown plan strings fall back to free."""
        return self._limits.get(Plan.parse(plan), self._limits[Plan.FREE])

    def all(self) -> dict[str, PlanLimits]:
        return {plan.value: limits for plan, limits in self._limits.items()}

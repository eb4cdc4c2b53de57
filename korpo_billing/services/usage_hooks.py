"""Post-response usage hooks.

Wraps an upstream AI call as an explicit pipeline stage. An optional pre-flight
gate may refuse the call before it is made. Only a successful result is turned
into a ``UsageCharge`` and handed to the registered hooks, and a failed
upstream call records nothing. Size ceilings belong in the pre-flight gate:
the hooks book whatever a delivered call actually consumed.

Hook failures are logged and swallowed; the caller already has its answer.
Every swallowed failure is an undercount, so it is logged with a traceback.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

from korpo_billing.periods import to_iso, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class UsageCharge:
    """Cost metadata of one completed upstream call."""

    user_id: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    cached_tokens: int = 0
    timestamp: str | None = None
    request_type: str | None = None  # "voice" or "chat" also counts a request


UsageHook = Callable[[UsageCharge], Awaitable[None]]


class UsageHookPipeline:
    def __init__(self, hooks: list[UsageHook] | None = None):
        self._hooks: list[UsageHook] = list(hooks or [])

    def register(self, hook: UsageHook) -> UsageHook:
        self._hooks.append(hook)
        return hook

    @property
    def hooks(self) -> tuple[UsageHook, ...]:
        return tuple(self._hooks)

    async def dispatch(self, charge: UsageCharge) -> int:
        """Run every hook for ``charge``. Returns how many failed."""
        failures = 0
        for hook in self._hooks:
            try:
                await hook(charge)
            except Exception:
                failures += 1
                logger.exception(
                    "Usage hook %s failed for %s (%s, %d tokens), usage not recorded",
                    getattr(hook, "__qualname__", hook), charge.user_id, charge.model,
                    charge.prompt_tokens + charge.completion_tokens,
                )
        return failures

    async def run_metered(
        self,
        user_id: str,
        call: Callable[[], Awaitable[T]],
        extract: Callable[[str, T], UsageCharge | None],
        preflight: Callable[[], Awaitable[None]] | None = None,
    ) -> T:
        """Await ``call``, then charge its usage. The upstream result is returned unchanged.

        ``preflight`` errors propagate and the upstream call is not made.
        """
        if preflight is not None:
            await preflight()
        result = await call()

        try:
            charge = extract(user_id, result)
        except Exception:
            logger.exception("Could not extract usage for %s, usage not recorded", user_id)
            return result

        if charge is not None:
            if charge.timestamp is None:
                charge = replace(charge, timestamp=to_iso(utcnow()))
            await self.dispatch(charge)
        return result

"""Provider pricing table — maps a model and token counts to a USD cost.

Prices are per 1M tokens (per 1M characters for TTS). The table is immutable
once built; construct it at startup and pass it to whoever needs it.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType

from korpo_billing.errors import UnknownModelError, ValidationError

_MILLION = Decimal("1000000")
_COST_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class ModelPrice:
    """Rates for one model in USD per 1M tokens."""

    input_per_million: Decimal
    output_per_million: Decimal
    cached_input_per_million: Decimal | None = None
    char_based: bool = False  # TTS bills characters; callers convert with characters_to_tokens()
    description: str = ""

    @classmethod
    def from_rates(cls, rates: Mapping[str, float], description: str = "") -> "ModelPrice":
        cached = rates.get("cached_input")
        return cls(
            input_per_million=Decimal(str(rates.get("input", 0))),
            output_per_million=Decimal(str(rates.get("output", 0))),
            cached_input_per_million=Decimal(str(cached)) if cached is not None else None,
            char_based=bool(rates.get("char_based", False)),
            description=description,
        )


# OpenAI list prices, January 2026
DEFAULT_PRICES: dict[str, ModelPrice] = {
    "gpt-4o": ModelPrice(
        Decimal("2.50"), Decimal("10.00"), Decimal("1.25"),
        description="GPT-4o",
    ),
    "gpt-4o-mini": ModelPrice(
        Decimal("0.15"), Decimal("0.60"), Decimal("0.075"),
        description="GPT-4o Mini",
    ),
    "tts-1": ModelPrice(
        Decimal("0"), Decimal("15.00"),
        char_based=True,
        description="TTS-1 text-to-speech, billed per character",
    ),
    "whisper-1": ModelPrice(
        Decimal("0.02"), Decimal("0"),
        description="Whisper-1 transcription",
    ),
}


def characters_to_tokens(characters: int) -> int:
    """Token approximation for character-billed models: ceil(characters / 4)."""
    if characters <= 0:
        return 0
    return -(-characters // 4)


def _check_count(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value < 0:
        raise ValidationError(f"{name} must be >= 0")


class PricingTable:
    def __init__(self, prices: Mapping[str, ModelPrice]):
        self._prices = MappingProxyType(dict(prices))

    @classmethod
    def default(cls, overrides: Mapping[str, Mapping[str, float]] | None = None) -> "PricingTable":
        prices = dict(DEFAULT_PRICES)
        for model, rates in (overrides or {}).items():
            prices[model] = ModelPrice.from_rates(rates, description=f"{model} (configured)")
        return cls(prices)

    def __contains__(self, model: str) -> bool:
        return model in self._prices

    def models(self) -> list[str]:
        return sorted(self._prices)

    def price(self, model: str) -> ModelPrice:
        try:
            return self._prices[model]
        except KeyError:
            raise UnknownModelError(model) from None

    def raw_cost(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        cached_tokens: int = 0,
    ) -> Decimal:
        """Unrounded cost in USD.

        ``cached_tokens`` is the part of ``prompt_tokens`` served from the prompt
        cache; it bills at the cached-input rate when the model has one.
        """
        price = self.price(model)
        _check_count("promptTokens", prompt_tokens)
        _check_count("completionTokens", completion_tokens)
        _check_count("cachedTokens", cached_tokens)
        if cached_tokens > prompt_tokens:
            raise ValidationError("cachedTokens cannot exceed promptTokens")

        cached_rate = price.cached_input_per_million
        if cached_rate is None:
            cached_rate = price.input_per_million

        uncached = Decimal(prompt_tokens - cached_tokens) * price.input_per_million
        cached = Decimal(cached_tokens) * cached_rate
        output = Decimal(completion_tokens) * price.output_per_million
        return (uncached + cached + output) / _MILLION

    def cost(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        cached_tokens: int = 0,
    ) -> float:
        """Cost in USD rounded half-up to 4 decimal places."""
        raw = self.raw_cost(model, prompt_tokens, completion_tokens, cached_tokens)
        return float(raw.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP))

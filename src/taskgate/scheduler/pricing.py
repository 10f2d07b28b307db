"""
scheduler/pricing.py — Per-model cost estimation

Ships USD-per-million-token rates for common models. Config
(``budget.pricing``) can add or override entries. Unknown models fall back
to $1/M input and $5/M output, with one warning per model.

Cache-aware: cache-read tokens are billed at ``input * cache_read_discount``
and cache-write tokens at ``input * cache_write_multiplier``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskgate.observability.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    input_per_1m_tokens: float
    output_per_1m_tokens: float
    cache_read_discount: Optional[float] = None
    cache_write_multiplier: Optional[float] = None


@dataclass(frozen=True)
class TokenUsage:
    """Exact usage reported by a provider for one call."""
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


FALLBACK_PRICING = ModelPricing(input_per_1m_tokens=1.0, output_per_1m_tokens=5.0)

DEFAULT_PRICING: dict[str, ModelPricing] = {
    # OpenAI: cache reads at 50% of input
    "gpt-4o-mini":                 ModelPricing(0.15, 0.60, 0.5, 1.0),
    "gpt-4o":                      ModelPricing(2.50, 10.00, 0.5, 1.0),
    # Anthropic via OpenRouter: cache reads at 10%, writes at 125%
    "anthropic/claude-3.5-sonnet": ModelPricing(3.00, 15.00, 0.1, 1.25),
    "anthropic/claude-3-haiku":    ModelPricing(0.25, 1.25, 0.1, 1.25),
    # Bedrock
    "global.amazon.nova-2-lite-v1:0":                ModelPricing(0.06, 0.24, 0.1, 1.0),
    "amazon.nova-pro-v1:0":                          ModelPricing(0.80, 3.20, 0.1, 1.0),
    "us.anthropic.claude-3-5-haiku-20241022-v1:0":   ModelPricing(0.80, 4.00, 0.1, 1.0),
    # Google: cache reads at 25%
    "gemini-2.5-flash":            ModelPricing(0.15, 0.60, 0.25, 1.0),
    "gemini-2.0-flash":            ModelPricing(0.10, 0.40, 0.25, 1.0),
    "gemini-1.5-pro":              ModelPricing(1.25, 5.00, 0.25, 1.0),
}


def _estimate(p: ModelPricing, usage: TokenUsage) -> float:
    rate_in = p.input_per_1m_tokens
    uncached = max(usage.input_tokens - usage.cache_read_tokens, 0)
    return (
        uncached / 1_000_000 * rate_in
        + usage.cache_read_tokens / 1_000_000 * rate_in * (p.cache_read_discount if p.cache_read_discount is not None else 1.0)
        + usage.cache_write_tokens / 1_000_000 * rate_in * (p.cache_write_multiplier if p.cache_write_multiplier is not None else 1.0)
        + usage.output_tokens / 1_000_000 * p.output_per_1m_tokens
    )


class PricingLookup:
    """Model name -> USD estimate for a TokenUsage."""

    def __init__(self, overrides: Optional[dict[str, ModelPricing]] = None) -> None:
        self._pricing: dict[str, ModelPricing] = {**DEFAULT_PRICING, **(overrides or {})}
        self._warned: set[str] = set()

    @classmethod
    def from_settings(cls, settings) -> "PricingLookup":
        return cls({
            model: ModelPricing(
                input_per_1m_tokens=cfg.input_per_1m_tokens,
                output_per_1m_tokens=cfg.output_per_1m_tokens,
                cache_read_discount=cfg.cache_read_discount,
                cache_write_multiplier=cfg.cache_write_multiplier,
            )
            for model, cfg in settings.budget.pricing.items()
        })

    def get(self, model: str) -> Optional[ModelPricing]:
        return self._pricing.get(model)

    def estimate(self, model: str, usage: TokenUsage) -> float:
        pricing = self._pricing.get(model)
        if pricing is None:
            if model not in self._warned:
                self._warned.add(model)
                log.warning(
                    "pricing.unknown_model",
                    model=model,
                    fallback_input=f"${FALLBACK_PRICING.input_per_1m_tokens}/M",
                    fallback_output=f"${FALLBACK_PRICING.output_per_1m_tokens}/M",
                )
            pricing = FALLBACK_PRICING
        return _estimate(pricing, usage)

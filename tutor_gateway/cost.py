"""
Token pricing and model-tier selection.

Prices are USD per one million tokens. A tier missing from the table is a
programming error and raises ValueError.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict


class ModelTier(str, Enum):
    CHEAP = "flash-lite"
    BALANCED = "flash"
    CAPABLE = "pro"


@dataclass(frozen=True)
class TierPricing:
    input: float
    output: float
    cached: float


MODEL_COSTS: Dict[ModelTier, TierPricing] = {
    ModelTier.CHEAP: TierPricing(input=0.075, output=0.30, cached=0.01875),
    ModelTier.BALANCED: TierPricing(input=0.15, output=0.60, cached=0.0375),
    ModelTier.CAPABLE: TierPricing(input=1.25, output=5.00, cached=0.3125),
}

_PER_TOKENS = 1_000_000


def calculate_cost(
    tier: ModelTier,
    input_tokens: int,
    output_tokens: int,
    cached_tokens: int = 0,
) -> float:
    pricing = MODEL_COSTS[ModelTier(tier)]
    return (
        input_tokens * pricing.input
        + output_tokens * pricing.output
        + cached_tokens * pricing.cached
    ) / _PER_TOKENS


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token."""
    return math.ceil(len(text) / 4)


def select_tier(complexity: float) -> ModelTier:
    if complexity < 0.3:
        return ModelTier.CHEAP
    if complexity < 0.7:
        return ModelTier.BALANCED
    return ModelTier.CAPABLE


def format_cost(usd: float) -> str:
    if usd < 0.01:
        return f"${usd * 1000:.3f}m"
    return f"${usd:.4f}"


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)

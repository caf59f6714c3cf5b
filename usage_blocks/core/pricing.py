"""
Pricing calculations and rate management.

Converts token counts into a USD cost so that every event reaching the
block segmenter already carries its cost.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional

from .token_counter import TokenCounts

logger = logging.getLogger(__name__)

_PER_MILLION = Decimal("1000000")


class CostMode(Enum):
    """How the cost of an event is determined."""
    AUTO = "auto"            # Recorded cost when present, otherwise priced
    CALCULATE = "calculate"  # Always priced from tokens
    DISPLAY = "display"      # Recorded cost only, 0 when absent


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a model family, in USD per million tokens."""
    input_cost_per_1m: Decimal
    output_cost_per_1m: Decimal
    cache_creation_cost_per_1m: Decimal
    cache_read_cost_per_1m: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table keyed by model family prefix."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model identifier.

        Exact keys win; otherwise the longest family prefix contained in the
        model name is used, so dated releases such as
        ``claude-sonnet-4-20250514`` resolve to ``claude-sonnet-4``.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model in self.prices:
            return self.prices[model]
        matches = [key for key in self.prices if key in model]
        if not matches:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[max(matches, key=len)]


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable({
    "claude-opus-4": ModelPricing(
        input_cost_per_1m=Decimal("15.00"),
        output_cost_per_1m=Decimal("75.00"),
        cache_creation_cost_per_1m=Decimal("18.75"),
        cache_read_cost_per_1m=Decimal("1.50"),
    ),
    "claude-sonnet-4": ModelPricing(
        input_cost_per_1m=Decimal("3.00"),
        output_cost_per_1m=Decimal("15.00"),
        cache_creation_cost_per_1m=Decimal("3.75"),
        cache_read_cost_per_1m=Decimal("0.30"),
    ),
    "claude-3-7-sonnet": ModelPricing(
        input_cost_per_1m=Decimal("3.00"),
        output_cost_per_1m=Decimal("15.00"),
        cache_creation_cost_per_1m=Decimal("3.75"),
        cache_read_cost_per_1m=Decimal("0.30"),
    ),
    "claude-3-5-haiku": ModelPricing(
        input_cost_per_1m=Decimal("0.80"),
        output_cost_per_1m=Decimal("4.00"),
        cache_creation_cost_per_1m=Decimal("1.00"),
        cache_read_cost_per_1m=Decimal("0.08"),
    ),
    "claude-haiku-4": ModelPricing(
        input_cost_per_1m=Decimal("1.00"),
        output_cost_per_1m=Decimal("5.00"),
        cache_creation_cost_per_1m=Decimal("1.25"),
        cache_read_cost_per_1m=Decimal("0.10"),
    ),
})


def calculate_cost(model: str, tokens: TokenCounts, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate the cost of a token bundle for a model.

    Args:
        model: Model identifier
        tokens: Token counters to price
        table: Pricing table to use

    Returns:
        Cost in USD rounded to six decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = table.get_pricing(model)

    total = (
        Decimal(tokens.input_tokens) * pricing.input_cost_per_1m
        + Decimal(tokens.output_tokens) * pricing.output_cost_per_1m
        + Decimal(tokens.cache_creation_tokens) * pricing.cache_creation_cost_per_1m
        + Decimal(tokens.cache_read_tokens) * pricing.cache_read_cost_per_1m
    ) / _PER_MILLION

    return float(total.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP))


def resolve_event_cost(
    mode: CostMode,
    recorded_cost: Optional[float],
    tokens: TokenCounts,
    model: str,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Decide the cost of one event according to the cost mode.

    Unknown models price to 0.0 rather than failing the whole line.
    """
    if mode == CostMode.DISPLAY:
        return recorded_cost or 0.0
    if mode == CostMode.AUTO and recorded_cost is not None:
        return recorded_cost

    try:
        return calculate_cost(model, tokens, table)
    except ValueError:
        logger.debug("No pricing for model %s; using 0.0", model)
        return 0.0

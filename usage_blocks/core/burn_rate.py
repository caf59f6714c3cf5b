"""
Burn rate and usage projection for session blocks.

Rates are derived on demand from a block snapshot and never stored.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .blocks import SessionBlock

# Rates measured over less than this are treated as this long
MIN_RATE_DURATION = timedelta(minutes=1)

# Indicator thresholds in input+output tokens per minute
BURN_RATE_HIGH_THRESHOLD = 1000
BURN_RATE_MODERATE_THRESHOLD = 500

# Fraction of the token limit that triggers a warning
BLOCKS_WARNING_THRESHOLD = 0.8


class BurnRateLevel(Enum):
    """Qualitative consumption speed shown next to the rate."""
    NORMAL = "normal"
    MODERATE = "moderate"
    HIGH = "high"


class TokenLimitStatus(Enum):
    """Where a block stands relative to a token limit."""
    OK = "ok"
    WARNING = "warning"
    EXCEEDS = "exceeds"


@dataclass(frozen=True)
class BurnRate:
    """Consumption rate of a block."""
    tokens_per_minute: float
    tokens_per_minute_for_indicator: float
    cost_per_hour: float


@dataclass(frozen=True)
class Projection:
    """Linear extrapolation of an active block to its window end."""
    total_tokens: int
    total_cost: float
    remaining_minutes: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_burn_rate(block: SessionBlock, now: Optional[datetime] = None) -> Optional[BurnRate]:
    """Calculate the burn rate of a block.

    Active blocks are measured from the block start to ``now`` so that a
    burst right after the block opened is spread over the elapsed window.
    Completed blocks are measured from their first to their last entry.
    Both durations are floored at one minute.

    Args:
        block: Block to measure
        now: Reference time for active blocks (defaults to current UTC time)

    Returns:
        BurnRate, or None when the block has no entries
    """
    if not block.entries:
        return None

    if block.is_active:
        duration = (now or _utcnow()) - block.start_time
    else:
        duration = block.actual_end_time - block.entries[0].timestamp
    duration = max(duration, MIN_RATE_DURATION)

    minutes = duration.total_seconds() / 60
    hours = minutes / 60

    return BurnRate(
        tokens_per_minute=block.token_counts.total_tokens / minutes,
        tokens_per_minute_for_indicator=block.token_counts.io_tokens / minutes,
        cost_per_hour=block.cost_usd / hours,
    )


def project_block_usage(block: SessionBlock, now: Optional[datetime] = None) -> Optional[Projection]:
    """Project an active block's totals to its window end at the current rate.

    Returns None for inactive blocks, blocks without entries, and blocks
    whose window has already ended.
    """
    if not block.is_active:
        return None

    now = now or _utcnow()
    burn_rate = calculate_burn_rate(block, now)
    if burn_rate is None or now >= block.end_time:
        return None

    remaining_minutes = max(0.0, (block.end_time - now).total_seconds() / 60)
    projected_tokens = block.total_tokens + burn_rate.tokens_per_minute * remaining_minutes
    projected_cost = block.cost_usd + burn_rate.cost_per_hour * remaining_minutes / 60

    return Projection(
        total_tokens=round(projected_tokens),
        total_cost=projected_cost,
        remaining_minutes=remaining_minutes,
    )


def classify_burn_rate(burn_rate: BurnRate) -> BurnRateLevel:
    """Classify a rate by its input+output tokens, ignoring cache traffic."""
    rate = burn_rate.tokens_per_minute_for_indicator
    if rate > BURN_RATE_HIGH_THRESHOLD:
        return BurnRateLevel.HIGH
    if rate > BURN_RATE_MODERATE_THRESHOLD:
        return BurnRateLevel.MODERATE
    return BurnRateLevel.NORMAL


def evaluate_token_limit(
    block: SessionBlock,
    token_limit: int,
    projection: Optional[Projection] = None,
) -> TokenLimitStatus:
    """Compare projected (or current) block usage against a token limit.

    Raises:
        ValueError: If token_limit is not positive
    """
    if token_limit <= 0:
        raise ValueError("token_limit must be > 0")

    tokens = projection.total_tokens if projection is not None else block.total_tokens
    if tokens > token_limit:
        return TokenLimitStatus.EXCEEDS
    if tokens > token_limit * BLOCKS_WARNING_THRESHOLD:
        return TokenLimitStatus.WARNING
    return TokenLimitStatus.OK

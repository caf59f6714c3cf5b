"""
Data models for the event source layer.

Defines the usage event record shared by every component.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from usage_blocks.core.token_counter import TokenCounts


class EventSource(Enum):
    """Where a usage event was read from."""
    PRIMARY = "primary"      # JSONL usage logs
    SECONDARY = "secondary"  # step-finish part files


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one model response's usage.

    Events are produced by an event source and never modified afterwards.
    ``identity`` is the deduplication key; events without one are never
    considered duplicates of each other.
    """
    source: EventSource
    timestamp: datetime
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    identity: Optional[str] = None
    version: Optional[str] = None
    usage_limit_reset_time: Optional[datetime] = None

    def __post_init__(self):
        """Validate token counters and timestamp."""
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        for name in ("input_tokens", "output_tokens",
                     "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def token_counts(self) -> TokenCounts:
        """Token counters of this event as an aggregate."""
        return TokenCounts(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )

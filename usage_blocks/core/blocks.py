"""
Session block segmentation.

Groups a timeline of usage events into fixed-length billing windows.

Rules:
- A block starts at the first event after an idle period, floored to the
  block start anchor (whole UTC hours).
- A block ends after ``window_duration_hours`` or when two consecutive
  events are more than ``window_duration_hours`` apart.
- Idle periods longer than the window are reported as gap blocks.
- Only the last real block can be active, and only while "now" is inside
  its window.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from .token_counter import TokenCounts
from usage_blocks.storage.models import EventSource, UsageEvent

DEFAULT_SESSION_DURATION_HOURS = 5.0
DEFAULT_RECENT_DAYS = 3

# Block start times are floored to a multiple of this interval since the
# Unix epoch. Shared by the segmenter and the live monitor's cache checks.
BLOCK_START_ANCHOR = timedelta(hours=1)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class InvalidConfiguration(ValueError):
    """Raised for settings that make segmentation impossible."""


@dataclass
class SessionBlock:
    """A billing window and the events that fell into it."""
    id: str
    start_time: datetime
    end_time: datetime
    actual_end_time: Optional[datetime] = None
    entries: List[UsageEvent] = field(default_factory=list)
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    cost_usd: float = 0.0
    models: List[str] = field(default_factory=list)
    sources: List[EventSource] = field(default_factory=list)
    is_active: bool = False
    is_gap: bool = False
    usage_limit_reset_time: Optional[datetime] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens across all entries."""
        return self.token_counts.total_tokens

    @property
    def duration_minutes(self) -> float:
        """Minutes from block start to the last entry (or the window end)."""
        end = self.actual_end_time or self.end_time
        return (end - self.start_time).total_seconds() / 60

    def add_entry(self, event: UsageEvent) -> None:
        """Append an event and update the running aggregates."""
        self.entries.append(event)
        self.token_counts = self.token_counts + event.token_counts
        self.cost_usd += event.cost_usd
        if event.model not in self.models:
            self.models.append(event.model)
        if event.source not in self.sources:
            self.sources.append(event.source)
        self.actual_end_time = event.timestamp
        reset_time = event.usage_limit_reset_time
        if reset_time is not None and (
                self.usage_limit_reset_time is None or reset_time > self.usage_limit_reset_time):
            self.usage_limit_reset_time = reset_time


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def floor_block_start(timestamp: datetime) -> datetime:
    """Floor a timestamp to the block start anchor, in UTC."""
    utc = timestamp.astimezone(timezone.utc)
    return utc - (utc - _EPOCH) % BLOCK_START_ANCHOR


def _block_start(timestamp: datetime, window: timedelta) -> datetime:
    # Windows shorter than the anchor would leave the opening event outside
    # its own block; those start at the raw event time instead.
    floored = floor_block_start(timestamp)
    if timestamp - floored > window:
        return timestamp.astimezone(timezone.utc)
    return floored


def _new_block(start_time: datetime, window: timedelta) -> SessionBlock:
    return SessionBlock(
        id=start_time.isoformat(),
        start_time=start_time,
        end_time=start_time + window,
    )


def _gap_block(start_time: datetime, end_time: datetime) -> Optional[SessionBlock]:
    if end_time <= start_time:
        return None
    return SessionBlock(
        id=f"gap-{start_time.isoformat()}",
        start_time=start_time,
        end_time=end_time,
        is_gap=True,
    )


def identify_blocks(
    events: Iterable[UsageEvent],
    window_duration_hours: float = DEFAULT_SESSION_DURATION_HOURS,
    now: Optional[datetime] = None,
) -> List[SessionBlock]:
    """Segment usage events into session blocks and gap blocks.

    Input order does not matter; events are stably sorted by timestamp
    first. An event exactly ``window_duration_hours`` after the block start
    or after the previous event still belongs to the current block: only a
    strictly greater elapsed time starts a new one.

    Args:
        events: Usage events in any order
        window_duration_hours: Block length in hours (must be > 0)
        now: Reference time for the active flag (defaults to current UTC time)

    Returns:
        Blocks in chronological order, gap blocks included

    Raises:
        InvalidConfiguration: If window_duration_hours is not positive
    """
    if window_duration_hours <= 0:
        raise InvalidConfiguration(
            f"window duration must be > 0 hours, got {window_duration_hours}"
        )

    ordered = sorted(events, key=lambda e: e.timestamp)
    if not ordered:
        return []

    window = timedelta(hours=window_duration_hours)
    now = now or _utcnow()

    blocks: List[SessionBlock] = []
    previous = ordered[0]
    current = _new_block(_block_start(previous.timestamp, window), window)
    current.add_entry(previous)

    for event in ordered[1:]:
        since_start = event.timestamp - current.start_time
        since_last = event.timestamp - previous.timestamp

        if since_start > window or since_last > window:
            blocks.append(current)
            # Windows never overlap, even when the anchor is coarser than the window.
            start_time = max(_block_start(event.timestamp, window), current.end_time)
            if since_last > window:
                gap = _gap_block(current.actual_end_time, start_time)
                if gap is not None:
                    blocks.append(gap)
            current = _new_block(start_time, window)

        current.add_entry(event)
        previous = event

    current.is_active = current.start_time <= now < current.end_time
    blocks.append(current)
    return blocks


def filter_recent_blocks(
    blocks: List[SessionBlock],
    days: int = DEFAULT_RECENT_DAYS,
    now: Optional[datetime] = None,
) -> List[SessionBlock]:
    """Keep blocks that started within the last ``days`` days, plus the active one."""
    cutoff = (now or _utcnow()) - timedelta(days=days)
    return [block for block in blocks if block.start_time >= cutoff or block.is_active]


def max_completed_block_tokens(blocks: List[SessionBlock]) -> int:
    """Largest token total among finished, non-gap blocks (0 when none)."""
    totals = [
        block.total_tokens
        for block in blocks
        if not block.is_gap and not block.is_active
    ]
    return max(totals, default=0)

"""
Unit tests for session block segmentation.

Tests window boundaries, gap detection, the active flag and aggregates.
"""

from datetime import datetime, timedelta, timezone

import pytest

from usage_blocks.core.blocks import (
    InvalidConfiguration,
    filter_recent_blocks,
    floor_block_start,
    identify_blocks,
    max_completed_block_tokens,
)
from usage_blocks.storage.models import EventSource, UsageEvent

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_event(
    timestamp: datetime,
    tokens: int = 100,
    cost: float = 0.01,
    model: str = "claude-sonnet-4-20250514",
    source: EventSource = EventSource.PRIMARY,
    identity=None,
    **extra,
) -> UsageEvent:
    """Create a test usage event."""
    return UsageEvent(
        source=source,
        timestamp=timestamp,
        model=model,
        input_tokens=tokens,
        cost_usd=cost,
        identity=identity,
        **extra,
    )


def real_blocks(blocks):
    return [block for block in blocks if not block.is_gap]


class TestFloorBlockStart:
    """Test the block start anchor."""

    def test_floors_to_whole_hour(self):
        """Minutes and seconds are dropped."""
        ts = datetime(2024, 1, 1, 9, 37, 12, 500, tzinfo=timezone.utc)
        assert floor_block_start(ts) == T0

    def test_whole_hour_unchanged(self):
        """Timestamps on the hour stay put."""
        assert floor_block_start(T0) == T0

    def test_converts_to_utc(self):
        """Non-UTC timestamps are floored on the UTC grid."""
        ts = datetime(2024, 1, 1, 10, 30, tzinfo=timezone(timedelta(hours=2)))
        result = floor_block_start(ts)
        assert result == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        assert result.utcoffset() == timedelta(0)


class TestIdentifyBlocks:
    """Test block identification from usage events."""

    def test_empty_events_returns_empty_list(self):
        """No events means no blocks."""
        assert identify_blocks([], 5) == []

    def test_non_positive_window_raises(self):
        """Window duration must be positive."""
        with pytest.raises(InvalidConfiguration):
            identify_blocks([make_event(T0)], 0)
        with pytest.raises(InvalidConfiguration):
            identify_blocks([], -1)

    def test_single_event_single_block(self):
        """A single event produces one block and no gaps."""
        event_time = T0 + timedelta(minutes=20)
        blocks = identify_blocks([make_event(event_time)], 5, now=T0 + timedelta(hours=1))

        assert len(blocks) == 1
        block = blocks[0]
        assert block.start_time == T0
        assert block.end_time == T0 + timedelta(hours=5)
        assert block.actual_end_time == event_time
        assert block.is_active is True
        assert block.is_gap is False
        assert block.id == T0.isoformat()

    def test_single_event_completed_when_window_over(self):
        """A block whose window has passed is not active."""
        blocks = identify_blocks([make_event(T0)], 5, now=T0 + timedelta(hours=6))

        assert len(blocks) == 1
        assert blocks[0].is_active is False
        assert blocks[0].actual_end_time == T0

    def test_end_to_end_example(self):
        """Two events half an hour apart form one active block."""
        events = [
            make_event(T0, tokens=100),
            make_event(T0 + timedelta(minutes=30), tokens=200),
        ]
        blocks = identify_blocks(events, 5, now=T0 + timedelta(minutes=45))

        assert len(blocks) == 1
        assert blocks[0].start_time == T0
        assert blocks[0].total_tokens == 300
        assert blocks[0].is_active is True

    def test_unsorted_input_is_sorted(self):
        """Input order does not affect the result."""
        events = [
            make_event(T0 + timedelta(minutes=30), tokens=200),
            make_event(T0, tokens=100),
            make_event(T0 + timedelta(minutes=10), tokens=50),
        ]
        now = T0 + timedelta(hours=1)

        blocks = identify_blocks(events, 5, now=now)
        reversed_blocks = identify_blocks(list(reversed(events)), 5, now=now)

        assert blocks == reversed_blocks
        timestamps = [entry.timestamp for entry in blocks[0].entries]
        assert timestamps == sorted(timestamps)

    def test_equal_timestamps_keep_input_order(self):
        """The sort is stable for ties."""
        first = make_event(T0, identity="a")
        second = make_event(T0, identity="b")

        blocks = identify_blocks([first, second], 5, now=T0)

        assert [e.identity for e in blocks[0].entries] == ["a", "b"]

    def test_exact_window_boundary_stays_in_block(self):
        """An event exactly one window after the start is still included."""
        events = [make_event(T0), make_event(T0 + timedelta(hours=5))]

        blocks = identify_blocks(events, 5, now=T0 + timedelta(hours=1))

        assert len(blocks) == 1
        assert len(blocks[0].entries) == 2
        assert blocks[0].actual_end_time == T0 + timedelta(hours=5)

    def test_just_past_boundary_starts_new_block(self):
        """One second past the window opens a new block after a gap."""
        later = T0 + timedelta(hours=5, seconds=1)
        blocks = identify_blocks([make_event(T0), make_event(later)], 5, now=later)

        assert [b.is_gap for b in blocks] == [False, True, False]
        assert blocks[2].start_time == T0 + timedelta(hours=5)
        assert blocks[2].entries[0].timestamp == later

    def test_window_elapsed_without_idle_gap(self):
        """Continuous activity rolls over into a new block without a gap."""
        events = [
            make_event(T0),
            make_event(T0 + timedelta(hours=3)),
            make_event(T0 + timedelta(hours=5, minutes=30)),
        ]
        blocks = identify_blocks(events, 5, now=T0 + timedelta(hours=6))

        assert len(blocks) == 2
        assert not any(b.is_gap for b in blocks)
        assert len(blocks[0].entries) == 2
        assert blocks[0].actual_end_time == T0 + timedelta(hours=3)
        assert blocks[1].start_time == T0 + timedelta(hours=5)
        assert blocks[1].is_active is True

    def test_idle_gap_inserts_gap_block(self):
        """A six hour gap with a five hour window yields exactly one gap block."""
        events = [make_event(T0), make_event(T0 + timedelta(hours=6))]
        blocks = identify_blocks(events, 5, now=T0 + timedelta(hours=6, minutes=10))

        assert len(blocks) == 3
        first, gap, second = blocks
        assert gap.is_gap is True
        assert gap.start_time == first.actual_end_time
        assert gap.end_time == second.start_time
        assert gap.entries == []
        assert gap.actual_end_time is None
        assert gap.is_active is False
        assert gap.id.startswith("gap-")
        assert [b.is_gap for b in blocks].count(True) == 1

    def test_only_last_block_active(self):
        """At most one block is active and it is the last real block."""
        events = [
            make_event(T0),
            make_event(T0 + timedelta(hours=6)),
            make_event(T0 + timedelta(hours=13)),
        ]
        blocks = identify_blocks(events, 5, now=T0 + timedelta(hours=13, minutes=5))

        active = [b for b in blocks if b.is_active]
        assert len(active) == 1
        assert active[0] is real_blocks(blocks)[-1]

    def test_now_before_block_start_is_not_active(self):
        """A clock reading before the block start does not mark it active."""
        blocks = identify_blocks([make_event(T0 + timedelta(minutes=30))], 5,
                                 now=T0 - timedelta(minutes=1))
        assert blocks[0].is_active is False

    def test_aggregates(self):
        """Token counts, cost, models and sources are summed per block."""
        events = [
            make_event(T0, tokens=100, cost=0.5, model="claude-opus-4-20250514",
                       output_tokens=10, cache_creation_tokens=5, cache_read_tokens=1),
            make_event(T0 + timedelta(minutes=5), tokens=200, cost=0.25,
                       model="claude-sonnet-4-20250514", source=EventSource.SECONDARY),
            make_event(T0 + timedelta(minutes=10), tokens=300, cost=0.25,
                       model="claude-opus-4-20250514"),
        ]
        block = identify_blocks(events, 5, now=T0)[0]

        assert block.token_counts.input_tokens == 600
        assert block.token_counts.output_tokens == 10
        assert block.token_counts.cache_creation_tokens == 5
        assert block.token_counts.cache_read_tokens == 1
        assert block.total_tokens == 616
        assert block.cost_usd == pytest.approx(1.0)
        assert block.models == ["claude-opus-4-20250514", "claude-sonnet-4-20250514"]
        assert block.sources == [EventSource.PRIMARY, EventSource.SECONDARY]

    def test_usage_limit_reset_time_keeps_latest(self):
        """The block reports the latest reset time among its entries."""
        early = T0 + timedelta(hours=2)
        late = T0 + timedelta(hours=3)
        events = [
            make_event(T0, usage_limit_reset_time=late),
            make_event(T0 + timedelta(minutes=1), usage_limit_reset_time=early),
            make_event(T0 + timedelta(minutes=2)),
        ]
        block = identify_blocks(events, 5, now=T0)[0]
        assert block.usage_limit_reset_time == late

    def test_deterministic_for_fixed_now(self):
        """Repeated calls with the same input give identical output."""
        events = [make_event(T0 + timedelta(hours=h)) for h in (0, 1, 7, 8, 20)]
        now = T0 + timedelta(hours=21)

        assert identify_blocks(events, 5, now=now) == identify_blocks(events, 5, now=now)

    def test_blocks_ordered_and_non_overlapping(self):
        """Real blocks never overlap and gaps sit between them."""
        offsets = [0, 0.5, 2, 4.9, 5.2, 6, 12, 12.1, 17.5, 30, 31, 35.9, 36.5]
        events = [make_event(T0 + timedelta(hours=h, minutes=7)) for h in offsets]
        blocks = identify_blocks(events, 5, now=T0 + timedelta(days=3))

        starts = [b.start_time for b in blocks]
        assert starts == sorted(starts)

        reals = real_blocks(blocks)
        for previous, following in zip(reals, reals[1:]):
            assert previous.end_time <= following.start_time

        for index, block in enumerate(blocks):
            if block.is_gap:
                assert not blocks[index - 1].is_gap
                assert not blocks[index + 1].is_gap
                assert block.start_time == blocks[index - 1].actual_end_time
                assert block.end_time == blocks[index + 1].start_time

        for block in reals:
            for entry in block.entries:
                assert block.start_time <= entry.timestamp <= block.end_time

        assert sum(len(b.entries) for b in blocks) == len(events)

    def test_window_shorter_than_anchor(self):
        """Short windows keep the opening event inside its block and never overlap."""
        events = [
            make_event(T0 + timedelta(minutes=45)),
            make_event(T0 + timedelta(minutes=70)),
            make_event(T0 + timedelta(minutes=80)),
        ]
        blocks = identify_blocks(events, 0.5, now=T0 + timedelta(hours=3))

        assert len(blocks) == 2
        assert blocks[0].start_time == T0 + timedelta(minutes=45)
        assert blocks[1].start_time == blocks[0].end_time
        assert len(blocks[0].entries) == 2


class TestBlockHelpers:
    """Test block filtering and summaries."""

    def test_filter_recent_blocks(self):
        """Old blocks are dropped, recent ones kept."""
        now = T0 + timedelta(days=10)
        events = [make_event(T0), make_event(now - timedelta(days=1))]
        blocks = identify_blocks(events, 5, now=now)

        recent = filter_recent_blocks(blocks, days=3, now=now)

        assert len(recent) == 1
        assert recent[0].start_time == floor_block_start(now - timedelta(days=1))

    def test_filter_recent_keeps_active_block(self):
        """The active block is always kept."""
        now = T0 + timedelta(days=2)
        blocks = identify_blocks([make_event(T0)], 72, now=now)
        assert blocks[0].is_active is True

        recent = filter_recent_blocks(blocks, days=1, now=now)
        assert recent == blocks

    def test_max_completed_block_tokens(self):
        """Only completed, non-gap blocks count."""
        events = [
            make_event(T0, tokens=500),
            make_event(T0 + timedelta(hours=8), tokens=300),
            make_event(T0 + timedelta(hours=16), tokens=9000),
        ]
        blocks = identify_blocks(events, 5, now=T0 + timedelta(hours=16, minutes=1))

        assert blocks[-1].is_active is True
        assert max_completed_block_tokens(blocks) == 500

    def test_max_completed_block_tokens_empty(self):
        """No completed blocks gives zero."""
        assert max_completed_block_tokens([]) == 0

"""
Live monitoring of usage logs.

Keeps the accumulated event history in memory and, on every poll, reads
only the files whose modification time moved forward. The block list is
recomputed from the full history each time because a newly read file can
contain events older than ones already ingested.

The monitor is meant to be driven by a single caller polling on an
interval. It owns a thread pool for file reads; use it as a context
manager (or call ``close()``) to release the pool.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .blocks import SessionBlock, identify_blocks
from .dedup import Deduplicator
from usage_blocks.config.loader import MonitorConfig
from usage_blocks.storage.models import UsageEvent
from usage_blocks.storage.repository import (
    SecondaryUsageSource,
    SourceReadFailure,
    UsageFileRepository,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_LATEST = datetime.max.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _commit_order(read: Tuple[Path, List[UsageEvent]]):
    """Files with the oldest first event commit first; empty files go last."""
    path, events = read
    if not events:
        return (1, _LATEST, str(path))
    return (0, min(e.timestamp for e in events), str(path))


class LiveMonitor:
    """Incrementally loads usage events and tracks the active session block."""

    def __init__(
        self,
        config: MonitorConfig,
        repository: UsageFileRepository,
        secondary_source: Optional[SecondaryUsageSource] = None,
        clock: Optional[Clock] = None,
        max_workers: int = 4,
    ):
        """Initialize the monitor.

        Args:
            config: Window length and secondary refresh cadence
            repository: Primary event source
            secondary_source: Optional secondary event source
            clock: Returns the current time; injectable for tests
            max_workers: Threads used to read changed files
        """
        self.config = config
        self.repository = repository
        self.secondary_source = secondary_source
        self._clock = clock or _utcnow
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._closed = False

        self._file_mtimes: Dict[Path, float] = {}
        self._deduplicator = Deduplicator()
        self._secondary_deduplicator = Deduplicator()
        self._events: List[UsageEvent] = []
        self._cached_active_block: Optional[SessionBlock] = None
        self._last_secondary_load: Optional[datetime] = None
        self._last_scan_time: Optional[datetime] = None

    def __enter__(self) -> "LiveMonitor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Release the read pool. The monitor cannot be used afterwards."""
        if not self._closed:
            self._executor.shutdown(wait=True)
            self._closed = True

    @property
    def events(self) -> Tuple[UsageEvent, ...]:
        """All events ingested so far, in ingestion order."""
        return tuple(self._events)

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def last_scan_time(self) -> Optional[datetime]:
        """The "now" the latest scan segmented against, None before the first scan."""
        return self._last_scan_time

    def scan_blocks(self) -> List[SessionBlock]:
        """Ingest changed files and return the full block list."""
        return self._scan(self._clock())

    def poll_active_block(self) -> Optional[SessionBlock]:
        """Return the active block, bridging polls that momentarily report none.

        A previously seen active block is returned again while its last
        entry is less than one window old and its window has not ended.
        """
        now = self._clock()
        blocks = self._scan(now)

        active = next((b for b in reversed(blocks) if b.is_active), None)
        if active is not None:
            self._cached_active_block = active
            return active

        cached = self._cached_active_block
        if cached is not None and cached.actual_end_time is not None:
            window = timedelta(hours=self.config.window_duration_hours)
            if now - cached.actual_end_time < window and now < cached.end_time:
                logger.debug("No active block this poll; keeping cached block %s", cached.id)
                return cached

        self._cached_active_block = None
        return None

    def clear_cache(self) -> None:
        """Forget file modification times so every file is re-read next poll.

        Ingested events, their identities and the cached active block are
        kept; dropping them would bring back duplicates or flicker.
        """
        self._file_mtimes.clear()

    def _scan(self, now: datetime) -> List[SessionBlock]:
        if self._closed:
            raise RuntimeError("LiveMonitor is closed")

        self._last_scan_time = now
        staged = self._stage_changed_files()
        if staged:
            self._ingest_files(staged)
        self._merge_secondary(now)

        return identify_blocks(self._events, self.config.window_duration_hours, now=now)

    def _stage_changed_files(self) -> Dict[Path, float]:
        staged: Dict[Path, float] = {}
        for path in self.repository.list_files():
            try:
                mtime = self.repository.stat_mtime(path)
            except SourceReadFailure as e:
                logger.debug("stat failed; skipping %s: %s", path, e.cause)
                continue
            last_mtime = self._file_mtimes.get(path)
            if last_mtime is None or mtime > last_mtime:
                staged[path] = mtime
        return staged

    def _read_and_parse(self, path: Path) -> List[UsageEvent]:
        content = self.repository.read_file(path)
        return self.repository.parse_content(content, path)

    def _ingest_files(self, staged: Dict[Path, float]) -> None:
        futures = {
            path: self._executor.submit(self._read_and_parse, path)
            for path in staged
        }

        reads = []
        for path, future in futures.items():
            try:
                reads.append((path, future.result()))
            except SourceReadFailure as e:
                logger.debug("read failed; skipping %s: %s", path, e.cause)

        # Commit serially so dedup sees files in a stable order
        for path, events in sorted(reads, key=_commit_order):
            accepted = 0
            for event in events:
                if self._deduplicator.accept(event):
                    self._events.append(event)
                    accepted += 1
            # Only now is the change considered seen
            self._file_mtimes[path] = staged[path]
            logger.debug("Read %s: %d new of %d events", path, accepted, len(events))

    def _merge_secondary(self, now: datetime) -> None:
        if self.secondary_source is None:
            return
        if self._last_secondary_load is not None:
            elapsed = (now - self._last_secondary_load).total_seconds()
            if elapsed <= self.config.secondary_refresh_seconds:
                return

        try:
            loaded = self.secondary_source.load_events()
        except OSError as e:
            logger.debug("Secondary source load failed: %s", e)
            return

        accepted = 0
        for event in loaded:
            if self._secondary_deduplicator.accept(event):
                self._events.append(event)
                accepted += 1
        self._last_secondary_load = now
        logger.debug("Secondary source: %d new of %d events", accepted, len(loaded))

"""
Event deduplication.

Growing log files are re-read on every live refresh, so the same response
shows up many times. The deduplicator remembers which identities were
already ingested during this run.
"""

from typing import Set

from usage_blocks.storage.models import UsageEvent


class Deduplicator:
    """Membership filter over event identities.

    The identity set only grows. Events without an identity cannot be
    deduplicated and are always accepted.
    """

    def __init__(self):
        self._seen: Set[str] = set()

    def should_accept(self, event: UsageEvent) -> bool:
        """Return False only when the event's identity was already accepted."""
        if event.identity is None:
            return True
        return event.identity not in self._seen

    def mark_accepted(self, event: UsageEvent) -> None:
        """Record the event's identity, if it has one."""
        if event.identity is not None:
            self._seen.add(event.identity)

    def accept(self, event: UsageEvent) -> bool:
        """Check and mark in one step. Returns whether the event is new."""
        if not self.should_accept(event):
            return False
        self.mark_accepted(event)
        return True

    def __contains__(self, identity: str) -> bool:
        return identity in self._seen

    def __len__(self) -> int:
        return len(self._seen)

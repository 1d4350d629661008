"""
Per-Key Mutual Exclusion

Settlement holds the partner's lock, sessions and payouts hold the
contributor's lock. Entries are reference counted and dropped once no
thread holds or waits on them, so the table stays bounded by concurrency
rather than by the number of accounts.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Generator


@dataclass
class _Entry:
    lock: Lock = field(default_factory=Lock)
    refs: int = 0


class KeyedLocks:
    """A family of locks addressed by string key."""

    def __init__(self, namespace: str = ""):
        self.namespace = namespace
        self._guard = Lock()
        self._entries: Dict[str, _Entry] = {}

    def _acquire_entry(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _release_entry(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        """Hold the lock for `key` for the duration of the block."""
        entry = self._acquire_entry(key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self) -> int:
        return len(self._entries)


class LedgerLocks:
    """The lock families used by the ledger engines."""

    def __init__(self):
        self.partners = KeyedLocks("partner")
        self.contributors = KeyedLocks("contributor")

    @contextmanager
    def settlement(self, partner_id: str, contributor_id: str) -> Generator[None, None, None]:
        """Partner lock first, then contributor lock."""
        with self.partners.hold(partner_id):
            with self.contributors.hold(contributor_id):
                yield

"""Process wide registry of cached computations.

Every cache (issue corpus, event log, velocity, cycle time, scope/burnup per
target) is an entry keyed by name. The only way to change an entry is
get_or_recompute, which holds that key's lock while it checks staleness and
recomputes, so concurrent requests for the same key wait for and then reuse a
single recomputation. Entries are replaced whole, never mutated, so readers
always see the last complete value.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from services.cache_store import SnapshotStore
from services.timeseries import window_end

logger = logging.getLogger(__name__)

PERSISTENT_KEYS = ("issueCorpus", "eventLog")


class CacheEntry:
    """A cached value, the parameters it was computed with, and how fresh it is."""

    def __init__(self, value, params: dict, last_update_time: Optional[datetime]):
        self.value = value
        self.params = params
        self.last_update_time = last_update_time

    def to_snapshot(self) -> dict:
        return {
            "value": self.value,
            "params": self.params,
            "lastUpdateTime": self.last_update_time
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict) -> "CacheEntry":
        return cls(snapshot["value"], snapshot.get("params") or {}, snapshot.get("lastUpdateTime"))


def is_stale(entry: Optional[CacheEntry], params: dict, window: dict) -> bool:
    """An entry needs recomputing if it was built differently or is too old for the window."""
    if entry is None or entry.last_update_time is None:
        return True
    if entry.params != params:
        return True
    return window_end(window) > entry.last_update_time


class CacheCoordinator:
    """Get-or-recompute with one lock per cache key."""

    def __init__(self, store: Optional[SnapshotStore] = None,
                 persistent_keys: tuple = PERSISTENT_KEYS):
        self.store = store
        self.persistent_keys = tuple(persistent_keys)
        self._entries = {}
        self._locks = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def peek(self, key: str) -> Optional[CacheEntry]:
        """The last complete entry for key, without recomputing."""
        with self._registry_lock:
            return self._entries.get(key)

    def get_or_recompute(self, key: str, params: dict, window: dict,
                         recompute: Callable) -> CacheEntry:
        """Return a fresh entry for key, recomputing it first if it's stale.

        Args:
            key: Cache name, e.g. "velocity:ENG"
            params: JSON friendly parameters the value depends on
            window: The query window the value must cover
            recompute: Called as recompute(previous_entry) under the key's
                lock; returns (value, last_update_time)

        Returns:
            The CacheEntry. If recompute raises, the previous entry is kept and
            the exception propagates to the caller.
        """
        with self._lock_for(key):
            entry = self.peek(key)
            if not is_stale(entry, params, window):
                return entry

            value, last_update_time = recompute(entry)
            entry = CacheEntry(value, params, last_update_time)
            with self._registry_lock:
                self._entries[key] = entry

            if key in self.persistent_keys:
                self._persist(key, entry)
            return entry

    def _persist(self, key: str, entry: CacheEntry):
        if self.store is None:
            return
        try:
            self.store.save(key, entry.to_snapshot())
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write cache snapshot '{key}': {e}")

    def restore(self):
        """Load persisted entries; missing or unreadable snapshots mean a cold start."""
        if self.store is None:
            return
        for key in self.persistent_keys:
            snapshot = self.store.load(key)
            if snapshot is None:
                continue
            try:
                entry = CacheEntry.from_snapshot(snapshot)
            except (KeyError, TypeError, AttributeError) as e:
                logger.error(f"Ignoring malformed cache snapshot '{key}': {e}")
                continue
            with self._registry_lock:
                self._entries[key] = entry
            logger.info(f"Restored cache '{key}' (last updated {entry.last_update_time})")

    def close(self):
        """Write out the persistent entries before shutdown."""
        for key in self.persistent_keys:
            entry = self.peek(key)
            if entry is not None:
                self._persist(key, entry)

    def clear(self):
        with self._registry_lock:
            self._entries.clear()

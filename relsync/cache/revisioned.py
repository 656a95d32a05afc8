"""
Revisioned entity cache: persistent key -> snapshot store with freshness metadata.
"""
import logging
from typing import Any, List, Optional, Tuple

from relsync.cache.core import CacheEntry, FreshnessPolicy
from relsync.storage import SyncStorage
from relsync.utils.helpers import Clock, SystemClock

logger = logging.getLogger("cache.revisioned")


class RevisionedCache:
    """
    Single-writer cache of entity snapshots.

    Every write goes through put/touch/remove_oldest/remove/clear. Storage
    errors propagate as StorageUnavailable; readers decide whether a miss is
    an acceptable fallback.
    """

    def __init__(self, storage: SyncStorage, clock: Optional[Clock] = None):
        self._storage = storage
        self._clock = clock or SystemClock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry for `key`, or None. No side effects."""
        return self._storage.get_entry(key)

    def put(
        self,
        key: str,
        payload: Any,
        revision: Optional[str],
        size_bytes: int,
    ) -> CacheEntry:
        """
        Overwrite the entry for `key` and stamp it with the current time.

        fetched_at never moves backwards for a key, even if the clock does.
        """
        now = self._clock.now_ms()
        previous = self._storage.get_fetched_at(key)
        fetched_at = max(now, previous) if previous is not None else now
        entry = CacheEntry(
            key=key,
            payload=payload,
            revision=revision,
            fetched_at=fetched_at,
            size_bytes=size_bytes,
        )
        self._storage.save_entry(entry)
        logger.debug(f"Stored {key} (rev={revision}, {size_bytes} bytes)")
        return entry

    def touch(self, key: str) -> Optional[CacheEntry]:
        """Refresh fetched_at without rewriting the payload."""
        if not self._storage.update_fetched_at(key, self._clock.now_ms()):
            return None
        return self._storage.get_entry(key)

    def is_fresh(
        self,
        key: str,
        policy: FreshnessPolicy,
        prefer_stale: bool = False,
        remote_revision: Optional[str] = None,
    ) -> bool:
        """False if the entry is absent, otherwise the CacheEntry freshness rule."""
        entry = self.get(key)
        if entry is None:
            return False
        return entry.is_fresh(
            policy,
            self._clock.now_ms(),
            prefer_stale=prefer_stale,
            remote_revision=remote_revision,
        )

    def total_size_bytes(self) -> int:
        return self._storage.total_size()

    def count(self) -> int:
        return self._storage.count_entries()

    def keys(self) -> List[str]:
        return self._storage.list_keys()

    def remove_oldest(self, n: int) -> List[str]:
        """
        Evict the `n` entries with the smallest fetched_at.

        Ties are broken by key order so eviction is deterministic.
        """
        if n <= 0:
            return []
        keys = self._storage.oldest_keys(n)
        self._storage.delete_entries(keys)
        if keys:
            logger.info(f"Evicted {len(keys)} oldest cache entries")
        return keys

    def remove(self, key: str) -> bool:
        removed = self._storage.delete_entries([key]) > 0
        if removed:
            logger.info(f"Invalidated cache: {key}")
        return removed

    def clear(self) -> int:
        count = self._storage.clear_entries()
        logger.info(f"Cleared {count} cache entries")
        return count

    # =========================================================================
    # Resolved revisions (per bulk run)
    # =========================================================================

    def get_resolved_revision(self, run_id: str, key: str) -> Tuple[bool, Optional[str]]:
        return self._storage.get_resolved_revision(run_id, key)

    def remember_revision(self, run_id: str, key: str, revision: Optional[str]):
        self._storage.save_resolved_revision(run_id, key, revision, self._clock.now_ms())

    def forget_run(self, run_id: str) -> int:
        """Drop every revision resolved during `run_id`."""
        return self._storage.clear_resolved_revisions(run_id)

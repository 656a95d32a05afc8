"""
Size-bounded eviction for the revisioned cache.
"""
import logging

from relsync.cache.revisioned import RevisionedCache
from relsync.utils.helpers import format_bytes

logger = logging.getLogger("cache.pruner")


class CachePruner:
    """Evicts least-recently-fetched entries until the cache fits a byte budget."""

    def __init__(self, cache: RevisionedCache):
        self._cache = cache

    def prune(self, max_total_bytes: int) -> int:
        """
        Shrink the cache to at most `max_total_bytes`.

        Entries are evicted one at a time, oldest fetched_at first. The last
        remaining entry is never evicted, even if it alone exceeds the budget.

        Returns:
            Number of entries removed
        """
        total = self._cache.total_size_bytes()
        if total <= max_total_bytes:
            return 0

        removed = 0
        while total > max_total_bytes and self._cache.count() > 1:
            evicted = self._cache.remove_oldest(1)
            if not evicted:
                break
            removed += len(evicted)
            total = self._cache.total_size_bytes()

        logger.info(
            f"Pruned {removed} entries, cache now {format_bytes(total)} "
            f"(budget {format_bytes(max_total_bytes)})"
        )
        return removed

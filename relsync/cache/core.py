"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class FreshnessPolicy:
    """
    How long a cached snapshot may be served without consulting the remote.

    ttl_ms: age (in milliseconds) under which an entry is fresh
    allow_stale_if_preferred: callers asking for stale data get any cached entry
    """
    ttl_ms: int
    allow_stale_if_preferred: bool = True


@dataclass
class CacheEntry:
    """
    A persisted snapshot of one entity with its freshness metadata.

    `revision` is opaque and source-defined. None means the source gave no
    version information, so only the TTL can establish freshness.
    """
    key: str
    payload: Any
    revision: Optional[str]
    fetched_at: int
    size_bytes: int = 0

    def age_ms(self, now_ms: int) -> int:
        """Milliseconds since the snapshot was fetched (or last confirmed)."""
        return max(0, now_ms - self.fetched_at)

    def is_within_ttl(self, policy: FreshnessPolicy, now_ms: int) -> bool:
        return self.age_ms(now_ms) <= policy.ttl_ms

    def matches_revision(self, remote_revision: Optional[str]) -> bool:
        return (
            remote_revision is not None
            and self.revision is not None
            and self.revision == remote_revision
        )

    def is_fresh(
        self,
        policy: FreshnessPolicy,
        now_ms: int,
        prefer_stale: bool = False,
        remote_revision: Optional[str] = None,
    ) -> bool:
        """
        Freshness rule shared by the engine, the queue and status checks.

        Fresh if any of:
        - age is within the policy TTL
        - the caller prefers stale data and the policy allows it
        - the stored revision equals the remote's current revision
        """
        if self.is_within_ttl(policy, now_ms):
            return True
        if prefer_stale and policy.allow_stale_if_preferred:
            return True
        return self.matches_revision(remote_revision)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "revision": self.revision,
            "fetchedAt": self.fetched_at,
            "sizeBytes": self.size_bytes,
        }


@dataclass
class CacheStatus:
    """Non-mutating view of a key's cache state against the remote."""
    key: str
    has_cached: bool
    is_stale: bool
    cached_revision: Optional[str] = None
    remote_revision: Optional[str] = None
    cached_at: Optional[int] = None
    cached_size: Optional[int] = None
    record_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "hasCached": self.has_cached,
            "isStale": self.is_stale,
            "cachedRevision": self.cached_revision,
            "remoteRevision": self.remote_revision,
            "cachedAt": self.cached_at,
            "cachedSize": self.cached_size,
            "recordCounts": self.record_counts,
        }

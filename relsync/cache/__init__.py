"""
Revisioned snapshot cache with freshness policies, request coalescing and pruning.

Only the storage-independent pieces are re-exported here; import
RevisionedCache and CachePruner from their modules.
"""
from .core import CacheEntry, CacheStatus, FreshnessPolicy
from .ttl_policies import (
    TTL_CONFIG,
    EntityKind,
    build_kind_policies,
    get_kind_for_key,
    get_policy_for_key,
)
from .coalescer import RequestCoalescer

__all__ = [
    # Core types
    "CacheEntry",
    "CacheStatus",
    "FreshnessPolicy",
    # TTL policies
    "TTL_CONFIG",
    "EntityKind",
    "build_kind_policies",
    "get_kind_for_key",
    "get_policy_for_key",
    # Coalescing
    "RequestCoalescer",
]

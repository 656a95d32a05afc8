"""
Freshness configuration and key-to-kind mapping.
"""
from enum import Enum
from typing import Any, Dict, Optional

from .core import FreshnessPolicy


class EntityKind(Enum):
    """Kinds of synced entities, identified by cache key prefix."""
    REPO = "repo"                 # full repository snapshot (posts, graph, lists)
    BLOCK_LIST = "blocks"         # a followed account's block list
    BLOCKED_BY = "blocked-by"     # who blocks a given account
    LIST = "list"                 # moderation list membership


# Built-in per-kind freshness overrides (milliseconds). Fields a kind does not
# set come from the configured default policy.
TTL_CONFIG: Dict[EntityKind, Dict[str, Any]] = {
    EntityKind.REPO: {},
    EntityKind.BLOCK_LIST: {},
    EntityKind.BLOCKED_BY: {},
    EntityKind.LIST: {},
}


def get_kind_for_key(key: str) -> Optional[EntityKind]:
    """
    Determine the entity kind from a cache key of the form "<kind>:<id>".

    Returns None for unprefixed keys.
    """
    prefix, sep, _ = key.partition(":")
    if not sep:
        return None
    for kind in EntityKind:
        if kind.value == prefix:
            return kind
    return None


def get_policy_for_key(
    key: str,
    default: FreshnessPolicy,
    overrides: Optional[Dict[EntityKind, FreshnessPolicy]] = None,
) -> FreshnessPolicy:
    """
    Get the freshness policy for a cache key.

    Args:
        key: Cache key, optionally prefixed with an entity kind
        default: Configured policy; used for unprefixed keys and for any
            field TTL_CONFIG leaves unset
        overrides: Configured per-kind policies, taking precedence over both

    Returns:
        FreshnessPolicy for the key
    """
    kind = get_kind_for_key(key)
    if kind is None:
        return default
    if overrides and kind in overrides:
        return overrides[kind]
    config = TTL_CONFIG.get(kind, {})
    if not config:
        return default
    return FreshnessPolicy(
        ttl_ms=config.get("ttl_ms", default.ttl_ms),
        allow_stale_if_preferred=config.get(
            "allow_stale_if_preferred", default.allow_stale_if_preferred
        ),
    )


def build_kind_policies(
    ttl_seconds_by_kind: Dict[str, int], default: FreshnessPolicy
) -> Dict[EntityKind, FreshnessPolicy]:
    """
    Turn configured {"blocks": 3600, ...} TTLs into per-kind policies.

    Raises:
        ValueError: a name is not a known entity kind
    """
    policies: Dict[EntityKind, FreshnessPolicy] = {}
    for name, seconds in ttl_seconds_by_kind.items():
        kind = EntityKind(name)
        policies[kind] = FreshnessPolicy(
            ttl_ms=int(seconds) * 1000,
            allow_stale_if_preferred=default.allow_stale_if_preferred,
        )
    return policies

"""
Read-only relationship queries over cached block lists.

Block lists are cached under "blocks:<did>" keys with payloads of the form
{"app.bsky.graph.block": [{"subject": "<did>"}, ...]}. Records may also carry
the subject under "value", as repository listings return them.
"""
from typing import Any, Dict, Iterable, List, Optional, Set

from relsync.cache.revisioned import RevisionedCache
from relsync.cache.ttl_policies import EntityKind

BLOCK_COLLECTION = "app.bsky.graph.block"
BLOCKS_PREFIX = f"{EntityKind.BLOCK_LIST.value}:"


def blocked_subjects(payload: Any) -> List[str]:
    """DIDs blocked in one cached block-list payload."""
    if not isinstance(payload, dict):
        return []
    subjects = []
    for record in payload.get(BLOCK_COLLECTION, []) or []:
        if not isinstance(record, dict):
            continue
        subject = record.get("subject")
        if subject is None and isinstance(record.get("value"), dict):
            subject = record["value"].get("subject")
        if subject:
            subjects.append(subject)
    return subjects


def _block_lists(cache: RevisionedCache) -> Dict[str, Set[str]]:
    lists = {}
    for key in cache.keys():
        if not key.startswith(BLOCKS_PREFIX):
            continue
        entry = cache.get(key)
        if entry is not None:
            lists[key[len(BLOCKS_PREFIX):]] = set(blocked_subjects(entry.payload))
    return lists


def blocked_by_follow(cache: RevisionedCache, follow_did: str) -> List[str]:
    """Everything `follow_did` blocks, from its cached block list."""
    entry = cache.get(f"{BLOCKS_PREFIX}{follow_did}")
    return blocked_subjects(entry.payload) if entry else []


def blockers_among_follows(cache: RevisionedCache, profile_did: str) -> List[str]:
    """Follows whose cached block list contains `profile_did`, sorted."""
    return sorted(
        follow for follow, blocks in _block_lists(cache).items() if profile_did in blocks
    )


def is_blocked_by_any_follow(cache: RevisionedCache, profile_did: str) -> bool:
    return bool(blockers_among_follows(cache, profile_did))


def find_common_blockers(cache: RevisionedCache, profile_dids: Iterable[str]) -> List[str]:
    """Follows who block every one of `profile_dids`."""
    profile_dids = list(profile_dids)
    if not profile_dids:
        return []
    lists = _block_lists(cache)
    return sorted(
        follow
        for follow, blocks in lists.items()
        if all(did in blocks for did in profile_dids)
    )


def follows_who_block(
    blocked_by: Iterable[str], follow_dids: Iterable[str], limit: Optional[int] = None
) -> List[str]:
    """
    Intersect a profile's blocked-by list with the user's follows.

    Keeps the order of `follow_dids`.
    """
    blockers = set(blocked_by)
    matches = [did for did in follow_dids if did in blockers]
    return matches[:limit] if limit is not None else matches

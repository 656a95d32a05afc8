"""
Incremental sync engine.

Decides per key whether to serve the cached snapshot, confirm it against the
remote revision, download a delta, or download everything. The decision is an
explicit state machine; every FetchResult carries the states it visited.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from relsync.cache.coalescer import RequestCoalescer
from relsync.cache.core import CacheEntry, CacheStatus, FreshnessPolicy
from relsync.cache.revisioned import RevisionedCache
from relsync.cache.ttl_policies import EntityKind, get_policy_for_key
from relsync.errors import (
    IncompleteBaseData,
    NetworkFailure,
    ParseFailure,
    RelsyncError,
    StorageUnavailable,
    UnsupportedOperation,
)
from relsync.sync.models import FetchOptions, FetchResult, SyncState
from relsync.sync.parser import RecordParser
from relsync.sync.progress import ProgressReporter, ProgressStage
from relsync.sync.remote import FetchBudget, RemoteSource
from relsync.utils.helpers import format_bytes

logger = logging.getLogger("relsync.engine")

UNKNOWN_REVISION_PREFIX = "unknown-"
DEFAULT_TTL_MS = 24 * 60 * 60 * 1000

MergeDelta = Callable[[Any, Any], Any]


def replace_with_delta(base_payload: Any, delta_records: Any) -> Any:
    """Default delta merge: the remote export is cumulative, so the delta wins."""
    return delta_records


def count_records(payload: Any) -> dict:
    """Per-collection record counts for a {"collection": [records]} payload."""
    if not isinstance(payload, dict):
        return {}
    return {
        name: len(records)
        for name, records in payload.items()
        if isinstance(records, (list, tuple))
    }


class _Run:
    """Mutable state of one pass through the state machine."""

    def __init__(self, key: str, options: FetchOptions):
        self.key = key
        self.options = options
        self.trace: List[SyncState] = []

    def enter(self, state: SyncState):
        self.trace.append(state)


class IncrementalSyncEngine:
    """
    Cache-first fetcher with revision checks and delta downloads.

    All public fetches go through the shared RequestCoalescer, so bulk runs,
    the background queue and on-demand callers never download the same key
    twice at once.
    """

    def __init__(
        self,
        cache: RevisionedCache,
        coalescer: RequestCoalescer,
        remote: RemoteSource,
        parser: RecordParser,
        reporter: Optional[ProgressReporter] = None,
        default_policy: Optional[FreshnessPolicy] = None,
        kind_policies: Optional[Dict[EntityKind, FreshnessPolicy]] = None,
        fetch_timeout_seconds: Optional[float] = 120.0,
        revision_timeout_seconds: Optional[float] = 10.0,
        max_payload_bytes: Optional[int] = None,
        storage_write_retries: int = 1,
        revision_check_first: bool = False,
        merge_delta: Optional[MergeDelta] = None,
    ):
        self.cache = cache
        self.coalescer = coalescer
        self.remote = remote
        self.parser = parser
        self.reporter = reporter or ProgressReporter(clock=cache.clock)
        self.default_policy = default_policy or FreshnessPolicy(ttl_ms=DEFAULT_TTL_MS)
        self.kind_policies = dict(kind_policies or {})
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.revision_timeout_seconds = revision_timeout_seconds
        self.max_payload_bytes = max_payload_bytes
        self.storage_write_retries = max(0, storage_write_retries)
        self.revision_check_first = revision_check_first
        self.merge_delta = merge_delta or replace_with_delta
        self._abort = threading.Event()

    # =========================================================================
    # Public API
    # =========================================================================

    def fetch_smart(
        self,
        key: str,
        options: Optional[FetchOptions] = None,
        wait_timeout: Optional[float] = None,
    ) -> FetchResult:
        """
        Return the snapshot for `key`, fetching only what is needed.

        Concurrent calls for the same key share one execution and receive the
        same FetchResult object. Only the first caller's on_progress callback
        is attached to the shared execution; later callers can subscribe to
        the reporter instead.

        Raises:
            NetworkFailure / FetchTimeout: remote unreachable on a required fetch
            ParseFailure: full payload could not be decoded
            StorageUnavailable: the fetched snapshot could not be persisted
            TimeoutError: this caller's wait_timeout elapsed
        """
        options = options or FetchOptions()
        return self.coalescer.execute(
            key, lambda: self._sync(key, options), wait_timeout=wait_timeout
        )

    def get_cache_status(self, key: str) -> CacheStatus:
        """Compare the cached snapshot with the remote without changing anything."""
        entry = self._read_cached(key)
        found, remote_revision = self._lookup_revision(key, None)
        if entry is None:
            return CacheStatus(
                key=key,
                has_cached=False,
                is_stale=True,
                remote_revision=remote_revision,
            )

        policy = self.policy_for(key)
        now = self.cache.clock.now_ms()
        if self.revision_check_first and found:
            is_stale = not entry.matches_revision(remote_revision)
        else:
            is_stale = not entry.is_fresh(policy, now, remote_revision=remote_revision)

        return CacheStatus(
            key=key,
            has_cached=True,
            is_stale=is_stale,
            cached_revision=entry.revision,
            remote_revision=remote_revision,
            cached_at=entry.fetched_at,
            cached_size=entry.size_bytes,
            record_counts=count_records(entry.payload),
        )

    def policy_for(self, key: str) -> FreshnessPolicy:
        """Freshness policy for `key`: per-kind override, else the default."""
        return get_policy_for_key(key, self.default_policy, self.kind_policies)

    def abort_all(self):
        """Cancel every in-progress and future remote transfer (process shutdown)."""
        self._abort.set()

    # =========================================================================
    # State machine
    # =========================================================================

    def _sync(self, key: str, options: FetchOptions) -> FetchResult:
        run = _Run(key, options)
        try:
            result = self._run_states(run)
        except RelsyncError as e:
            run.enter(SyncState.ERROR)
            self._emit(run, ProgressStage.ERROR, f"Sync failed: {e}", error=str(e))
            logger.warning(f"Sync failed for {key} via {self._trace_str(run)}: {e}")
            raise
        logger.debug(f"Sync finished for {key} via {self._trace_str(run)}")
        return result

    def _run_states(self, run: _Run) -> FetchResult:
        key = run.key
        options = run.options
        policy = self.policy_for(key)

        # CHECKING
        run.enter(SyncState.CHECKING)
        self._emit(run, ProgressStage.CHECKING, "Checking cache...")
        entry = None if options.force_refresh else self._read_cached(key)
        now = self.cache.clock.now_ms()

        if entry is not None:
            preferred_stale = options.prefer_stale and policy.allow_stale_if_preferred
            if preferred_stale or (
                not self.revision_check_first and entry.is_within_ttl(policy, now)
            ):
                return self._fresh_hit(run, entry)

        # LOOKUP_REVISION
        run.enter(SyncState.LOOKUP_REVISION)
        found, remote_revision = self._lookup_revision(key, options.run_id)

        if entry is not None:
            if not found and self.revision_check_first and entry.is_within_ttl(policy, now):
                return self._fresh_hit(run, entry)
            if entry.matches_revision(remote_revision):
                return self._revision_match(run, entry)

        # INCREMENTAL
        payload = None
        downloaded = 0
        incremental = False
        if entry is not None and self._can_fetch_delta(entry):
            run.enter(SyncState.INCREMENTAL)
            delta = self._try_incremental(run, entry)
            if delta is not None:
                payload, downloaded = delta
                incremental = True

        # FULL
        if payload is None:
            run.enter(SyncState.FULL)
            payload, downloaded = self._fetch_full(run)

        # SAVING
        run.enter(SyncState.SAVING)
        revision = remote_revision or f"{UNKNOWN_REVISION_PREFIX}{self.cache.clock.now_ms()}"
        self._emit(run, ProgressStage.SAVING, "Saving to cache...", is_incremental=incremental)
        self._save(key, payload, revision, downloaded)

        run.enter(SyncState.DONE)
        kind = "incremental" if incremental else "full"
        self._emit(
            run,
            ProgressStage.COMPLETE,
            f"Synced ({kind}, {format_bytes(downloaded)})",
            bytes_downloaded=downloaded,
            is_incremental=incremental,
        )
        logger.info(f"Fetched {key} ({kind}, {format_bytes(downloaded)}, rev={revision})")
        return FetchResult(
            key=key,
            payload=payload,
            was_cached=False,
            was_incremental=incremental,
            revision=revision,
            download_size=downloaded,
            trace=tuple(run.trace),
        )

    def _fresh_hit(self, run: _Run, entry: CacheEntry) -> FetchResult:
        run.enter(SyncState.FRESH_HIT)
        logger.debug(f"CACHE HIT (fresh): {run.key} [rev={entry.revision}]")
        self._emit(run, ProgressStage.COMPLETE, "Using cached data")
        return self._cached_result(run, entry, entry.revision)

    def _revision_match(self, run: _Run, entry: CacheEntry) -> FetchResult:
        run.enter(SyncState.REVISION_MATCH)
        logger.info(f"Revision unchanged for {run.key}, refreshing timestamp")
        try:
            touched = self.cache.touch(run.key)
        except StorageUnavailable as e:
            logger.warning(f"Could not refresh timestamp for {run.key}: {e}")
            touched = None
        self._emit(run, ProgressStage.COMPLETE, "Cache is up to date")
        return self._cached_result(run, touched or entry, entry.revision)

    def _cached_result(self, run: _Run, entry: CacheEntry, revision: Optional[str]) -> FetchResult:
        return FetchResult(
            key=run.key,
            payload=entry.payload,
            was_cached=True,
            was_incremental=False,
            revision=revision,
            download_size=0,
            trace=tuple(run.trace),
        )

    def _try_incremental(self, run: _Run, entry: CacheEntry) -> Optional[Tuple[Any, int]]:
        """Delta fetch + merge, or None when a full fetch must follow."""
        self._emit(
            run,
            ProgressStage.DOWNLOADING,
            "Downloading changes...",
            bytes_downloaded=0,
            is_incremental=True,
        )
        try:
            data = self.remote.fetch_delta(
                run.key,
                entry.revision,
                self.make_budget(self.fetch_timeout_seconds),
                self._chunk_reporter(run, incremental=True),
            )
            self._emit(run, ProgressStage.PARSING, "Applying changes...", is_incremental=True)
            records = self._parse(data)
            return self.merge_delta(entry.payload, records), len(data)
        except UnsupportedOperation as e:
            logger.info(f"Incremental not supported for {run.key}, doing full download: {e}")
        except IncompleteBaseData as e:
            logger.warning(f"Delta for {run.key} lacks base data, doing full download: {e}")
        except (NetworkFailure, ParseFailure) as e:
            logger.warning(f"Incremental sync failed for {run.key}, doing full download: {e}")
        return None

    def _fetch_full(self, run: _Run) -> Tuple[Any, int]:
        self._emit(
            run,
            ProgressStage.DOWNLOADING,
            "Downloading repository...",
            bytes_downloaded=0,
        )
        data = self.remote.fetch_full(
            run.key,
            self.make_budget(self.fetch_timeout_seconds),
            self._chunk_reporter(run, incremental=False),
        )
        self._emit(
            run,
            ProgressStage.PARSING,
            f"Parsing {format_bytes(len(data))}...",
            bytes_downloaded=len(data),
        )
        return self._parse(data), len(data)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _parse(self, data: bytes) -> Any:
        try:
            return self.parser.parse(data)
        except ParseFailure:
            raise
        except Exception as e:
            raise ParseFailure(f"Parser error: {e}") from e

    def _read_cached(self, key: str) -> Optional[CacheEntry]:
        try:
            return self.cache.get(key)
        except StorageUnavailable as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None

    def _lookup_revision(self, key: str, run_id: Optional[str]) -> Tuple[bool, Optional[str]]:
        """
        Resolve the remote revision of `key`.

        Returns (found, revision). A failed lookup yields (False, None) and
        never aborts the sync. Within a bulk run, lookups are memoized per
        (run_id, key).
        """
        if run_id:
            try:
                found, revision = self.cache.get_resolved_revision(run_id, key)
                if found:
                    return True, revision
            except StorageUnavailable as e:
                logger.debug(f"Resolved revision read failed for {key}: {e}")

        try:
            revision = self.remote.get_revision(key, self.make_budget(self.revision_timeout_seconds))
        except RelsyncError as e:
            logger.info(f"Revision lookup failed for {key}, treating as unknown: {e}")
            return False, None
        except Exception as e:
            logger.warning(f"Revision lookup for {key} raised {type(e).__name__}, treating as unknown: {e}")
            return False, None

        if run_id:
            try:
                self.cache.remember_revision(run_id, key, revision)
            except StorageUnavailable as e:
                logger.debug(f"Resolved revision write failed for {key}: {e}")
        return True, revision

    def _save(self, key: str, payload: Any, revision: str, size_bytes: int):
        attempts = self.storage_write_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self.cache.put(key, payload, revision, size_bytes)
                return
            except StorageUnavailable as e:
                if attempt == attempts:
                    logger.error(f"Could not persist {key} after {attempts} attempts: {e}")
                    raise
                logger.warning(f"Cache write failed for {key} (attempt {attempt}), retrying: {e}")

    @staticmethod
    def _can_fetch_delta(entry: CacheEntry) -> bool:
        return bool(entry.revision) and not entry.revision.startswith(UNKNOWN_REVISION_PREFIX)

    def make_budget(self, timeout_seconds: Optional[float]) -> FetchBudget:
        return FetchBudget(
            timeout_seconds=timeout_seconds,
            max_bytes=self.max_payload_bytes,
            cancel_event=self._abort,
        )

    def _chunk_reporter(self, run: _Run, incremental: bool):
        def on_chunk(received: int, total: Optional[int]):
            label = "changes" if incremental else "repository"
            message = f"Downloading {label}: {format_bytes(received)}"
            if total:
                message += f" / {format_bytes(total)}"
            self._emit(
                run,
                ProgressStage.DOWNLOADING,
                message,
                bytes_downloaded=received,
                bytes_total=total,
                is_incremental=incremental,
            )

        return on_chunk

    def _emit(self, run: _Run, stage: ProgressStage, message: str, **fields):
        self.reporter.emit(run.key, stage, message, callback=run.options.on_progress, **fields)

    @staticmethod
    def _trace_str(run: _Run) -> str:
        return " -> ".join(state.value for state in run.trace)

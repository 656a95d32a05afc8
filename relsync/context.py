"""
Explicit wiring of the sync components.

One SyncContext owns the store, cache, coalescer, engine, queue and bulk
orchestrator. Everything that needs them receives the context (or a
component from it); nothing is reachable through module globals.
"""
import logging
from typing import Any, Callable, Iterable, Optional

from relsync.cache.coalescer import RequestCoalescer
from relsync.cache.core import CacheStatus, FreshnessPolicy
from relsync.cache.pruner import CachePruner
from relsync.cache.revisioned import RevisionedCache
from relsync.cache.ttl_policies import build_kind_policies
from relsync.storage import SyncStorage
from relsync.sync.bulk import BulkSyncOrchestrator
from relsync.sync.engine import IncrementalSyncEngine, MergeDelta
from relsync.sync.models import BulkSyncStatus, FetchOptions, FetchResult
from relsync.sync.parser import ClassifyingParser, JsonRecordParser, RecordParser
from relsync.sync.progress import ProgressCallback, ProgressReporter
from relsync.sync.queue import DEFAULT_PRIORITY, BackgroundSyncQueue, QueueWorker
from relsync.sync.remote import AtprotoRemoteSource, RemoteSource
from relsync.utils.helpers import Clock, SystemClock

logger = logging.getLogger("relsync.context")


class SyncContext:
    """Facade over one fully wired engine instance."""

    def __init__(
        self,
        storage: SyncStorage,
        cache: RevisionedCache,
        coalescer: RequestCoalescer,
        reporter: ProgressReporter,
        engine: IncrementalSyncEngine,
        queue: BackgroundSyncQueue,
        pruner: CachePruner,
        bulk: BulkSyncOrchestrator,
        worker: Optional[QueueWorker] = None,
    ):
        self.storage = storage
        self.cache = cache
        self.coalescer = coalescer
        self.reporter = reporter
        self.engine = engine
        self.queue = queue
        self.pruner = pruner
        self.bulk = bulk
        self.worker = worker

    # =========================================================================
    # On-demand
    # =========================================================================

    def fetch_smart(
        self,
        key: str,
        force_refresh: bool = False,
        prefer_stale: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        wait_timeout: Optional[float] = None,
    ) -> FetchResult:
        options = FetchOptions(
            force_refresh=force_refresh,
            prefer_stale=prefer_stale,
            on_progress=on_progress,
        )
        return self.engine.fetch_smart(key, options, wait_timeout=wait_timeout)

    def get_cache_status(self, key: str) -> CacheStatus:
        return self.engine.get_cache_status(key)

    # =========================================================================
    # Background queue
    # =========================================================================

    def enqueue_background(self, keys: Iterable[str], priority: int = DEFAULT_PRIORITY) -> int:
        """Queue keys for pre-warming. Returns how many jobs were added."""
        return self.queue.enqueue_many(keys, priority)

    def drain_queue(self, max_items: Optional[int] = None) -> int:
        return self.queue.drain(max_items)

    def has_pending_work(self) -> bool:
        return self.queue.has_pending_work()

    # =========================================================================
    # Bulk runs
    # =========================================================================

    def start_bulk_sync(self, background: bool = False) -> BulkSyncStatus:
        """Raises SyncAlreadyRunning when a run is active."""
        if background:
            return self.bulk.start_background()
        return self.bulk.start()

    def get_bulk_sync_status(self) -> BulkSyncStatus:
        return self.bulk.get_status()

    # =========================================================================
    # Cache maintenance
    # =========================================================================

    def clear_cache(self) -> int:
        """Remove every cached snapshot. Queued jobs and run status are kept."""
        return self.cache.clear()

    def invalidate(self, key: str) -> bool:
        return self.cache.remove(key)

    def cache_stats(self) -> dict:
        return {
            "entries": self.cache.count(),
            "total_size_bytes": self.cache.total_size_bytes(),
            "max_cache_bytes": self.bulk.max_cache_bytes,
            "coalescer": self.coalescer.get_stats(),
            "queue": self.queue.get_stats(),
        }

    def start_worker(self):
        if self.worker is not None:
            self.worker.start()

    def shutdown(self):
        """Stop the worker, abort remote transfers and release the thread pool."""
        if self.worker is not None:
            self.worker.stop()
        self.engine.abort_all()
        self.coalescer.shutdown()
        logger.info("Sync context shut down")


def build_context(
    settings: Any,
    remote: Optional[RemoteSource] = None,
    parser: Optional[RecordParser] = None,
    clock: Optional[Clock] = None,
    storage: Optional[SyncStorage] = None,
    merge_delta: Optional[MergeDelta] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> SyncContext:
    """
    Wire a SyncContext from settings.

    Args:
        settings: config.settings.Settings (or any object with the same fields)
        remote: RemoteSource; defaults to AtprotoRemoteSource from settings
        parser: RecordParser; defaults to a classifying JSON parser
        clock: time source shared by every component
        storage: pre-built store; defaults to SQLite at settings.cache_db_path
        merge_delta: delta merge hook for the engine
        sleep: delay function for queue and bulk pacing
    """
    clock = clock or SystemClock()
    storage = storage or SyncStorage(settings.cache_db_path)
    cache = RevisionedCache(storage, clock=clock)
    coalescer = RequestCoalescer(max_workers=settings.coalescer_workers)
    reporter = ProgressReporter(clock=clock)

    if remote is None:
        remote = AtprotoRemoteSource(
            subject_did=settings.subject_did,
            pds_url=settings.pds_url,
            relay_url=settings.relay_url,
            public_api_url=settings.public_api_url,
        )
    parser = parser or ClassifyingParser(JsonRecordParser())
    default_policy = FreshnessPolicy(
        ttl_ms=settings.cache_ttl_seconds * 1000,
        allow_stale_if_preferred=settings.allow_stale_if_preferred,
    )

    engine = IncrementalSyncEngine(
        cache=cache,
        coalescer=coalescer,
        remote=remote,
        parser=parser,
        reporter=reporter,
        default_policy=default_policy,
        kind_policies=build_kind_policies(settings.kind_ttl_seconds, default_policy),
        fetch_timeout_seconds=settings.fetch_timeout_seconds,
        revision_timeout_seconds=settings.revision_timeout_seconds,
        max_payload_bytes=settings.max_payload_bytes,
        storage_write_retries=settings.storage_write_retries,
        revision_check_first=settings.revision_check_first,
        merge_delta=merge_delta,
    )

    pacing = {"sleep": sleep} if sleep is not None else {}
    queue = BackgroundSyncQueue(
        storage=storage,
        cache=cache,
        engine=engine,
        max_retries=settings.queue_max_retries,
        request_delay_ms=settings.queue_request_delay_ms,
        backoff_base_ms=settings.queue_backoff_base_ms,
        default_batch_size=settings.queue_drain_batch_size,
        **pacing,
    )
    pruner = CachePruner(cache)
    bulk = BulkSyncOrchestrator(
        storage=storage,
        cache=cache,
        engine=engine,
        pruner=pruner,
        max_concurrency=settings.bulk_max_concurrency,
        batch_delay_ms=settings.bulk_batch_delay_ms,
        max_pages=settings.bulk_max_pages,
        max_cache_bytes=settings.max_cache_bytes,
        **pacing,
    )
    worker = None
    if settings.queue_worker_enabled:
        worker = QueueWorker(
            queue,
            interval_seconds=settings.queue_drain_interval_seconds,
            batch_size=settings.queue_drain_batch_size,
        )

    if settings.coalescer_workers < settings.bulk_max_concurrency:
        logger.warning(
            f"coalescer_workers ({settings.coalescer_workers}) is below "
            f"bulk_max_concurrency ({settings.bulk_max_concurrency}); bulk batches will queue"
        )

    return SyncContext(
        storage=storage,
        cache=cache,
        coalescer=coalescer,
        reporter=reporter,
        engine=engine,
        queue=queue,
        pruner=pruner,
        bulk=bulk,
        worker=worker,
    )

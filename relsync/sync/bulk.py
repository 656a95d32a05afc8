"""
Bulk synchronization: enumerate every target and sync each one through the engine.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional

from relsync.cache.pruner import CachePruner
from relsync.cache.revisioned import RevisionedCache
from relsync.errors import (
    RunEnumerationFailure,
    StorageUnavailable,
    SyncAlreadyRunning,
)
from relsync.storage import SyncStorage
from relsync.sync.engine import IncrementalSyncEngine
from relsync.sync.models import BulkPhase, BulkSyncStatus, FetchOptions
from relsync.utils.helpers import chunk, generate_id, safe_int

logger = logging.getLogger("relsync.bulk")

LAST_FULL_SYNC_META = "last_full_sync"


class BulkSyncOrchestrator:
    """
    Runs at most one bulk synchronization at a time.

    Targets are synced in batches of `max_concurrency`, with a pause between
    batches. A failing target is recorded in the status errors and the run
    carries on. The run status is persisted after every change so a UI can
    follow progress and a restart can detect an interrupted run.
    """

    def __init__(
        self,
        storage: SyncStorage,
        cache: RevisionedCache,
        engine: IncrementalSyncEngine,
        pruner: CachePruner,
        max_concurrency: int = 5,
        batch_delay_ms: int = 500,
        max_pages: int = 100,
        max_cache_bytes: int = 8 * 1024 * 1024,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._storage = storage
        self._cache = cache
        self._engine = engine
        self._pruner = pruner
        self.max_concurrency = max(1, max_concurrency)
        self.batch_delay_ms = batch_delay_ms
        self.max_pages = max_pages
        self.max_cache_bytes = max_cache_bytes
        self._sleep = sleep

        self._run_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._status = self._load_status()

    @property
    def clock(self):
        return self._cache.clock

    def _load_status(self) -> BulkSyncStatus:
        data = self._storage.load_bulk_status()
        status = BulkSyncStatus.from_dict(data) if data else BulkSyncStatus()
        if status.last_full_sync is None:
            stored = self._storage.get_meta(LAST_FULL_SYNC_META)
            status.last_full_sync = safe_int(stored, 0) or None

        if status.is_running:
            # Left behind by a process that died mid-run
            logger.warning(f"Bulk run {status.run_id} was interrupted, resetting status")
            status.is_running = False
            status.current_target = None
            status.phase = BulkPhase.FAILED
            status.finished_at = self.clock.now_ms()
            status.errors.append("Sync was interrupted before completing")
            self._storage.save_bulk_status(status.to_dict(), self.clock.now_ms())
            if status.run_id:
                self._cache.forget_run(status.run_id)
        return status

    # =========================================================================
    # Public API
    # =========================================================================

    def get_status(self) -> BulkSyncStatus:
        """Snapshot of the current (or last) run."""
        with self._status_lock:
            return self._status.copy()

    @property
    def is_running(self) -> bool:
        with self._status_lock:
            return self._status.is_running

    def start(self) -> BulkSyncStatus:
        """
        Run a full bulk sync in the calling thread.

        Returns:
            Final BulkSyncStatus

        Raises:
            SyncAlreadyRunning: another run holds the lock
            RunEnumerationFailure: target listing failed; the run was aborted
        """
        run_id = self._begin()
        return self._execute(run_id)

    def start_background(self) -> BulkSyncStatus:
        """
        Start a bulk sync on a worker thread and return the initial status.

        Raises:
            SyncAlreadyRunning: another run holds the lock
        """
        run_id = self._begin()

        def _worker():
            try:
                self._execute(run_id)
            except RunEnumerationFailure as e:
                logger.error(f"Bulk run {run_id} aborted: {e}")
            except Exception as e:
                logger.error(f"Bulk run {run_id} crashed: {e}")

        self._thread = threading.Thread(target=_worker, name="bulk-sync", daemon=True)
        self._thread.start()
        return self.get_status()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a background run finishes. Returns False on timeout."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # =========================================================================
    # Run steps
    # =========================================================================

    def _begin(self) -> str:
        """Take the run lock and publish a running status in one critical section."""
        run_id = generate_id("bulk")
        with self._status_lock:
            acquired = self._run_lock.acquire(blocking=False)
            if acquired:
                self._status = BulkSyncStatus(
                    is_running=True,
                    started_at=self.clock.now_ms(),
                    phase=BulkPhase.FETCHING_TARGETS,
                    run_id=run_id,
                    last_full_sync=self._status.last_full_sync,
                )
            snapshot = self._status.copy()
        if not acquired:
            logger.info("Bulk sync requested while a run is active")
            raise SyncAlreadyRunning(snapshot)

        self._write_status(snapshot)
        logger.info(f"Bulk run {run_id} started")
        return run_id

    def _execute(self, run_id: str) -> BulkSyncStatus:
        """Run every step; the run lock is released on every exit path."""
        try:
            targets = self._enumerate_targets()
        except Exception as e:
            self._abort_run(run_id, f"Failed to list sync targets: {e}")
            raise RunEnumerationFailure(f"Failed to list sync targets: {e}") from e

        try:
            with self._status_lock:
                self._status.total_targets = len(targets)
                self._status.phase = BulkPhase.SYNCING
            self._persist()
            logger.info(f"Bulk run {run_id}: syncing {len(targets)} targets")

            for index, batch in enumerate(chunk(targets, self.max_concurrency)):
                if index > 0 and self.batch_delay_ms > 0:
                    self._sleep(self.batch_delay_ms / 1000)
                self._sync_batch(batch, run_id)

            self._after_run(run_id)
        except Exception as e:
            self._abort_run(run_id, f"Bulk run failed: {e}")
            raise

        return self._finish(run_id)

    def _enumerate_targets(self) -> List[str]:
        """Page through the target listing, dropping duplicates."""
        targets: List[str] = []
        seen = set()
        cursor: Optional[str] = None
        for _ in range(self.max_pages):
            page = self._engine.remote.list_targets(
                cursor, self._engine.make_budget(self._engine.fetch_timeout_seconds)
            )
            for key in page.items:
                if key not in seen:
                    seen.add(key)
                    targets.append(key)
            with self._status_lock:
                self._status.fetched_pages += 1
            self._persist()
            cursor = page.cursor
            if not cursor:
                break
        else:
            logger.warning(f"Target listing stopped at the {self.max_pages} page limit")
        return targets

    def _sync_batch(self, batch: List[str], run_id: str):
        with ThreadPoolExecutor(
            max_workers=len(batch), thread_name_prefix="bulk-sync"
        ) as pool:
            futures = {
                pool.submit(self._engine.fetch_smart, key, FetchOptions(run_id=run_id)): key
                for key in batch
            }
            for future in as_completed(futures):
                key = futures[future]
                error = future.exception()
                with self._status_lock:
                    self._status.synced_targets += 1
                    self._status.current_target = key
                    if error is not None:
                        self._status.errors.append(f"Failed to sync {key}: {error}")
                if error is not None:
                    logger.warning(f"Failed to sync {key}: {error}")
                self._persist()

    def _after_run(self, run_id: str):
        """Bookkeeping done while the run still holds the lock."""
        self._cleanup(run_id)
        try:
            self._pruner.prune(self.max_cache_bytes)
        except StorageUnavailable as e:
            logger.warning(f"Cache pruning after bulk run failed: {e}")

    def _finish(self, run_id: str) -> BulkSyncStatus:
        now = self.clock.now_ms()

        def complete(status: BulkSyncStatus):
            status.phase = BulkPhase.COMPLETE
            status.finished_at = now
            status.last_full_sync = now

        final = self._release_run(complete)
        try:
            self._storage.set_meta(LAST_FULL_SYNC_META, str(now))
        except StorageUnavailable as e:
            logger.warning(f"Could not record last full sync time: {e}")
        logger.info(
            f"Bulk run {run_id} complete: {final.synced_targets} synced, "
            f"{len(final.errors)} errors"
        )
        return final

    def _abort_run(self, run_id: str, message: str):
        def fail(status: BulkSyncStatus):
            status.phase = BulkPhase.FAILED
            status.finished_at = self.clock.now_ms()
            status.errors.append(message)

        self._release_run(fail)
        self._cleanup(run_id)
        logger.error(f"Bulk run {run_id} aborted: {message}")

    def _release_run(self, update: Callable[[BulkSyncStatus], None]) -> BulkSyncStatus:
        """Publish the terminal status and release the run lock atomically."""
        with self._status_lock:
            try:
                update(self._status)
                self._status.is_running = False
                self._status.current_target = None
                final = self._status.copy()
                self._write_status(final)
            finally:
                self._run_lock.release()
        return final

    def _cleanup(self, run_id: str):
        try:
            self._cache.forget_run(run_id)
        except StorageUnavailable as e:
            logger.warning(f"Could not clear resolved revisions for {run_id}: {e}")

    def _persist(self):
        with self._status_lock:
            self._write_status(self._status.copy())

    def _write_status(self, snapshot: BulkSyncStatus):
        try:
            self._storage.save_bulk_status(snapshot.to_dict(), self.clock.now_ms())
        except StorageUnavailable as e:
            logger.warning(f"Could not persist bulk status: {e}")

"""
Persistent background queue that pre-warms the cache.

Jobs are stored in the sync database so they survive restarts. Draining
runs each job through the shared engine (and therefore the shared
coalescer), skips jobs whose key became fresh while waiting, and retries
failures with exponential backoff.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from relsync.cache.revisioned import RevisionedCache
from relsync.errors import StorageUnavailable
from relsync.storage import SyncStorage
from relsync.sync.engine import IncrementalSyncEngine
from relsync.sync.models import FetchOptions, JobStatus, SyncJob

logger = logging.getLogger("relsync.queue")

DEFAULT_PRIORITY = 10


class BackgroundSyncQueue:
    """
    Priority queue of keys to fetch in the background.

    Lower priority values run first; equal priorities run oldest first.
    """

    def __init__(
        self,
        storage: SyncStorage,
        cache: RevisionedCache,
        engine: IncrementalSyncEngine,
        max_retries: int = 3,
        request_delay_ms: int = 500,
        backoff_base_ms: int = 1000,
        default_batch_size: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._storage = storage
        self._cache = cache
        self._engine = engine
        self.max_retries = max_retries
        self.request_delay_ms = request_delay_ms
        self.backoff_base_ms = backoff_base_ms
        self.default_batch_size = default_batch_size
        self._sleep = sleep
        self._drain_lock = threading.Lock()
        self._recover_interrupted()

    @property
    def clock(self):
        return self._cache.clock

    def _recover_interrupted(self):
        """Jobs left in_progress by a dead process or an aborted drain go back to pending."""
        for job in self._storage.list_jobs(JobStatus.IN_PROGRESS):
            job.status = JobStatus.PENDING
            self._storage.save_job(job)
            logger.info(f"Requeued interrupted job {job.target_key}")

    def _is_fresh(self, key: str) -> bool:
        policy = self._engine.policy_for(key)
        try:
            return self._cache.is_fresh(key, policy)
        except StorageUnavailable as e:
            logger.warning(f"Freshness check failed for {key}, assuming stale: {e}")
            return False

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(self, key: str, priority: int = DEFAULT_PRIORITY) -> bool:
        """
        Queue `key` for background fetching.

        No-op when the key is already fresh in the cache or already has a
        pending or in-progress job. Returns True if a job was queued.
        """
        if self._is_fresh(key):
            logger.debug(f"Skipping enqueue of {key}: cache is fresh")
            return False

        job = SyncJob(
            target_key=key,
            priority=priority,
            queued_at=self.clock.now_ms(),
        )
        queued = self._storage.insert_job_if_absent(job)
        if queued:
            logger.info(f"Queued {key} (priority {priority})")
        else:
            logger.debug(f"Skipping enqueue of {key}: job already active")
        return queued

    def enqueue_many(self, keys: Iterable[str], priority: int = DEFAULT_PRIORITY) -> int:
        return sum(1 for key in keys if self.enqueue(key, priority))

    # =========================================================================
    # Drain
    # =========================================================================

    def drain(self, max_items: Optional[int] = None) -> int:
        """
        Process up to `max_items` due jobs.

        Returns:
            Number of jobs that reached a terminal state (completed or failed)
        """
        limit = self.default_batch_size if max_items is None else max_items
        if limit <= 0:
            return 0

        with self._drain_lock:
            # Nothing else claims jobs while the drain lock is held
            self._recover_interrupted()
            jobs = self._storage.claim_pending_jobs(limit, self.clock.now_ms())
            if not jobs:
                return 0

            logger.info(f"Draining {len(jobs)} queued jobs")
            finished = 0
            settled = 0
            previous_was_remote = False
            try:
                for job in jobs:
                    if self._is_fresh(job.target_key):
                        self._complete(job)
                        logger.debug(f"Stale-skip {job.target_key}: already fresh")
                        finished += 1
                        settled += 1
                        continue

                    if previous_was_remote and self.request_delay_ms > 0:
                        self._sleep(self.request_delay_ms / 1000)
                    previous_was_remote = True

                    if self._process(job):
                        finished += 1
                    settled += 1
            finally:
                if settled < len(jobs):
                    self._release(jobs[settled:])
            return finished

    def _process(self, job: SyncJob) -> bool:
        """Run one job. Returns True if it reached a terminal state."""
        try:
            self._engine.fetch_smart(job.target_key, FetchOptions())
        except Exception as e:
            return self._fail(job, e)
        self._complete(job)
        return True

    def _release(self, jobs: List[SyncJob]):
        """Put claimed jobs that were not settled back to pending."""
        for job in jobs:
            job.status = JobStatus.PENDING
            try:
                self._storage.save_job(job)
            except StorageUnavailable as e:
                logger.warning(f"Could not release job {job.target_key}, next drain will: {e}")
            else:
                logger.info(f"Released unsettled job {job.target_key}")

    def _complete(self, job: SyncJob):
        job.status = JobStatus.COMPLETED
        job.last_error = None
        self._storage.save_job(job)

    def _fail(self, job: SyncJob, error: Exception) -> bool:
        job.last_error = str(error) or type(error).__name__
        if job.retry_count < self.max_retries:
            job.retry_count += 1
            delay = self.backoff_base_ms * (2 ** (job.retry_count - 1))
            job.status = JobStatus.PENDING
            job.available_at = self.clock.now_ms() + delay
            self._storage.save_job(job)
            logger.warning(
                f"Job {job.target_key} failed (retry {job.retry_count}/{self.max_retries} "
                f"in {delay}ms): {job.last_error}"
            )
            return False

        job.status = JobStatus.FAILED
        self._storage.save_job(job)
        logger.warning(f"Job {job.target_key} failed permanently: {job.last_error}")
        return True

    # =========================================================================
    # Inspection
    # =========================================================================

    def has_pending_work(self) -> bool:
        counts = self._storage.count_jobs_by_status()
        return counts[JobStatus.PENDING.value] + counts[JobStatus.IN_PROGRESS.value] > 0

    def get_job(self, key: str) -> Optional[SyncJob]:
        return self._storage.get_job(key)

    def pending_jobs(self) -> List[SyncJob]:
        return self._storage.list_jobs(JobStatus.PENDING)

    def all_jobs(self) -> List[SyncJob]:
        return self._storage.list_jobs()

    def clear_finished(self) -> int:
        """Delete completed and failed jobs."""
        removed = self._storage.delete_jobs([JobStatus.COMPLETED, JobStatus.FAILED])
        if removed:
            logger.info(f"Cleared {removed} finished jobs")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        counts = self._storage.count_jobs_by_status()
        return {
            **counts,
            "total": sum(counts.values()),
            "max_retries": self.max_retries,
        }


class QueueWorker:
    """Daemon thread that drains the queue on a fixed interval."""

    def __init__(
        self,
        queue: BackgroundSyncQueue,
        interval_seconds: float = 60.0,
        batch_size: int = 5,
    ):
        self._queue = queue
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="sync-queue-worker", daemon=True
        )
        self._thread.start()
        logger.info(f"Queue worker started (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Queue worker stopped")

    def _loop(self):
        while not self._stop.is_set():
            try:
                if self._queue.has_pending_work():
                    self._queue.drain(self.batch_size)
            except Exception as e:
                logger.error(f"Queue drain failed: {e}")
            self._stop.wait(self.interval_seconds)

"""
Request coalescing to prevent duplicate remote fetches.

When multiple concurrent requests ask for the same key, only one
operation runs and all requesters share its result.
"""
import threading
import time
import logging
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress operation for one key."""
    key: str
    future: Future
    started_at: float
    waiter_count: int = 1


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one operation.

    Pattern:
    - First request for a key submits the operation to the worker pool
    - Subsequent requests for the same key attach to the same Future
    - The in-flight record is dropped before the Future settles, so the
      next request after settlement always starts fresh work
    - A caller that stops waiting does not cancel the operation

    Usage:
        coalescer = RequestCoalescer()
        result = coalescer.execute("repo:did:plc:abc", lambda: engine_fetch())
    """

    def __init__(self, max_workers: int = 8):
        """
        Initialize the coalescer.

        Args:
            max_workers: Thread pool size for running coalesced operations
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="coalescer",
        )
        self._closed = False

    def submit(self, key: str, operation: Callable[[], Any]) -> Future:
        """
        Join the in-flight operation for `key` or start a new one.

        Returns:
            A per-caller Future resolved with the shared outcome. Cancelling
            it detaches only this caller.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Coalescer has been shut down")
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.waiter_count += 1
                logger.debug(
                    f"Coalescing request for {key} "
                    f"(waiters: {in_flight.waiter_count})"
                )
                return self._attach(in_flight.future)

            in_flight = InFlightRequest(
                key=key,
                future=Future(),
                started_at=time.time(),
            )
            self._in_flight[key] = in_flight
            logger.debug(f"Initiating operation for {key}")
            waiter = self._attach(in_flight.future)

        self._executor.submit(self._run, in_flight, operation)
        return waiter

    @staticmethod
    def _attach(shared: Future) -> Future:
        """Create a waiter Future that mirrors the shared one."""
        waiter: Future = Future()

        def _copy(source: Future):
            try:
                if source.cancelled():
                    waiter.cancel()
                elif source.exception() is not None:
                    waiter.set_exception(source.exception())
                else:
                    waiter.set_result(source.result())
            except InvalidStateError:
                # this caller already cancelled its own waiter
                pass

        shared.add_done_callback(_copy)
        return waiter

    def execute(
        self,
        key: str,
        operation: Callable[[], Any],
        wait_timeout: Optional[float] = None,
    ) -> Any:
        """
        Run `operation` at most once concurrently per key and return its result.

        Args:
            key: Unique key for this operation
            operation: Callable performing the work
            wait_timeout: Max seconds this caller waits; the operation itself
                keeps running when the caller gives up

        Returns:
            The result object (identical for all concurrent callers)

        Raises:
            TimeoutError: If this caller's wait_timeout elapses
            Exception: Any error from operation is propagated to every waiter
        """
        future = self.submit(key, operation)
        try:
            return future.result(timeout=wait_timeout)
        except FutureTimeout:
            if future.done():
                raise
            future.cancel()
            logger.info(f"Caller stopped waiting for {key}; operation continues")
            raise TimeoutError(f"Gave up waiting for {key} after {wait_timeout}s")

    def _run(self, in_flight: InFlightRequest, operation: Callable[[], Any]):
        if not in_flight.future.set_running_or_notify_cancel():
            self._release(in_flight)
            return
        try:
            result = operation()
        except Exception as e:
            logger.warning(f"Operation failed for {in_flight.key}: {e}")
            self._release(in_flight)
            in_flight.future.set_exception(e)
            return
        except BaseException as e:
            logger.error(f"Operation for {in_flight.key} interrupted by {type(e).__name__}")
            self._release(in_flight)
            in_flight.future.set_exception(e)
            raise
        self._release(in_flight)
        in_flight.future.set_result(result)

    def _release(self, in_flight: InFlightRequest):
        with self._lock:
            if self._in_flight.get(in_flight.key) is in_flight:
                del self._in_flight[in_flight.key]

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def waiter_count(self, key: str) -> int:
        with self._lock:
            in_flight = self._in_flight.get(key)
            return in_flight.waiter_count if in_flight else 0

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight operations."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "waiters": {k: r.waiter_count for k, r in self._in_flight.items()},
            }

    def shutdown(self, wait: bool = False):
        """
        Stop accepting work and abort operations that have not started.

        Waiters on aborted operations receive CancelledError.
        """
        with self._lock:
            self._closed = True
            pending = list(self._in_flight.values())
        for in_flight in pending:
            if in_flight.future.cancel():
                self._release(in_flight)
        self._executor.shutdown(wait=wait, cancel_futures=True)

"""
Tests for request coalescing.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from relsync.cache.coalescer import RequestCoalescer


class TestRequestCoalescer:
    """Concurrent callers for one key share a single execution."""

    def test_single_call_returns_result(self, coalescer):
        assert coalescer.execute("A", lambda: 42) == 42
        assert not coalescer.is_in_flight("A")

    def test_concurrent_callers_share_one_execution(self, coalescer):
        release = threading.Event()
        calls = []

        def operation():
            calls.append(1)
            release.wait(5)
            return {"x": 1}

        with ThreadPoolExecutor(max_workers=5) as pool:
            futures = [pool.submit(coalescer.execute, "A", operation) for _ in range(5)]
            deadline = time.time() + 5
            while coalescer.waiter_count("A") < 5 and time.time() < deadline:
                time.sleep(0.01)
            release.set()
            results = [f.result(timeout=5) for f in futures]

        assert len(calls) == 1
        assert all(r is results[0] for r in results)

    def test_errors_propagate_to_every_waiter(self, coalescer):
        release = threading.Event()

        def operation():
            release.wait(5)
            raise ValueError("boom")

        first = coalescer.submit("A", operation)
        second = coalescer.submit("A", operation)
        release.set()

        for future in (first, second):
            with pytest.raises(ValueError, match="boom"):
                future.result(timeout=5)

    def test_base_exception_settles_waiters_and_clears_record(self, coalescer):
        class Halt(BaseException):
            pass

        release = threading.Event()

        def operation():
            release.wait(5)
            raise Halt()

        first = coalescer.submit("A", operation)
        second = coalescer.submit("A", operation)
        release.set()

        for future in (first, second):
            with pytest.raises(Halt):
                future.result(timeout=5)
        assert not coalescer.is_in_flight("A")
        assert coalescer.execute("A", lambda: "again") == "again"

    def test_in_flight_record_cleared_before_waiters_resume(self, coalescer):
        observed = []
        future = coalescer.submit("A", lambda: "done")
        future.add_done_callback(lambda f: observed.append(coalescer.is_in_flight("A")))
        future.result(timeout=5)

        assert observed == [False]

    def test_next_call_after_settle_starts_fresh(self, coalescer):
        counter = {"n": 0}

        def operation():
            counter["n"] += 1
            return counter["n"]

        assert coalescer.execute("A", operation) == 1
        assert coalescer.execute("A", operation) == 2

    def test_different_keys_do_not_coalesce(self, coalescer):
        assert coalescer.execute("A", lambda: "a") == "a"
        assert coalescer.execute("B", lambda: "b") == "b"

    def test_wait_timeout_does_not_cancel_operation(self, coalescer):
        release = threading.Event()
        finished = threading.Event()

        def operation():
            release.wait(5)
            finished.set()
            return "late"

        other = coalescer.submit("A", operation)
        with pytest.raises(TimeoutError):
            coalescer.execute("A", operation, wait_timeout=0.05)

        release.set()
        assert other.result(timeout=5) == "late"
        assert finished.wait(5)

    def test_stats(self, coalescer):
        release = threading.Event()
        coalescer.submit("A", lambda: release.wait(5))
        coalescer.submit("A", lambda: None)

        stats = coalescer.get_stats()
        assert stats["active_requests"] == 1
        assert stats["waiters"] == {"A": 2}
        release.set()

    def test_shutdown_rejects_new_work(self):
        coalescer = RequestCoalescer(max_workers=1)
        coalescer.shutdown()
        with pytest.raises(RuntimeError):
            coalescer.submit("A", lambda: None)

"""
Shared fixtures: temporary store, controllable clock, in-memory remote.
"""
import json
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from config.settings import Settings
from relsync.cache.coalescer import RequestCoalescer
from relsync.cache.core import FreshnessPolicy
from relsync.cache.revisioned import RevisionedCache
from relsync.context import build_context
from relsync.errors import NetworkFailure, UnsupportedOperation
from relsync.storage import SyncStorage
from relsync.sync.engine import IncrementalSyncEngine
from relsync.sync.parser import ClassifyingParser, JsonRecordParser
from relsync.sync.progress import ProgressReporter
from relsync.sync.remote import TargetPage

DAY_MS = 24 * 60 * 60 * 1000
START_MS = 1_700_000_000_000


def encode(records) -> bytes:
    return json.dumps(records).encode("utf-8")


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def now_ms(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeRemote:
    """
    In-memory RemoteSource that counts every call.

    Attributes set by tests:
        revisions: key -> current revision (missing key -> None)
        full: key -> bytes returned by fetch_full
        deltas: key -> bytes returned by fetch_delta
        delta_errors / full_errors / revision_errors: key -> exception to raise
        pages: list of TargetPage returned by list_targets in cursor order
        gate: when set, fetch_full waits on it before returning
    """

    def __init__(self):
        self.revisions: Dict[str, Optional[str]] = {}
        self.full: Dict[str, bytes] = {}
        self.deltas: Dict[str, bytes] = {}
        self.delta_errors: Dict[str, Exception] = {}
        self.full_errors: Dict[str, Exception] = {}
        self.revision_errors: Dict[str, Exception] = {}
        self.pages: List[TargetPage] = []
        self.list_error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def count(self, name: str, key: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for call in self.calls
                if call[0] == name and (key is None or call[1] == key)
            )

    @property
    def network_calls(self) -> int:
        with self._lock:
            return len(self.calls)

    def get_revision(self, key, budget):
        self._record("get_revision", key)
        if key in self.revision_errors:
            raise self.revision_errors[key]
        return self.revisions.get(key)

    def fetch_full(self, key, budget, on_chunk=None):
        self._record("fetch_full", key)
        if self.gate is not None:
            self.gate.wait(5)
        if key in self.full_errors:
            raise self.full_errors[key]
        if key not in self.full:
            raise NetworkFailure(f"Failed to download repo: 404 ({key})")
        data = self.full[key]
        if on_chunk is not None:
            on_chunk(len(data), len(data))
        return data

    def fetch_delta(self, key, since, budget, on_chunk=None):
        self._record("fetch_delta", key, since)
        if key in self.delta_errors:
            raise self.delta_errors[key]
        if key not in self.deltas:
            raise UnsupportedOperation("Incremental not supported")
        data = self.deltas[key]
        if on_chunk is not None:
            on_chunk(len(data), None)
        return data

    def list_targets(self, cursor, budget):
        self._record("list_targets", cursor)
        if self.list_error is not None:
            raise self.list_error
        index = int(cursor) if cursor else 0
        if index >= len(self.pages):
            return TargetPage()
        return self.pages[index]


@pytest.fixture
def temp_db():
    """Create a temporary store for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_relsync.db"
        yield SyncStorage(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(temp_db, clock):
    return RevisionedCache(temp_db, clock=clock)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def coalescer():
    coalescer = RequestCoalescer(max_workers=8)
    yield coalescer
    coalescer.shutdown()


@pytest.fixture
def policy():
    return FreshnessPolicy(ttl_ms=DAY_MS)


@pytest.fixture
def engine(cache, coalescer, remote, policy, clock):
    return IncrementalSyncEngine(
        cache=cache,
        coalescer=coalescer,
        remote=remote,
        parser=ClassifyingParser(JsonRecordParser()),
        reporter=ProgressReporter(clock=clock),
        default_policy=policy,
    )


@pytest.fixture
def test_settings():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Settings(
            cache_db_path=Path(tmpdir) / "ctx.db",
            queue_worker_enabled=False,
            queue_request_delay_ms=0,
            bulk_batch_delay_ms=0,
            queue_backoff_base_ms=1000,
        )


@pytest.fixture
def context(test_settings, remote, clock):
    ctx = build_context(test_settings, remote=remote, clock=clock, sleep=lambda s: None)
    yield ctx
    ctx.shutdown()

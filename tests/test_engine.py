"""
Tests for the incremental sync engine state machine.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from relsync.context import build_context
from relsync.errors import (
    IncompleteBaseData,
    NetworkFailure,
    ParseFailure,
    StorageUnavailable,
    UnsupportedOperation,
)
from relsync.sync.engine import IncrementalSyncEngine, count_records
from relsync.sync.models import FetchOptions, SyncState
from relsync.sync.parser import ClassifyingParser, JsonRecordParser
from relsync.sync.progress import ProgressReporter, ProgressStage

from conftest import DAY_MS, encode


def seed_stale(cache, clock, key="A", payload=None, revision="r1"):
    """Cache an entry and age it past the TTL."""
    cache.put(key, payload if payload is not None else {"x": 0}, revision, 10)
    clock.advance(DAY_MS + 1)


# =============================================================================
# Fetch scenarios
# =============================================================================

class TestFetchScenario:
    """Empty cache, full fetch, then cached."""

    def test_first_fetch_downloads_and_second_is_cached(self, engine, remote):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})

        first = engine.fetch_smart("A")
        assert first.payload == {"x": 1}
        assert first.was_cached is False
        assert first.was_incremental is False
        assert first.revision == "r1"

        calls_before = remote.network_calls
        second = engine.fetch_smart("A")
        assert second.was_cached is True
        assert second.payload == {"x": 1}
        assert second.revision == "r1"
        assert remote.network_calls == calls_before

    def test_trace_records_states(self, engine, remote):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})

        first = engine.fetch_smart("A")
        second = engine.fetch_smart("A")

        assert first.trace == (
            SyncState.CHECKING,
            SyncState.LOOKUP_REVISION,
            SyncState.FULL,
            SyncState.SAVING,
            SyncState.DONE,
        )
        assert second.trace == (SyncState.CHECKING, SyncState.FRESH_HIT)

    def test_download_size_recorded(self, engine, remote, cache):
        data = encode({"x": 1})
        remote.revisions["A"] = "r1"
        remote.full["A"] = data

        result = engine.fetch_smart("A")

        assert result.download_size == len(data)
        assert cache.get("A").size_bytes == len(data)


class TestCoalescing:
    """Concurrent fetches for one key trigger one download."""

    def test_concurrent_fetches_share_one_download(self, engine, remote, coalescer):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})
        remote.gate = threading.Event()
        callers = 6

        with ThreadPoolExecutor(max_workers=callers) as pool:
            futures = [pool.submit(engine.fetch_smart, "A") for _ in range(callers)]
            deadline = time.time() + 5
            while coalescer.waiter_count("A") < callers and time.time() < deadline:
                time.sleep(0.01)
            remote.gate.set()
            results = [f.result(timeout=5) for f in futures]

        assert remote.count("fetch_full", "A") == 1
        assert all(r is results[0] for r in results)
        assert {r.revision for r in results} == {"r1"}


# =============================================================================
# Freshness and revision checks
# =============================================================================

class TestFreshness:

    def test_revision_match_short_circuits(self, engine, remote, cache, clock):
        seed_stale(cache, clock, payload={"x": 5}, revision="r1")
        remote.revisions["A"] = "r1"

        result = engine.fetch_smart("A")

        assert result.was_cached is True
        assert result.payload == {"x": 5}
        assert SyncState.REVISION_MATCH in result.trace
        assert remote.count("fetch_full") == 0
        assert remote.count("fetch_delta") == 0
        assert cache.get("A").fetched_at == clock.now

    def test_prefer_stale_skips_network(self, engine, remote, cache, clock):
        seed_stale(cache, clock)

        result = engine.fetch_smart("A", FetchOptions(prefer_stale=True))

        assert result.was_cached is True
        assert remote.network_calls == 0

    def test_force_refresh_downloads_even_when_fresh(self, engine, remote, cache):
        cache.put("A", {"x": 0}, "r1", 1)
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 9})

        result = engine.fetch_smart("A", FetchOptions(force_refresh=True))

        assert result.was_cached is False
        assert result.payload == {"x": 9}
        assert remote.count("fetch_full") == 1

    def test_revision_lookup_failure_saves_unknown_revision(self, engine, remote, clock):
        remote.revision_errors["A"] = NetworkFailure("relay down")
        remote.full["A"] = encode({"x": 1})

        result = engine.fetch_smart("A")

        assert result.revision == f"unknown-{clock.now}"
        assert result.payload == {"x": 1}

    def test_unknown_revision_skips_delta(self, engine, remote, cache, clock):
        seed_stale(cache, clock, revision="unknown-123")
        remote.revisions["A"] = "r2"
        remote.full["A"] = encode({"x": 2})

        result = engine.fetch_smart("A")

        assert remote.count("fetch_delta") == 0
        assert SyncState.INCREMENTAL not in result.trace
        assert result.revision == "r2"


class TestRevisionCheckFirst:
    """Engine configured to consult the remote revision before the TTL."""

    @pytest.fixture
    def strict_engine(self, cache, coalescer, remote, policy, clock):
        return IncrementalSyncEngine(
            cache=cache,
            coalescer=coalescer,
            remote=remote,
            parser=JsonRecordParser(),
            reporter=ProgressReporter(clock=clock),
            default_policy=policy,
            revision_check_first=True,
        )

    def test_newer_remote_revision_beats_ttl(self, strict_engine, remote, cache):
        cache.put("A", {"x": 0}, "r1", 1)
        remote.revisions["A"] = "r2"
        remote.deltas["A"] = encode({"x": 2})

        result = strict_engine.fetch_smart("A")

        assert result.was_cached is False
        assert result.was_incremental is True
        assert result.payload == {"x": 2}

    def test_lookup_failure_falls_back_to_ttl(self, strict_engine, remote, cache):
        cache.put("A", {"x": 0}, "r1", 1)
        remote.revision_errors["A"] = NetworkFailure("down")

        result = strict_engine.fetch_smart("A")

        assert result.was_cached is True
        assert result.trace[-1] == SyncState.FRESH_HIT
        assert remote.count("fetch_full") == 0


class TestConfiguredFreshness:
    """TTL settings reach prefixed keys, not only unprefixed ones."""

    def _seed_and_age(self, ctx, remote, clock, keys):
        for key in keys:
            remote.revisions[key] = "r1"
            remote.full[key] = encode({"key": key})
            ctx.fetch_smart(key)
            remote.revisions[key] = "r2"
        clock.advance(10 * 60 * 1000)

    def test_configured_ttl_applies_to_prefixed_keys(self, test_settings, remote, clock):
        settings = test_settings.model_copy(update={"cache_ttl_seconds": 60})
        ctx = build_context(settings, remote=remote, clock=clock, sleep=lambda s: None)
        try:
            self._seed_and_age(ctx, remote, clock, ["A", "blocks:did:plc:x"])

            assert ctx.fetch_smart("A").was_cached is False
            assert ctx.fetch_smart("blocks:did:plc:x").was_cached is False
        finally:
            ctx.shutdown()

    def test_per_kind_override(self, test_settings, remote, clock):
        settings = test_settings.model_copy(update={"kind_ttl_seconds": {"blocks": 60}})
        ctx = build_context(settings, remote=remote, clock=clock, sleep=lambda s: None)
        try:
            self._seed_and_age(ctx, remote, clock, ["A", "blocks:did:plc:x"])

            assert ctx.fetch_smart("A").was_cached is True
            assert ctx.fetch_smart("blocks:did:plc:x").was_cached is False
        finally:
            ctx.shutdown()


# =============================================================================
# Incremental and full fetch
# =============================================================================

class TestIncremental:

    def test_delta_applied(self, engine, remote, cache, clock):
        seed_stale(cache, clock, revision="r1")
        remote.revisions["A"] = "r2"
        remote.deltas["A"] = encode({"x": 2})

        result = engine.fetch_smart("A")

        assert result.was_incremental is True
        assert result.was_cached is False
        assert result.revision == "r2"
        assert remote.calls[-1] == ("fetch_delta", "A", "r1")
        assert cache.get("A").revision == "r2"

    def test_incomplete_base_data_falls_back_to_one_full_fetch(self, engine, remote, cache, clock):
        seed_stale(cache, clock, revision="r1")
        remote.revisions["A"] = "r2"
        remote.delta_errors["A"] = IncompleteBaseData("block not found in delta")
        remote.full["A"] = encode({"x": 3})

        result = engine.fetch_smart("A")

        assert remote.count("fetch_full", "A") == 1
        assert result.was_incremental is False
        assert result.payload == {"x": 3}
        assert SyncState.INCREMENTAL in result.trace
        assert SyncState.FULL in result.trace

    def test_unparseable_delta_classified_as_incomplete(self, cache, coalescer, remote, policy, clock):
        class ArchiveDecoder:
            def parse(self, data):
                if data == b"delta":
                    raise ValueError("cid not found in blockmap")
                return {"x": 4}

        engine = IncrementalSyncEngine(
            cache=cache,
            coalescer=coalescer,
            remote=remote,
            parser=ClassifyingParser(ArchiveDecoder()),
            default_policy=policy,
        )
        seed_stale(cache, clock)
        remote.revisions["A"] = "r2"
        remote.deltas["A"] = b"delta"
        remote.full["A"] = b"full"

        result = engine.fetch_smart("A")

        assert result.was_incremental is False
        assert result.payload == {"x": 4}

    def test_unsupported_delta_falls_back(self, engine, remote, cache, clock):
        seed_stale(cache, clock)
        remote.revisions["A"] = "r2"
        remote.delta_errors["A"] = UnsupportedOperation("since not supported")
        remote.full["A"] = encode({"x": 5})

        result = engine.fetch_smart("A")

        assert result.was_incremental is False
        assert remote.count("fetch_full") == 1

    def test_delta_network_failure_falls_back(self, engine, remote, cache, clock):
        seed_stale(cache, clock)
        remote.revisions["A"] = "r2"
        remote.delta_errors["A"] = NetworkFailure("reset")
        remote.full["A"] = encode({"x": 6})

        assert engine.fetch_smart("A").payload == {"x": 6}

    def test_custom_merge(self, cache, coalescer, remote, policy, clock):
        def merge(base, delta):
            return {**base, **delta}

        engine = IncrementalSyncEngine(
            cache=cache,
            coalescer=coalescer,
            remote=remote,
            parser=JsonRecordParser(),
            default_policy=policy,
            merge_delta=merge,
        )
        seed_stale(cache, clock, payload={"a": 1})
        remote.revisions["A"] = "r2"
        remote.deltas["A"] = encode({"b": 2})

        assert engine.fetch_smart("A").payload == {"a": 1, "b": 2}


class TestFailures:

    def test_parse_failure_on_full_fetch_is_terminal(self, engine, remote, cache):
        remote.revisions["A"] = "r1"
        remote.full["A"] = b"definitely not json"

        with pytest.raises(ParseFailure):
            engine.fetch_smart("A")
        assert cache.get("A") is None

    def test_network_failure_surfaces(self, engine, remote):
        remote.revisions["A"] = "r1"
        remote.full_errors["A"] = NetworkFailure("connection refused")

        with pytest.raises(NetworkFailure):
            engine.fetch_smart("A")

    def test_unexpected_revision_lookup_error_does_not_abort(self, engine, remote):
        remote.revision_errors["blocks:did:plc:x"] = ValueError("Expecting value")
        remote.full["blocks:did:plc:x"] = encode({"x": 1})

        result = engine.fetch_smart("blocks:did:plc:x")

        assert result.payload == {"x": 1}
        assert result.revision.startswith("unknown-")

    def test_storage_read_failure_treated_as_miss(self, engine, remote, cache, monkeypatch):
        cache.put("A", {"x": 0}, "r1", 1)
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})

        def broken_get(key):
            raise StorageUnavailable("locked")

        monkeypatch.setattr(cache, "get", broken_get)
        result = engine.fetch_smart("A")

        assert result.was_cached is False
        assert result.payload == {"x": 1}

    def test_failed_write_is_retried(self, engine, remote, cache, monkeypatch):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})
        real_put = cache.put
        attempts = []

        def flaky_put(*args):
            attempts.append(args)
            if len(attempts) == 1:
                raise StorageUnavailable("busy")
            return real_put(*args)

        monkeypatch.setattr(cache, "put", flaky_put)
        engine.fetch_smart("A")

        assert len(attempts) == 2

    def test_persistent_write_failure_surfaces(self, engine, remote, cache, monkeypatch):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})

        def broken_put(*args):
            raise StorageUnavailable("disk full")

        monkeypatch.setattr(cache, "put", broken_put)
        with pytest.raises(StorageUnavailable):
            engine.fetch_smart("A")

    def test_unserializable_records_fail_without_retry(self, cache, coalescer, remote, policy, clock):
        class SetParser:
            def parse(self, data):
                return {"subjects": {"did:plc:a", "did:plc:b"}}

        engine = IncrementalSyncEngine(
            cache=cache,
            coalescer=coalescer,
            remote=remote,
            parser=SetParser(),
            reporter=ProgressReporter(clock=clock),
            default_policy=policy,
            storage_write_retries=3,
        )
        remote.full["A"] = b"{}"

        with pytest.raises(ParseFailure):
            engine.fetch_smart("A")
        assert cache.get("A") is None
        assert remote.count("fetch_full") == 1


# =============================================================================
# Progress, status and resolved revisions
# =============================================================================

class TestProgressAndStatus:

    def test_progress_stages_reported(self, engine, remote):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})
        stages = []

        engine.fetch_smart("A", FetchOptions(on_progress=lambda e: stages.append(e.stage)))

        assert stages[0] == ProgressStage.CHECKING
        assert ProgressStage.DOWNLOADING in stages
        assert ProgressStage.PARSING in stages
        assert ProgressStage.SAVING in stages
        assert stages[-1] == ProgressStage.COMPLETE

    def test_failing_progress_callback_is_ignored(self, engine, remote):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})

        def explode(event):
            raise RuntimeError("ui gone")

        result = engine.fetch_smart("A", FetchOptions(on_progress=explode))
        assert result.payload == {"x": 1}

    def test_error_stage_emitted(self, engine, remote):
        remote.revisions["A"] = "r1"
        remote.full_errors["A"] = NetworkFailure("down")

        with pytest.raises(NetworkFailure):
            engine.fetch_smart("A")
        assert engine.reporter.latest("A").stage == ProgressStage.ERROR

    def test_status_without_cache(self, engine, remote):
        remote.revisions["A"] = "r7"

        status = engine.get_cache_status("A")

        assert status.has_cached is False
        assert status.is_stale is True
        assert status.remote_revision == "r7"

    def test_status_with_cache_is_non_mutating(self, engine, remote, cache, clock):
        cache.put("A", {"app.bsky.graph.block": [{}, {}], "profile": {}}, "r1", 77)
        fetched_at = cache.get("A").fetched_at
        remote.revisions["A"] = "r2"

        status = engine.get_cache_status("A")

        assert status.has_cached is True
        assert status.is_stale is False
        assert status.cached_revision == "r1"
        assert status.remote_revision == "r2"
        assert status.cached_size == 77
        assert status.record_counts == {"app.bsky.graph.block": 2}
        assert cache.get("A").fetched_at == fetched_at

    def test_status_stale_after_ttl(self, engine, remote, cache, clock):
        seed_stale(cache, clock, revision="r1")
        remote.revisions["A"] = "r2"
        assert engine.get_cache_status("A").is_stale is True

    def test_run_id_memoizes_revision_lookups(self, engine, remote):
        remote.revisions["A"] = "r1"
        remote.full["A"] = encode({"x": 1})

        engine.fetch_smart("A", FetchOptions(force_refresh=True, run_id="run1"))
        engine.fetch_smart("A", FetchOptions(force_refresh=True, run_id="run1"))

        assert remote.count("get_revision", "A") == 1
        assert remote.count("fetch_full", "A") == 2


def test_count_records_ignores_non_lists():
    assert count_records({"a": [1, 2], "b": "x"}) == {"a": 2}
    assert count_records(None) == {}

"""
Tests for the cache-aside orchestrator.
"""

import threading
import time

import pytest

from cache import MetricsCache, get_fetcher, register_fetcher, FETCHERS
from cache_keys import make_key
from cache_store import MemoryCacheStore
from errors import NotConnected, TokenExpired, UpstreamError
from fetch_log import STATUS_CACHED, STATUS_FAILED, STATUS_SUCCESS


KEY = make_key("user-1", "linkedin", "month")


class CountingFetch:
    def __init__(self, payload=None, error=None):
        self.payload = payload if payload is not None else {"dataAvailable": True, "allPosts": [1, 2, 3]}
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return dict(self.payload)


class CountingStore(MemoryCacheStore):
    def __init__(self, clock):
        super().__init__(clock=clock)
        self.puts = 0

    def put(self, key, value, ttl_minutes, fingerprint=None):
        self.puts += 1
        return super().put(key, value, ttl_minutes, fingerprint)


class TestCacheHitAndExpiry:

    def test_miss_fetches_stores_and_logs_success(self, metrics_cache, store, fetch_log):
        fetch = CountingFetch()

        result = metrics_cache.get_or_fetch(KEY, 30, fetch)

        assert fetch.calls == 1
        assert result["dataAvailable"] is True
        assert store.get(KEY) is not None
        entries = fetch_log.entries_for_user("user-1")
        assert [entry.status for entry in entries] == [STATUS_SUCCESS]
        assert entries[0].records_fetched == 3
        assert entries[0].cache_hit is False

    def test_hit_before_ttl_does_not_fetch(self, metrics_cache, clock, fetch_log):
        fetch = CountingFetch()
        metrics_cache.get_or_fetch(KEY, 30, fetch)
        clock.advance(minutes=29)

        result = metrics_cache.get_or_fetch(KEY, 30, fetch)

        assert fetch.calls == 1
        assert result["cached"] is True
        assert result["cacheAge"] == 29
        assert result["allPosts"] == [1, 2, 3]
        last = fetch_log.entries_for_user("user-1")[-1]
        assert last.status == STATUS_CACHED
        assert last.cache_hit is True

    def test_after_ttl_fetches_exactly_once(self, metrics_cache, clock):
        fetch = CountingFetch()
        metrics_cache.get_or_fetch(KEY, 30, fetch)
        clock.advance(minutes=30, seconds=1)

        metrics_cache.get_or_fetch(KEY, 30, fetch)
        metrics_cache.get_or_fetch(KEY, 30, fetch)

        assert fetch.calls == 2

    def test_force_refresh_bypasses_cache_but_writes(self, clock, fetch_log):
        store = CountingStore(clock)
        cache = MetricsCache(store, fetch_log)
        fetch = CountingFetch()
        cache.get_or_fetch(KEY, 30, fetch)

        cache.get_or_fetch(KEY, 30, fetch, force_refresh=True)

        assert fetch.calls == 2
        assert store.puts == 2

    def test_fingerprint_change_is_a_miss(self, metrics_cache):
        fetch = CountingFetch()
        metrics_cache.get_or_fetch(KEY, 10080, fetch, fingerprint="ig=a|fb=b")

        metrics_cache.get_or_fetch(KEY, 10080, fetch, fingerprint="ig=a|fb=c")
        metrics_cache.get_or_fetch(KEY, 10080, fetch, fingerprint="ig=a|fb=c")

        assert fetch.calls == 2

    def test_normalize_runs_on_raw_payload(self, metrics_cache, store):
        fetch = CountingFetch(payload={"raw": 5})

        result = metrics_cache.get_or_fetch(KEY, 30, fetch, normalize=lambda raw: {"doubled": raw["raw"] * 2})

        assert result["doubled"] == 10
        assert store.get(KEY).value["doubled"] == 10

    def test_unreadable_cache_entry_is_refetched(self, clock, fetch_log):
        from errors import InvalidCachedPayload

        class BrokenStore(MemoryCacheStore):
            def get(self, key):
                raise InvalidCachedPayload("k", "corrupt")

        cache = MetricsCache(BrokenStore(clock=clock), fetch_log)
        fetch = CountingFetch()

        result = cache.get_or_fetch(KEY, 30, fetch)

        assert fetch.calls == 1
        assert result["dataAvailable"] is True


class TestFailures:

    @pytest.mark.parametrize(
        "error, reason",
        [
            (NotConnected("linkedin"), "not_connected"),
            (TokenExpired("linkedin"), "token_expired"),
            (UpstreamError(status=500, message="LinkedIn is down"), "LinkedIn is down"),
            (RuntimeError("boom"), "boom"),
        ],
    )
    def test_failure_is_logged_and_not_cached(self, metrics_cache, store, fetch_log, error, reason):
        result = metrics_cache.get_or_fetch(KEY, 30, CountingFetch(error=error))

        assert result["dataAvailable"] is False
        assert result["reason"] == reason
        assert store.get(KEY) is None
        entry = fetch_log.entries_for_user("user-1")[-1]
        assert entry.status == STATUS_FAILED
        assert entry.error

    def test_authorize_failure_skips_cache_and_fetch(self, metrics_cache, fetch_log):
        fetch = CountingFetch()
        metrics_cache.get_or_fetch(KEY, 30, fetch)

        def authorize():
            raise NotConnected("linkedin")

        result = metrics_cache.get_or_fetch(KEY, 30, fetch, authorize=authorize)

        assert result["reason"] == "not_connected"
        assert result["requiresConnection"] is True
        assert fetch.calls == 1
        assert fetch_log.entries_for_user("user-1")[-1].status == STATUS_FAILED

    def test_unavailable_result_is_not_cached(self, metrics_cache, store, fetch_log):
        fetch = CountingFetch(payload={"dataAvailable": False, "reason": "no organizations"})

        result = metrics_cache.get_or_fetch(KEY, 30, fetch)

        assert result["reason"] == "no organizations"
        assert store.get(KEY) is None
        assert fetch_log.entries_for_user("user-1")[-1].error == "no organizations"

    def test_store_write_failure_still_returns_result(self, clock, fetch_log):
        class ReadOnlyStore(MemoryCacheStore):
            def put(self, key, value, ttl_minutes, fingerprint=None):
                raise RuntimeError("read only")

        cache = MetricsCache(ReadOnlyStore(clock=clock), fetch_log)

        result = cache.get_or_fetch(KEY, 30, CountingFetch())

        assert result["dataAvailable"] is True
        assert fetch_log.entries_for_user("user-1")[-1].status == STATUS_SUCCESS


class TestSingleFlight:

    def test_concurrent_misses_share_one_fetch_and_one_write(self, clock, fetch_log):
        store = CountingStore(clock)
        cache = MetricsCache(store, fetch_log)
        release = threading.Event()
        calls = []

        def slow_fetch():
            calls.append(1)
            release.wait(timeout=5)
            return {"dataAvailable": True, "value": "shared"}

        results = []

        def worker():
            results.append(cache.get_or_fetch(KEY, 30, slow_fetch))

        leader = threading.Thread(target=worker)
        leader.start()
        deadline = time.monotonic() + 5
        while cache.in_flight() == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

        followers = [threading.Thread(target=worker) for _ in range(3)]
        for thread in followers:
            thread.start()
        time.sleep(0.2)
        release.set()
        for thread in [leader] + followers:
            thread.join(timeout=5)

        assert len(calls) == 1
        assert store.puts == 1
        assert len(results) == 4
        assert all(result["value"] == "shared" for result in results)
        assert cache.in_flight() == 0

    def test_concurrent_callers_with_other_fingerprint_fetch_their_own(self, metrics_cache):
        release = threading.Event()

        def slow_fetch_a():
            release.wait(timeout=5)
            return {"dataAvailable": True, "value": "A"}

        def fetch_c():
            return {"dataAvailable": True, "value": "C"}

        results = {}

        def first():
            results["a"] = metrics_cache.get_or_fetch(KEY, 30, slow_fetch_a, fingerprint="fb=B")

        leader = threading.Thread(target=first)
        leader.start()
        deadline = time.monotonic() + 5
        while metrics_cache.in_flight() == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

        other = threading.Thread(
            target=lambda: results.setdefault("c", metrics_cache.get_or_fetch(KEY, 30, fetch_c, fingerprint="fb=C"))
        )
        other.start()
        other.join(timeout=5)
        release.set()
        leader.join(timeout=5)

        assert results["c"]["value"] == "C"
        assert results["a"]["value"] == "A"

    def test_different_keys_do_not_coalesce(self, metrics_cache):
        fetch = CountingFetch()

        metrics_cache.get_or_fetch(KEY, 30, fetch)
        metrics_cache.get_or_fetch(make_key("user-2", "linkedin", "month"), 30, fetch)

        assert fetch.calls == 2


class TestFetcherRegistry:

    def test_register_and_get(self, monkeypatch):
        monkeypatch.setattr("cache.FETCHERS", dict(FETCHERS))

        def fetcher(token):
            return {}

        register_fetcher("LinkedIn", fetcher)

        assert get_fetcher("linkedin") is fetcher

    def test_unknown_platform(self):
        with pytest.raises(KeyError):
            get_fetcher("myspace")

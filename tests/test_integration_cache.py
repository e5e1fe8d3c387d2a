"""IntegrationDataCache: per-key status, retries, freshness and single-flight fetches.

The fetch function is a plain async fake; no HTTP is involved. retry delays
are zeroed so retry loops run without sleeping.
"""

from __future__ import annotations

import asyncio

import pytest

from devops_flow.graph.model import NodeKind
from devops_flow.integrations.cache import (
    INITIAL_SNAPSHOT,
    CacheKey,
    IntegrationDataCache,
    ListingStatus,
)
from devops_flow.integrations.errors import AuthError, IntegrationError, NetworkError
from devops_flow.integrations.models import JenkinsJob, K8sNamespace, SonarQubeProject


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeFetch:
    """Records calls; returns items or raises per (kind, integration id)."""

    def __init__(self) -> None:
        self.calls: list[tuple[NodeKind, str]] = []
        self.results: dict[str, object] = {}

    async def __call__(self, kind: NodeKind, integration_id: str):
        self.calls.append((kind, integration_id))
        result = self.results.get(integration_id, [])
        if isinstance(result, list) and result and isinstance(result[0], BaseException):
            result = result.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    def count(self, integration_id: str) -> int:
        return sum(1 for _, i in self.calls if i == integration_id)


def _cache(fetch, clock=None) -> IntegrationDataCache:
    return IntegrationDataCache(fetch, retry_base_delay=0, clock=clock or FakeClock())


_JOBS = [JenkinsJob(name="build"), JenkinsJob(name="deploy")]


# ---------------------------------------------------------------------------
# Status model
# ---------------------------------------------------------------------------


class TestStatus:
    @pytest.mark.asyncio
    async def test_empty_integration_id_is_initial_and_never_fetches(self):
        fetch = FakeFetch()
        cache = _cache(fetch)
        assert cache.read(NodeKind.JENKINS, None) is INITIAL_SNAPSHOT
        assert cache.read(NodeKind.JENKINS, "") is INITIAL_SNAPSHOT
        await asyncio.sleep(0)
        assert fetch.calls == []
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_default_kind_is_initial(self):
        fetch = FakeFetch()
        cache = _cache(fetch)
        assert cache.read(NodeKind.DEFAULT, "x") is INITIAL_SNAPSHOT
        assert fetch.calls == []

    @pytest.mark.asyncio
    async def test_first_read_is_loading_then_success(self):
        fetch = FakeFetch()
        fetch.results["ci"] = list(_JOBS)
        cache = _cache(fetch)

        first = cache.read(NodeKind.JENKINS, "ci")
        assert first.status == ListingStatus.LOADING
        assert first.is_fetching is True

        done = await cache.ensure(NodeKind.JENKINS, "ci")
        assert done.status == ListingStatus.SUCCESS
        assert [j.name for j in done.items] == ["build", "deploy"]
        assert done.is_fetching is False
        assert done.error is None

    @pytest.mark.asyncio
    async def test_empty_listing_is_success(self):
        fetch = FakeFetch()
        fetch.results["ci"] = []
        snapshot = await _cache(fetch).ensure(NodeKind.JENKINS, "ci")
        assert snapshot.status == ListingStatus.SUCCESS
        assert snapshot.items == ()

    @pytest.mark.asyncio
    async def test_peek_has_no_side_effects(self):
        fetch = FakeFetch()
        cache = _cache(fetch)
        assert cache.peek(NodeKind.JENKINS, "ci") is INITIAL_SNAPSHOT
        await asyncio.sleep(0)
        assert fetch.calls == []
        assert CacheKey(NodeKind.JENKINS, "ci") not in cache


# ---------------------------------------------------------------------------
# Errors and retries
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_401_is_not_retried(self):
        fetch = FakeFetch()
        fetch.results["k8s-dev"] = AuthError("Unauthorized", status=401)
        snapshot = await _cache(fetch).ensure(NodeKind.KUBERNETES, "k8s-dev")

        assert fetch.count("k8s-dev") == 1
        assert snapshot.status == ListingStatus.ERROR
        assert snapshot.error.status == 401
        assert snapshot.items == ()

    @pytest.mark.asyncio
    async def test_403_is_retried(self):
        fetch = FakeFetch()
        fetch.results["k8s-dev"] = AuthError("Forbidden", status=403)
        await _cache(fetch).ensure(NodeKind.KUBERNETES, "k8s-dev")
        assert fetch.count("k8s-dev") == 4

    @pytest.mark.asyncio
    async def test_network_error_retried_three_times(self):
        fetch = FakeFetch()
        fetch.results["ci"] = NetworkError("connection refused")
        snapshot = await _cache(fetch).ensure(NodeKind.JENKINS, "ci")
        assert fetch.count("ci") == 4
        assert snapshot.status == ListingStatus.ERROR
        assert isinstance(snapshot.error, NetworkError)

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        fetch = FakeFetch()
        fetch.results["ci"] = [NetworkError("a"), NetworkError("b"), *_JOBS]
        snapshot = await _cache(fetch).ensure(NodeKind.JENKINS, "ci")
        assert fetch.count("ci") == 3
        assert snapshot.status == ListingStatus.SUCCESS
        assert len(snapshot.items) == 2

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self):
        fetch = FakeFetch()
        fetch.results["ci"] = RuntimeError("boom")
        snapshot = await _cache(fetch).ensure(NodeKind.JENKINS, "ci")
        assert isinstance(snapshot.error, IntegrationError)
        assert "boom" in str(snapshot.error)

    @pytest.mark.asyncio
    async def test_error_keeps_previous_items(self):
        fetch = FakeFetch()
        fetch.results["ci"] = list(_JOBS)
        cache = _cache(fetch)
        await cache.ensure(NodeKind.JENKINS, "ci")

        fetch.results["ci"] = NetworkError("down")
        snapshot = await cache.refresh(NodeKind.JENKINS, "ci")
        assert snapshot.status == ListingStatus.ERROR
        assert len(snapshot.items) == 2

    @pytest.mark.asyncio
    async def test_error_entry_not_refetched_on_read(self):
        clock = FakeClock()
        fetch = FakeFetch()
        fetch.results["k8s"] = AuthError(status=401)
        cache = _cache(fetch, clock)
        await cache.ensure(NodeKind.KUBERNETES, "k8s")

        clock.now = 45.0
        snapshot = cache.read(NodeKind.KUBERNETES, "k8s")
        assert snapshot.status == ListingStatus.ERROR
        assert snapshot.is_fetching is False
        assert fetch.count("k8s") == 1

    @pytest.mark.asyncio
    async def test_invalidate_allows_error_refetch(self):
        fetch = FakeFetch()
        fetch.results["k8s"] = AuthError(status=401)
        cache = _cache(fetch)
        await cache.ensure(NodeKind.KUBERNETES, "k8s")

        fetch.results["k8s"] = [K8sNamespace(name="default")]
        assert cache.invalidate(NodeKind.KUBERNETES, "k8s") == 1
        snapshot = await cache.ensure(NodeKind.KUBERNETES, "k8s")
        assert snapshot.status == ListingStatus.SUCCESS


# ---------------------------------------------------------------------------
# Key independence
# ---------------------------------------------------------------------------


class TestIndependence:
    @pytest.mark.asyncio
    async def test_failure_of_one_key_does_not_affect_another(self):
        fetch = FakeFetch()
        fetch.results["a"] = AuthError(status=401)
        fetch.results["b"] = list(_JOBS)
        cache = _cache(fetch)

        a = await cache.ensure(NodeKind.JENKINS, "a")
        b = await cache.ensure(NodeKind.JENKINS, "b")

        assert a.status == ListingStatus.ERROR
        assert b.status == ListingStatus.SUCCESS
        assert cache.peek(NodeKind.JENKINS, "b").error is None

    @pytest.mark.asyncio
    async def test_same_id_different_kind_is_a_different_key(self):
        fetch = FakeFetch()
        cache = _cache(fetch)
        await cache.ensure(NodeKind.JENKINS, "shared")
        await cache.ensure(NodeKind.SONARQUBE, "shared")
        assert [k for k, _ in fetch.calls] == [NodeKind.JENKINS, NodeKind.SONARQUBE]
        assert len(cache) == 2


# ---------------------------------------------------------------------------
# Freshness and eviction
# ---------------------------------------------------------------------------


class TestFreshness:
    @pytest.mark.asyncio
    async def test_fast_source_refetched_after_30s_without_flicker(self):
        clock = FakeClock()
        fetch = FakeFetch()
        fetch.results["ci"] = list(_JOBS)
        cache = _cache(fetch, clock)
        await cache.ensure(NodeKind.JENKINS, "ci")

        clock.now = 10.0
        assert cache.read(NodeKind.JENKINS, "ci").is_fetching is False
        assert fetch.count("ci") == 1

        clock.now = 31.0
        stale = cache.read(NodeKind.JENKINS, "ci")
        assert stale.is_fetching is True
        assert stale.status == ListingStatus.SUCCESS
        assert len(stale.items) == 2

        await cache.ensure(NodeKind.JENKINS, "ci")
        assert fetch.count("ci") == 2

    @pytest.mark.asyncio
    async def test_slow_source_stays_fresh_for_five_minutes(self):
        clock = FakeClock()
        fetch = FakeFetch()
        fetch.results["sq"] = [SonarQubeProject(key="svc", name="Service")]
        cache = _cache(fetch, clock)
        await cache.ensure(NodeKind.SONARQUBE, "sq")

        clock.now = 120.0
        cache.read(NodeKind.SONARQUBE, "sq")
        assert fetch.count("sq") == 1

        clock.now = 301.0
        assert cache.read(NodeKind.SONARQUBE, "sq").is_fetching is True

    @pytest.mark.asyncio
    async def test_idle_entries_are_evicted(self):
        clock = FakeClock()
        fetch = FakeFetch()
        cache = _cache(fetch, clock)
        await cache.ensure(NodeKind.GITLAB, "gl")
        await cache.ensure(NodeKind.KEYCLOAK, "kc")

        clock.now = 61.0
        assert cache.evict_inactive() == 1
        assert CacheKey(NodeKind.GITLAB, "gl") not in cache
        assert CacheKey(NodeKind.KEYCLOAK, "kc") in cache

    @pytest.mark.asyncio
    async def test_refresh_refetches_fresh_entry(self):
        fetch = FakeFetch()
        cache = _cache(fetch)
        await cache.ensure(NodeKind.GITLAB, "gl")
        await cache.refresh(NodeKind.GITLAB, "gl")
        assert fetch.count("gl") == 2

    @pytest.mark.asyncio
    async def test_invalidate_whole_source_type(self):
        fetch = FakeFetch()
        cache = _cache(fetch)
        await cache.ensure(NodeKind.GITLAB, "a")
        await cache.ensure(NodeKind.GITLAB, "b")
        await cache.ensure(NodeKind.JENKINS, "c")
        assert cache.invalidate(NodeKind.GITLAB) == 2


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_fetch(self):
        release = asyncio.Event()
        calls = 0

        async def slow_fetch(kind, integration_id):
            nonlocal calls
            calls += 1
            await release.wait()
            return list(_JOBS)

        cache = _cache(slow_fetch)
        cache.read(NodeKind.JENKINS, "ci")
        cache.read(NodeKind.JENKINS, "ci")
        waiter = asyncio.create_task(cache.ensure(NodeKind.JENKINS, "ci"))
        await asyncio.sleep(0)
        release.set()
        snapshot = await waiter

        assert calls == 1
        assert snapshot.status == ListingStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_refetch(self):
        release = asyncio.Event()
        calls = active = peak = 0

        async def slow_fetch(kind, integration_id):
            nonlocal calls, active, peak
            calls += 1
            active += 1
            peak = max(peak, active)
            try:
                await release.wait()
                return list(_JOBS)
            finally:
                active -= 1

        cache = _cache(slow_fetch)
        cache.read(NodeKind.JENKINS, "ci")
        refreshes = asyncio.gather(
            cache.refresh(NodeKind.JENKINS, "ci"),
            cache.refresh(NodeKind.JENKINS, "ci"),
        )
        await asyncio.sleep(0)
        release.set()
        first, second = await refreshes

        assert peak == 1
        assert calls == 2
        assert first.status == second.status == ListingStatus.SUCCESS
        assert cache.peek(NodeKind.JENKINS, "ci").is_fetching is False

    @pytest.mark.asyncio
    async def test_listeners_see_loading_and_success(self):
        fetch = FakeFetch()
        cache = _cache(fetch)
        seen: list[ListingStatus] = []
        unsubscribe = cache.subscribe(lambda key, snap: seen.append(snap.status))
        await cache.ensure(NodeKind.JENKINS, "ci")
        unsubscribe()
        assert seen == [ListingStatus.LOADING, ListingStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_aclose_cancels_in_flight_fetch(self):
        async def never(kind, integration_id):
            await asyncio.Event().wait()

        cache = _cache(never)
        assert cache.read(NodeKind.JENKINS, "ci").is_fetching is True
        await asyncio.sleep(0)
        await cache.aclose()
        assert cache.peek(NodeKind.JENKINS, "ci").is_fetching is False

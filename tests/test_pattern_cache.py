import asyncio

import pytest

from packages.common.circuit_breaker import CircuitBreaker, CircuitState
from packages.domain.categorization.errors import DependencyUnavailable
from packages.domain.categorization.pattern_cache import PatternCache
from packages.domain.categorization.schemas import UserPreference
from tests.conftest import (
    FailingSharedCache,
    FakeClock,
    InMemoryPatternStore,
    InMemorySharedCache,
    SlowSharedCache,
)


@pytest.fixture
def store():
    store = InMemoryPatternStore()
    store.seed("starbucks", "coffee")
    store.seed("chase sapphire", "fees", metadata={"scope": "chase"})
    store.seed("amex gold", "fees", metadata={"scope": "amex"})
    return store


@pytest.fixture
def clock():
    return FakeClock()


def _cache(store, shared=None, **kwargs):
    return PatternCache(store, shared, **kwargs)


@pytest.mark.asyncio
async def test_second_fetch_is_served_from_memory(store):
    cache = _cache(store)
    first = await cache.fetch("all")
    second = await cache.fetch("all")

    assert isinstance(first, tuple)
    assert first == second
    assert store.list_active_calls == 1
    metrics = cache.metrics()
    assert metrics["memory_hits"] == 1
    assert metrics["misses"] == 1
    assert metrics["hit_rate"] == 0.5


@pytest.mark.asyncio
async def test_scoped_fetch_includes_global_patterns(store):
    cache = _cache(store)
    values = {p.pattern_value for p in await cache.fetch("chase")}
    assert values == {"starbucks", "chase sapphire"}
    assert len(await cache.fetch(None)) == 3


@pytest.mark.asyncio
async def test_shared_tier_serves_other_processes(store):
    shared = InMemorySharedCache()
    await _cache(store, shared).fetch("all")
    assert store.list_active_calls == 1
    assert all(key.startswith("cat:patterns:v1:all:") for key in shared.data)

    other_process = _cache(store, shared)
    patterns = await other_process.fetch("all")

    assert store.list_active_calls == 1
    assert {p.pattern_value for p in patterns} == {"starbucks", "chase sapphire", "amex gold"}
    assert other_process.metrics()["shared_hits"] == 1


@pytest.mark.asyncio
async def test_memory_entries_expire(store, clock):
    cache = _cache(store, memory_ttl=300, clock=clock)
    await cache.fetch("all")
    clock.advance(301)
    await cache.fetch("all")
    assert store.list_active_calls == 2


@pytest.mark.asyncio
async def test_invalidate_scope_drops_scope_and_all_views(store):
    shared = InMemorySharedCache()
    cache = _cache(store, shared)
    for scope in ("chase", "amex", "all"):
        await cache.fetch(scope)
    assert store.list_active_calls == 3

    await cache.invalidate("chase")

    assert {key.split(":")[3] for key in shared.data} == {"amex"}
    await cache.fetch("amex")
    assert store.list_active_calls == 3
    await cache.fetch("chase")
    await cache.fetch("all")
    assert store.list_active_calls == 5


@pytest.mark.asyncio
async def test_invalidate_none_flushes_everything(store):
    shared = InMemorySharedCache()
    cache = _cache(store, shared)
    await cache.fetch("chase")
    await cache.fetch("amex")

    await cache.invalidate(None)

    assert shared.data == {}
    await cache.fetch("amex")
    assert store.list_active_calls == 3


@pytest.mark.asyncio
async def test_shared_failures_degrade_to_store_and_open_breaker(store):
    shared = FailingSharedCache()
    breaker = CircuitBreaker("shared", failure_threshold=2, reset_timeout=60)
    cache = _cache(store, shared, breaker=breaker, memory_ttl=0)

    for _ in range(4):
        patterns = await cache.fetch("all")
        assert len(patterns) == 3

    assert breaker.state is CircuitState.OPEN
    assert shared.calls == 2
    assert cache.metrics()["shared_errors"] == 2


@pytest.mark.asyncio
async def test_slow_shared_tier_times_out(store):
    shared = SlowSharedCache()
    cache = _cache(store, shared, shared_timeout=0.01)
    patterns = await cache.fetch("all")
    assert len(patterns) == 3
    assert cache.metrics()["shared_errors"] == 1


@pytest.mark.asyncio
async def test_corrupt_shared_entry_is_a_miss(store):
    shared = InMemorySharedCache()
    cache = _cache(store, shared)
    shared.data[cache._key("all", cache._day_bucket())] = b"not json"

    patterns = await cache.fetch("all")

    assert len(patterns) == 3
    assert store.list_active_calls == 1


@pytest.mark.asyncio
async def test_store_failure_raises_dependency_unavailable(store):
    store.fail_reads = True
    with pytest.raises(DependencyUnavailable):
        await _cache(store).fetch("all")


@pytest.mark.asyncio
async def test_invalidation_during_fetch_is_not_overwritten(store):
    cache = _cache(store)
    original = store.list_active

    async def list_active_then_invalidate(scope="all"):
        patterns = await original(scope)
        await cache.invalidate(None)
        return patterns

    store.list_active = list_active_then_invalidate
    await cache.fetch("all")
    store.list_active = original

    await cache.fetch("all")
    assert store.list_active_calls == 2


@pytest.mark.asyncio
async def test_warm_reports_and_never_raises(store):
    cache = _cache(store)
    assert await cache.warm(["all", "chase"]) == {"scopes_warmed": 2, "scopes_failed": 0, "patterns": 5}

    broken = InMemoryPatternStore()
    broken.fail_reads = True
    stats = await _cache(broken).warm()
    assert stats["scopes_failed"] == 1


@pytest.mark.asyncio
async def test_shutdown_closes_shared_tier_once(store):
    shared = InMemorySharedCache()
    cache = _cache(store, shared)
    await cache.shutdown()
    await cache.shutdown()
    assert shared.closed


@pytest.mark.asyncio
async def test_cancelled_half_open_trial_frees_the_breaker(store, clock):
    breaker = CircuitBreaker("shared", failure_threshold=1, reset_timeout=30, clock=clock)
    cache = _cache(store, SlowSharedCache(), breaker=breaker, shared_timeout=5)
    breaker.record_failure()
    clock.advance(31)

    task = asyncio.create_task(cache.fetch("all"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    clock.advance(1000)
    assert breaker.allow_request()


@pytest.mark.asyncio
async def test_preferences_are_cached_until_forgotten(store, clock):
    cache = _cache(store, clock=clock)
    assert await cache.fetch_preference("blue bottle coffee") is None

    store.preferences["blue bottle coffee"] = UserPreference(merchant_key="blue bottle coffee", category_id="coffee")
    assert await cache.fetch_preference("blue bottle coffee") is None
    assert cache.metrics()["preference_hits"] == 1

    cache.forget_preference("blue bottle coffee")
    assert (await cache.fetch_preference("blue bottle coffee")).category_id == "coffee"

    store.preferences.clear()
    clock.advance(301)
    assert await cache.fetch_preference("blue bottle coffee") is None


@pytest.mark.asyncio
async def test_preference_lookup_failure_raises_dependency_unavailable(store):
    store.fail_reads = True
    with pytest.raises(DependencyUnavailable):
        await _cache(store).fetch_preference("starbucks")

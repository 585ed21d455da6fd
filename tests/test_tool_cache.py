import pytest

from agent.event_bus import TOOL_CACHE_HIT
from agent.tool_cache import (
    ToolCache,
    cache_key,
    execute_with_cache,
    get_tool_cache,
    is_error_result,
    reset_tool_cache,
)


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


def test_key_is_order_independent_and_fixed_width():
    assert cache_key("t", {"a": 1, "b": 2}) == cache_key("t", {"b": 2, "a": 1})
    assert cache_key("t", {"a": 1}) != cache_key("u", {"a": 1})
    assert len(cache_key("t", {})) == 16


def test_set_then_get(clock, bus):
    cache = ToolCache(clock=clock)
    cache.set("t", {"a": 1}, {"rows": 3})
    assert cache.get("t", {"a": 1}) == {"rows": 3}
    assert cache.get("t", {"a": 2}) is None
    assert bus.get_events(types={TOOL_CACHE_HIT})


def test_entry_expires_exactly_at_ttl(clock):
    cache = ToolCache(ttl_seconds=60, clock=clock)
    cache.set("t", {}, "r")
    clock.now += 59
    assert cache.get("t", {}) == "r"
    clock.now += 1
    assert cache.get("t", {}) is None
    assert len(cache) == 0


def test_lru_eviction_respects_recent_reads(clock):
    cache = ToolCache(max_size=2, clock=clock)
    cache.set("a", {}, 1)
    cache.set("b", {}, 2)
    assert cache.get("a", {}) == 1  # b is now least recently used
    cache.set("c", {}, 3)
    assert cache.has("a", {})
    assert not cache.has("b", {})
    assert len(cache) == 2


def test_replacing_an_entry_does_not_evict(clock):
    cache = ToolCache(max_size=2, clock=clock)
    cache.set("a", {}, 1)
    cache.set("b", {}, 2)
    cache.set("a", {}, 10)
    assert len(cache) == 2
    assert cache.get("b", {}) == 2
    assert cache.get("a", {}) == 10


def test_cleanup_expired(clock):
    cache = ToolCache(ttl_seconds=10, clock=clock)
    cache.set("a", {}, 1)
    clock.now += 5
    cache.set("b", {}, 2)
    clock.now += 6
    assert cache.cleanup_expired() == 1
    assert cache.has("b", {})


def test_stats_and_clear(clock):
    cache = ToolCache(max_size=5, clock=clock)
    cache.set("a", {"x": 1}, 1)
    stats = cache.stats()
    assert stats["size"] == 1 and stats["max_size"] == 5
    assert stats["entries"][0]["tool_name"] == "a"
    cache.clear()
    assert len(cache) == 0


def test_is_error_result():
    assert is_error_result({"isError": True})
    assert is_error_result({"status": "error"})
    assert not is_error_result({"status": "success"})
    assert not is_error_result("error")


def test_execute_with_cache_runs_executor_once(clock):
    cache = ToolCache(clock=clock)
    calls = []

    def executor():
        calls.append(1)
        return {"rows": 1}

    assert execute_with_cache("t", {"a": 1}, executor, cache) == ({"rows": 1}, False)
    assert execute_with_cache("t", {"a": 1}, executor, cache) == ({"rows": 1}, True)
    assert len(calls) == 1


def test_execute_with_cache_does_not_store_errors(clock):
    cache = ToolCache(clock=clock)
    result, hit = execute_with_cache("t", {}, lambda: {"status": "error", "message": "x"}, cache)
    assert hit is False
    assert not cache.has("t", {})


def test_global_cache_is_shared_until_reset():
    first = get_tool_cache()
    assert get_tool_cache() is first
    reset_tool_cache()
    assert get_tool_cache() is not first


def test_execute_with_cache_uses_an_empty_injected_cache():
    injected = ToolCache()
    assert len(injected) == 0
    execute_with_cache("srv__load", {"file": "x"}, lambda: {"rows": 1}, injected)
    assert len(injected) == 1
    assert len(get_tool_cache()) == 0
    assert execute_with_cache("srv__load", {"file": "x"}, lambda: {"rows": 2}, injected) == ({"rows": 1}, True)

from __future__ import annotations

import pytest

from conftest import make_response
from lexrag.cache.response import (
    CacheEvent,
    ResponseCache,
    ResponseCacheConfig,
    format_cache_stats,
    generate_cache_key,
)
from lexrag.errors import PipelineError, PipelineErrorCode
from lexrag.schemas import QueryInput, Turn


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache(clock: FakeClock | None = None, **kwargs) -> ResponseCache:
    return ResponseCache(ResponseCacheConfig(**kwargs), clock=clock or FakeClock())


def test_key_normalizes_query_text():
    a = QueryInput(query="  What   is  the LAW? ")
    b = QueryInput(query="what is the law?")
    assert generate_cache_key(a) == generate_cache_key(b) == "what is the law?"


def test_key_distinguishes_different_queries():
    assert generate_cache_key(QueryInput(query="חוק החוזים")) != generate_cache_key(QueryInput(query="חוק המכר"))


def test_key_ignores_filter_key_and_list_order():
    a = QueryInput(query="q", filter={"law_id": ["b", "a"], "year_min": 1990})
    b = QueryInput(query="q", filter={"year_min": 1990, "law_id": ["a", "b"]})
    assert generate_cache_key(a) == generate_cache_key(b)
    assert generate_cache_key(a).startswith("q::")


def test_key_treats_none_filter_values_as_absent():
    assert generate_cache_key(QueryInput(query="q", filter={"law_id": None})) == "q"
    assert generate_cache_key(QueryInput(query="q", filter={})) == "q"
    assert generate_cache_key(QueryInput(query="q", filter={"a": 1, "b": None})) == generate_cache_key(
        QueryInput(query="q", filter={"a": 1})
    )


def test_key_filters_and_top_k_flags():
    query = QueryInput(query="q", filter={"a": 1}, top_k=3)
    assert generate_cache_key(query, include_filters=False) == "q"
    assert generate_cache_key(query, include_filters=False, include_top_k=True) == "q::k:3"
    assert generate_cache_key(query).count("::") == 1


def test_set_then_get_returns_copy():
    cache = _cache()
    query = QueryInput(query="q")
    response = make_response()
    cache.set(query, response)
    first = cache.get(query)
    second = cache.get(query)
    assert first == response
    assert first is not response
    assert first is not second


def test_two_misses_increment_misses_by_two():
    cache = _cache()
    cache.get(QueryInput(query="a"))
    cache.get(QueryInput(query="b"))
    stats = cache.get_stats()
    assert stats.misses == 2
    assert stats.hits == 0
    assert stats.hit_rate == 0.0


def test_hit_rate_and_access_count():
    cache = _cache()
    query = QueryInput(query="q")
    cache.set(query, make_response())
    cache.get(query)
    cache.get(QueryInput(query="other"))
    stats = cache.get_stats()
    assert stats.hits == 1
    assert stats.hit_rate == pytest.approx(0.5)
    assert cache.cached_queries()[0]["access_count"] == 2


def test_lru_evicts_least_recently_used():
    cache = _cache(max_size=2)
    a, b, c = (QueryInput(query=name) for name in "abc")
    cache.set(a, make_response())
    cache.set(b, make_response())
    assert cache.get(a) is not None
    cache.set(c, make_response())
    assert cache.size == 2
    assert cache.has(a)
    assert not cache.has(b)
    assert cache.has(c)
    assert cache.get_stats().evictions == 1


def test_resetting_existing_key_does_not_evict():
    cache = _cache(max_size=2)
    a, b = QueryInput(query="a"), QueryInput(query="b")
    cache.set(a, make_response())
    cache.set(b, make_response())
    cache.set(a, make_response(answer="new"))
    assert cache.size == 2
    assert cache.get_stats().evictions == 0
    assert cache.get(a).answer == "new"


def test_ttl_boundary():
    clock = FakeClock()
    cache = _cache(clock, ttl_ms=1_000)
    query = QueryInput(query="q")
    cache.set(query, make_response())
    clock.now += 999
    assert cache.get(query) is not None
    clock.now += 1
    assert cache.get(query) is None
    assert cache.size == 0
    assert cache.get_stats().expirations == 1


def test_non_positive_ttl_disables_expiry():
    clock = FakeClock()
    cache = _cache(clock, ttl_ms=0)
    query = QueryInput(query="q")
    cache.set(query, make_response())
    clock.now += 10**9
    assert cache.has(query)


def test_prune_returns_expired_count():
    clock = FakeClock()
    cache = _cache(clock, ttl_ms=100)
    cache.set(QueryInput(query="a"), make_response())
    cache.set(QueryInput(query="b"), make_response())
    clock.now += 50
    cache.set(QueryInput(query="c"), make_response())
    clock.now += 60
    assert cache.prune() == 2
    assert cache.size == 1
    assert cache.prune() == 0


def test_delete_and_clear():
    cache = _cache()
    query = QueryInput(query="q")
    cache.set(query, make_response())
    assert cache.delete(query) is True
    assert cache.delete(query) is False
    cache.set(query, make_response())
    cache.get(query)
    cache.clear()
    stats = cache.get_stats()
    assert stats.size == 0
    assert stats.hits == 0


def test_unserializable_filter_is_uncacheable():
    cache = _cache()
    query = QueryInput(query="q", filter={"bad": object()})
    cache.set(query, make_response())
    assert cache.size == 0
    assert cache.get(query) is None
    assert cache.has(query) is False
    assert cache.delete(query) is False


def test_cyclic_filter_is_uncacheable():
    cache = _cache()
    query = QueryInput(query="q", filter={"a": 1})
    query.filter["self"] = query.filter
    cache.set(query, make_response())
    assert cache.size == 0
    assert cache.get(query) is None
    assert cache.has(query) is False
    assert cache.delete(query) is False


def test_shared_non_cyclic_values_still_produce_a_key():
    shared = ["x", "y"]
    query = QueryInput(query="q", filter={"a": shared, "b": shared})
    assert generate_cache_key(query) == 'q::{"a":["x","y"],"b":["x","y"]}'


def test_observer_receives_events_and_errors_are_swallowed():
    events: list[CacheEvent] = []

    def observer(event: CacheEvent) -> None:
        events.append(event)
        raise RuntimeError("observer broke")

    cache = _cache(max_size=1, on_update=observer)
    cache.set(QueryInput(query="a"), make_response())
    cache.set(QueryInput(query="b"), make_response())
    cache.get(QueryInput(query="b"))
    cache.get(QueryInput(query="a"))
    cache.clear()
    assert [event.type for event in events] == ["set", "evict", "set", "hit", "miss", "clear"]
    assert events[0].query == "a"


def test_invalid_max_size_rejected():
    with pytest.raises(PipelineError) as excinfo:
        ResponseCacheConfig(max_size=0)
    assert excinfo.value.code is PipelineErrorCode.INVALID_CONFIG


def test_cached_queries_sorted_by_access_count():
    cache = _cache()
    a, b = QueryInput(query="a"), QueryInput(query="b")
    cache.set(a, make_response())
    cache.set(b, make_response())
    cache.get(b)
    cache.get(b)
    assert [item["query"] for item in cache.cached_queries()] == ["b", "a"]


def test_conversation_history_does_not_change_key():
    plain = QueryInput(query="q")
    conversational = QueryInput(query="q", conversation_history=(Turn(role="user", content="hi"),))
    assert generate_cache_key(plain) == generate_cache_key(conversational)


def test_format_cache_stats():
    cache = _cache(max_size=5)
    cache.set(QueryInput(query="a"), make_response())
    rendered = format_cache_stats(cache.get_stats())
    assert "Size: 1/5" in rendered
    assert "Hit Rate: 0.0%" in rendered

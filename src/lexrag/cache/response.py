"""LRU response cache with per-entry TTL for pipeline answers."""

from __future__ import annotations

import copy
import json
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Literal, Mapping, Optional

from lexrag.errors import PipelineError, PipelineErrorCode
from lexrag.metrics.observability import PipelineMetrics, get_logger
from lexrag.models import PipelineResponse
from lexrag.schemas import QueryInput

CacheEventType = Literal["hit", "miss", "set", "evict", "expire", "clear"]

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class CacheEvent:
    type: CacheEventType
    key: str | None = None
    query: str | None = None


@dataclass(frozen=True)
class ResponseCacheConfig:
    """Configuration for the response cache."""

    max_size: int = 100
    ttl_ms: int = 300_000
    include_filters_in_key: bool = True
    include_top_k_in_key: bool = False
    on_update: Optional[Callable[[CacheEvent], None]] = None

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise PipelineError(
                f"Response cache max_size must be positive, got {self.max_size}",
                PipelineErrorCode.INVALID_CONFIG,
            )


@dataclass(frozen=True)
class ResponseCacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    hit_rate: float
    evictions: int
    expirations: int
    created_at_ms: float
    last_access_ms: float


@dataclass
class CacheEntry:
    response: PipelineResponse
    cached_at_ms: float
    last_access_ms: float
    query: str
    access_count: int = 1


def normalize_query(query: str) -> str:
    return _WHITESPACE.sub(" ", query.strip().lower())


def _canonical(value: Any, _path: frozenset[int] = frozenset()) -> Any:
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        if id(value) in _path:
            raise ValueError("Filter contains a reference cycle")
        _path = _path | {id(value)}
    if isinstance(value, Mapping):
        return {
            str(k): _canonical(v, _path)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if v is not None
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_canonical(item, _path) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True, ensure_ascii=False))
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    raise TypeError(f"Unsupported filter value: {type(value).__name__}")


def serialize_filter(filter_: Mapping[str, Any] | None) -> str | None:
    """Render ``filter_`` with sorted keys and sorted sequences; ``None`` values count as absent."""

    if not filter_:
        return None
    canonical = _canonical(filter_)
    if not canonical:
        return None
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def generate_cache_key(
    query_input: QueryInput,
    *,
    include_filters: bool = True,
    include_top_k: bool = False,
) -> str:
    """Fingerprint a query input.

    Raises ``TypeError`` or ``ValueError`` when the filter cannot be serialized.
    """

    parts = [normalize_query(query_input.query)]
    if include_filters:
        serialized = serialize_filter(query_input.filter)
        if serialized:
            parts.append(serialized)
    if include_top_k and query_input.top_k:
        parts.append(f"k:{query_input.top_k}")
    return "::".join(parts)


class ResponseCache:
    """LRU cache of pipeline responses keyed by query fingerprint.

    Entries expire ``ttl_ms`` milliseconds after they were stored; a
    non-positive TTL disables expiry. Responses are deep-copied on the way in
    and out. No method raises: an input that cannot be fingerprinted is
    simply treated as absent.
    """

    def __init__(
        self,
        config: ResponseCacheConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or ResponseCacheConfig()
        self._clock = clock or (lambda: time.time() * 1000)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._logger = get_logger("cache")
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._created_at_ms = self._clock()
        self._last_access_ms = self._created_at_ms

    @property
    def config(self) -> ResponseCacheConfig:
        return self._config

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, query_input: QueryInput) -> PipelineResponse | None:
        now = self._clock()
        self._last_access_ms = now
        key = self._key(query_input)
        entry = self._entries.get(key) if key is not None else None
        if entry is None:
            self._misses += 1
            self._notify("miss", key, query_input.query)
            return None
        if self._is_expired(entry, now):
            del self._entries[key]
            self._misses += 1
            self._expirations += 1
            self._notify("expire", key, query_input.query)
            return None
        entry.access_count += 1
        entry.last_access_ms = now
        self._entries.move_to_end(key)
        self._hits += 1
        self._notify("hit", key, query_input.query)
        return copy.deepcopy(entry.response)

    def set(self, query_input: QueryInput, response: PipelineResponse) -> None:
        key = self._key(query_input)
        if key is None:
            return
        now = self._clock()
        self._entries.pop(key, None)
        while self._entries and len(self._entries) >= self._config.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            self._notify("evict", evicted)
        self._entries[key] = CacheEntry(
            response=copy.deepcopy(response),
            cached_at_ms=now,
            last_access_ms=now,
            query=query_input.query,
        )
        self._last_access_ms = now
        self._notify("set", key, query_input.query)

    def has(self, query_input: QueryInput) -> bool:
        key = self._key(query_input)
        entry = self._entries.get(key) if key is not None else None
        if entry is None:
            return False
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            self._expirations += 1
            self._notify("expire", key, query_input.query)
            return False
        return True

    def delete(self, query_input: QueryInput) -> bool:
        key = self._key(query_input)
        if key is None:
            return False
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._notify("clear")

    def prune(self) -> int:
        """Remove every expired entry and return how many were removed."""

        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            entry = self._entries.pop(key)
            self._expirations += 1
            self._notify("expire", key, entry.query)
        return len(expired)

    def get_stats(self) -> ResponseCacheStats:
        total = self._hits + self._misses
        return ResponseCacheStats(
            size=len(self._entries),
            max_size=self._config.max_size,
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total if total else 0.0,
            evictions=self._evictions,
            expirations=self._expirations,
            created_at_ms=self._created_at_ms,
            last_access_ms=self._last_access_ms,
        )

    def cached_queries(self) -> list[dict[str, Any]]:
        now = self._clock()
        queries = [
            {"query": entry.query, "access_count": entry.access_count, "cached_at_ms": entry.cached_at_ms}
            for entry in self._entries.values()
            if not self._is_expired(entry, now)
        ]
        return sorted(queries, key=lambda item: item["access_count"], reverse=True)

    def _key(self, query_input: QueryInput) -> str | None:
        try:
            return generate_cache_key(
                query_input,
                include_filters=self._config.include_filters_in_key,
                include_top_k=self._config.include_top_k_in_key,
            )
        except (TypeError, ValueError, RecursionError) as exc:
            self._logger.warning("cache.key_unavailable", query=query_input.query[:50], detail=str(exc))
            return None

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        if self._config.ttl_ms <= 0:
            return False
        return now - entry.cached_at_ms >= self._config.ttl_ms

    def _notify(self, event: CacheEventType, key: str | None = None, query: str | None = None) -> None:
        PipelineMetrics.observe_cache_event(event)
        callback = self._config.on_update
        if callback is None:
            return
        try:
            callback(CacheEvent(type=event, key=key, query=query))
        except Exception as exc:  # noqa: BLE001 - observers never affect cache behaviour
            self._logger.warning("cache.observer_failed", event=event, detail=str(exc))


def format_cache_stats(stats: ResponseCacheStats) -> str:
    return "\n".join(
        [
            "Cache Stats:",
            f"  Size: {stats.size}/{stats.max_size} entries",
            f"  Hits: {stats.hits} | Misses: {stats.misses} | Hit Rate: {stats.hit_rate * 100:.1f}%",
            f"  Evictions: {stats.evictions} | Expirations: {stats.expirations}",
        ]
    )


__all__ = [
    "CacheEntry",
    "CacheEvent",
    "ResponseCache",
    "ResponseCacheConfig",
    "ResponseCacheStats",
    "format_cache_stats",
    "generate_cache_key",
    "normalize_query",
    "serialize_filter",
]

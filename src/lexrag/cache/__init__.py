"""Response caching."""

from .response import (
    CacheEntry,
    CacheEvent,
    ResponseCache,
    ResponseCacheConfig,
    ResponseCacheStats,
    format_cache_stats,
    generate_cache_key,
)

__all__ = [
    "CacheEntry",
    "CacheEvent",
    "ResponseCache",
    "ResponseCacheConfig",
    "ResponseCacheStats",
    "format_cache_stats",
    "generate_cache_key",
]

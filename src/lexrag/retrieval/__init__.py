"""Retrieval components."""

from .service import (
    ChromaVectorIndex,
    IndexRecord,
    SearchHit,
    SearchResponse,
    VectorIndex,
    VectorIndexError,
    build_where,
)

__all__ = [
    "ChromaVectorIndex",
    "IndexRecord",
    "SearchHit",
    "SearchResponse",
    "VectorIndex",
    "VectorIndexError",
    "build_where",
]

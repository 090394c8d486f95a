"""Embedding services."""

from .service import (
    Embedder,
    EmbeddingCache,
    EmbeddingConfig,
    EmbeddingError,
    HashEmbedder,
    HuggingFaceEmbedder,
    QueryEmbedding,
)

__all__ = [
    "Embedder",
    "EmbeddingCache",
    "EmbeddingConfig",
    "EmbeddingError",
    "HashEmbedder",
    "HuggingFaceEmbedder",
    "QueryEmbedding",
]

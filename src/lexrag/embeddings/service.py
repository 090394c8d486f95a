"""Query embedders for lexrag."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Protocol, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

LOGGER = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when a query cannot be embedded."""


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "intfloat/multilingual-e5-large"
    dim: int = 1024
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None
    query_prefix: str = "query: "
    cache_size: int = 1000


@dataclass(frozen=True)
class QueryEmbedding:
    """Vector for a query plus whether it came from the embedding cache."""

    embedding: Tuple[float, ...]
    cached: bool
    duration_ms: float = 0.0


class Embedder(Protocol):
    """Protocol describing query embedding behaviour."""

    async def initialize(self) -> None:
        """Load whatever the embedder needs before the first query."""

    async def embed_query(self, text: str) -> QueryEmbedding:
        """Return the embedding vector for a query string."""


class EmbeddingCache:
    """Small LRU map from query text to vector."""

    def __init__(self, max_size: int = 1000) -> None:
        self._max_size = max_size
        self._vectors: OrderedDict[str, Tuple[float, ...]] = OrderedDict()

    def get(self, text: str) -> Tuple[float, ...] | None:
        vector = self._vectors.get(text)
        if vector is not None:
            self._vectors.move_to_end(text)
        return vector

    def put(self, text: str, vector: Tuple[float, ...]) -> None:
        if self._max_size <= 0:
            return
        self._vectors[text] = vector
        self._vectors.move_to_end(text)
        while len(self._vectors) > self._max_size:
            self._vectors.popitem(last=False)

    def clear(self) -> None:
        self._vectors.clear()

    @property
    def size(self) -> int:
        return len(self._vectors)

    @property
    def max_size(self) -> int:
        return self._max_size


def _normalize(vector: Tuple[float, ...]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbedder:
    """Deterministic lightweight embedder used for testing and offline runs."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._cache = EmbeddingCache(self._config.cache_size)

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def initialize(self) -> None:
        return None

    def vector_for(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = tuple(byte / 255.0 for byte in raw)
        return _normalize(vector) if self._config.normalize else vector

    async def embed_query(self, text: str) -> QueryEmbedding:
        start = time.perf_counter()
        cached = self._cache.get(text)
        if cached is not None:
            return QueryEmbedding(embedding=cached, cached=True, duration_ms=(time.perf_counter() - start) * 1000)
        vector = self.vector_for(self._config.query_prefix + text)
        self._cache.put(text, vector)
        return QueryEmbedding(embedding=vector, cached=False, duration_ms=(time.perf_counter() - start) * 1000)


class HuggingFaceEmbedder:
    """Embedder that optionally loads a sentence-embedding model via LangChain."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._delegate = HashEmbedder(self._config)
        self._cache = EmbeddingCache(self._config.cache_size)
        self._client: LangChainEmbeddings | None = None
        self._initialized = False

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def initialize(self) -> None:
        if self._initialized:
            return
        if not self._config.use_model:
            LOGGER.info("HuggingFaceEmbedder running in hash-only mode.")
        else:
            try:
                self._client = await asyncio.to_thread(self._load_client)
            except Exception as exc:
                raise EmbeddingError(f"Failed to load embedding model {self._config.model}: {exc}") from exc
            LOGGER.info("Loaded embedding model %s", self._config.model)
        self._initialized = True

    def _load_client(self) -> LangChainEmbeddings:
        model_kwargs = {"device": self._config.device} if self._config.device else {}
        return HuggingFaceEmbeddings(
            model_name=self._config.model,
            model_kwargs=model_kwargs,
            encode_kwargs={"normalize_embeddings": self._config.normalize},
            cache_folder=self._config.cache_folder,
        )

    async def embed_query(self, text: str) -> QueryEmbedding:
        if not self._initialized:
            raise EmbeddingError("Embedder used before initialize()")
        if self._client is None:
            return await self._delegate.embed_query(text)
        start = time.perf_counter()
        cached = self._cache.get(text)
        if cached is not None:
            return QueryEmbedding(embedding=cached, cached=True, duration_ms=(time.perf_counter() - start) * 1000)
        try:
            raw = await self._client.aembed_query(self._config.query_prefix + text)
        except Exception as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        vector = tuple(float(value) for value in raw)
        if len(vector) != self._config.dim:
            LOGGER.warning(
                "Embedding dim mismatch: configured=%d, actual=%d",
                self._config.dim,
                len(vector),
            )
        if self._config.normalize:
            vector = _normalize(vector)
        self._cache.put(text, vector)
        return QueryEmbedding(embedding=vector, cached=False, duration_ms=(time.perf_counter() - start) * 1000)

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Sequence

import pytest

from lexrag.embeddings.service import QueryEmbedding
from lexrag.models import Message, PipelineResponse, ResponseMetrics, RetrievedPassage, TokenUsage
from lexrag.retrieval.service import SearchHit, SearchResponse
from lexrag.schemas import GenerationOptions
from lexrag.services.generation import Completion, StreamChunk
from lexrag.services.query import PipelineConfig, QueryService


class StubEmbedder:
    def __init__(self, *, fail: Exception | None = None, cached: bool = False) -> None:
        self.fail = fail
        self.cached = cached
        self.calls: list[str] = []
        self.initialized = False

    async def initialize(self) -> None:
        self.initialized = True

    async def embed_query(self, text: str) -> QueryEmbedding:
        self.calls.append(text)
        if self.fail is not None:
            raise self.fail
        return QueryEmbedding(embedding=(0.1, 0.2, 0.3), cached=self.cached)


class StubIndex:
    def __init__(
        self,
        hits: Sequence[SearchHit] = (),
        *,
        exists: bool = True,
        fail: Exception | None = None,
    ) -> None:
        self.hits = list(hits)
        self.exists = exists
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def collection_exists(self) -> bool:
        return self.exists

    async def search(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        score_threshold: float | None = None,
        filter: Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        self.calls.append({"limit": limit, "score_threshold": score_threshold, "filter": filter})
        if self.fail is not None:
            raise self.fail
        return SearchResponse(results=tuple(self.hits[:limit]))


class StubGenerator:
    provider = "stub"
    model = "stub-model"

    def __init__(
        self,
        answer: str = "תשובה לדוגמה",
        *,
        fail: Exception | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.answer = answer
        self.fail = fail
        self.fail_after = fail_after
        self.complete_calls: list[tuple[Sequence[Message], GenerationOptions | None]] = []
        self.stream_calls = 0
        self.stream_closed = False
        self.chunks_sent = 0

    async def complete(self, messages: Sequence[Message], options: GenerationOptions | None = None) -> Completion:
        self.complete_calls.append((messages, options))
        if self.fail is not None:
            raise self.fail
        return Completion(content=self.answer, model=self.model, usage=TokenUsage(input_tokens=10, output_tokens=5))

    async def stream(
        self, messages: Sequence[Message], options: GenerationOptions | None = None
    ) -> AsyncIterator[StreamChunk]:
        self.stream_calls += 1
        try:
            for word in self.answer.split(" "):
                if self.fail_after is not None and self.chunks_sent >= self.fail_after:
                    raise self.fail or RuntimeError("stream broke")
                self.chunks_sent += 1
                yield StreamChunk(content=word + " ")
            yield StreamChunk(content="", done=True, usage=TokenUsage(input_tokens=10, output_tokens=5))
        finally:
            self.stream_closed = True

    def calculate_cost(self, usage: TokenUsage) -> float:
        return usage.total_tokens * 0.001

    @property
    def total_calls(self) -> int:
        return len(self.complete_calls) + self.stream_calls


def make_hit(hit_id: str, score: float, source_id: str = "law-1", content: str | None = None) -> SearchHit:
    return SearchHit(
        id=hit_id,
        score=score,
        payload={
            "content": content or f"תוכן הסעיף {hit_id}",
            "source_id": source_id,
            "source_name": f"חוק {source_id}",
            "section_number": "2",
        },
    )


def make_response(request_id: str = "rag-1-abcdefg", answer: str = "cached") -> PipelineResponse:
    passage = RetrievedPassage(
        passage_id="p1",
        content="text",
        score=0.9,
        source_id="law-1",
        source_name="חוק 1",
    )
    return PipelineResponse(
        answer=answer,
        citations=[],
        retrieved_passages=[passage],
        metrics=ResponseMetrics(
            total_latency_ms=12.0,
            embedding_latency_ms=1.0,
            retrieval_latency_ms=2.0,
            generation_latency_ms=9.0,
            chunks_retrieved=1,
            chunks_used=1,
            token_usage=TokenUsage(1, 1),
            embedding_cached=False,
        ),
        model="stub-model",
        provider="stub",
        request_id=request_id,
    )


@pytest.fixture
def hits() -> list[SearchHit]:
    return [
        make_hit("p1", 0.9, "law-1"),
        make_hit("p2", 0.8, "law-2"),
        make_hit("p3", 0.7, "law-1"),
    ]


@pytest.fixture
def embedder() -> StubEmbedder:
    return StubEmbedder()


@pytest.fixture
def index(hits: list[SearchHit]) -> StubIndex:
    return StubIndex(hits)


@pytest.fixture
def generator() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def service(embedder: StubEmbedder, index: StubIndex, generator: StubGenerator) -> QueryService:
    return QueryService(embedder, index, generator, config=PipelineConfig(enable_cache=True))

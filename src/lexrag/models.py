"""Shared domain models used across the lexrag pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

EXCERPT_LENGTH = 200
DEFAULT_SECTION_TYPE = "סעיף"


@dataclass(frozen=True)
class RetrievedPassage:
    """Passage returned from the vector index during retrieval."""

    passage_id: str
    content: str
    score: float
    source_id: str
    source_name: str
    section_ref: str | None = None
    chunk_index: int | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, passage_id: str, score: float, payload: Mapping[str, Any]) -> "RetrievedPassage":
        """Build a passage from a vector index hit payload."""

        source_id = str(payload.get("source_id", ""))
        source_name = payload.get("source_name") or f"חוק {source_id}"
        chunk_index = payload.get("chunk_index")
        known = {
            "content",
            "source_id",
            "source_name",
            "section_ref",
            "section_type",
            "section_number",
            "section_title",
            "chunk_index",
        }
        return cls(
            passage_id=str(passage_id),
            content=str(payload.get("content", "")),
            score=float(score),
            source_id=source_id,
            source_name=str(source_name),
            section_ref=payload.get("section_ref") or _section_ref(payload),
            chunk_index=int(chunk_index) if chunk_index is not None else None,
            metadata={k: v for k, v in payload.items() if k not in known},
        )


def _section_ref(payload: Mapping[str, Any]) -> str | None:
    section_type = payload.get("section_type") or DEFAULT_SECTION_TYPE
    number = payload.get("section_number")
    title = payload.get("section_title")
    head = f"{section_type} {number}" if number else section_type
    if title:
        return f"{head}: {title}"
    if number:
        return head
    return None


@dataclass(frozen=True)
class Citation:
    """Source reference attached to an answer."""

    index: int
    source_id: str
    source_name: str
    score: float
    excerpt: str
    section_ref: str | None = None


@dataclass(frozen=True)
class BuiltPrompt:
    """Rendered system and user messages ready for the generator."""

    system_message: str
    user_message: str
    passages_included: int
    estimated_tokens: int
    truncated: bool


@dataclass(frozen=True)
class Message:
    """Chat message sent to a generator."""

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ResponseMetrics:
    """Timing and usage figures for a single pipeline run."""

    total_latency_ms: float
    embedding_latency_ms: float
    retrieval_latency_ms: float
    generation_latency_ms: float
    chunks_retrieved: int
    chunks_used: int
    token_usage: TokenUsage
    embedding_cached: bool
    estimated_cost_usd: float | None = None


@dataclass(frozen=True)
class PipelineResponse:
    """Structured answer produced by the pipeline with citations."""

    answer: str
    citations: Sequence[Citation]
    retrieved_passages: Sequence[RetrievedPassage]
    metrics: ResponseMetrics
    model: str
    provider: str
    request_id: str


class StreamPhase(str, Enum):
    STARTING = "starting"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    CONTEXT = "context"
    CONTENT = "content"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamProgress:
    phase: StreamPhase
    message: str
    elapsed_ms: float
    percent_complete: float | None = None


@dataclass(frozen=True)
class StreamError:
    code: str
    message: str


@dataclass(frozen=True)
class StreamEvent:
    """One tagged event emitted by the streaming pipeline."""

    phase: StreamPhase
    content: str = ""
    done: bool = False
    progress: StreamProgress | None = None
    passages: Sequence[RetrievedPassage] | None = None
    metrics: ResponseMetrics | None = None
    citations: Sequence[Citation] | None = None
    error: StreamError | None = None


def create_citations(passages: Sequence[RetrievedPassage]) -> list[Citation]:
    """Deduplicate passages by source, keeping the highest-scoring passage per source."""

    best: dict[str, RetrievedPassage] = {}
    for passage in passages:
        existing = best.get(passage.source_id)
        if existing is None or passage.score > existing.score:
            best[passage.source_id] = passage
    citations: list[Citation] = []
    for index, passage in enumerate(best.values(), start=1):
        excerpt = passage.content[:EXCERPT_LENGTH]
        if len(passage.content) > EXCERPT_LENGTH:
            excerpt += "..."
        citations.append(
            Citation(
                index=index,
                source_id=passage.source_id,
                source_name=passage.source_name,
                score=passage.score,
                excerpt=excerpt,
                section_ref=passage.section_ref,
            )
        )
    return citations

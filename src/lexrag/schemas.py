"""Pydantic models describing pipeline requests."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Turn(BaseModel):
    """A single prior exchange in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


class GenerationOptions(BaseModel):
    """Per-request overrides for the generator."""

    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)


class QueryInput(BaseModel):
    """A natural-language legal question plus retrieval and generation knobs."""

    model_config = ConfigDict(frozen=True)

    query: str = Field(..., min_length=1, description="End-user question to answer")
    top_k: Optional[int] = Field(default=None, ge=1, description="Number of passages to retrieve")
    score_threshold: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Minimum similarity score for retrieved passages",
    )
    filter: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Attribute filter forwarded to the vector index",
    )
    conversation_history: Tuple[Turn, ...] = Field(
        default=(),
        description="Prior turns; a non-empty history disables response caching",
    )
    completion_options: Optional[GenerationOptions] = None

    @property
    def is_conversational(self) -> bool:
        return bool(self.conversation_history)

    @classmethod
    def coerce(cls, value: "QueryInput | str") -> "QueryInput":
        if isinstance(value, QueryInput):
            return value
        return cls(query=value)


__all__ = ["GenerationOptions", "QueryInput", "Turn"]

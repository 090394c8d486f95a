"""Service layer orchestrations for lexrag."""

from .generation import (
    Completion,
    GenerationConfig,
    GenerationError,
    Generator,
    StreamChunk,
    TemplateGenerator,
    TransformersGenerator,
)
from .prompt import PromptBuilder, PromptTemplate, estimate_token_count
from .query import PipelineConfig, QueryService, generate_request_id

__all__ = [
    "Completion",
    "GenerationConfig",
    "GenerationError",
    "Generator",
    "PipelineConfig",
    "PromptBuilder",
    "PromptTemplate",
    "QueryService",
    "StreamChunk",
    "TemplateGenerator",
    "TransformersGenerator",
    "estimate_token_count",
    "generate_request_id",
]

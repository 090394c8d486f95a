"""Wiring of the reference collaborators into a query service."""

from __future__ import annotations

from lexrag.config import Settings, get_settings
from lexrag.embeddings.service import HuggingFaceEmbedder
from lexrag.metrics.observability import get_logger
from lexrag.retrieval.service import ChromaVectorIndex
from lexrag.services.generation import TransformersGenerator
from lexrag.services.query import QueryService


def build_query_service(settings: Settings | None = None, *, index: ChromaVectorIndex | None = None) -> QueryService:
    """Create an uninitialized :class:`QueryService` from ``settings``."""

    settings = settings or get_settings()
    pipeline_config = settings.pipeline_config()
    if index is None:
        index = ChromaVectorIndex(settings.chroma_collection, persist_directory=settings.chroma_persist_dir)
    service = QueryService(
        HuggingFaceEmbedder(settings.embedding_config()),
        index,
        TransformersGenerator(settings.generation_config()),
        config=pipeline_config,
    )
    get_logger("factory").info(
        "pipeline.configured",
        collection=settings.chroma_collection,
        embedding_model=settings.embedding_model,
        generator_model=service.model,
        cache_enabled=service.cache_enabled,
    )
    return service

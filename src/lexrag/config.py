"""Runtime configuration for the lexrag services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from lexrag.embeddings.service import EmbeddingConfig
from lexrag.metrics.latency import LatencyThresholds
from lexrag.services.generation import GenerationConfig
from lexrag.services.query import PipelineConfig


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="lexrag_", env_file=".env", case_sensitive=False)

    chroma_persist_dir: Path | None = None
    chroma_collection: str = "israeli-laws"

    # E5 models expect a "query: " prefix on search queries
    embedding_model: str = "intfloat/multilingual-e5-large"
    embedding_dim: int = 1024
    embedding_device: str | None = None
    embedding_cache_size: int = 1000
    use_model_embeddings: bool = False

    generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    generator_max_new_tokens: int = 512
    generator_device: str | None = None
    generator_input_cost_per_1k: float = 0.0
    generator_output_cost_per_1k: float = 0.0
    use_model_generator: bool = False

    default_top_k: int = 5
    default_score_threshold: float | None = None
    max_context_tokens: int = 3000
    default_temperature: float = 0.3

    enable_cache: bool = False
    cache_ttl_ms: int = 300_000
    cache_max_size: int = 100
    cache_include_filters: bool = True
    cache_include_top_k: bool = False

    enable_latency_logging: bool = True
    log_phase_events: bool = False
    log_latency_summary: bool = True
    latency_embedding_warn_ms: float | None = 100.0
    latency_retrieval_warn_ms: float | None = 500.0
    latency_generation_warn_ms: float | None = 5000.0
    latency_total_warn_ms: float | None = 10000.0
    latency_total_error_ms: float | None = 30000.0

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            model=self.embedding_model,
            dim=self.embedding_dim,
            use_model=self.use_model_embeddings,
            device=self.embedding_device,
            cache_size=self.embedding_cache_size,
        )

    def generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            model=self.generator_model,
            max_new_tokens=self.generator_max_new_tokens,
            temperature=self.default_temperature,
            use_model=self.use_model_generator,
            device=self.generator_device,
            input_cost_per_1k=self.generator_input_cost_per_1k,
            output_cost_per_1k=self.generator_output_cost_per_1k,
        )

    def latency_thresholds(self) -> LatencyThresholds:
        return LatencyThresholds(
            embedding_warn_ms=self.latency_embedding_warn_ms,
            retrieval_warn_ms=self.latency_retrieval_warn_ms,
            generation_warn_ms=self.latency_generation_warn_ms,
            total_warn_ms=self.latency_total_warn_ms,
            total_error_ms=self.latency_total_error_ms,
        )

    def pipeline_config(self) -> PipelineConfig:
        """Build the pipeline config; invalid values raise ``PipelineError(INVALID_CONFIG)``."""

        return PipelineConfig(
            default_top_k=self.default_top_k,
            default_score_threshold=self.default_score_threshold,
            max_context_tokens=self.max_context_tokens,
            default_temperature=self.default_temperature,
            enable_cache=self.enable_cache,
            cache_ttl_ms=self.cache_ttl_ms,
            cache_max_size=self.cache_max_size,
            cache_include_filters=self.cache_include_filters,
            cache_include_top_k=self.cache_include_top_k,
            enable_latency_logging=self.enable_latency_logging,
            log_phase_events=self.log_phase_events,
            log_latency_summary=self.log_latency_summary,
            latency_thresholds=self.latency_thresholds(),
        )


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()

"""Query orchestration combining embedding, retrieval, prompting and generation."""

from __future__ import annotations

import secrets
import string
import time
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Mapping, Sequence

from lexrag.cache.response import ResponseCache, ResponseCacheConfig, ResponseCacheStats
from lexrag.embeddings.service import Embedder, QueryEmbedding
from lexrag.errors import PipelineError, PipelineErrorCode
from lexrag.metrics.latency import (
    DEFAULT_LATENCY_THRESHOLDS,
    LatencyThresholds,
    LatencyTracker,
    LatencyTrackerConfig,
    Phase,
)
from lexrag.metrics.observability import PipelineMetrics, correlation_scope, get_logger
from lexrag.models import (
    BuiltPrompt,
    PipelineResponse,
    ResponseMetrics,
    RetrievedPassage,
    StreamError,
    StreamEvent,
    StreamPhase,
    StreamProgress,
    TokenUsage,
    create_citations,
)
from lexrag.retrieval.service import VectorIndex
from lexrag.schemas import GenerationOptions, QueryInput, Turn
from lexrag.services.generation import Completion, Generator
from lexrag.services.prompt import PromptBuilder, PromptTemplate

_REQUEST_ID_ALPHABET = string.ascii_lowercase + string.digits
QUERY_PREVIEW_CHARS = 50


def generate_request_id() -> str:
    """Return an id of the form ``rag-<epoch ms>-<7 base36 chars>``."""

    suffix = "".join(secrets.choice(_REQUEST_ID_ALPHABET) for _ in range(7))
    return f"rag-{int(time.time() * 1000)}-{suffix}"


def _preview(query: str) -> str:
    if len(query) <= QUERY_PREVIEW_CHARS:
        return query
    return query[:QUERY_PREVIEW_CHARS] + "..."


@dataclass(frozen=True)
class PipelineConfig:
    """Runtime knobs for :class:`QueryService`."""

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
    latency_thresholds: LatencyThresholds = DEFAULT_LATENCY_THRESHOLDS

    def __post_init__(self) -> None:
        problems = []
        if self.default_top_k < 1:
            problems.append(f"default_top_k must be positive, got {self.default_top_k}")
        if self.max_context_tokens < 1:
            problems.append(f"max_context_tokens must be positive, got {self.max_context_tokens}")
        if self.cache_max_size < 1:
            problems.append(f"cache_max_size must be positive, got {self.cache_max_size}")
        threshold = self.default_score_threshold
        if threshold is not None and not 0.0 <= threshold <= 1.0:
            problems.append(f"default_score_threshold must be within [0, 1], got {threshold}")
        if not 0.0 <= self.default_temperature <= 2.0:
            problems.append(f"default_temperature must be within [0, 2], got {self.default_temperature}")
        if problems:
            raise PipelineError("; ".join(problems), PipelineErrorCode.INVALID_CONFIG)

    def cache_config(self) -> ResponseCacheConfig:
        return ResponseCacheConfig(
            max_size=self.cache_max_size,
            ttl_ms=self.cache_ttl_ms,
            include_filters_in_key=self.cache_include_filters,
            include_top_k_in_key=self.cache_include_top_k,
        )

    def tracker_config(self) -> LatencyTrackerConfig:
        return LatencyTrackerConfig(
            log_phase_events=self.enable_latency_logging and self.log_phase_events,
            log_summary_on_complete=self.enable_latency_logging and self.log_latency_summary,
            thresholds=self.latency_thresholds,
        )


class QueryService:
    """Answers legal questions by running the retrieval-augmented pipeline.

    Every request passes through the same phases: an optional response cache
    lookup, query embedding, vector search, prompt construction and
    generation. :meth:`answer` returns the complete response while
    :meth:`stream` yields :class:`StreamEvent` objects as the phases progress.
    Collaborator failures surface as :class:`PipelineError` tagged with the
    phase that failed.
    """

    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        generator: Generator,
        *,
        config: PipelineConfig | None = None,
        prompt_builder: PromptBuilder | None = None,
        cache: ResponseCache | None = None,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._generator = generator
        self._config = config or PipelineConfig()
        self._prompt_builder = prompt_builder or PromptBuilder()
        if cache is None and self._config.enable_cache:
            cache = ResponseCache(self._config.cache_config())
        self._cache = cache
        self._initialized = False
        self._logger = get_logger("query")

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            await self._embedder.initialize()
            exists = await self._index.collection_exists()
        except Exception as exc:
            self._logger.error("pipeline.initialize_failed", error=str(exc))
            raise PipelineError(
                f"Failed to initialize pipeline: {exc}",
                PipelineErrorCode.NOT_INITIALIZED,
                cause=exc,
            ) from exc
        if not exists:
            raise PipelineError(
                "Vector index collection does not exist",
                PipelineErrorCode.INVALID_CONFIG,
            )
        self._initialized = True
        self._logger.info(
            "pipeline.initialized",
            provider=self.provider,
            model=self.model,
            cache_enabled=self.cache_enabled,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def provider(self) -> str:
        return self._generator.provider

    @property
    def model(self) -> str:
        return self._generator.model

    @property
    def prompt_template(self) -> PromptTemplate:
        return self._prompt_builder.template

    # -- single shot ---------------------------------------------------------

    async def answer(self, query_input: QueryInput | str) -> PipelineResponse:
        query_input = QueryInput.coerce(query_input)
        request_id = generate_request_id()
        with correlation_scope(request_id):
            return await self._answer(query_input, request_id)

    async def _answer(self, query_input: QueryInput, request_id: str) -> PipelineResponse:
        tracker = LatencyTracker(request_id, self._config.tracker_config())
        metadata = self._error_metadata(query_input.query, request_id)
        self._logger.info(
            "query.started",
            request_id=request_id,
            query=_preview(query_input.query),
            top_k=query_input.top_k,
            conversational=query_input.is_conversational,
        )
        try:
            self._require_initialized(metadata)
            cached = self._lookup_cache(query_input, tracker)
            if cached is not None:
                return self._from_cache(cached, request_id, tracker)

            embedding = await self._embedding_phase(query_input, tracker, metadata)
            passages = await self._retrieval_phase(query_input, embedding, tracker, metadata)
            built = self._prompt_phase(query_input, passages, tracker)

            with tracker.phase(Phase.GENERATION):
                completion = await self._complete(built, self._options(query_input), metadata)
            PipelineMetrics.observe_generation((tracker.phase_duration(Phase.GENERATION) or 0.0) / 1000)
            self._logger.info(
                "generation.complete",
                request_id=request_id,
                model=completion.model,
                output_tokens=completion.usage.output_tokens,
            )

            summary = tracker.complete()
            response = PipelineResponse(
                answer=completion.content,
                citations=create_citations(passages[: built.passages_included]),
                retrieved_passages=passages,
                metrics=self._metrics(summary.total_ms, summary.phases, passages, built, completion.usage, embedding.cached),
                model=completion.model,
                provider=self.provider,
                request_id=request_id,
            )
            self._store(query_input, response)
            self._logger.info(
                "query.complete",
                request_id=request_id,
                total_ms=response.metrics.total_latency_ms,
                chunks_used=response.metrics.chunks_used,
                citation_count=len(response.citations),
                embedding_cached=embedding.cached,
            )
            return response
        except Exception as exc:
            raise self._fail(exc, tracker, metadata, "query.failed")

    # -- streaming -----------------------------------------------------------

    async def stream(self, query_input: QueryInput | str) -> AsyncIterator[StreamEvent]:
        """Run the pipeline and yield progress, context, content and completion events.

        The final event is ``done`` on success. On failure a single ``error``
        event is yielded and the :class:`PipelineError` is then raised.
        """

        query_input = QueryInput.coerce(query_input)
        request_id = generate_request_id()
        with correlation_scope(request_id):
            async with aclosing(self._stream(query_input, request_id)) as events:
                async for event in events:
                    yield event

    async def _stream(self, query_input: QueryInput, request_id: str) -> AsyncIterator[StreamEvent]:
        tracker = LatencyTracker(request_id, self._config.tracker_config())
        metadata = self._error_metadata(query_input.query, request_id)

        def progress(phase: StreamPhase, message: str, percent: float | None = None) -> StreamProgress:
            return StreamProgress(phase=phase, message=message, elapsed_ms=tracker.elapsed_ms, percent_complete=percent)

        self._logger.info(
            "stream.started",
            request_id=request_id,
            query=_preview(query_input.query),
            conversational=query_input.is_conversational,
        )
        try:
            self._require_initialized(metadata)
            yield StreamEvent(
                phase=StreamPhase.STARTING,
                progress=progress(StreamPhase.STARTING, "מתחיל עיבוד השאילתה...", 0),
            )

            cached = self._lookup_cache(query_input, tracker)
            if cached is not None:
                response = self._from_cache(cached, request_id, tracker)
                yield StreamEvent(
                    phase=StreamPhase.CONTEXT,
                    progress=progress(StreamPhase.CONTEXT, "התשובה נמצאה במטמון", 50),
                    passages=response.retrieved_passages,
                )
                yield StreamEvent(phase=StreamPhase.CONTENT, content=response.answer)
                yield StreamEvent(
                    phase=StreamPhase.DONE,
                    done=True,
                    progress=progress(StreamPhase.DONE, "הושלם", 100),
                    metrics=response.metrics,
                    citations=response.citations,
                )
                return

            yield StreamEvent(
                phase=StreamPhase.EMBEDDING,
                progress=progress(StreamPhase.EMBEDDING, "מייצר וקטור חיפוש...", 10),
            )
            embedding = await self._embedding_phase(query_input, tracker, metadata)

            message = "וקטור נמצא במטמון, מחפש מסמכים רלוונטיים..." if embedding.cached else "מחפש מסמכים רלוונטיים..."
            yield StreamEvent(
                phase=StreamPhase.RETRIEVING,
                progress=progress(StreamPhase.RETRIEVING, message, 30),
            )
            passages = await self._retrieval_phase(query_input, embedding, tracker, metadata)

            yield StreamEvent(
                phase=StreamPhase.CONTEXT,
                progress=progress(
                    StreamPhase.CONTEXT,
                    f"נמצאו {len(passages)} מקורות רלוונטיים, מתחיל יצירת תשובה...",
                    50,
                ),
                passages=passages,
            )
            built = self._prompt_phase(query_input, passages, tracker)

            parts: list[str] = []
            usage = TokenUsage()
            final_content = ""
            tracker.start_phase(Phase.GENERATION)
            chunks = self._generator.stream(PromptBuilder.to_messages(built), self._options(query_input))
            try:
                async for chunk in chunks:
                    parts.append(chunk.content)
                    if chunk.done:
                        final_content = chunk.content
                        if chunk.usage is not None:
                            usage = chunk.usage
                        break
                    yield StreamEvent(phase=StreamPhase.CONTENT, content=chunk.content)
            except Exception as exc:
                raise self._phase_error(exc, PipelineErrorCode.GENERATION_ERROR, "Generation failed", metadata)
            finally:
                await _close(chunks)
            tracker.end_phase(Phase.GENERATION, output_tokens=usage.output_tokens)
            PipelineMetrics.observe_generation((tracker.phase_duration(Phase.GENERATION) or 0.0) / 1000)

            summary = tracker.complete()
            response = PipelineResponse(
                answer="".join(parts),
                citations=create_citations(passages[: built.passages_included]),
                retrieved_passages=passages,
                metrics=self._metrics(summary.total_ms, summary.phases, passages, built, usage, embedding.cached),
                model=self.model,
                provider=self.provider,
                request_id=request_id,
            )
            self._store(query_input, response)
            self._logger.info(
                "stream.complete",
                request_id=request_id,
                total_ms=response.metrics.total_latency_ms,
                chunks_used=response.metrics.chunks_used,
                total_tokens=usage.total_tokens,
                embedding_cached=embedding.cached,
            )
            yield StreamEvent(
                phase=StreamPhase.DONE,
                content=final_content,
                done=True,
                progress=progress(StreamPhase.DONE, "הושלם", 100),
                metrics=response.metrics,
                citations=response.citations,
            )
        except Exception as exc:
            error = self._fail(exc, tracker, metadata, "stream.failed")
            yield StreamEvent(
                phase=StreamPhase.ERROR,
                done=True,
                progress=progress(StreamPhase.ERROR, error.message),
                error=StreamError(code=error.code.value, message=error.message),
            )
            raise error

    async def stream_content(self, query_input: QueryInput | str) -> AsyncIterator[StreamEvent]:
        """Like :meth:`stream` without progress events.

        The retrieved passages ride on the first content event instead of a
        separate context event.
        """

        passages: Sequence[RetrievedPassage] | None = None
        events = self.stream(query_input)
        try:
            async for event in events:
                if event.phase is StreamPhase.CONTEXT:
                    passages = event.passages
                    continue
                if event.phase in (StreamPhase.STARTING, StreamPhase.EMBEDDING, StreamPhase.RETRIEVING):
                    continue
                if event.phase is StreamPhase.CONTENT and passages is not None:
                    event = replace(event, passages=passages)
                    passages = None
                yield event
        finally:
            await events.aclose()

    # -- individual steps ----------------------------------------------------

    async def embed_query(self, query: str) -> QueryEmbedding:
        metadata = self._error_metadata(query)
        self._require_initialized(metadata)
        return await self._embed(query, metadata)

    async def retrieve_passages(
        self,
        embedding: Sequence[float],
        *,
        top_k: int | None = None,
        score_threshold: float | None = None,
        filter: Mapping[str, Any] | None = None,
    ) -> list[RetrievedPassage]:
        self._require_initialized({})
        return await self._search(embedding, top_k, score_threshold, filter, {})

    def build_prompt(
        self,
        query: str,
        passages: Sequence[RetrievedPassage],
        history: Sequence[Turn] | None = None,
    ) -> BuiltPrompt:
        return self._prompt_builder.build(query, passages, history, self._config.max_context_tokens)

    async def generate_response(
        self,
        built: BuiltPrompt,
        options: GenerationOptions | None = None,
    ) -> Completion:
        self._require_initialized({})
        merged = self._merge_options(options)
        return await self._complete(built, merged, {})

    # -- response cache ------------------------------------------------------

    @property
    def cache_enabled(self) -> bool:
        return self._cache is not None

    @property
    def response_cache_size(self) -> int:
        return self._cache.size if self._cache is not None else 0

    def get_response_cache_stats(self) -> ResponseCacheStats | None:
        return self._cache.get_stats() if self._cache is not None else None

    def clear_response_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()
            self._logger.info("cache.cleared")

    def prune_response_cache(self) -> int:
        if self._cache is None:
            return 0
        pruned = self._cache.prune()
        if pruned:
            self._logger.info("cache.pruned", count=pruned)
        return pruned

    def cached_queries(self) -> list[dict[str, Any]]:
        return self._cache.cached_queries() if self._cache is not None else []

    # -- phases --------------------------------------------------------------

    def _cache_applies(self, query_input: QueryInput) -> bool:
        return self._cache is not None and not query_input.is_conversational

    def _lookup_cache(self, query_input: QueryInput, tracker: LatencyTracker) -> PipelineResponse | None:
        if not self._cache_applies(query_input):
            return None
        with tracker.phase(Phase.CACHE_LOOKUP):
            return self._cache.get(query_input)

    def _from_cache(self, cached: PipelineResponse, request_id: str, tracker: LatencyTracker) -> PipelineResponse:
        lookup_ms = tracker.phase_duration(Phase.CACHE_LOOKUP) or 0.0
        tracker.add_metadata(cache_hit=True)
        tracker.complete()
        self._logger.info(
            "query.cache_hit",
            request_id=request_id,
            original_request_id=cached.request_id,
            lookup_ms=round(lookup_ms, 2),
        )
        metrics = replace(
            cached.metrics,
            total_latency_ms=lookup_ms,
            embedding_latency_ms=0.0,
            retrieval_latency_ms=0.0,
            generation_latency_ms=0.0,
            embedding_cached=True,
        )
        return replace(cached, request_id=request_id, metrics=metrics)

    def _store(self, query_input: QueryInput, response: PipelineResponse) -> None:
        if self._cache_applies(query_input):
            self._cache.set(query_input, response)

    async def _embedding_phase(
        self, query_input: QueryInput, tracker: LatencyTracker, metadata: Mapping[str, Any]
    ) -> QueryEmbedding:
        with tracker.phase(Phase.EMBEDDING):
            embedding = await self._embed(query_input.query, metadata)
            if embedding.cached:
                tracker.mark_cached(Phase.EMBEDDING)
        return embedding

    async def _retrieval_phase(
        self,
        query_input: QueryInput,
        embedding: QueryEmbedding,
        tracker: LatencyTracker,
        metadata: Mapping[str, Any],
    ) -> list[RetrievedPassage]:
        with tracker.phase(Phase.RETRIEVAL):
            passages = await self._search(
                embedding.embedding,
                query_input.top_k,
                query_input.score_threshold,
                query_input.filter,
                metadata,
            )
        PipelineMetrics.observe_retrieval(len(passages), (passage.score for passage in passages))
        self._logger.info(
            "retrieval.complete",
            request_id=metadata.get("request_id"),
            chunk_count=len(passages),
            duration_ms=round(tracker.phase_duration(Phase.RETRIEVAL) or 0.0, 2),
        )
        if not passages:
            self._logger.warning("retrieval.no_results", request_id=metadata.get("request_id"), query=metadata.get("query"))
            raise PipelineError(
                "No relevant legal documents found for the query",
                PipelineErrorCode.NO_RESULTS,
                metadata=metadata,
            )
        return passages

    def _prompt_phase(
        self, query_input: QueryInput, passages: Sequence[RetrievedPassage], tracker: LatencyTracker
    ) -> BuiltPrompt:
        with tracker.phase(Phase.PROMPT_BUILDING):
            built = self.build_prompt(query_input.query, passages, query_input.conversation_history)
        tracker.add_metadata(chunks_used=built.passages_included, prompt_truncated=built.truncated)
        return built

    async def _embed(self, query: str, metadata: Mapping[str, Any]) -> QueryEmbedding:
        try:
            return await self._embedder.embed_query(query)
        except Exception as exc:
            raise self._phase_error(exc, PipelineErrorCode.EMBEDDING_ERROR, "Embedding failed", metadata)

    async def _search(
        self,
        vector: Sequence[float],
        top_k: int | None,
        score_threshold: float | None,
        filter: Mapping[str, Any] | None,
        metadata: Mapping[str, Any],
    ) -> list[RetrievedPassage]:
        threshold = score_threshold if score_threshold is not None else self._config.default_score_threshold
        try:
            result = await self._index.search(
                vector,
                limit=top_k or self._config.default_top_k,
                score_threshold=threshold,
                filter=filter,
            )
            passages = [RetrievedPassage.from_payload(hit.id, hit.score, hit.payload) for hit in result.results]
        except Exception as exc:
            raise self._phase_error(exc, PipelineErrorCode.RETRIEVAL_ERROR, "Retrieval failed", metadata)
        return sorted(passages, key=lambda passage: passage.score, reverse=True)

    async def _complete(
        self, built: BuiltPrompt, options: GenerationOptions, metadata: Mapping[str, Any]
    ) -> Completion:
        try:
            return await self._generator.complete(PromptBuilder.to_messages(built), options)
        except Exception as exc:
            raise self._phase_error(exc, PipelineErrorCode.GENERATION_ERROR, "Generation failed", metadata)

    def _options(self, query_input: QueryInput) -> GenerationOptions:
        return self._merge_options(query_input.completion_options)

    def _merge_options(self, options: GenerationOptions | None) -> GenerationOptions:
        if options is None:
            return GenerationOptions(temperature=self._config.default_temperature)
        if options.temperature is None:
            return options.model_copy(update={"temperature": self._config.default_temperature})
        return options

    def _metrics(
        self,
        total_ms: float,
        phases: Mapping[str, float],
        passages: Sequence[RetrievedPassage],
        built: BuiltPrompt,
        usage: TokenUsage,
        embedding_cached: bool,
    ) -> ResponseMetrics:
        return ResponseMetrics(
            total_latency_ms=total_ms,
            embedding_latency_ms=phases.get(Phase.EMBEDDING.value, 0.0),
            retrieval_latency_ms=phases.get(Phase.RETRIEVAL.value, 0.0),
            generation_latency_ms=phases.get(Phase.GENERATION.value, 0.0),
            chunks_retrieved=len(passages),
            chunks_used=built.passages_included,
            token_usage=usage,
            embedding_cached=embedding_cached,
            estimated_cost_usd=self._generator.calculate_cost(usage),
        )

    # -- errors --------------------------------------------------------------

    def _require_initialized(self, metadata: Mapping[str, Any]) -> None:
        if not self._initialized:
            raise PipelineError(
                "Pipeline not initialized. Call initialize() first.",
                PipelineErrorCode.NOT_INITIALIZED,
                metadata=metadata,
            )

    @staticmethod
    def _error_metadata(query: str, request_id: str | None = None) -> dict[str, Any]:
        metadata: dict[str, Any] = {"query": _preview(query)}
        if request_id is not None:
            metadata["request_id"] = request_id
        return metadata

    @staticmethod
    def _phase_error(
        exc: Exception, code: PipelineErrorCode, prefix: str, metadata: Mapping[str, Any]
    ) -> PipelineError:
        if isinstance(exc, PipelineError):
            return exc.with_context(**metadata)
        return PipelineError(f"{prefix}: {exc}", code, cause=exc, metadata=metadata)

    def _fail(
        self, exc: Exception, tracker: LatencyTracker, metadata: Mapping[str, Any], event: str
    ) -> PipelineError:
        error = PipelineError.from_exception(exc, PipelineErrorCode.UNKNOWN, metadata).with_context(**metadata)
        summary = tracker.complete()
        PipelineMetrics.observe_error(error.code.value)
        self._logger.error(
            event,
            request_id=tracker.request_id,
            code=error.code.value,
            error=error.message,
            latency_ms=summary.total_ms,
            phases=dict(summary.phases),
        )
        return error


async def _close(stream: AsyncIterator[Any]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


__all__ = ["PipelineConfig", "QueryService", "generate_request_id"]

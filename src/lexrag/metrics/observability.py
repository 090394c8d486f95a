"""Observability helpers for lexrag."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterable, Iterator

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind ``correlation_id`` for the enclosed block and restore the previous binding after."""

    previous = _correlation_id_var.get()
    _correlation_id_var.set(correlation_id)
    try:
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id):
            yield correlation_id
    finally:
        _correlation_id_var.set(previous)


def get_logger(name: str = "lexrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    phase_latency = Histogram(
        "lexrag_phase_duration_seconds",
        "Time spent in each pipeline phase.",
        ["phase"],
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    retrieved_passage_count = Histogram(
        "lexrag_retrieved_passage_count",
        "Number of passages returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "lexrag_grounding_score",
        "Similarity score of retrieved passages.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "lexrag_generation_duration_seconds",
        "Time spent generating answers.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    cache_events = Counter(
        "lexrag_response_cache_events_total",
        "Response cache events by type.",
        ["event"],
    )
    pipeline_errors = Counter(
        "lexrag_pipeline_errors_total",
        "Failed pipeline runs by error code.",
        ["code"],
    )
    threshold_violations = Counter(
        "lexrag_latency_threshold_violations_total",
        "Latency threshold violations by phase.",
        ["phase", "severity"],
    )

    @classmethod
    def observe_phase(cls, phase: str, duration_seconds: float) -> None:
        cls.phase_latency.labels(phase=phase).observe(max(duration_seconds, 0.0))

    @classmethod
    def observe_retrieval(cls, chunk_count: int, scores: Iterable[float]) -> None:
        cls.retrieved_passage_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(max(duration_seconds, 0.0))

    @classmethod
    def observe_cache_event(cls, event: str) -> None:
        cls.cache_events.labels(event=event).inc()

    @classmethod
    def observe_error(cls, code: str) -> None:
        cls.pipeline_errors.labels(code=code).inc()

    @classmethod
    def observe_threshold_violation(cls, phase: str, severity: str) -> None:
        cls.threshold_violations.labels(phase=phase, severity=severity).inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "correlation_scope",
    "get_correlation_id",
    "get_logger",
]

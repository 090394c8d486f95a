"""Per-request latency tracking for the query pipeline.

A :class:`LatencyTracker` times the named phases of one request (embedding,
retrieval, prompt building, generation, cache lookup), records phases whose
result came from an upstream cache, and produces a :class:`LatencySummary`.
Threshold checks and aggregation over many summaries are pure functions so
they can be used outside the request path.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Iterator, Literal, Mapping, Sequence

import structlog

from lexrag.metrics.observability import PipelineMetrics, get_logger


class Phase(str, Enum):
    """Named pipeline phases."""

    EMBEDDING = "embedding"
    RETRIEVAL = "retrieval"
    PROMPT_BUILDING = "prompt_building"
    GENERATION = "generation"
    CACHE_LOOKUP = "cache_lookup"
    TOTAL = "total"


class PhaseState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    ENDED = "ended"
    CACHED = "cached"


PHASE_ORDER: tuple[str, ...] = (
    Phase.CACHE_LOOKUP.value,
    Phase.EMBEDDING.value,
    Phase.RETRIEVAL.value,
    Phase.PROMPT_BUILDING.value,
    Phase.GENERATION.value,
)


def _phase_name(phase: "Phase | str") -> str:
    return phase.value if isinstance(phase, Enum) else str(phase)


@dataclass(frozen=True)
class LatencyThresholds:
    """Warning and error limits in milliseconds; ``None`` disables a check."""

    embedding_warn_ms: float | None = 100.0
    retrieval_warn_ms: float | None = 500.0
    generation_warn_ms: float | None = 5000.0
    total_warn_ms: float | None = 10000.0
    total_error_ms: float | None = 30000.0

    @classmethod
    def coerce(cls, value: "LatencyThresholds | Mapping[str, float | None] | None") -> "LatencyThresholds":
        if value is None:
            return cls()
        if isinstance(value, LatencyThresholds):
            return value
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in value.items() if k in known})

    def warn_limit(self, phase: str) -> float | None:
        return {
            Phase.EMBEDDING.value: self.embedding_warn_ms,
            Phase.RETRIEVAL.value: self.retrieval_warn_ms,
            Phase.GENERATION.value: self.generation_warn_ms,
        }.get(phase)


DEFAULT_LATENCY_THRESHOLDS = LatencyThresholds()


@dataclass(frozen=True)
class LatencySummary:
    request_id: str
    total_ms: float
    phases: Mapping[str, float]
    cached_phases: frozenset[str]
    started_at_ms: float
    completed_at_ms: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ThresholdViolation:
    phase: str
    duration_ms: float
    threshold_ms: float
    severity: Literal["warning", "error"] = "warning"


@dataclass(frozen=True)
class ThresholdCheck:
    exceeded: bool
    violations: tuple[ThresholdViolation, ...]


@dataclass(frozen=True)
class LatencyAggregate:
    count: int
    avg_total_ms: float
    min_total_ms: float
    max_total_ms: float
    avg_phases: Mapping[str, float]
    cache_hit_rate: Mapping[str, float]


@dataclass(frozen=True)
class LatencyTrackerConfig:
    """Logging behaviour of a tracker."""

    log_phase_events: bool = True
    log_summary_on_complete: bool = True
    record_metrics: bool = True
    thresholds: LatencyThresholds = DEFAULT_LATENCY_THRESHOLDS
    default_metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class _PhaseTiming:
    start: float
    end: float | None = None
    duration_ms: float | None = None
    cached: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class LatencyTracker:
    """Tracks latency across the phases of a single pipeline request."""

    def __init__(
        self,
        request_id: str,
        config: LatencyTrackerConfig | None = None,
        *,
        logger: structlog.BoundLogger | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._request_id = request_id
        self._config = config or LatencyTrackerConfig()
        self._logger = logger or get_logger("latency")
        self._clock = clock
        self._start = clock()
        self._started_at_ms = time.time() * 1000
        self._completed_at_ms: float | None = None
        self._phases: dict[str, _PhaseTiming] = {}
        self._metadata: dict[str, Any] = dict(self._config.default_metadata)
        self._summary: LatencySummary | None = None

    @property
    def request_id(self) -> str:
        return self._request_id

    @property
    def elapsed_ms(self) -> float:
        return max((self._clock() - self._start) * 1000, 0.0)

    def start_phase(self, phase: Phase | str, **metadata: Any) -> None:
        name = _phase_name(phase)
        previous = self._phases.get(name)
        self._phases[name] = _PhaseTiming(
            start=self._clock(),
            cached=previous.cached if previous else False,
            metadata=dict(metadata),
        )
        if self._config.log_phase_events:
            self._logger.debug(
                "latency.phase_started",
                request_id=self._request_id,
                phase=name,
                elapsed_ms=round(self.elapsed_ms, 2),
                **metadata,
            )

    def end_phase(self, phase: Phase | str, **metadata: Any) -> float:
        name = _phase_name(phase)
        timing = self._phases.get(name)
        if timing is None:
            return 0.0
        timing.end = self._clock()
        timing.metadata.update(metadata)
        if timing.cached:
            timing.duration_ms = 0.0
        else:
            timing.duration_ms = max((timing.end - timing.start) * 1000, 0.0)
        if self._config.log_phase_events:
            limit = self._config.thresholds.warn_limit(name)
            slow = not timing.cached and limit is not None and timing.duration_ms > limit
            log = self._logger.warning if slow else self._logger.debug
            log(
                "latency.phase_completed",
                request_id=self._request_id,
                phase=name,
                duration_ms=round(timing.duration_ms, 2),
                cached=timing.cached,
                **timing.metadata,
            )
        return timing.duration_ms

    def mark_cached(self, phase: Phase | str, **metadata: Any) -> None:
        """Record that ``phase`` was served by an upstream cache."""

        name = _phase_name(phase)
        timing = self._phases.get(name)
        if timing is None:
            now = self._clock()
            timing = _PhaseTiming(start=now, end=now)
            self._phases[name] = timing
        timing.cached = True
        timing.duration_ms = 0.0
        timing.metadata.update(metadata)
        if self._config.log_phase_events:
            self._logger.debug(
                "latency.phase_cached",
                request_id=self._request_id,
                phase=name,
                **metadata,
            )

    @contextmanager
    def phase(self, phase: Phase | str, **metadata: Any) -> Iterator["LatencyTracker"]:
        """Time the enclosed block as ``phase``."""

        self.start_phase(phase, **metadata)
        try:
            yield self
        except BaseException:
            self.end_phase(phase, error=True)
            raise
        self.end_phase(phase)

    def phase_state(self, phase: Phase | str) -> PhaseState:
        timing = self._phases.get(_phase_name(phase))
        if timing is None:
            return PhaseState.NOT_STARTED
        if timing.cached:
            return PhaseState.CACHED
        if timing.end is None:
            return PhaseState.RUNNING
        return PhaseState.ENDED

    def phase_duration(self, phase: Phase | str) -> float | None:
        timing = self._phases.get(_phase_name(phase))
        return timing.duration_ms if timing else None

    def is_phase_cached(self, phase: Phase | str) -> bool:
        timing = self._phases.get(_phase_name(phase))
        return bool(timing and timing.cached)

    def add_metadata(self, **metadata: Any) -> None:
        self._metadata.update(metadata)

    def get_summary(self) -> LatencySummary:
        """Return an in-flight snapshot without finalizing."""

        if self._summary is not None:
            return self._summary
        return self._snapshot()

    def complete(self) -> LatencySummary:
        """Finalize tracking; repeated calls return the same summary."""

        if self._summary is not None:
            return self._summary
        self._completed_at_ms = time.time() * 1000
        summary = self._snapshot()
        self._summary = summary
        if self._config.record_metrics:
            self._record_metrics(summary)
        if self._config.log_summary_on_complete:
            self._log_summary(summary)
        return summary

    def _snapshot(self) -> LatencySummary:
        now = self._clock()
        phases: dict[str, float] = {}
        cached: set[str] = set()
        for name, timing in self._phases.items():
            if timing.duration_ms is not None:
                phases[name] = timing.duration_ms
            else:
                phases[name] = max((now - timing.start) * 1000, 0.0)
            if timing.cached:
                cached.add(name)
        return LatencySummary(
            request_id=self._request_id,
            total_ms=round(max((now - self._start) * 1000, 0.0), 2),
            phases=phases,
            cached_phases=frozenset(cached),
            started_at_ms=self._started_at_ms,
            completed_at_ms=self._completed_at_ms,
            metadata=dict(self._metadata),
        )

    def _record_metrics(self, summary: LatencySummary) -> None:
        for name, duration_ms in summary.phases.items():
            if name not in summary.cached_phases:
                PipelineMetrics.observe_phase(name, duration_ms / 1000)
        PipelineMetrics.observe_phase(Phase.TOTAL.value, summary.total_ms / 1000)
        for violation in check_latency_thresholds(summary, self._config.thresholds).violations:
            PipelineMetrics.observe_threshold_violation(violation.phase, violation.severity)

    def _log_summary(self, summary: LatencySummary) -> None:
        thresholds = self._config.thresholds
        log = self._logger.info
        if thresholds.total_error_ms is not None and summary.total_ms > thresholds.total_error_ms:
            log = self._logger.error
        elif thresholds.total_warn_ms is not None and summary.total_ms > thresholds.total_warn_ms:
            log = self._logger.warning
        log(
            "latency.summary",
            request_id=summary.request_id,
            total_ms=summary.total_ms,
            embedding_ms=summary.phases.get(Phase.EMBEDDING.value, 0.0),
            retrieval_ms=summary.phases.get(Phase.RETRIEVAL.value, 0.0),
            generation_ms=summary.phases.get(Phase.GENERATION.value, 0.0),
            cached_phases=sorted(summary.cached_phases) or None,
            **summary.metadata,
        )


def check_latency_thresholds(
    summary: LatencySummary,
    thresholds: LatencyThresholds | Mapping[str, float | None] | None = None,
) -> ThresholdCheck:
    """Compare measured phase durations against ``thresholds``.

    Cached phases are ignored. The total duration is reported once, as an
    ``error`` above ``total_error_ms`` or a ``warning`` above ``total_warn_ms``.
    """

    limits = LatencyThresholds.coerce(thresholds)
    violations: list[ThresholdViolation] = []
    for name in (Phase.EMBEDDING.value, Phase.RETRIEVAL.value, Phase.GENERATION.value):
        limit = limits.warn_limit(name)
        duration = summary.phases.get(name)
        if limit is None or duration is None or name in summary.cached_phases:
            continue
        if duration > limit:
            violations.append(ThresholdViolation(phase=name, duration_ms=duration, threshold_ms=limit))
    total = Phase.TOTAL.value
    if limits.total_error_ms is not None and summary.total_ms > limits.total_error_ms:
        violations.append(
            ThresholdViolation(
                phase=total,
                duration_ms=summary.total_ms,
                threshold_ms=limits.total_error_ms,
                severity="error",
            )
        )
    elif limits.total_warn_ms is not None and summary.total_ms > limits.total_warn_ms:
        violations.append(
            ThresholdViolation(phase=total, duration_ms=summary.total_ms, threshold_ms=limits.total_warn_ms)
        )
    return ThresholdCheck(exceeded=bool(violations), violations=tuple(violations))


def aggregate_latency_summaries(summaries: Sequence[LatencySummary]) -> LatencyAggregate:
    """Reduce completed summaries to averages, extremes and per-phase cache hit rates."""

    if not summaries:
        return LatencyAggregate(
            count=0,
            avg_total_ms=0.0,
            min_total_ms=0.0,
            max_total_ms=0.0,
            avg_phases={},
            cache_hit_rate={},
        )
    count = len(summaries)
    totals = [summary.total_ms for summary in summaries]
    durations: defaultdict[str, list[float]] = defaultdict(list)
    cached_counts: defaultdict[str, int] = defaultdict(int)
    for summary in summaries:
        for name, duration in summary.phases.items():
            durations[name].append(duration)
        for name in summary.cached_phases:
            cached_counts[name] += 1
    names = sorted(set(durations) | set(cached_counts))
    return LatencyAggregate(
        count=count,
        avg_total_ms=math.fsum(totals) / count,
        min_total_ms=min(totals),
        max_total_ms=max(totals),
        avg_phases={name: math.fsum(durations[name]) / len(durations[name]) for name in names if durations[name]},
        cache_hit_rate={name: cached_counts[name] / count for name in names},
    )


def format_latency_summary(summary: LatencySummary) -> str:
    lines = [
        f"Latency Summary for {summary.request_id}:",
        f"  Total: {summary.total_ms:.2f}ms",
    ]
    ordered = [name for name in PHASE_ORDER if name in summary.phases]
    ordered += [name for name in summary.phases if name not in PHASE_ORDER]
    for name in ordered:
        suffix = " (cached)" if name in summary.cached_phases else ""
        lines.append(f"  {name}: {summary.phases[name]:.2f}ms{suffix}")
    return "\n".join(lines)


def calculate_phase_percentages(summary: LatencySummary) -> dict[str, int]:
    if summary.total_ms <= 0:
        return {name: 0 for name in summary.phases}
    return {name: round(duration / summary.total_ms * 100) for name, duration in summary.phases.items()}


__all__ = [
    "DEFAULT_LATENCY_THRESHOLDS",
    "LatencyAggregate",
    "LatencySummary",
    "LatencyThresholds",
    "LatencyTracker",
    "LatencyTrackerConfig",
    "Phase",
    "PhaseState",
    "ThresholdCheck",
    "ThresholdViolation",
    "aggregate_latency_summaries",
    "calculate_phase_percentages",
    "check_latency_thresholds",
    "format_latency_summary",
]

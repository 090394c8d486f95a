from __future__ import annotations

import pytest

from lexrag.metrics.latency import (
    LatencySummary,
    LatencyThresholds,
    LatencyTracker,
    LatencyTrackerConfig,
    Phase,
    PhaseState,
    aggregate_latency_summaries,
    calculate_phase_percentages,
    check_latency_thresholds,
    format_latency_summary,
)


class StepClock:
    """Seconds-based clock advanced manually."""

    def __init__(self) -> None:
        self.now = 100.0

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000

    def __call__(self) -> float:
        return self.now


QUIET = LatencyTrackerConfig(log_phase_events=False, log_summary_on_complete=False, record_metrics=False)


def _tracker(clock: StepClock) -> LatencyTracker:
    return LatencyTracker("rag-1-abc", QUIET, clock=clock)


def _summary(total: float, phases: dict[str, float], cached: frozenset[str] = frozenset()) -> LatencySummary:
    return LatencySummary(
        request_id="r",
        total_ms=total,
        phases=phases,
        cached_phases=cached,
        started_at_ms=0.0,
    )


def test_phase_durations_are_measured():
    clock = StepClock()
    tracker = _tracker(clock)
    tracker.start_phase(Phase.EMBEDDING)
    clock.advance_ms(40)
    assert tracker.end_phase(Phase.EMBEDDING) == pytest.approx(40)
    assert tracker.phase_state(Phase.EMBEDDING) is PhaseState.ENDED
    assert tracker.phase_duration("embedding") == pytest.approx(40)


def test_end_without_start_returns_zero():
    tracker = _tracker(StepClock())
    assert tracker.end_phase(Phase.RETRIEVAL) == 0.0
    assert tracker.phase_state(Phase.RETRIEVAL) is PhaseState.NOT_STARTED
    assert "retrieval" not in tracker.complete().phases


def test_cached_phase_reports_zero_duration():
    clock = StepClock()
    tracker = _tracker(clock)
    tracker.start_phase(Phase.EMBEDDING)
    clock.advance_ms(30)
    tracker.mark_cached(Phase.EMBEDDING)
    assert tracker.end_phase(Phase.EMBEDDING) == 0.0
    assert tracker.is_phase_cached(Phase.EMBEDDING)
    assert tracker.phase_state(Phase.EMBEDDING) is PhaseState.CACHED
    summary = tracker.complete()
    assert summary.phases["embedding"] == 0.0
    assert summary.cached_phases == frozenset({"embedding"})


def test_mark_cached_before_start_survives_restart():
    clock = StepClock()
    tracker = _tracker(clock)
    tracker.mark_cached(Phase.EMBEDDING)
    tracker.start_phase(Phase.EMBEDDING)
    clock.advance_ms(10)
    assert tracker.end_phase(Phase.EMBEDDING) == 0.0


def test_running_phase_in_snapshot_reports_elapsed():
    clock = StepClock()
    tracker = _tracker(clock)
    tracker.start_phase(Phase.GENERATION)
    clock.advance_ms(25)
    assert tracker.phase_state(Phase.GENERATION) is PhaseState.RUNNING
    assert tracker.get_summary().phases["generation"] == pytest.approx(25)


def test_phase_context_manager_records_errors():
    clock = StepClock()
    tracker = _tracker(clock)
    with pytest.raises(ValueError):
        with tracker.phase(Phase.RETRIEVAL):
            clock.advance_ms(5)
            raise ValueError("boom")
    assert tracker.phase_state(Phase.RETRIEVAL) is PhaseState.ENDED
    assert tracker.phase_duration(Phase.RETRIEVAL) == pytest.approx(5)


def test_complete_is_idempotent():
    clock = StepClock()
    tracker = _tracker(clock)
    tracker.add_metadata(chunks_used=2)
    first = tracker.complete()
    clock.advance_ms(100)
    second = tracker.complete()
    assert first is second
    assert first.completed_at_ms is not None
    assert first.metadata["chunks_used"] == 2


def test_summary_durations_never_negative():
    clock = StepClock()
    tracker = _tracker(clock)
    tracker.start_phase(Phase.EMBEDDING)
    clock.now -= 1.0
    assert tracker.end_phase(Phase.EMBEDDING) == 0.0
    summary = tracker.complete()
    assert all(duration >= 0 for duration in summary.phases.values())
    assert summary.total_ms >= 0


def test_thresholds_flag_slow_phases_and_skip_cached():
    summary = _summary(
        12_000,
        {"embedding": 150, "retrieval": 600, "generation": 100},
        cached=frozenset({"retrieval"}),
    )
    check = check_latency_thresholds(summary)
    assert check.exceeded
    phases = [(v.phase, v.severity) for v in check.violations]
    assert phases == [("embedding", "warning"), ("total", "warning")]


def test_total_error_threshold_takes_precedence():
    check = check_latency_thresholds(_summary(31_000, {}))
    assert [(v.phase, v.severity, v.threshold_ms) for v in check.violations] == [("total", "error", 30_000)]


def test_disabled_thresholds_are_skipped():
    thresholds = LatencyThresholds(embedding_warn_ms=None, total_warn_ms=None, total_error_ms=None)
    check = check_latency_thresholds(_summary(99_999, {"embedding": 5_000}), thresholds)
    assert not check.exceeded
    assert check.violations == ()


def test_thresholds_accept_mapping():
    check = check_latency_thresholds(_summary(10, {"generation": 20}), {"generation_warn_ms": 10})
    assert [v.phase for v in check.violations] == ["generation"]


def test_aggregate_is_order_independent():
    a = _summary(100, {"embedding": 10, "retrieval": 20}, frozenset({"embedding"}))
    b = _summary(300, {"embedding": 30, "retrieval": 40})
    forward = aggregate_latency_summaries([a, b])
    backward = aggregate_latency_summaries([b, a])
    assert forward == backward
    assert forward.count == 2
    assert forward.avg_total_ms == pytest.approx(200)
    assert forward.min_total_ms == 100
    assert forward.max_total_ms == 300
    assert forward.avg_phases["retrieval"] == pytest.approx(30)
    assert forward.cache_hit_rate["embedding"] == pytest.approx(0.5)
    assert forward.cache_hit_rate["retrieval"] == 0.0


def test_aggregate_of_nothing():
    aggregate = aggregate_latency_summaries([])
    assert aggregate.count == 0
    assert aggregate.avg_phases == {}


def test_format_and_percentages():
    summary = _summary(200, {"embedding": 50, "generation": 150}, frozenset({"embedding"}))
    rendered = format_latency_summary(summary)
    assert "Total: 200.00ms" in rendered
    assert "embedding: 50.00ms (cached)" in rendered
    assert calculate_phase_percentages(summary) == {"embedding": 25, "generation": 75}

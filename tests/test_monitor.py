"""Tests for trigger sources, metrics collectors and the monitor loop."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

import pytest

from phaseguard.artifacts.registry import MemoryArtifactRegistry
from phaseguard.core.contracts.trigger import (
    HealthSnapshot,
    Trigger,
    TriggerAction,
    TriggerEvent,
    TriggerKind,
    TriggerThreshold,
)
from phaseguard.core.errors import Busy
from phaseguard.core.settings import Settings
from phaseguard.engine import Engine
from phaseguard.monitoring.metrics import ProcessMetricsCollector, StaticMetricsCollector
from phaseguard.monitoring.monitor import TriggerMonitor
from phaseguard.monitoring.sources import (
    PredicateTriggerSource,
    ThresholdTriggerSource,
    default_triggers,
)
from phaseguard.phases.gate import OperationGate


def _trigger(kind: TriggerKind, action: TriggerAction, **limits: Any) -> Trigger:
    return Trigger(kind=kind, threshold=TriggerThreshold(**limits), action=action)


MEMORY_WARN = _trigger(TriggerKind.PERFORMANCE, TriggerAction.WARN, max_memory_percent=95)


# ---- Sources ---- #


def test_threshold_crossed_at_or_above_limit() -> None:
    source = ThresholdTriggerSource(
        _trigger(TriggerKind.COMPATIBILITY, TriggerAction.ROLLBACK, max_consecutive_errors=3)
    )
    assert source.evaluate(HealthSnapshot(consecutive_error_count=2)) == []

    (event,) = source.evaluate(HealthSnapshot(consecutive_error_count=3))
    assert event.metric == "consecutive_error_count"
    assert event.observed_value == 3.0
    assert event.action is TriggerAction.ROLLBACK


def test_missing_observation_never_crosses() -> None:
    source = ThresholdTriggerSource(
        _trigger(TriggerKind.PERFORMANCE, TriggerAction.WARN, max_latency_ms=100)
    )
    assert source.evaluate(HealthSnapshot(latency_ms=None)) == []


def test_threshold_without_limits_is_invalid() -> None:
    with pytest.raises(ValueError):
        TriggerThreshold(window_seconds=60)


def test_default_triggers_arm_three_critical_rules() -> None:
    perf, compat, stability = default_triggers()
    assert perf.threshold.max_memory_percent == 95.0
    assert perf.threshold.max_latency_ms == 10_000
    assert compat.threshold.max_consecutive_errors == 3
    assert stability.action is TriggerAction.EMERGENCY_STOP
    assert stability.threshold.max_crashes == 1


def test_predicate_source() -> None:
    source = PredicateTriggerSource(
        "audit-score",
        _trigger(TriggerKind.MANUAL, TriggerAction.WARN, max_custom_signal=0.5),
        lambda health: 0.2 if (health.custom_signal or 1.0) < 0.5 else None,
    )
    assert source.evaluate(HealthSnapshot(custom_signal=0.9)) == []
    (event,) = source.evaluate(HealthSnapshot(custom_signal=0.1))
    assert event.source == "audit-score"


# ---- Metrics ---- #


def test_process_metrics_windows() -> None:
    now = [1000.0]
    collector = ProcessMetricsCollector(
        error_window_seconds=60, crash_window_seconds=300, clock=lambda: now[0]
    )
    for _ in range(3):
        collector.record_error()
    collector.record_crash()
    collector.record_latency(250)

    sample = collector.collect()
    assert sample.consecutive_error_count == 3
    assert sample.crash_count_in_window == 1
    assert sample.latency_ms == 250
    assert 0.0 <= sample.memory_usage_percent <= 100.0

    collector.record_success()
    now[0] += 301
    later = collector.collect()
    assert later.consecutive_error_count == 0
    assert later.crash_count_in_window == 0


# ---- Monitor ---- #


def test_evaluate_keeps_registration_order() -> None:
    metrics = StaticMetricsCollector(memory_usage_percent=99.0, crash_count_in_window=2)
    monitor = TriggerMonitor(metrics)
    monitor.register_trigger(
        _trigger(TriggerKind.STABILITY, TriggerAction.EMERGENCY_STOP, max_crashes=1)
    )
    monitor.register_trigger(
        _trigger(TriggerKind.PERFORMANCE, TriggerAction.ROLLBACK, max_memory_percent=95)
    )

    events = monitor.evaluate(monitor.sample())
    assert [e.trigger.kind for e in events] == [TriggerKind.STABILITY, TriggerKind.PERFORMANCE]


def test_tick_hands_events_to_handler() -> None:
    received: list[Sequence[TriggerEvent]] = []
    metrics = StaticMetricsCollector(memory_usage_percent=96.0)
    monitor = TriggerMonitor(metrics, handler=received.append)
    monitor.register_trigger(MEMORY_WARN)

    events = monitor.tick()

    assert len(events) == 1
    assert received == [events]
    assert monitor.ticks == 1


def test_tick_skipped_while_halted() -> None:
    metrics = StaticMetricsCollector(memory_usage_percent=99.0)
    monitor = TriggerMonitor(metrics, halted=lambda: True)
    monitor.register_trigger(MEMORY_WARN)

    assert monitor.tick() == []
    assert metrics.calls == 0


def test_overlapping_tick_rejected() -> None:
    """A manual tick racing a running tick is refused, never interleaved."""
    entered = threading.Event()
    release = threading.Event()

    def slow_handler(_events: Sequence[TriggerEvent]) -> None:
        entered.set()
        release.wait(5)

    metrics = StaticMetricsCollector(memory_usage_percent=99.0)
    monitor = TriggerMonitor(metrics, handler=slow_handler)
    monitor.register_trigger(MEMORY_WARN)

    worker = threading.Thread(target=monitor.tick)
    worker.start()
    assert entered.wait(5)
    try:
        with pytest.raises(Busy):
            monitor.tick()
    finally:
        release.set()
        worker.join(5)


def test_background_loop_runs_and_stops() -> None:
    metrics = StaticMetricsCollector()
    monitor = TriggerMonitor(metrics, interval=0.01)
    monitor.start()
    deadline = time.monotonic() + 5
    while metrics.calls < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    monitor.stop(timeout=5)

    assert metrics.calls >= 3
    assert not monitor.running


def test_stop_refused_during_rollback() -> None:
    gate = OperationGate()
    monitor = TriggerMonitor(StaticMetricsCollector(), gate=gate)
    with gate.hold("rollback"):
        with pytest.raises(Busy):
            monitor.stop()
    monitor.stop()


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TriggerMonitor(StaticMetricsCollector(), interval=0)


# ---- End to end ---- #


def test_corrupted_artifact_rolls_back_to_phase_one(
    settings: Settings,
    registry: MemoryArtifactRegistry,
    upgrade: Callable[[int], None],
) -> None:
    """Phase 1 -> 2, tamper with config, one tick restores phase 1 intact."""
    engine = Engine.from_settings(
        settings, registry=registry, metrics=StaticMetricsCollector(), watch_integrity=True
    )
    engine.start()
    engine.controller.checkpoint()
    upgrade(2)
    engine.controller.advance(2)

    registry.content["config.json"] = b'{"mode": "tampered"}'
    events = engine.monitor.tick()

    assert [e.metric for e in events] == ["integrity_mismatches"]
    assert engine.controller.current_phase == 1
    phase_one = engine.store.get(1)
    assert phase_one is not None
    assert engine.validator.validate(phase_one).valid
    assert not engine.emergency.is_engaged()
    engine.shutdown()


def test_crash_metric_engages_latch_and_halts_ticks(
    engine: Engine,
    metrics: StaticMetricsCollector,
    advance_to: Callable[[int], None],
) -> None:
    advance_to(2)
    metrics.set(crash_count_in_window=1)

    engine.monitor.tick()
    assert engine.emergency.is_engaged()
    assert engine.controller.current_phase == 2

    calls = metrics.calls
    assert engine.monitor.tick() == []
    assert metrics.calls == calls


def test_error_run_rolls_back_one_phase(
    engine: Engine,
    metrics: StaticMetricsCollector,
    advance_to: Callable[[int], None],
) -> None:
    advance_to(3)
    metrics.set(consecutive_error_count=3)

    engine.monitor.tick()

    assert engine.controller.current_phase == 2
    (op,) = engine.journal.operations()
    assert op.reason == "compatibility"

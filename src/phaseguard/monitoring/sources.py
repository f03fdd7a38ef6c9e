"""
Trigger sources: pluggable producers of trigger events.

Every source answers one question per tick: given this health sample, which
rules fire? The monitor evaluates sources in registration order and returns
all fired events in that order; deciding what to do with them is the phase
controller's job.

Variants
--------
- :class:`ThresholdTriggerSource`: a declarative :class:`Trigger` compared
  against the health sample.
- :class:`IntegrityTriggerSource`: fires when the active phase's reference
  snapshot no longer validates against current artifact content
  (system-integrity compromise).
- :class:`PredicateTriggerSource`: wraps any check callable, for host-specific
  signals (audit failures, risk scores) that are not plain metrics.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from phaseguard.core.contracts.snapshot import Snapshot
from phaseguard.core.contracts.trigger import (
    THRESHOLD_METRICS,
    HealthSnapshot,
    Trigger,
    TriggerAction,
    TriggerEvent,
    TriggerKind,
    TriggerThreshold,
)
from phaseguard.snapshots.integrity import IntegrityValidator


@runtime_checkable
class TriggerSource(Protocol):
    name: str

    def evaluate(self, health: HealthSnapshot) -> list[TriggerEvent]: ...


class ThresholdTriggerSource:
    """Fires its trigger when any declared limit is reached."""

    def __init__(self, trigger: Trigger) -> None:
        self.trigger = trigger
        self.name = f"threshold:{trigger.kind.value}"

    def evaluate(self, health: HealthSnapshot) -> list[TriggerEvent]:
        threshold = self.trigger.threshold
        for limit_field, metric in THRESHOLD_METRICS:
            limit = getattr(threshold, limit_field)
            observed = getattr(health, metric)
            if limit is None or observed is None:
                continue
            if observed >= limit:
                return [
                    TriggerEvent(
                        trigger=self.trigger,
                        observed_value=float(observed),
                        metric=metric,
                        source=self.name,
                    )
                ]
        return []


class IntegrityTriggerSource:
    """Fires when the reference snapshot of the active phase stops validating.

    ``reference`` is called every tick and returns the snapshot to check (or
    ``None`` when there is nothing to compare against). The observed value is
    the number of mismatching artifacts.
    """

    def __init__(
        self,
        validator: IntegrityValidator,
        reference: Callable[[], Snapshot | None],
        action: TriggerAction = TriggerAction.ROLLBACK,
        kind: TriggerKind = TriggerKind.STABILITY,
    ) -> None:
        self.validator = validator
        self.reference = reference
        self.name = "integrity"
        self.trigger = Trigger(
            kind=kind,
            threshold=TriggerThreshold(max_custom_signal=1.0),
            action=action,
            description="Tracked artifacts diverged from the active phase snapshot",
        )

    def evaluate(self, health: HealthSnapshot) -> list[TriggerEvent]:
        snapshot = self.reference()
        if snapshot is None:
            return []
        report = self.validator.validate(snapshot)
        if report.valid:
            return []
        return [
            TriggerEvent(
                trigger=self.trigger,
                observed_value=float(len(report.mismatches)),
                metric="integrity_mismatches",
                source=self.name,
            )
        ]


class PredicateTriggerSource:
    """Adapts a check ``(health) -> observed value | None`` into a source.

    The check returns ``None`` when nothing is wrong; any number fires the
    trigger with that number as the observed value.
    """

    def __init__(
        self,
        name: str,
        trigger: Trigger,
        check: Callable[[HealthSnapshot], float | None],
    ) -> None:
        self.name = name
        self.trigger = trigger
        self.check = check

    def evaluate(self, health: HealthSnapshot) -> list[TriggerEvent]:
        observed = self.check(health)
        if observed is None:
            return []
        return [
            TriggerEvent(
                trigger=self.trigger,
                observed_value=float(observed),
                metric=self.name,
                source=self.name,
            )
        ]


def default_triggers() -> list[Trigger]:
    """The three critical triggers armed at startup."""
    return [
        Trigger(
            kind=TriggerKind.PERFORMANCE,
            threshold=TriggerThreshold(max_latency_ms=10_000, max_memory_percent=95.0),
            action=TriggerAction.ROLLBACK,
            description="System performance degradation detected",
        ),
        Trigger(
            kind=TriggerKind.COMPATIBILITY,
            threshold=TriggerThreshold(max_consecutive_errors=3, window_seconds=60.0),
            action=TriggerAction.ROLLBACK,
            description="Compatibility issues with enhanced features",
        ),
        Trigger(
            kind=TriggerKind.STABILITY,
            threshold=TriggerThreshold(max_crashes=1, window_seconds=300.0),
            action=TriggerAction.EMERGENCY_STOP,
            description="System stability compromised",
        ),
    ]


__all__ = [
    "TriggerSource",
    "ThresholdTriggerSource",
    "IntegrityTriggerSource",
    "PredicateTriggerSource",
    "default_triggers",
]

"""Trigger contracts: declarative health rules, samples and fired events.

- :class:`TriggerThreshold`: the structured condition of a rule.
- :class:`Trigger`: kind + threshold + action.
- :class:`HealthSnapshot`: one sample from the metrics collaborator.
- :class:`TriggerEvent`: a rule whose threshold was crossed by a sample.

Crossing semantics
------------------
A limit is crossed when the observed value *reaches or exceeds* it. A metric
the sample does not carry (``None``) never crosses. When several limits of one
threshold are crossed, the first in declaration order below is reported.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TriggerKind(StrEnum):
    """Category of a health rule."""

    PERFORMANCE = "performance"
    COMPATIBILITY = "compatibility"
    STABILITY = "stability"
    MANUAL = "manual"


class TriggerAction(StrEnum):
    """What the phase controller does when a rule fires."""

    WARN = "warn"
    ROLLBACK = "rollback"
    EMERGENCY_STOP = "emergency-stop"


#: Threshold field -> HealthSnapshot field, in reporting order.
THRESHOLD_METRICS: tuple[tuple[str, str], ...] = (
    ("max_memory_percent", "memory_usage_percent"),
    ("max_latency_ms", "latency_ms"),
    ("max_consecutive_errors", "consecutive_error_count"),
    ("max_crashes", "crash_count_in_window"),
    ("max_custom_signal", "custom_signal"),
)


class TriggerThreshold(BaseModel):
    """Structured condition; at least one limit must be set."""

    model_config = ConfigDict(frozen=True)

    max_memory_percent: float | None = Field(default=None, ge=0.0, le=100.0)
    max_latency_ms: float | None = Field(default=None, ge=0.0)
    max_consecutive_errors: int | None = Field(default=None, ge=1)
    max_crashes: int | None = Field(default=None, ge=1)
    max_custom_signal: float | None = Field(default=None)
    window_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Sliding window the metrics collaborator counts over.",
    )

    @model_validator(mode="after")
    def _needs_a_limit(self) -> TriggerThreshold:
        if all(getattr(self, limit) is None for limit, _ in THRESHOLD_METRICS):
            raise ValueError("threshold must declare at least one limit")
        return self


class Trigger(BaseModel):
    """A declarative rule mapping a health condition to an action."""

    model_config = ConfigDict(frozen=True)

    kind: TriggerKind
    threshold: TriggerThreshold
    action: TriggerAction
    description: str = ""


class HealthSnapshot(BaseModel):
    """Health signals read from the host environment in one sampling tick."""

    model_config = ConfigDict(frozen=True)

    sampled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    memory_usage_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    consecutive_error_count: int = Field(default=0, ge=0)
    crash_count_in_window: int = Field(default=0, ge=0)
    latency_ms: float | None = Field(default=None, ge=0.0)
    custom_signal: float | None = None


class TriggerEvent(BaseModel):
    """A fired trigger together with the value that crossed its threshold."""

    model_config = ConfigDict(frozen=True)

    trigger: Trigger
    observed_value: float
    metric: str
    source: str = "threshold"
    fired_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def action(self) -> TriggerAction:
        return self.trigger.action


__all__ = [
    "TriggerKind",
    "TriggerAction",
    "THRESHOLD_METRICS",
    "TriggerThreshold",
    "Trigger",
    "HealthSnapshot",
    "TriggerEvent",
]

"""Phase-level contracts: emergency marker, phase record, status and events."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PhaseEventName = Literal[
    "snapshot-created",
    "phase-advanced",
    "rollback-executed",
    "health-warning",
    "emergency-stop",
    "emergency-stop-disengaged",
]


class EmergencyMarker(BaseModel):
    """Persisted record present if and only if the emergency latch is engaged."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reason: str
    last_known_phase: int | None = None
    manual_intervention_required: bool = True


class PhaseRecord(BaseModel):
    """Last committed phase, persisted so a restart resumes where it left off."""

    current_phase: int = Field(ge=1)
    highest_phase: int = Field(ge=1)
    committed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PhaseStatus(BaseModel):
    """Read-only view of the engine for the CLI and API."""

    current_phase: int
    highest_phase: int
    available_phases: list[int] = Field(default_factory=list)
    emergency_stop: bool = False
    emergency_reason: str | None = None
    rollback_in_progress: bool = False
    monitoring: bool = False


class PhaseEvent(BaseModel):
    """Notification delivered to observers subscribed to the controller."""

    name: PhaseEventName
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)


__all__ = ["PhaseEventName", "EmergencyMarker", "PhaseRecord", "PhaseStatus", "PhaseEvent"]

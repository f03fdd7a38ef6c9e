"""
Request and response bodies for the HTTP control surface.

Engine records (``PhaseStatus``, ``SnapshotSummary``, ``RollbackOperation``,
``EmergencyMarker``) are returned as-is; this module only adds the request
bodies and the few envelopes that have no engine counterpart.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from phaseguard.core.contracts.phase import EmergencyMarker


class SnapshotRequest(BaseModel):
    """Body of ``POST /snapshots``: checkpoint the current phase."""

    description: str = ""


class AdvanceRequest(BaseModel):
    """Body of ``POST /advance``."""

    target_phase: int = Field(ge=1)
    description: str = ""


class RollbackRequest(BaseModel):
    """Body of ``POST /rollback`` (always operator-initiated)."""

    target_phase: int = Field(ge=1)
    reason: str = Field(min_length=1)


class EngageRequest(BaseModel):
    """Body of ``POST /emergency-stop``."""

    reason: str = Field(min_length=1)


class EmergencyStopState(BaseModel):
    """Latch state as reported by ``GET /emergency-stop``."""

    engaged: bool
    marker: EmergencyMarker | None = None


class ErrorBody(BaseModel):
    """Structured refusal shared by every error response."""

    error: str
    reason: str


__all__ = [
    "SnapshotRequest",
    "AdvanceRequest",
    "RollbackRequest",
    "EngageRequest",
    "EmergencyStopState",
    "ErrorBody",
]

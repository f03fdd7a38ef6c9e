"""RollbackOperation: audit record of one restoration attempt.

A record is journaled exactly once, when the attempt concludes, and is never
rewritten afterwards. While an attempt is running only the in-progress
marker (:class:`RollbackIntent`) exists on disk; finding that marker at
startup means the process died mid-restore.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Initiator(StrEnum):
    """Who asked for the restoration."""

    SYSTEM = "system"
    OPERATOR = "operator"


class RollbackIntent(BaseModel):
    """In-progress marker written before any artifact is touched."""

    model_config = ConfigDict(frozen=True)

    operation_id: str
    target_snapshot_id: str
    target_phase: int
    reason: str
    initiator: Initiator
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RollbackOperation(BaseModel):
    """Concluded restoration attempt.

    Fields
    ------
    affected_components : list[str]
        Artifacts the executor wrote (or tried to write).
    data_loss_notes : list[str]
        Operator-facing notes on anything not restored: write failures,
        post-restore mismatches, non-restorable artifacts that drifted.
    pre_check_mismatches / post_check_mismatches : list[str]
        Artifacts that failed fingerprint validation before and after apply.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    target_snapshot_id: str
    target_phase: int
    reason: str
    initiator: Initiator
    success: bool
    affected_components: list[str] = Field(default_factory=list)
    data_loss_notes: list[str] = Field(default_factory=list)
    pre_check_mismatches: list[str] = Field(default_factory=list)
    post_check_mismatches: list[str] = Field(default_factory=list)
    concluded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


__all__ = ["Initiator", "RollbackIntent", "RollbackOperation"]

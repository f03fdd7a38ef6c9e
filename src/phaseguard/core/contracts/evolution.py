"""EvolutionRequest: a deliberate, reviewed phase advance."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated

from pydantic import BaseModel, Field

RiskScore = Annotated[int, Field(ge=0, le=10)]


class EvolutionKind(StrEnum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    EMERGENCY = "emergency"


class ReviewStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EvolutionRequest(BaseModel):
    """A planned capability upgrade and its safety envelope.

    Unlike snapshots, requests move through a small lifecycle
    (pending -> approved/rejected -> executed), so the model is mutable and
    the planner journals each state change.
    """

    id: str
    requested_by: str
    evolution_kind: EvolutionKind
    description: str = ""
    target_components: list[str] = Field(default_factory=list)
    expected_changes: list[str] = Field(default_factory=list)
    consent_granted: bool = False
    risk_score: RiskScore = 0
    review_status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: str | None = None
    rollback_plan: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    executed: bool = False
    pre_snapshot_id: str | None = None
    post_snapshot_id: str | None = None
    rollback_tested: bool | None = None
    failure: str | None = None


__all__ = ["RiskScore", "EvolutionKind", "ReviewStatus", "EvolutionRequest"]

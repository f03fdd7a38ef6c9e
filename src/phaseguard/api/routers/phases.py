"""
API routes for phases, snapshots, rollbacks and the emergency stop.

Endpoints
---------
- `GET /status`: active phase, held phases, latch state.
- `GET /snapshots`, `GET /snapshots/{key}`: listings (payload-free).
- `POST /snapshots`: checkpoint the current phase.
- `POST /advance`: commit the next phase.
- `POST /rollback`: operator-initiated rollback.
- `GET /rollbacks`: the rollback journal.
- `GET|POST|DELETE /emergency-stop`: inspect, engage, clear the latch.

Design Decisions
----------------
- **Sync handlers**: captures and restores block on file I/O, so handlers
  are plain ``def`` and FastAPI runs them in its thread pool.
- **Errors are not handled here**: engine errors propagate to the
  exception handlers registered in :mod:`phaseguard.api.app`, which map them
  to 404/409/423/500 with a structured ``reason``.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from phaseguard.api.schemas import (
    AdvanceRequest,
    EmergencyStopState,
    EngageRequest,
    RollbackRequest,
    SnapshotRequest,
)
from phaseguard.core.contracts.phase import PhaseStatus
from phaseguard.core.contracts.rollback import Initiator, RollbackOperation
from phaseguard.core.contracts.snapshot import SnapshotSummary
from phaseguard.core.errors import NotFoundError
from phaseguard.engine import Engine

router = APIRouter(tags=["Phases"])


def get_engine(request: Request) -> Engine:
    """Dependency: the engine owned by this application instance."""
    engine: Engine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="engine not started",
        )
    return engine


EngineDep = Annotated[Engine, Depends(get_engine)]


@router.get("/status", response_model=PhaseStatus, summary="Current phase and latch state")
def read_status(engine: EngineDep) -> PhaseStatus:
    return engine.status()


# ---- Snapshots ---- #


@router.get("/snapshots", response_model=list[SnapshotSummary], summary="List snapshots")
def list_snapshots(engine: EngineDep) -> list[SnapshotSummary]:
    return [snap.summary() for snap in engine.store.history()]


@router.get("/snapshots/{key}", response_model=SnapshotSummary, summary="Get one snapshot")
def read_snapshot(key: str, engine: EngineDep) -> SnapshotSummary:
    """Look up by snapshot id, or by phase number for that phase's latest."""
    snap = engine.store.get(int(key) if key.isdigit() else key)
    if snap is None:
        raise NotFoundError(f"no snapshot for {key}")
    return snap.summary()


@router.post(
    "/snapshots",
    response_model=SnapshotSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Checkpoint the current phase",
)
def create_snapshot(body: SnapshotRequest, engine: EngineDep) -> SnapshotSummary:
    return engine.controller.checkpoint(body.description).summary()


# ---- Transitions ---- #


@router.post("/advance", response_model=SnapshotSummary, summary="Advance one phase")
def advance_phase(body: AdvanceRequest, engine: EngineDep) -> SnapshotSummary:
    return engine.controller.advance(body.target_phase, body.description).summary()


@router.post("/rollback", response_model=RollbackOperation, summary="Roll back to a phase")
def request_rollback(body: RollbackRequest, engine: EngineDep) -> RollbackOperation:
    """
    Restore ``target_phase`` from its snapshot.

    A restore that does not verify responds 500 and leaves the emergency
    stop engaged; the failed operation is journaled and visible under
    ``GET /rollbacks``.
    """
    return engine.controller.request_rollback(body.target_phase, body.reason, Initiator.OPERATOR)


@router.get("/rollbacks", response_model=list[RollbackOperation], summary="Rollback journal")
def list_rollbacks(engine: EngineDep) -> list[RollbackOperation]:
    return engine.journal.operations()


# ---- Emergency stop ---- #


@router.get("/emergency-stop", response_model=EmergencyStopState, summary="Latch state")
def read_emergency_stop(engine: EngineDep) -> EmergencyStopState:
    marker = engine.emergency.marker()
    return EmergencyStopState(engaged=marker is not None, marker=marker)


@router.post("/emergency-stop", response_model=EmergencyStopState, summary="Engage the latch")
def engage_emergency_stop(body: EngageRequest, engine: EngineDep) -> EmergencyStopState:
    marker = engine.emergency.engage(body.reason, engine.controller.current_phase)
    return EmergencyStopState(engaged=True, marker=marker)


@router.delete("/emergency-stop", response_model=EmergencyStopState, summary="Clear the latch")
def clear_emergency_stop(
    engine: EngineDep,
    operator: Annotated[str, Query(min_length=1, description="Who is clearing the latch")],
) -> EmergencyStopState:
    # The marker may have been written by another process; disengage checks the file.
    engine.emergency.disengage(operator)
    return EmergencyStopState(engaged=False)


__all__ = ["router", "get_engine"]

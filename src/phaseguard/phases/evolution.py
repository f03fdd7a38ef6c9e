"""
Evolution planner: deliberate, reviewed phase advances.

A host that wants to upgrade capabilities files an :class:`EvolutionRequest`
describing what will change. The planner decides whether it may run:

- ``major`` requests wait for an explicit :meth:`EvolutionPlanner.review`;
- other kinds are approved on filing unless their risk score exceeds the
  configured ceiling, or consent was withheld (``emergency`` requests need
  no consent).

Executing an approved request brackets the host's ``apply`` callback with a
pre-evolution checkpoint and the phase advance. If ``apply`` or the advance
fails, the artifacts are restored from the pre-evolution snapshot and the
phase stays where it was. While the emergency stop is engaged nothing is
restored: the failure is recorded and the artifacts are left to the operator.

Every state change of a request is appended to ``evolution.jsonl``; the last
record for an id wins when the planner reloads.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from pathlib import Path

from pydantic import ValidationError

from phaseguard.core.contracts.evolution import (
    EvolutionKind,
    EvolutionRequest,
    ReviewStatus,
)
from phaseguard.core.contracts.rollback import Initiator
from phaseguard.core.contracts.snapshot import Snapshot
from phaseguard.core.errors import IllegalTransition, NotFoundError, PhaseGuardError
from phaseguard.core.settings import get_logger
from phaseguard.core.storage import append_line, read_lines
from phaseguard.phases.controller import PhaseController

logger = get_logger(__name__)

EVOLUTION_FILE = "evolution.jsonl"
AUTO_REVIEWER = "auto"

ApplyFn = Callable[[EvolutionRequest], object]


class EvolutionPlanner:
    """Files, reviews and executes evolution requests against a controller."""

    def __init__(self, controller: PhaseController, state_dir: Path, max_risk: int = 7) -> None:
        self.controller = controller
        self.state_dir = state_dir
        self.max_risk = max_risk
        self._requests: dict[str, EvolutionRequest] = {}
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.reload()

    @property
    def journal_path(self) -> Path:
        return self.state_dir / EVOLUTION_FILE

    # ------------------------------- Persistence ----------------------------

    def reload(self) -> None:
        self._requests.clear()
        for record in read_lines(self.journal_path):
            try:
                request = EvolutionRequest.model_validate(record)
            except ValidationError:
                logger.warning("Skipping malformed evolution record %s", record.get("id"))
                continue
            self._requests[request.id] = request

    def _record(self, request: EvolutionRequest) -> None:
        self._requests[request.id] = request
        append_line(self.journal_path, request)

    # ------------------------------- Queries --------------------------------

    def requests(self) -> list[EvolutionRequest]:
        return sorted(self._requests.values(), key=lambda r: r.created_at)

    def get(self, request_id: str) -> EvolutionRequest:
        try:
            return self._requests[request_id]
        except KeyError:
            raise NotFoundError(f"no evolution request {request_id}") from None

    # ------------------------------- Lifecycle ------------------------------

    def request(
        self,
        requested_by: str,
        evolution_kind: EvolutionKind | str,
        description: str = "",
        target_components: Iterable[str] = (),
        expected_changes: Iterable[str] = (),
        risk_score: int = 0,
        consent_granted: bool = True,
    ) -> EvolutionRequest:
        """File a request and run the automatic part of its review."""
        kind = EvolutionKind(evolution_kind)
        components = list(target_components)
        phase = self.controller.current_phase
        request = EvolutionRequest(
            id=f"evo-{uuid.uuid4().hex[:12]}",
            requested_by=requested_by,
            evolution_kind=kind,
            description=description,
            target_components=components,
            expected_changes=list(expected_changes),
            consent_granted=consent_granted or kind is EvolutionKind.EMERGENCY,
            risk_score=risk_score,
            rollback_plan=(
                f"Restore the pre-evolution snapshot of phase {phase}"
                + (f" covering {', '.join(components)}" if components else "")
            ),
        )

        if not request.consent_granted:
            self._decide(request, ReviewStatus.REJECTED, AUTO_REVIEWER, "consent not granted")
        elif risk_score > self.max_risk:
            self._decide(
                request,
                ReviewStatus.REJECTED,
                AUTO_REVIEWER,
                f"risk score {risk_score} exceeds ceiling {self.max_risk}",
            )
        elif kind is EvolutionKind.MAJOR:
            logger.info("Evolution %s (major) awaiting review", request.id)
        else:
            self._decide(request, ReviewStatus.APPROVED, AUTO_REVIEWER)

        self._record(request)
        return request

    def review(self, request_id: str, approve: bool, reviewer: str) -> EvolutionRequest:
        """Approve or reject a pending request.

        Raises
        ------
        NotFoundError
            Unknown request id.
        IllegalTransition
            The request was already reviewed.
        """
        if not reviewer.strip():
            raise ValueError("reviewer must be named")
        request = self.get(request_id)
        if request.review_status is not ReviewStatus.PENDING:
            raise IllegalTransition(
                f"evolution {request_id} already {request.review_status.value}"
            )
        status = ReviewStatus.APPROVED if approve else ReviewStatus.REJECTED
        self._decide(request, status, reviewer)
        self._record(request)
        return request

    def _decide(
        self,
        request: EvolutionRequest,
        status: ReviewStatus,
        reviewer: str,
        why: str | None = None,
    ) -> None:
        request.review_status = status
        request.reviewed_by = reviewer
        if why:
            request.failure = why
        logger.info(
            "Evolution %s %s by %s%s", request.id, status.value, reviewer, f": {why}" if why else ""
        )

    def execute(self, request_id: str, apply: ApplyFn) -> bool:
        """Run an approved request: checkpoint, ``apply``, advance.

        Returns ``True`` when the phase advanced. A failing ``apply`` or
        advance restores the pre-evolution artifacts, unless the emergency
        stop is engaged by then, and returns ``False``.

        Raises
        ------
        NotFoundError, IllegalTransition
            Unknown, unapproved or already executed request.
        Locked
            Emergency stop engaged; nothing was captured.
        """
        request = self.get(request_id)
        if request.review_status is not ReviewStatus.APPROVED:
            raise IllegalTransition(
                f"evolution {request_id} is {request.review_status.value}, not approved"
            )
        if request.executed:
            raise IllegalTransition(f"evolution {request_id} was already executed")

        controller = self.controller
        start_phase = controller.current_phase
        pre = controller.checkpoint(f"Pre-evolution {request.id}: {request.description}")
        request.pre_snapshot_id = pre.id

        try:
            apply(request)
            post = controller.advance(
                start_phase + 1, f"Post-evolution {request.id}: {request.description}"
            )
        except Exception as exc:
            request.failure = f"{type(exc).__name__}: {exc}"
            if controller.emergency.is_engaged():
                logger.critical(
                    "Evolution %s failed with the emergency stop engaged: %s; "
                    "artifacts left untouched for the operator (pre snapshot %s)",
                    request.id,
                    exc,
                    pre.id,
                )
            else:
                logger.error("Evolution %s failed: %s; restoring %s", request.id, exc, pre.id)
                self._restore(pre, request)
            self._record(request)
            return False

        request.post_snapshot_id = post.id
        request.executed = True
        if request.evolution_kind is EvolutionKind.MAJOR:
            request.rollback_tested = self._rollback_capable(pre)
            if not request.rollback_tested:
                logger.warning(
                    "Evolution %s: pre-evolution snapshot %s cannot fully restore phase %d",
                    request.id,
                    pre.id,
                    start_phase,
                )
        self._record(request)
        logger.info("Evolution %s advanced phase %d -> %d", request.id, start_phase, post.phase)
        return True

    def _restore(self, pre: Snapshot, request: EvolutionRequest) -> None:
        try:
            operation = self.controller.executor.execute(
                pre, f"evolution {request.id} failed", Initiator.SYSTEM
            )
        except PhaseGuardError as exc:
            self.controller.emergency.engage(
                f"evolution {request.id} could not be undone: {exc.reason}",
                last_known_phase=self.controller.current_phase,
            )
            return
        if not operation.success:
            self.controller.emergency.engage(
                f"evolution {request.id} could not be undone: "
                + "; ".join(operation.data_loss_notes),
                last_known_phase=self.controller.current_phase,
            )

    def _rollback_capable(self, pre: Snapshot) -> bool:
        """The pre snapshot is still held and carries every restorable payload."""
        store = self.controller.store
        held = store.get(pre.id)
        if held is None:
            return False
        restorable = set(self.controller.executor.registry.restorable_names())
        return restorable <= set(held.config_backup) and set(held.fingerprints) >= restorable


__all__ = ["EvolutionPlanner", "EVOLUTION_FILE", "ApplyFn"]

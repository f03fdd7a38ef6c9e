"""
Phase controller: the single owner of the active phase number.

State machine
-------------
States are integer phases ``1..N``. The controller starts at phase 1, which
is established by the baseline snapshot taken on first initialization, and
resumes from the persisted phase record (``phase.json``) afterwards.

- ``advance(n)``: legal only for ``n == current + 1`` and only when a
  pre-transition snapshot of ``current`` exists. The host takes that
  checkpoint with :meth:`PhaseController.checkpoint`, applies its upgrade,
  then calls ``advance``, which captures the post-transition snapshot.
- ``request_rollback(n, ...)``: legal only for ``n < current`` with a
  snapshot of ``n`` held. A failed restore engages the emergency stop.
- Trigger events map to warn / rollback-one-phase / emergency stop.

The emergency stop is a latch next to this machine, not a state in it: while
engaged both transitions raise ``Locked`` and the phase stays where it was.

Every transition holds the shared gate from its checks through its commit
and first adopts whatever another process on the same state directory
committed, so ``phase.json`` always names the state the artifacts are in.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import ExitStack
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from phaseguard.core.contracts.phase import (
    EmergencyMarker,
    PhaseEvent,
    PhaseEventName,
    PhaseRecord,
    PhaseStatus,
)
from phaseguard.core.contracts.rollback import Initiator, RollbackOperation
from phaseguard.core.contracts.snapshot import Snapshot
from phaseguard.core.contracts.trigger import TriggerAction, TriggerEvent
from phaseguard.core.errors import (
    Busy,
    IllegalTransition,
    NotFoundError,
    PhaseGuardError,
    RestoreFailure,
)
from phaseguard.core.settings import RecoveryPolicy, get_logger
from phaseguard.core.storage import read_document, write_document
from phaseguard.phases.emergency import EmergencyStop
from phaseguard.phases.rollback import RollbackExecutor
from phaseguard.snapshots.store import SnapshotStore

logger = get_logger(__name__)

PHASE_FILE = "phase.json"
BASELINE_PHASE = 1

PhaseObserver = Callable[[PhaseEvent], None]

_ACTION_PRIORITY = {
    TriggerAction.EMERGENCY_STOP: 0,
    TriggerAction.ROLLBACK: 1,
    TriggerAction.WARN: 2,
}


class PhaseController:
    """Mediates every phase transition for one running process."""

    def __init__(
        self,
        store: SnapshotStore,
        executor: RollbackExecutor,
        emergency: EmergencyStop,
        state_dir: Path,
    ) -> None:
        self.store = store
        self.executor = executor
        self.emergency = emergency
        self.gate = executor.gate
        self.state_dir = state_dir
        self._current = BASELINE_PHASE
        self._highest = BASELINE_PHASE
        self._observers: list[PhaseObserver] = []
        self.emergency.subscribe(self._on_emergency)

    # ------------------------------- Properties -----------------------------

    @property
    def current_phase(self) -> int:
        return self._current

    @property
    def highest_phase(self) -> int:
        return self._highest

    @property
    def record_path(self) -> Path:
        return self.state_dir / PHASE_FILE

    # ------------------------------- Observers ------------------------------

    def subscribe(self, observer: PhaseObserver) -> None:
        self._observers.append(observer)

    def _emit(self, name: PhaseEventName, **data: Any) -> None:
        event = PhaseEvent(name=name, data=data)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:  # a broken observer must not undo a committed transition
                logger.exception("Phase observer failed on %s", name)

    def _on_emergency(self, name: str, marker: EmergencyMarker | None) -> None:
        payload = marker.model_dump(mode="json") if marker else {}
        if name == "emergency-stop":
            self._emit("emergency-stop", **payload)
        else:
            self._emit("emergency-stop-disengaged", **payload)

    # ------------------------------- Lifecycle ------------------------------

    def initialize(self) -> Snapshot | None:
        """Load the committed phase, or capture the phase-1 baseline.

        With a phase record but an empty store the baseline is captured at
        the recorded phase, so the active phase always has a reference.
        Returns the baseline snapshot when one was created, else ``None``.
        """
        record = self._load_record()
        baseline: Snapshot | None = None

        if record is not None:
            self._current = record.current_phase
            self._highest = max(record.highest_phase, record.current_phase)
        elif self.store.list():
            # Snapshots without a phase record: resume at the newest snapshot's phase.
            latest = self.store.history()[-1]
            self._current = latest.phase
            self._highest = max(self.store.list())
            self._save_record()
        else:
            self._current = self._highest = BASELINE_PHASE

        if not self.store.list():
            description = "Baseline state"
            if self._current != BASELINE_PHASE:
                logger.warning(
                    "Phase record says phase %d but no snapshots are held; "
                    "capturing the current state as phase %d's reference",
                    self._current,
                    self._current,
                )
                description = f"Baseline state (resumed at phase {self._current})"
            baseline = self.store.create(self._current, description)
            self._emit("snapshot-created", phase=self._current, snapshot_id=baseline.id)
            self._save_record()

        self.store.reference_phase = self._current
        logger.info(
            "Phase controller ready at phase %d (highest %d, snapshots for %s)",
            self._current,
            self._highest,
            self.store.list(),
        )
        return baseline

    def _load_record(self) -> PhaseRecord | None:
        try:
            raw = read_document(self.record_path)
        except (OSError, ValueError) as exc:
            logger.error("Unreadable phase record %s: %s", self.record_path, exc)
            return None
        if raw is None:
            return None
        try:
            return PhaseRecord.model_validate(raw)
        except ValidationError as exc:
            logger.error("Malformed phase record %s: %s", self.record_path, exc)
            return None

    def _save_record(self) -> None:
        write_document(
            self.record_path,
            PhaseRecord(current_phase=self._current, highest_phase=self._highest),
        )

    def _sync(self) -> None:
        """Adopt snapshots and a phase another process committed meanwhile."""
        self.store.refresh()
        record = self._load_record()
        if record is None:
            return
        if record.current_phase != self._current:
            logger.info(
                "Phase moved %d -> %d in another process", self._current, record.current_phase
            )
        self._current = record.current_phase
        self._highest = max(self._highest, record.highest_phase, record.current_phase)
        self.store.reference_phase = self._current

    def _commit(self, phase: int) -> None:
        self._current = phase
        self._highest = max(self._highest, phase)
        self.store.reference_phase = phase
        self._save_record()

    # ------------------------------- Transitions ----------------------------

    def checkpoint(self, description: str = "") -> Snapshot:
        """Capture a pre-transition snapshot of the current phase."""
        with self.gate.hold("snapshot"):
            self.emergency.ensure_clear("checkpoint")
            self._sync()
            phase = self._current
            snapshot = self.store.create(
                phase, description or f"Pre-transition checkpoint of phase {phase}"
            )
        self._emit("snapshot-created", phase=phase, snapshot_id=snapshot.id)
        return snapshot

    def advance(self, target_phase: int, description: str = "") -> Snapshot:
        """Commit ``current + 1`` and capture its post-transition snapshot.

        The gate is held from the checks through the commit, so no rollback
        can land between the capture and the new phase record.

        Raises
        ------
        Busy
            Another operation holds the gate, in this or another process.
        Locked
            Emergency stop engaged.
        IllegalTransition
            ``target_phase`` is not exactly one above the current phase.
        NotFoundError
            No pre-transition snapshot of the current phase is held.
        CaptureError
            The post-transition capture failed; the phase is unchanged.
        """
        with self.gate.hold("advance"):
            self.emergency.ensure_clear("advance")
            self._sync()
            current = self._current
            if target_phase != current + 1:
                raise IllegalTransition(
                    f"advance to phase {target_phase} refused: only phase {current + 1} "
                    f"may follow phase {current}"
                )
            if self.store.get(current) is None:
                raise NotFoundError(
                    f"advance to phase {target_phase} refused: no pre-transition snapshot "
                    f"of phase {current}; call checkpoint() first"
                )

            post = self.store.create(
                target_phase,
                description or f"Post-transition checkpoint of phase {target_phase}",
            )
            self._commit(target_phase)

        logger.info("Advanced phase %d -> %d (snapshot %s)", current, target_phase, post.id)
        self._emit("snapshot-created", phase=target_phase, snapshot_id=post.id)
        self._emit("phase-advanced", from_phase=current, to_phase=target_phase)
        return post

    def request_rollback(
        self,
        target_phase: int,
        reason: str,
        initiator: Initiator | str = Initiator.OPERATOR,
    ) -> RollbackOperation:
        """Restore ``target_phase`` and commit it as the current phase.

        Raises
        ------
        Busy, Locked, NotFoundError, IllegalTransition
            Refusals, checked in that order; state is unchanged. A phase with
            no held snapshot is ``NotFoundError`` even when it lies above the
            current phase.
        RestoreFailure
            The restore failed; the emergency stop has been engaged and the
            failed operation is attached to the exception.
        """
        who = Initiator(initiator)
        with self.gate.hold("rollback"):
            self.emergency.ensure_clear("rollback")
            self._sync()
            current = self._current
            snapshot = self.store.get(target_phase)
            if snapshot is None:
                raise NotFoundError(
                    f"rollback to phase {target_phase} refused: no snapshot held for that "
                    f"phase (available: {self.store.list()})"
                )
            if target_phase >= current:
                raise IllegalTransition(
                    f"rollback to phase {target_phase} refused: target must be below "
                    f"the current phase {current}"
                )

            try:
                operation = self.executor.execute(snapshot, reason, who)
            except RestoreFailure as exc:
                self._escalate(f"rollback to phase {target_phase} aborted: {exc.reason}")
                raise

            if not operation.success:
                summary = "; ".join(operation.data_loss_notes) or "restore did not verify"
                self._escalate(f"rollback to phase {target_phase} failed: {summary}")
                self._emit("rollback-executed", **operation.model_dump(mode="json"))
                raise RestoreFailure(
                    f"rollback {operation.id} to phase {target_phase} failed: {summary}",
                    operation,
                )

            self._commit(target_phase)
            try:
                self.store.mark_validated(snapshot.id)
            except OSError as exc:
                logger.warning("Could not flag snapshot %s as validated: %s", snapshot.id, exc)

        logger.info(
            "Rolled back phase %d -> %d (%s, initiated by %s)",
            current,
            target_phase,
            reason,
            who,
        )
        self._emit("rollback-executed", **operation.model_dump(mode="json"))
        return operation

    def _escalate(self, reason: str) -> None:
        self.emergency.engage(reason, last_known_phase=self._current)

    # ------------------------------- Triggers -------------------------------

    def handle_trigger_event(self, event: TriggerEvent) -> RollbackOperation | None:
        """Act on one fired trigger."""
        trigger = event.trigger
        if event.action is TriggerAction.WARN:
            logger.warning(
                "Health warning [%s] %s: %s=%g",
                trigger.kind,
                trigger.description,
                event.metric,
                event.observed_value,
            )
            self._emit(
                "health-warning",
                kind=str(trigger.kind),
                metric=event.metric,
                value=event.observed_value,
            )
            return None

        if event.action is TriggerAction.EMERGENCY_STOP:
            self.emergency.engage(
                f"{trigger.kind} trigger: {trigger.description or 'threshold crossed'} "
                f"({event.metric}={event.observed_value:g})",
                last_known_phase=self._current,
            )
            return None

        if self._current <= BASELINE_PHASE:
            logger.warning(
                "Rollback trigger [%s] fired at baseline phase %d; nothing lower to restore",
                trigger.kind,
                self._current,
            )
            self._emit(
                "health-warning",
                kind=str(trigger.kind),
                metric=event.metric,
                value=event.observed_value,
            )
            return None
        return self.request_rollback(self._current - 1, str(trigger.kind), Initiator.SYSTEM)

    def handle_trigger_events(self, events: Sequence[TriggerEvent]) -> RollbackOperation | None:
        """Act on every event of one tick, by priority.

        Emergency stop beats rollback beats warn. Warnings are always
        reported; at most one mandatory action is taken per tick.
        """
        ordered = sorted(events, key=lambda e: _ACTION_PRIORITY[e.action])
        operation: RollbackOperation | None = None
        acted = False
        for event in ordered:
            if event.action is TriggerAction.WARN:
                self.handle_trigger_event(event)
                continue
            if acted:
                logger.info(
                    "Skipping %s from %s trigger; already acted this tick",
                    event.action,
                    event.trigger.kind,
                )
                continue
            if self.emergency.is_engaged():
                logger.warning("Emergency stop engaged; ignoring %s trigger", event.action)
                acted = True
                continue
            acted = True
            operation = self.handle_trigger_event(event)
        return operation

    # ------------------------------- Recovery -------------------------------

    def recover_interrupted(self, policy: RecoveryPolicy) -> RollbackOperation | None:
        """Deal with a rollback a dead process never finished.

        A marker is only treated as interrupted when the gate can be taken:
        while another process holds it, the marker belongs to a live
        rollback and is left alone.

        ``emergency-stop`` journals the attempt as failed and engages the
        latch. ``retry`` re-runs the restore once; a retry that fails or
        cannot start also engages the latch.
        """
        journal = self.executor.journal
        if not journal.has_incomplete_marker():
            return None

        with ExitStack() as stack:
            try:
                stack.enter_context(self.gate.hold("rollback-recovery"))
            except Busy as exc:
                logger.info("Rollback marker left alone, still owned elsewhere: %s", exc.reason)
                return None
            if not journal.has_incomplete_marker():
                return None
            self._sync()
            return self._recover(policy)
        return None

    def _recover(self, policy: RecoveryPolicy) -> RollbackOperation | None:
        journal = self.executor.journal
        intent = self.executor.interrupted()
        if intent is None:
            journal.in_progress_path.unlink(missing_ok=True)
            self._escalate("interrupted rollback found at startup with an unreadable record")
            return None

        logger.error(
            "Interrupted rollback %s to phase %d detected (policy: %s)",
            intent.operation_id,
            intent.target_phase,
            policy,
        )
        if policy == "retry" and not self.emergency.is_engaged():
            self.executor.abandon(intent, "process stopped mid-restore; retried at startup")
            try:
                operation = self.executor.execute(
                    intent.target_snapshot_id,
                    f"retry of interrupted {intent.operation_id}: {intent.reason}",
                    intent.initiator,
                )
            except PhaseGuardError as exc:
                self._escalate(f"retry of interrupted rollback failed: {exc.reason}")
                return None
            if operation.success:
                self._commit(intent.target_phase)
            else:
                self._escalate(
                    f"retry of interrupted rollback {intent.operation_id} did not verify"
                )
            return operation

        operation = self.executor.abandon(intent, "process stopped mid-restore; state unknown")
        self._escalate(
            f"rollback {intent.operation_id} to phase {intent.target_phase} was interrupted"
        )
        return operation

    # ------------------------------- Queries --------------------------------

    def prune(self, retain: int) -> list[str]:
        """Trim old snapshots, always keeping the active phase's reference."""
        with self.gate.hold("snapshot-prune"):
            self._sync()
            self.store.reference_phase = self._current
            return self.store.prune(retain)

    def status(self) -> PhaseStatus:
        marker = self.emergency.marker()
        return PhaseStatus(
            current_phase=self._current,
            highest_phase=self._highest,
            available_phases=self.store.list(),
            emergency_stop=marker is not None,
            emergency_reason=marker.reason if marker else None,
            rollback_in_progress=self.executor.in_progress,
        )


__all__ = ["PhaseController", "PhaseObserver", "PHASE_FILE", "BASELINE_PHASE"]

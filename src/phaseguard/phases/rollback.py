"""
Rollback executor: restore a snapshot's configuration and prove it took.

Sequence
--------
1. **Load** the target through the store (``NotFoundError`` if absent).
2. **Pre-check** with the integrity validator. Mismatches are expected (they
   are usually why we are rolling back) and only logged.
3. **Apply** every ``config_backup`` payload, one artifact at a time. Any
   exception from a write is recorded and the executor moves on to the next
   artifact.
4. **Re-validate** against the snapshot's fingerprints.
5. **Conclude**: the operation succeeds only when every payload was written
   and no restorable artifact still mismatches. Drift in fingerprint-only
   artifacts is reported in ``data_loss_notes`` without failing the restore.

The executor never escalates on its own: it returns the concluded
:class:`RollbackOperation` and the phase controller engages the emergency
stop when ``success`` is false. Only one execution runs at a time; a
concurrent call is rejected with ``Busy`` through the shared gate.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from phaseguard.artifacts.registry import ArtifactRegistry
from phaseguard.core.contracts.rollback import Initiator, RollbackIntent, RollbackOperation
from phaseguard.core.contracts.snapshot import Snapshot
from phaseguard.core.errors import NotFoundError, RestoreFailure
from phaseguard.core.settings import get_logger
from phaseguard.phases.gate import OperationGate
from phaseguard.phases.journal import RollbackJournal
from phaseguard.snapshots.integrity import IntegrityValidator
from phaseguard.snapshots.store import SnapshotStore

logger = get_logger(__name__)


def _operation_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"rb-{stamp}-{uuid.uuid4().hex[:8]}"


class RollbackExecutor:
    """Orchestrates load -> validate -> apply -> confirm for one snapshot."""

    def __init__(
        self,
        store: SnapshotStore,
        validator: IntegrityValidator,
        registry: ArtifactRegistry,
        journal: RollbackJournal,
        gate: OperationGate,
    ) -> None:
        self.store = store
        self.validator = validator
        self.registry = registry
        self.journal = journal
        self.gate = gate

    @property
    def in_progress(self) -> bool:
        return self.gate.is_rollback_in_progress()

    def execute(
        self,
        target: Snapshot | str | int,
        reason: str = "",
        initiator: Initiator = Initiator.SYSTEM,
    ) -> RollbackOperation:
        """Restore ``target`` (a snapshot, snapshot id, or phase number).

        Raises
        ------
        Busy
            Another rollback or snapshot write holds the gate.
        NotFoundError
            The target snapshot is not in the store.
        RestoreFailure
            An unexpected error escaped the apply/verify steps. The failed
            attempt is journaled before raising.
        """
        with self.gate.hold("rollback"):
            snapshot = self._load(target)
            op_id = _operation_id()
            logger.info(
                "Rollback %s -> snapshot %s (phase %d) by %s: %s",
                op_id,
                snapshot.id,
                snapshot.phase,
                initiator,
                reason or "no reason given",
            )
            self.journal.begin(
                RollbackIntent(
                    operation_id=op_id,
                    target_snapshot_id=snapshot.id,
                    target_phase=snapshot.phase,
                    reason=reason,
                    initiator=initiator,
                )
            )
            try:
                operation = self._restore(op_id, snapshot, reason, initiator)
            except Exception as exc:
                failed = RollbackOperation(
                    id=op_id,
                    target_snapshot_id=snapshot.id,
                    target_phase=snapshot.phase,
                    reason=reason,
                    initiator=initiator,
                    success=False,
                    data_loss_notes=[f"restore aborted: {exc!r}"],
                )
                self.journal.conclude(failed)
                raise RestoreFailure(
                    f"rollback {op_id} to phase {snapshot.phase} aborted: {exc}", failed
                ) from exc

            self.journal.conclude(operation)

        if operation.success:
            logger.info("Rollback %s complete: phase %d restored", op_id, snapshot.phase)
        else:
            logger.error(
                "Rollback %s FAILED for phase %d: %s",
                op_id,
                snapshot.phase,
                "; ".join(operation.data_loss_notes),
            )
        return operation

    def _load(self, target: Snapshot | str | int) -> Snapshot:
        key: str | int = target.id if isinstance(target, Snapshot) else target
        snapshot = self.store.get(key)
        if snapshot is None:
            what = f"phase {key}" if isinstance(key, int) else f"id {key}"
            raise NotFoundError(f"no snapshot for {what}")
        return snapshot

    def _restore(
        self, op_id: str, snapshot: Snapshot, reason: str, initiator: Initiator
    ) -> RollbackOperation:
        pre = self.validator.validate(snapshot)
        if not pre.valid:
            logger.warning(
                "Rollback %s pre-check: %d artifact(s) diverged from snapshot: %s",
                op_id,
                len(pre.mismatches),
                ", ".join(pre.mismatches),
            )

        affected: list[str] = []
        notes: list[str] = []
        failed_writes: list[str] = []
        for name, payload in snapshot.config_backup.items():
            affected.append(name)
            try:
                self.registry.write(name, payload)
            except Exception as exc:  # one bad artifact must not stop the others
                failed_writes.append(name)
                notes.append(f"{name}: write failed ({exc!r}); current content kept")
                logger.error("Rollback %s: cannot restore %s: %s", op_id, name, exc)

        post = self.validator.validate(snapshot)
        restorable = set(snapshot.config_backup)
        unrestored = [m for m in post.mismatches if m in restorable and m not in failed_writes]
        for name in unrestored:
            notes.append(f"{name}: content still differs from snapshot after restore")
        for name in post.mismatches:
            if name not in restorable:
                notes.append(f"{name}: not restorable; drift from snapshot remains")

        return RollbackOperation(
            id=op_id,
            target_snapshot_id=snapshot.id,
            target_phase=snapshot.phase,
            reason=reason,
            initiator=initiator,
            success=not failed_writes and not unrestored,
            affected_components=affected,
            data_loss_notes=notes,
            pre_check_mismatches=pre.mismatches,
            post_check_mismatches=post.mismatches,
        )

    # ------------------------------- Recovery -------------------------------

    def interrupted(self) -> RollbackIntent | None:
        """Return the intent of a rollback the previous process never finished."""
        return self.journal.incomplete()

    def abandon(self, intent: RollbackIntent, note: str) -> RollbackOperation:
        """Journal an interrupted attempt as failed and clear its marker."""
        operation = RollbackOperation(
            id=intent.operation_id,
            timestamp=intent.started_at,
            target_snapshot_id=intent.target_snapshot_id,
            target_phase=intent.target_phase,
            reason=intent.reason,
            initiator=intent.initiator,
            success=False,
            data_loss_notes=[note],
        )
        self.journal.conclude(operation)
        return operation


__all__ = ["RollbackExecutor"]

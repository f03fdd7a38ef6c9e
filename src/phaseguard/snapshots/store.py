"""
Durable, append-only snapshot store.

Layout
------
Everything lives under one directory (``<state_dir>/snapshots`` by default)::

    index.jsonl          append-only log: add / validated / prune entries
    snap-000001-ab12cd34.json
    snap-000002-....json

A snapshot body is written once and never rewritten. The index is the
commit point: a body without an ``add`` entry is ignored, so a capture that
fails half-way leaves nothing observable behind. The ``validated`` flag is
recorded as an index entry and applied when the log is replayed.

Keys
----
``get(3)`` returns the most recent snapshot of phase 3 (the phase's current
reference point: the post-transition checkpoint, or a later pre-transition
one). ``get("snap-...")`` looks up by id. Missing keys return ``None``.

Concurrency
-----------
Every write (capture, pruning, validation flag) holds the shared
:class:`~phaseguard.phases.gate.OperationGate`, the same gate rollback
execution holds, so captures and restores can never interleave. The gate
also excludes other processes on the same state directory; each write first
replays index entries those processes appended.
"""

from __future__ import annotations

import threading
import uuid
from pathlib import Path

from pydantic import ValidationError

from phaseguard.artifacts.registry import ArtifactRegistry
from phaseguard.core.contracts.snapshot import Snapshot
from phaseguard.core.errors import CaptureError, NotFoundError
from phaseguard.core.settings import get_logger
from phaseguard.core.storage import append_line, read_lines, write_document
from phaseguard.phases.gate import OperationGate
from phaseguard.snapshots.integrity import IntegrityValidator

logger = get_logger(__name__)

INDEX_FILE = "index.jsonl"


class SnapshotStore:
    """Create, index, look up and prune immutable snapshots."""

    def __init__(
        self,
        root: Path,
        registry: ArtifactRegistry,
        validator: IntegrityValidator,
        gate: OperationGate | None = None,
    ) -> None:
        self.root = root
        self.registry = registry
        self.validator = validator
        self.gate = gate if gate is not None else OperationGate()
        #: Phase whose reference snapshot pruning must keep; set by the controller.
        self.reference_phase: int | None = None

        self._lock = threading.Lock()
        self._snapshots: dict[str, Snapshot] = {}
        self._order: list[str] = []
        self._next_sequence = 1
        self._index_stamp: tuple[int, int] | None = None

        self.root.mkdir(parents=True, exist_ok=True)
        self.reload()

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    def _body_path(self, snapshot_id: str) -> Path:
        return self.root / f"{snapshot_id}.json"

    # ------------------------------- Capture --------------------------------

    def create(self, phase: int, description: str = "") -> Snapshot:
        """Capture the current state as a new snapshot of ``phase``.

        Raises
        ------
        CaptureError
            If any tracked artifact is unreadable or the snapshot cannot be
            persisted. Nothing is indexed in that case.
        Busy
            If a rollback or another snapshot write is in progress.
        """
        if phase < 1:
            raise ValueError(f"phase must be >= 1, got {phase}")

        with self.gate.hold("snapshot"):
            self.refresh()
            backup, fingerprints = self._capture_artifacts()
            sequence = self._next_sequence
            snapshot = Snapshot(
                id=f"snap-{sequence:06d}-{uuid.uuid4().hex[:8]}",
                sequence=sequence,
                phase=phase,
                description=description,
                component_versions=self.registry.component_versions(),
                enabled_capabilities=self.registry.enabled_capabilities(),
                config_backup=backup,
                fingerprints=fingerprints,
            )

            body = self._body_path(snapshot.id)
            try:
                write_document(body, snapshot)
                append_line(
                    self.index_path,
                    {
                        "op": "add",
                        "id": snapshot.id,
                        "phase": snapshot.phase,
                        "sequence": sequence,
                        "created_at": snapshot.created_at.isoformat(),
                    },
                )
            except OSError as exc:
                body.unlink(missing_ok=True)
                raise CaptureError(f"cannot persist snapshot for phase {phase}: {exc}") from exc

            with self._lock:
                self._snapshots[snapshot.id] = snapshot
                self._order.append(snapshot.id)
                self._next_sequence = sequence + 1
                self._index_stamp = self._stamp()

        logger.info(
            "Snapshot %s captured for phase %d (%d artifacts, %d restorable)",
            snapshot.id,
            phase,
            len(fingerprints),
            len(backup),
        )
        return snapshot

    def _capture_artifacts(self) -> tuple[dict[str, bytes], dict[str, str]]:
        """Read every tracked artifact once; all-or-nothing."""
        restorable = set(self.registry.restorable_names())
        backup: dict[str, bytes] = {}
        fingerprints: dict[str, str] = {}
        unreadable: list[str] = []

        for name in self.registry.names():
            try:
                content = self.registry.read(name)
            except (OSError, KeyError) as exc:
                logger.warning("Capture: artifact %s unreadable: %s", name, exc)
                unreadable.append(name)
                continue
            fingerprints[name] = self.validator.fingerprint(content)
            if name in restorable:
                backup[name] = content

        if unreadable:
            raise CaptureError(
                f"partial capture refused; unreadable artifacts: {', '.join(unreadable)}",
                unreadable,
            )
        return backup, fingerprints

    # ------------------------------- Lookup ---------------------------------

    def get(self, key: int | str) -> Snapshot | None:
        """Return the snapshot for a phase number or id, or ``None``."""
        with self._lock:
            if isinstance(key, str):
                return self._snapshots.get(key)
            for snapshot_id in reversed(self._order):
                snapshot = self._snapshots[snapshot_id]
                if snapshot.phase == key:
                    return snapshot
        return None

    def list(self) -> list[int]:
        """Return the distinct phases currently held, ascending."""
        with self._lock:
            return sorted({s.phase for s in self._snapshots.values()})

    def history(self) -> list[Snapshot]:
        """Return every held snapshot in creation order."""
        with self._lock:
            return [self._snapshots[i] for i in self._order]

    def __len__(self) -> int:
        return len(self._order)

    # ------------------------------- Mutation -------------------------------

    def mark_validated(self, snapshot_id: str) -> Snapshot:
        """Flip ``validated`` on a snapshot; the only permitted mutation."""
        with self.gate.hold("snapshot-validation"):
            self.refresh()
            current = self.get(snapshot_id)
            if current is None:
                raise NotFoundError(f"no snapshot with id {snapshot_id}")
            if current.validated:
                return current
            append_line(self.index_path, {"op": "validated", "id": snapshot_id})
            updated = current.as_validated()
            with self._lock:
                self._snapshots[snapshot_id] = updated
                self._index_stamp = self._stamp()
        return updated

    def prune(self, retain: int) -> list[str]:
        """Drop the oldest snapshots beyond ``retain``.

        The reference snapshot of :attr:`reference_phase` is never removed,
        so the store may hold ``retain + 1`` snapshots afterwards when that
        snapshot is among the oldest.

        Returns
        -------
        list[str]
            Ids of the removed snapshots, oldest first.
        """
        if retain < 1:
            raise ValueError("retain must be >= 1")

        with self.gate.hold("snapshot-prune"):
            self.refresh()
            protected = None
            if self.reference_phase is not None:
                ref = self.get(self.reference_phase)
                protected = ref.id if ref else None

            with self._lock:
                excess = len(self._order) - retain
                victims = [i for i in self._order if i != protected][: max(excess, 0)]

            for snapshot_id in victims:
                append_line(self.index_path, {"op": "prune", "id": snapshot_id})
                with self._lock:
                    self._order.remove(snapshot_id)
                    del self._snapshots[snapshot_id]
                    self._index_stamp = self._stamp()
                self._body_path(snapshot_id).unlink(missing_ok=True)

        if victims:
            logger.info("Pruned %d snapshot(s): %s", len(victims), ", ".join(victims))
        return victims

    # ------------------------------- Replay ---------------------------------

    def _stamp(self) -> tuple[int, int] | None:
        try:
            stat = self.index_path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def refresh(self) -> None:
        """Replay the index again if another process appended to it."""
        if self._stamp() != self._index_stamp:
            self.reload()

    def reload(self) -> None:
        """Rebuild in-memory state by replaying the append-only index."""
        stamp = self._stamp()
        snapshots: dict[str, Snapshot] = {}
        order: list[str] = []
        next_sequence = 1

        for entry in read_lines(self.index_path):
            op = entry.get("op")
            snapshot_id = str(entry.get("id", ""))
            if op == "add":
                next_sequence = max(next_sequence, int(entry.get("sequence", 0)) + 1)
                loaded = self._load_body(snapshot_id)
                if loaded is not None:
                    snapshots[snapshot_id] = loaded
                    order.append(snapshot_id)
            elif op == "validated" and snapshot_id in snapshots:
                snapshots[snapshot_id] = snapshots[snapshot_id].as_validated()
            elif op == "prune" and snapshot_id in snapshots:
                del snapshots[snapshot_id]
                order.remove(snapshot_id)

        with self._lock:
            self._snapshots = snapshots
            self._order = order
            self._next_sequence = next_sequence
            self._index_stamp = stamp

        if order:
            logger.info("Loaded %d snapshot(s) from %s", len(order), self.root)

    def _load_body(self, snapshot_id: str) -> Snapshot | None:
        path = self._body_path(snapshot_id)
        try:
            return Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Indexed snapshot %s has no readable body: %s", snapshot_id, exc)
            return None


__all__ = ["SnapshotStore", "INDEX_FILE"]

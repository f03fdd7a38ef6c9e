"""Unit tests for the append-only snapshot store."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from phaseguard.artifacts.registry import MemoryArtifactRegistry
from phaseguard.core.errors import Busy, CaptureError, NotFoundError
from phaseguard.phases.gate import OperationGate
from phaseguard.snapshots.integrity import IntegrityValidator
from phaseguard.snapshots.store import INDEX_FILE, SnapshotStore


def _store(
    root: Path, registry: MemoryArtifactRegistry, gate: OperationGate | None = None
) -> SnapshotStore:
    return SnapshotStore(root, registry, IntegrityValidator(registry), gate)


def test_create_captures_full_state(tmp_path: Path, registry: MemoryArtifactRegistry) -> None:
    """A snapshot carries versions, capabilities, restorable payloads and fingerprints."""
    store = _store(tmp_path, registry)
    snap = store.create(1, "baseline")

    assert snap.phase == 1
    assert snap.sequence == 1
    assert snap.component_versions == {"core": "1.0"}
    assert snap.enabled_capabilities == frozenset({"basic"})
    # fingerprint-only artifacts are fingerprinted but not backed up
    assert set(snap.config_backup) == {"config.json", "flags.toml"}
    assert set(snap.fingerprints) == {"config.json", "flags.toml", "audit.log"}
    assert all(fp.startswith("sha256:") for fp in snap.fingerprints.values())
    assert not snap.validated


def test_get_by_phase_returns_latest(tmp_path: Path, registry: MemoryArtifactRegistry) -> None:
    """`get(int)` is the newest snapshot of that phase; `get(str)` is by id."""
    store = _store(tmp_path, registry)
    first = store.create(1, "a")
    second = store.create(1, "b")
    third = store.create(2, "c")

    assert store.get(1) == second
    assert store.get(first.id) == first
    assert store.get(2) == third
    assert store.get(5) is None
    assert store.get("snap-missing") is None
    assert store.list() == [1, 2]
    assert [s.id for s in store.history()] == [first.id, second.id, third.id]


def test_unreadable_artifact_refuses_capture(tmp_path: Path) -> None:
    """No partial snapshot: nothing is indexed when any artifact is unreadable."""

    class Flaky(MemoryArtifactRegistry):
        def read(self, name: str) -> bytes:
            if name == "b":
                raise OSError("disk error")
            return super().read(name)

    registry = Flaky({"a": b"1", "b": b"2"})
    store = _store(tmp_path, registry)

    with pytest.raises(CaptureError) as info:
        store.create(1)

    assert info.value.artifacts == ["b"]
    assert len(store) == 0
    assert not (tmp_path / INDEX_FILE).exists()
    assert list(tmp_path.glob("snap-*.json")) == []


def test_reload_replays_index(tmp_path: Path, registry: MemoryArtifactRegistry) -> None:
    """A second store over the same directory sees every snapshot and flag."""
    store = _store(tmp_path, registry)
    a = store.create(1)
    b = store.create(2)
    store.mark_validated(a.id)

    again = _store(tmp_path, registry)
    assert [s.id for s in again.history()] == [a.id, b.id]
    reloaded = again.get(a.id)
    assert reloaded is not None and reloaded.validated
    assert reloaded.config_backup == a.config_backup
    # sequences keep growing across restarts
    assert again.create(3).sequence == 3


def test_bodies_are_never_rewritten(
    tmp_path: Path, registry: MemoryArtifactRegistry
) -> None:
    """Validation is an index entry; the snapshot body stays as captured."""
    store = _store(tmp_path, registry)
    snap = store.create(1)
    body = tmp_path / f"{snap.id}.json"
    before = body.read_bytes()

    store.mark_validated(snap.id)

    assert body.read_bytes() == before
    ops = [json.loads(line)["op"] for line in (tmp_path / INDEX_FILE).read_text().splitlines()]
    assert ops == ["add", "validated"]


def test_mark_validated_unknown_id(tmp_path: Path, registry: MemoryArtifactRegistry) -> None:
    store = _store(tmp_path, registry)
    with pytest.raises(NotFoundError):
        store.mark_validated("snap-000042-deadbeef")


def test_prune_keeps_reference_snapshot(
    tmp_path: Path, registry: MemoryArtifactRegistry
) -> None:
    """Oldest go first, but the active phase's reference survives."""
    store = _store(tmp_path, registry)
    p1 = store.create(1)
    p2 = store.create(2)
    p3 = store.create(3)
    p4 = store.create(4)
    store.reference_phase = 1

    removed = store.prune(2)

    assert removed == [p2.id, p3.id]
    assert [s.id for s in store.history()] == [p1.id, p4.id]
    assert not (tmp_path / f"{p2.id}.json").exists()
    # the prune survives a reload
    assert [s.id for s in _store(tmp_path, registry).history()] == [p1.id, p4.id]


def test_prune_rejects_non_positive_retain(
    tmp_path: Path, registry: MemoryArtifactRegistry
) -> None:
    store = _store(tmp_path, registry)
    with pytest.raises(ValueError):
        store.prune(0)


def test_create_refused_while_gate_held(
    tmp_path: Path, registry: MemoryArtifactRegistry
) -> None:
    """Captures never interleave with a rollback on another thread."""
    gate = OperationGate()
    store = _store(tmp_path, registry, gate)
    held = threading.Event()
    release = threading.Event()

    def hold_gate() -> None:
        with gate.hold("rollback"):
            held.set()
            release.wait(5)

    worker = threading.Thread(target=hold_gate)
    worker.start()
    held.wait(5)
    try:
        with pytest.raises(Busy) as info:
            store.create(1)
        assert "rollback" in info.value.reason
    finally:
        release.set()
        worker.join(5)

    assert len(store) == 0

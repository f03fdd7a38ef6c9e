"""Tests for the phase controller state machine.

Scenarios
---------
- Monotonic advances with before/after snapshots.
- Refusals (illegal transition, missing snapshot, latch engaged) leave the
  phase untouched.
- Rollbacks commit the target phase, or engage the latch on failure.
- Trigger events: warn, rollback one phase, emergency stop; priorities.
- Restart: the committed phase and the latch survive; an interrupted
  rollback is detected.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import pytest

from phaseguard.artifacts.registry import MemoryArtifactRegistry
from phaseguard.core.contracts.phase import PhaseEvent, PhaseRecord
from phaseguard.core.contracts.rollback import Initiator, RollbackIntent, RollbackOperation
from phaseguard.core.contracts.snapshot import Snapshot
from phaseguard.core.contracts.trigger import (
    Trigger,
    TriggerAction,
    TriggerEvent,
    TriggerKind,
    TriggerThreshold,
)
from phaseguard.core.errors import (
    Busy,
    IllegalTransition,
    Locked,
    NotFoundError,
    RestoreFailure,
)
from phaseguard.core.settings import Settings
from phaseguard.core.storage import read_document, write_document
from phaseguard.engine import Engine
from phaseguard.phases.controller import PHASE_FILE


def _event(action: TriggerAction, kind: TriggerKind = TriggerKind.PERFORMANCE) -> TriggerEvent:
    trigger = Trigger(
        kind=kind,
        threshold=TriggerThreshold(max_memory_percent=95.0),
        action=action,
        description=f"{kind} test",
    )
    return TriggerEvent(trigger=trigger, observed_value=97.0, metric="memory_usage_percent")


# ---- Initialization & advance ---- #


def test_initialize_creates_baseline(engine: Engine) -> None:
    assert engine.controller.current_phase == 1
    assert engine.store.list() == [1]
    assert (engine.settings.state_dir / PHASE_FILE).exists()


def test_advance_is_monotonic(engine: Engine, upgrade: Callable[[int], None]) -> None:
    """Only current + 1 is legal; each advance has a snapshot before and after."""
    controller = engine.controller
    pre = controller.checkpoint("before 2")
    upgrade(2)
    post = controller.advance(2)

    assert controller.current_phase == 2
    assert pre.phase == 1 and post.phase == 2
    assert post.component_versions == {"core": "2.0"}
    assert "cap-2" in post.enabled_capabilities

    for bad in (2, 4, 1):
        with pytest.raises(IllegalTransition):
            controller.advance(bad)
    assert controller.current_phase == 2


def test_advance_requires_pre_transition_snapshot(
    settings: Settings, registry: MemoryArtifactRegistry
) -> None:
    """A committed phase with no snapshot of its own cannot be advanced from."""
    first = Engine.from_settings(settings, registry=registry)
    first.start()
    first.shutdown()
    write_document(
        settings.state_dir / PHASE_FILE, PhaseRecord(current_phase=2, highest_phase=2)
    )

    eng = Engine.from_settings(settings, registry=registry)
    eng.start()
    assert eng.controller.current_phase == 2
    assert eng.store.list() == [1]

    with pytest.raises(NotFoundError):
        eng.controller.advance(3)
    assert eng.controller.current_phase == 2


def test_empty_store_baseline_follows_phase_record(
    settings: Settings, registry: MemoryArtifactRegistry
) -> None:
    """A phase record without snapshots gets its reference captured at that phase."""
    write_document(
        settings.state_dir / PHASE_FILE, PhaseRecord(current_phase=2, highest_phase=2)
    )
    eng = Engine.from_settings(settings, registry=registry)
    eng.start()

    assert eng.controller.current_phase == 2
    assert eng.store.list() == [2]
    baseline = eng.store.get(2)
    assert baseline is not None and "resumed at phase 2" in baseline.description
    assert eng.controller.advance(3).phase == 3


def test_phase_survives_restart(
    settings: Settings,
    registry: MemoryArtifactRegistry,
    engine: Engine,
    advance_to: Callable[[int], None],
) -> None:
    advance_to(3)
    engine.shutdown()

    again = Engine.from_settings(settings, registry=registry)
    assert again.controller.initialize() is None  # no second baseline
    assert again.controller.current_phase == 3
    assert again.store.list() == [1, 2, 3]


# ---- Rollback ---- #


def test_rollback_commits_target_and_validates_snapshot(
    engine: Engine,
    registry: MemoryArtifactRegistry,
    advance_to: Callable[[int], None],
) -> None:
    advance_to(3)
    events: list[PhaseEvent] = []
    engine.controller.subscribe(events.append)

    op = engine.controller.request_rollback(2, "plugin regression", Initiator.OPERATOR)

    assert op.success
    assert engine.controller.current_phase == 2
    assert engine.controller.highest_phase == 3
    assert registry.components["core"] == "3.0"  # versions are reported, not restored
    snap = engine.store.get(2)
    assert snap is not None and snap.validated
    assert registry.content["config.json"] == snap.config_backup["config.json"]
    assert [e.name for e in events] == ["rollback-executed"]


def test_rollback_refusals_leave_state_unchanged(
    engine: Engine, advance_to: Callable[[int], None]
) -> None:
    advance_to(4)
    engine.store.reference_phase = 4
    engine.store.prune(2)  # keeps the phase-3 checkpoint and the phase-4 reference
    assert engine.store.list() == [3, 4]

    with pytest.raises(IllegalTransition):
        engine.controller.request_rollback(4, "same phase")
    with pytest.raises(NotFoundError):
        engine.controller.request_rollback(2, "pruned")

    assert engine.controller.current_phase == 4
    assert engine.journal.operations() == []


def test_rollback_to_never_reached_phase_is_not_found(
    engine: Engine, advance_to: Callable[[int], None]
) -> None:
    """Phase 5 has no snapshot: refused as not found, nothing changes."""
    advance_to(3)
    with pytest.raises(NotFoundError):
        engine.controller.request_rollback(5, "never existed")
    assert engine.controller.current_phase == 3
    assert not engine.emergency.is_engaged()


def test_failed_restore_engages_latch(
    settings: Settings, registry: MemoryArtifactRegistry
) -> None:
    class Broken(MemoryArtifactRegistry):
        broken = False

        def write(self, name: str, content: bytes) -> None:
            if self.broken:
                raise OSError("disk full")
            super().write(name, content)

    host = Broken(dict(registry.content), restorable=["config.json", "flags.toml"])
    eng = Engine.from_settings(settings, registry=host)
    eng.start()
    eng.controller.checkpoint()
    host.content["config.json"] = b"{}"
    eng.controller.advance(2)
    host.broken = True

    with pytest.raises(RestoreFailure) as info:
        eng.controller.request_rollback(1, "test")

    assert info.value.exit_code == 2
    assert info.value.operation is not None and not info.value.operation.success
    assert eng.emergency.is_engaged()
    assert eng.controller.current_phase == 2
    with pytest.raises(Locked):
        eng.controller.advance(3)
    with pytest.raises(Locked):
        eng.controller.request_rollback(1, "again")


def test_latch_blocks_until_operator_clears(
    engine: Engine, upgrade: Callable[[int], None]
) -> None:
    engine.emergency.engage("manual", 1)
    with pytest.raises(Locked):
        engine.controller.checkpoint()

    engine.emergency.disengage("operator-1")
    engine.controller.checkpoint()
    upgrade(2)
    engine.controller.advance(2)
    assert engine.controller.current_phase == 2


# ---- Triggers ---- #


def test_warn_trigger_only_reports(engine: Engine, advance_to: Callable[[int], None]) -> None:
    advance_to(2)
    events: list[PhaseEvent] = []
    engine.controller.subscribe(events.append)

    assert engine.controller.handle_trigger_event(_event(TriggerAction.WARN)) is None

    assert engine.controller.current_phase == 2
    assert [e.name for e in events] == ["health-warning"]


def test_rollback_trigger_steps_back_one_phase(
    engine: Engine, advance_to: Callable[[int], None]
) -> None:
    advance_to(3)
    op = engine.controller.handle_trigger_event(_event(TriggerAction.ROLLBACK))

    assert op is not None and op.success
    assert op.initiator is Initiator.SYSTEM
    assert op.reason == "performance"
    assert engine.controller.current_phase == 2


def test_rollback_trigger_at_baseline_is_a_warning(engine: Engine) -> None:
    assert engine.controller.handle_trigger_event(_event(TriggerAction.ROLLBACK)) is None
    assert engine.controller.current_phase == 1
    assert engine.journal.operations() == []


def test_emergency_trigger_engages_latch(
    engine: Engine, advance_to: Callable[[int], None]
) -> None:
    advance_to(2)
    engine.controller.handle_trigger_event(
        _event(TriggerAction.EMERGENCY_STOP, TriggerKind.STABILITY)
    )

    marker = engine.emergency.marker()
    assert marker is not None
    assert marker.last_known_phase == 2
    assert "stability" in marker.reason
    assert engine.controller.current_phase == 2


def test_emergency_beats_rollback_in_one_tick(
    engine: Engine, advance_to: Callable[[int], None]
) -> None:
    advance_to(3)
    result = engine.controller.handle_trigger_events(
        [
            _event(TriggerAction.ROLLBACK),
            _event(TriggerAction.WARN),
            _event(TriggerAction.EMERGENCY_STOP, TriggerKind.STABILITY),
        ]
    )

    assert result is None
    assert engine.emergency.is_engaged()
    assert engine.controller.current_phase == 3
    assert engine.journal.operations() == []


def test_one_rollback_per_tick(engine: Engine, advance_to: Callable[[int], None]) -> None:
    advance_to(3)
    op = engine.controller.handle_trigger_events(
        [_event(TriggerAction.ROLLBACK), _event(TriggerAction.ROLLBACK, TriggerKind.COMPATIBILITY)]
    )
    assert op is not None
    assert engine.controller.current_phase == 2
    assert len(engine.journal.operations()) == 1


# ---- Recovery ---- #


def _interrupted(engine: Engine, target_phase: int) -> RollbackIntent:
    snap = engine.store.get(target_phase)
    assert snap is not None
    intent = RollbackIntent(
        operation_id="rb-20260101T000000-crashed0",
        target_snapshot_id=snap.id,
        target_phase=target_phase,
        reason="crash test",
        initiator=Initiator.SYSTEM,
    )
    engine.journal.begin(intent)
    return intent


def test_interrupted_rollback_engages_latch_by_default(
    settings: Settings,
    registry: MemoryArtifactRegistry,
    engine: Engine,
    advance_to: Callable[[int], None],
) -> None:
    advance_to(2)
    intent = _interrupted(engine, 1)
    engine.shutdown()

    again = Engine.from_settings(settings, registry=registry)
    op = again.start()

    assert op is not None and op.id == intent.operation_id and not op.success
    assert again.emergency.is_engaged()
    assert not again.journal.has_incomplete_marker()
    assert again.journal.operations()[-1].id == intent.operation_id


def test_interrupted_rollback_retry_policy(
    settings: Settings,
    registry: MemoryArtifactRegistry,
    engine: Engine,
    advance_to: Callable[[int], None],
) -> None:
    advance_to(2)
    _interrupted(engine, 1)
    engine.shutdown()

    retrying = settings.model_copy(update={"recovery_policy": "retry"})
    again = Engine.from_settings(retrying, registry=registry)
    op = again.start()

    assert op is not None and op.success
    assert again.controller.current_phase == 1
    assert not again.emergency.is_engaged()
    ops = again.journal.operations()
    assert [o.success for o in ops] == [False, True]


# ---- Exclusion ---- #


def test_rollback_cannot_land_inside_an_advance(
    engine: Engine,
    upgrade: Callable[[int], None],
    advance_to: Callable[[int], None],
    monkeypatch: Any,
) -> None:
    """The gate covers an advance from its checks to its commit."""
    advance_to(2)
    engine.controller.checkpoint()
    upgrade(3)

    captured = threading.Event()
    release = threading.Event()
    create = engine.store.create

    def paused_create(phase: int, description: str = "") -> Snapshot:
        snapshot = create(phase, description)
        captured.set()
        release.wait(5)
        return snapshot

    monkeypatch.setattr(engine.store, "create", paused_create)
    worker = threading.Thread(target=engine.controller.advance, args=(3,))
    worker.start()
    assert captured.wait(5)
    try:
        with pytest.raises(Busy):
            engine.controller.request_rollback(1, "racing rollback")
    finally:
        release.set()
        worker.join(5)

    assert engine.controller.current_phase == 3
    assert engine.journal.operations() == []
    record = read_document(engine.settings.state_dir / PHASE_FILE)
    assert record is not None and record["current_phase"] == 3


def test_second_engine_leaves_live_rollback_alone(
    settings: Settings,
    registry: MemoryArtifactRegistry,
    engine: Engine,
    advance_to: Callable[[int], None],
    monkeypatch: Any,
) -> None:
    """Another engine on the same state dir neither abandons nor races a running rollback."""
    advance_to(2)
    entered = threading.Event()
    release = threading.Event()
    write = registry.write

    def slow_write(name: str, content: bytes) -> None:
        entered.set()
        release.wait(5)
        write(name, content)

    monkeypatch.setattr(registry, "write", slow_write)
    results: list[RollbackOperation] = []
    worker = threading.Thread(
        target=lambda: results.append(engine.controller.request_rollback(1, "crash"))
    )
    worker.start()
    assert entered.wait(5)
    try:
        other = Engine.from_settings(settings, registry=registry)
        assert other.start() is None
        assert not other.emergency.is_engaged()
        assert other.journal.has_incomplete_marker()
        with pytest.raises(Busy):
            other.store.create(2, "during another process's rollback")
        with pytest.raises(Busy):
            other.controller.advance(3)
    finally:
        release.set()
        worker.join(5)

    (op,) = results
    assert op.success
    assert [o.id for o in engine.journal.operations()] == [op.id]
    assert not other.emergency.is_engaged()

    # The next transition in the other engine starts from the committed rollback.
    snapshot = other.controller.checkpoint()
    assert snapshot.phase == 1
    assert other.controller.current_phase == 1

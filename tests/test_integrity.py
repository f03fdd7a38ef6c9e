"""Unit tests for fingerprinting and snapshot validation."""

from __future__ import annotations

import pytest

from phaseguard.artifacts.registry import MemoryArtifactRegistry
from phaseguard.core.contracts.snapshot import Snapshot
from phaseguard.core.errors import IntegrityMismatch
from phaseguard.snapshots.integrity import IntegrityValidator


def _snapshot(validator: IntegrityValidator, content: dict[str, bytes]) -> Snapshot:
    return Snapshot(
        id="snap-000001-test",
        sequence=1,
        phase=1,
        config_backup=content,
        fingerprints={name: validator.fingerprint(data) for name, data in content.items()},
    )


def test_fingerprint_is_deterministic_and_tagged() -> None:
    validator = IntegrityValidator(MemoryArtifactRegistry())
    a = validator.fingerprint(b"hello")
    assert a == validator.fingerprint(b"hello")
    assert a != validator.fingerprint(b"hello!")
    assert a.startswith("sha256:")
    assert len(a.split(":", 1)[1]) == 64


def test_weak_or_unknown_algorithms_rejected() -> None:
    """Short digests are not accepted for tamper detection."""
    registry = MemoryArtifactRegistry()
    with pytest.raises(ValueError, match="too weak"):
        IntegrityValidator(registry, "md5")
    with pytest.raises(ValueError, match="unknown"):
        IntegrityValidator(registry, "rot13")
    assert IntegrityValidator(registry, "SHA512").algorithm == "sha512"


def test_validate_reports_changed_and_unreadable() -> None:
    registry = MemoryArtifactRegistry({"a": b"1", "b": b"2", "c": b"3"})
    validator = IntegrityValidator(registry)
    snap = _snapshot(validator, dict(registry.content))

    assert validator.validate(snap).valid

    registry.content["b"] = b"tampered"
    del registry.content["c"]
    report = validator.validate(snap)

    assert not report.valid
    assert report.mismatches == ["b", "c"]
    assert report.unreadable == ["c"]
    assert report.snapshot_id == snap.id


def test_validate_uses_the_snapshot_algorithm() -> None:
    """Changing the default algorithm does not invalidate older snapshots."""
    registry = MemoryArtifactRegistry({"a": b"1"})
    old = IntegrityValidator(registry, "sha512")
    snap = _snapshot(old, dict(registry.content))

    assert IntegrityValidator(registry, "sha256").validate(snap).valid


def test_ensure_valid_raises_with_names() -> None:
    registry = MemoryArtifactRegistry({"a": b"1"})
    validator = IntegrityValidator(registry)
    snap = _snapshot(validator, dict(registry.content))
    registry.content["a"] = b"2"

    with pytest.raises(IntegrityMismatch) as info:
        validator.ensure_valid(snap)
    assert info.value.mismatches == ["a"]
    assert info.value.exit_code == 1

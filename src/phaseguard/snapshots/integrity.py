"""
Artifact fingerprinting and snapshot integrity validation.

Fingerprints are ``"<algorithm>:<hexdigest>"`` strings computed with
``hashlib``. The default is SHA-256: the host system treats a mismatch as
possible tampering, not only accidental corruption, so only algorithms with a
digest of at least 256 bits are accepted.

The algorithm name is embedded in every fingerprint. A snapshot captured
under one algorithm is validated with that same algorithm even after the
configured default changes.
"""

from __future__ import annotations

import hashlib

from phaseguard.artifacts.registry import ArtifactRegistry
from phaseguard.core.contracts.snapshot import IntegrityReport, Snapshot
from phaseguard.core.errors import IntegrityMismatch
from phaseguard.core.settings import get_logger

logger = get_logger(__name__)

MIN_DIGEST_BITS = 256


class IntegrityValidator:
    """Compute and compare content fingerprints for tracked artifacts."""

    def __init__(self, registry: ArtifactRegistry, algorithm: str = "sha256") -> None:
        self.registry = registry
        self.algorithm = _checked_algorithm(algorithm)

    def fingerprint(self, content: bytes, algorithm: str | None = None) -> str:
        """Return the deterministic digest of ``content``."""
        algo = self.algorithm if algorithm is None else algorithm
        return f"{algo}:{hashlib.new(algo, content).hexdigest()}"

    def validate(self, snapshot: Snapshot) -> IntegrityReport:
        """Re-fingerprint every artifact named in ``snapshot.fingerprints``.

        An artifact that can no longer be read counts as a mismatch.
        """
        mismatches: list[str] = []
        unreadable: list[str] = []
        for name, expected in snapshot.fingerprints.items():
            algo = expected.split(":", 1)[0] if ":" in expected else self.algorithm
            try:
                actual = self.fingerprint(self.registry.read(name), algo)
            except (OSError, KeyError, ValueError) as exc:
                logger.debug("Validation read failed for %s: %s", name, exc)
                unreadable.append(name)
                mismatches.append(name)
                continue
            if actual != expected:
                mismatches.append(name)

        report = IntegrityReport(
            snapshot_id=snapshot.id,
            valid=not mismatches,
            mismatches=mismatches,
            unreadable=unreadable,
        )
        if mismatches:
            logger.info(
                "Snapshot %s (phase %d): %d mismatch(es): %s",
                snapshot.id,
                snapshot.phase,
                len(mismatches),
                ", ".join(mismatches),
            )
        return report

    def ensure_valid(self, snapshot: Snapshot) -> IntegrityReport:
        """Like :meth:`validate`, but raise ``IntegrityMismatch`` on any mismatch."""
        report = self.validate(snapshot)
        if not report.valid:
            raise IntegrityMismatch(
                f"snapshot {snapshot.id} (phase {snapshot.phase}) does not match current "
                f"content: {', '.join(report.mismatches)}",
                report.mismatches,
            )
        return report


def _checked_algorithm(name: str) -> str:
    algo = name.lower().strip()
    if algo not in hashlib.algorithms_available:
        raise ValueError(f"unknown hash algorithm: {name!r}")
    hasher = hashlib.new(algo)
    if hasher.digest_size * 8 < MIN_DIGEST_BITS:
        raise ValueError(
            f"hash algorithm {name!r} is too weak for tamper detection "
            f"({hasher.digest_size * 8} < {MIN_DIGEST_BITS} bits)"
        )
    return algo


__all__ = ["IntegrityValidator", "MIN_DIGEST_BITS"]

"""Error taxonomy for the snapshot & rollback engine.

Every error carries a structured, operator-facing ``reason`` string and the
process exit code the CLI should use when the error reaches the top level.

Exit codes
----------
- ``1``: the operation was refused and system state is unchanged
  (busy, locked, not found, illegal transition, incomplete capture).
- ``2``: an internal failure that escalates to emergency stop
  (a restore that did not take effect).

Propagation
-----------
Refusals are raised to the caller and never alter state. ``IntegrityMismatch``
is advisory during pre-restore checks; after a restore the same condition is
reported as ``RestoreFailure``, which always engages the emergency latch.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from phaseguard.core.contracts.rollback import RollbackOperation

EXIT_OK = 0
EXIT_REFUSED = 1
EXIT_INTERNAL = 2


class PhaseGuardError(Exception):
    """Base class for all engine errors."""

    exit_code: int = EXIT_REFUSED

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    @property
    def kind(self) -> str:
        """Short machine label for API payloads, e.g. ``"busy"``."""
        return _KIND_LABELS.get(type(self), "error")

    def to_payload(self) -> dict[str, str]:
        """Return the structured refusal body shared by the CLI and API."""
        return {"error": self.kind, "reason": self.reason}


class CaptureError(PhaseGuardError):
    """A snapshot could not be fully captured; nothing was indexed."""

    def __init__(self, reason: str, artifacts: Sequence[str] = ()) -> None:
        super().__init__(reason)
        self.artifacts = list(artifacts)


class NotFoundError(PhaseGuardError):
    """A referenced snapshot or phase does not exist."""


class Busy(PhaseGuardError):
    """A rollback or snapshot write is already in progress."""


class Locked(PhaseGuardError):
    """Emergency stop is engaged; mutating operations are refused."""


class IllegalTransition(PhaseGuardError):
    """A phase transition violates the monotonic phase rules."""


class IntegrityMismatch(PhaseGuardError):
    """Fingerprint mismatch between a snapshot and current artifact content."""

    def __init__(self, reason: str, mismatches: Sequence[str] = ()) -> None:
        super().__init__(reason)
        self.mismatches = list(mismatches)


class RestoreFailure(PhaseGuardError):
    """One or more artifacts failed to apply, or the restore did not verify."""

    exit_code = EXIT_INTERNAL

    def __init__(self, reason: str, operation: RollbackOperation | None = None) -> None:
        super().__init__(reason)
        self.operation = operation


class EmergencyStopError(PhaseGuardError):
    """The emergency-stop marker could not be written or removed."""

    exit_code = EXIT_INTERNAL


class ManifestError(PhaseGuardError):
    """The artifact manifest is missing or malformed."""


_KIND_LABELS: dict[type[PhaseGuardError], str] = {
    CaptureError: "capture_error",
    NotFoundError: "not_found",
    Busy: "busy",
    Locked: "locked",
    IllegalTransition: "illegal_transition",
    IntegrityMismatch: "integrity_mismatch",
    RestoreFailure: "restore_failure",
    EmergencyStopError: "emergency_stop_error",
    ManifestError: "manifest_error",
}


__all__ = [
    "EXIT_OK",
    "EXIT_REFUSED",
    "EXIT_INTERNAL",
    "PhaseGuardError",
    "CaptureError",
    "NotFoundError",
    "Busy",
    "Locked",
    "IllegalTransition",
    "IntegrityMismatch",
    "RestoreFailure",
    "EmergencyStopError",
    "ManifestError",
]

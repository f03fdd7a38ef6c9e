"""
Emergency stop: a persisted safety latch over all phase transitions.

The latch is a boolean plus a marker file (``EMERGENCY-STOP.json``) that
exists while the latch is engaged. A process that starts while the marker is
present comes up engaged, so a crash never silently clears it. Processes
sharing a state directory see each other's latch: every query re-reads the
marker, adopting one written elsewhere and dropping one an operator removed
elsewhere.

Only :meth:`EmergencyStop.disengage`, called with an operator identity, can
clear the latch. It fails loudly when the marker cannot be removed and the
latch stays engaged in that case. :meth:`EmergencyStop.engage` fails loudly
when the marker cannot be written; the latch then holds in memory only.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from phaseguard.core.contracts.phase import EmergencyMarker
from phaseguard.core.errors import EmergencyStopError, Locked
from phaseguard.core.settings import get_logger
from phaseguard.core.storage import read_document, write_document

logger = get_logger(__name__)

MARKER_FILE = "EMERGENCY-STOP.json"

EmergencyObserver = Callable[[str, EmergencyMarker | None], None]


class EmergencyStop:
    """Terminal safety latch; blocks advances and rollbacks until cleared."""

    def __init__(self, state_dir: Path) -> None:
        self.marker_path = state_dir / MARKER_FILE
        self._lock = threading.Lock()
        self._observers: list[EmergencyObserver] = []
        self._marker: EmergencyMarker | None = self._load_marker()
        #: Whether the active marker is known to be on disk.
        self._persisted = self._marker is not None
        if self._marker is not None:
            logger.critical(
                "Emergency stop is engaged from a previous run: %s", self._marker.reason
            )

    def _load_marker(self) -> EmergencyMarker | None:
        try:
            raw = read_document(self.marker_path)
        except (OSError, ValueError) as exc:
            # An unreadable marker still means someone engaged the latch.
            return EmergencyMarker(reason=f"unreadable emergency marker: {exc}")
        if raw is None:
            return None
        try:
            return EmergencyMarker.model_validate(raw)
        except ValidationError:
            return EmergencyMarker(reason=str(raw.get("reason", "unknown reason")))

    def subscribe(self, observer: EmergencyObserver) -> None:
        """Register ``observer(event_name, marker)`` for engage/disengage."""
        self._observers.append(observer)

    def _notify(self, event: str, marker: EmergencyMarker | None) -> None:
        for observer in list(self._observers):
            try:
                observer(event, marker)
            except Exception:  # observers must not break the latch
                logger.exception("Emergency-stop observer failed on %s", event)

    def engage(self, reason: str, last_known_phase: int | None = None) -> EmergencyMarker:
        """Set the latch and persist the marker.

        Idempotent: engaging an engaged latch returns the original marker
        and keeps the original reason. A marker that never reached disk is
        written again.

        Raises
        ------
        EmergencyStopError
            The marker could not be persisted. The latch is still engaged in
            this process, but a restarted process would not see it.
        """
        with self._lock:
            if self._marker is not None:
                logger.warning(
                    "Emergency stop already engaged (%s); ignoring new reason: %s",
                    self._marker.reason,
                    reason,
                )
                if not self._persisted:
                    self._persist(self._marker)
                return self._marker

            marker = EmergencyMarker(reason=reason, last_known_phase=last_known_phase)
            self._marker = marker
            failure: EmergencyStopError | None = None
            try:
                self._persist(marker)
            except EmergencyStopError as exc:
                failure = exc

        logger.critical(
            "EMERGENCY STOP ENGAGED (phase %s): %s. Manual intervention required.",
            last_known_phase,
            reason,
        )
        self._notify("emergency-stop", marker)
        if failure is not None:
            raise failure
        return marker

    def _persist(self, marker: EmergencyMarker) -> None:
        try:
            write_document(self.marker_path, marker)
        except OSError as exc:
            self._persisted = False
            logger.critical("Failed to persist emergency marker at %s: %s", self.marker_path, exc)
            raise EmergencyStopError(
                f"emergency stop engaged but {self.marker_path} could not be written: {exc}; "
                "the latch holds only until this process exits"
            ) from exc
        self._persisted = True

    def refresh(self) -> EmergencyMarker | None:
        """Reconcile with the marker file and return the active marker.

        Adopts a marker another process wrote, and drops a persisted marker
        another process's operator removed. A latch that never reached disk
        stays engaged.
        """
        exists = self.marker_path.exists()
        event: str | None = None
        changed: EmergencyMarker | None = None
        with self._lock:
            if self._marker is None and exists:
                changed = self._load_marker()
                if changed is not None:
                    self._marker, self._persisted = changed, True
                    event = "emergency-stop"
            elif self._marker is not None and self._persisted and not exists:
                changed, self._marker = self._marker, None
                event = "emergency-stop-disengaged"
            current = self._marker

        if event == "emergency-stop" and changed is not None:
            logger.critical("Emergency stop engaged by another process: %s", changed.reason)
            self._notify(event, changed)
        elif event is not None:
            logger.warning("Emergency stop cleared by another process")
            self._notify(event, changed)
        return current

    def is_engaged(self) -> bool:
        return self.refresh() is not None

    def marker(self) -> EmergencyMarker | None:
        """Return the active marker, or ``None`` when disengaged."""
        return self.refresh()

    def ensure_clear(self, operation: str) -> None:
        """Raise :class:`Locked` if the latch is engaged."""
        marker = self.refresh()
        if marker is not None:
            raise Locked(
                f"{operation} refused: emergency stop engaged since "
                f"{marker.timestamp.isoformat()} ({marker.reason}); "
                "an operator must clear it after investigation"
            )

    def disengage(self, operator: str) -> None:
        """Clear the latch. Privileged: requires an explicit operator identity.

        Works on a marker file alone, so an operator can clear a latch that
        another process engaged.

        Raises
        ------
        ValueError
            If ``operator`` is empty.
        EmergencyStopError
            If the marker file cannot be removed; the latch stays engaged.
        """
        if not operator or not operator.strip():
            raise ValueError("disengaging the emergency stop requires an operator identity")

        with self._lock:
            if self._marker is None and not self.marker_path.exists():
                return
            try:
                self.marker_path.unlink(missing_ok=True)
            except OSError as exc:
                raise EmergencyStopError(
                    f"cannot remove emergency marker {self.marker_path}: {exc}; "
                    "emergency stop remains engaged"
                ) from exc
            previous = self._marker
            self._marker = None
            self._persisted = False

        logger.warning(
            "Emergency stop disengaged by %s (was: %s)",
            operator,
            previous.reason if previous else "marker only",
        )
        self._notify("emergency-stop-disengaged", previous)


__all__ = ["EmergencyStop", "EmergencyObserver", "MARKER_FILE"]

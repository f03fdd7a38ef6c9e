"""Core package initializer for PhaseGuard.

Settings, logging, the error taxonomy and the pydantic contracts live here:
    from phaseguard.core.settings import settings, load_settings, Settings, get_logger
    from phaseguard.core.errors import PhaseGuardError, Busy, Locked
"""

from __future__ import annotations

__all__ = ["__doc__"]

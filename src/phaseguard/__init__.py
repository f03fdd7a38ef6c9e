"""PhaseGuard package bootstrap.

PhaseGuard checkpoints a running system's configuration/capability state
before every phase advance and restores a prior checkpoint, automatically or
on operator demand, when the new state proves unsafe.
"""

from __future__ import annotations

__all__ = ["__version__"]
__version__ = "0.3.0"

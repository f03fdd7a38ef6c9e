"""
FastAPI Application Factory & Configuration.

This module builds the HTTP control surface. It is responsible for:
1.  **Exception Handling**: engine errors become structured JSON refusals.
2.  **Routing**: mounting the phase router and the health check.
3.  **Lifecycle**: building and starting one :class:`Engine` per app (unless
    the caller injected one) and stopping its monitor on shutdown.

Design Pattern
--------------
We use an **Application Factory** pattern (`create_app`). This allows for:
-   Easy testing (each test gets its own app around its own engine).
-   No module-level engine: the instance lives on ``app.state.engine``.

Status mapping
--------------
- ``NotFoundError`` -> 404
- ``Busy``, ``IllegalTransition``, ``CaptureError``, ``IntegrityMismatch`` -> 409
- ``Locked`` -> 423
- ``RestoreFailure``, ``EmergencyStopError``, ``ManifestError`` -> 500
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from phaseguard import __version__
from phaseguard.api.routers import phases
from phaseguard.core.errors import (
    Busy,
    CaptureError,
    IllegalTransition,
    IntegrityMismatch,
    Locked,
    NotFoundError,
    PhaseGuardError,
)
from phaseguard.core.settings import Settings, get_logger, load_settings
from phaseguard.engine import Engine

logger = get_logger(__name__)

_STATUS_BY_ERROR: dict[type[PhaseGuardError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    Busy: status.HTTP_409_CONFLICT,
    IllegalTransition: status.HTTP_409_CONFLICT,
    CaptureError: status.HTTP_409_CONFLICT,
    IntegrityMismatch: status.HTTP_409_CONFLICT,
    Locked: status.HTTP_423_LOCKED,
}


def status_for(exc: PhaseGuardError) -> int:
    """Return the HTTP status for an engine error (500 when unmapped)."""
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    engine: Engine | None = None,
    settings: Settings | None = None,
    *,
    start_monitor: bool = False,
) -> FastAPI:
    """
    Construct and configure the PhaseGuard FastAPI application.

    Parameters
    ----------
    engine:
        A pre-built engine (tests, embedding hosts). When omitted, one is
        built from ``settings`` and started during the app lifespan.
    settings:
        Used only when ``engine`` is omitted; defaults to `load_settings()`.
    start_monitor:
        Start the background trigger monitor with the app.

    Returns
    -------
    FastAPI
        The configured ASGI application ready to be served by Uvicorn.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        current: Engine | None = app.state.engine
        if current is None:
            current = Engine.from_settings(settings or load_settings())
            app.state.engine = current
        if not current.started:
            current.start(monitor=start_monitor)
        elif start_monitor and not current.monitor.running:
            current.monitor.start()
        logger.info("PhaseGuard API ready at phase %d", current.controller.current_phase)

        yield

        current.shutdown()
        logger.info("PhaseGuard API stopped")

    app = FastAPI(
        title="PhaseGuard API",
        description="Phase snapshots, integrity validation and rollback control",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # -----------------------------------------------------------------------
    # Exception Handlers
    # -----------------------------------------------------------------------
    @app.exception_handler(PhaseGuardError)
    async def engine_error_handler(request: Request, exc: PhaseGuardError) -> JSONResponse:
        """Map engine errors to their HTTP status with a structured reason."""
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.reason)
        else:
            logger.warning("%s %s refused: %s", request.method, request.url.path, exc.reason)
        return JSONResponse(status_code=code, content=exc.to_payload())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        """Map Python ValueErrors (e.g. a blank operator) to HTTP 400 Bad Request."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "bad_request", "reason": str(exc)},
        )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    app.include_router(phases.router)

    @app.get("/health", tags=["System"])
    async def health_check() -> dict[str, str]:
        """Simple liveness check."""
        return {"status": "ok", "version": __version__}

    return app


__all__ = ["create_app", "status_for"]

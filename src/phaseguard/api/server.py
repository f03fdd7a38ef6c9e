"""
ASGI Entry Point for the PhaseGuard API.

This module exposes the `app` object required by ASGI servers (Uvicorn).
It loads environment variables from `.env` before settings are resolved, so
`PHASEGUARD_STATE_DIR` and friends can live in a local `.env` file.

Usage
-----
Run via the console script:
    $ phaseguard-server

Or via uvicorn directly:
    $ uvicorn phaseguard.api.server:app
"""

from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# --------------------------------------------------------------------------- #
# Environment Setup
# --------------------------------------------------------------------------- #

# Load .env BEFORE importing anything that resolves settings at import time.
load_dotenv(dotenv_path=Path(".env"))

from phaseguard.api.app import create_app  # noqa: E402
from phaseguard.core.settings import get_logger, load_settings  # noqa: E402

logger = get_logger(__name__)

# Factory invocation; the engine is built and monitoring started in the lifespan.
app = create_app(start_monitor=True)


def main() -> None:
    """Run the API server."""
    settings = load_settings()
    logger.info(
        "Serving PhaseGuard (env=%s, state_dir=%s, manifest=%s)",
        settings.environment,
        settings.state_dir,
        settings.manifest_path,
    )
    uvicorn.run(
        "phaseguard.api.server:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_dev,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

"""Centralized engine configuration using Pydantic Settings (v2).

One cached `Settings` instance is built from, in order of precedence:
- process environment variables;
- `.env`, `.env.local` and the per-environment `.env.<env>` files in the
  working directory.

Components never read `settings` directly; the engine factory resolves a
`Settings` object once and passes plain values down, so tests can build
components against a temporary state directory without touching the env.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

EnvName = Literal["dev", "test", "prod"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
RecoveryPolicy = Literal["emergency-stop", "retry"]


class Settings(BaseSettings):
    """Typed engine configuration loaded from env and `.env` files.

    Attributes
    ----------
    environment : EnvName
        Runtime environment flag; maps from `PHASEGUARD_ENV`.
    log_level : LogLevelName
        Global log level string; maps from `LOG_LEVEL`.
    state_dir : Path
        Directory holding the snapshot index, phase record, rollback journal
        and emergency-stop marker; maps from `PHASEGUARD_STATE_DIR`.
    manifest_path : Path
        JSON manifest declaring tracked artifacts, component detection rules
        and capabilities; maps from `PHASEGUARD_MANIFEST`.
    monitor_interval : float
        Seconds between health samples; maps from `PHASEGUARD_MONITOR_INTERVAL`.
    retain : int
        Snapshot retention count used by `prune`; maps from `PHASEGUARD_RETAIN`.
    hash_algorithm : str
        `hashlib` algorithm used for artifact fingerprints.
    recovery_policy : RecoveryPolicy
        What startup does when it finds an interrupted rollback.
    max_risk : int
        Risk score ceiling above which evolution requests are rejected.
    """

    environment: EnvName = Field(default="dev", alias="PHASEGUARD_ENV")
    log_level: LogLevelName = Field(default="INFO", alias="LOG_LEVEL")
    state_dir: Path = Field(default=Path(".phaseguard"), alias="PHASEGUARD_STATE_DIR")
    manifest_path: Path = Field(default=Path("phaseguard.json"), alias="PHASEGUARD_MANIFEST")
    monitor_interval: float = Field(default=30.0, gt=0.0, alias="PHASEGUARD_MONITOR_INTERVAL")
    retain: int = Field(default=20, ge=1, alias="PHASEGUARD_RETAIN")
    hash_algorithm: str = Field(default="sha256", alias="PHASEGUARD_HASH_ALGORITHM")
    recovery_policy: RecoveryPolicy = Field(
        default="emergency-stop", alias="PHASEGUARD_RECOVERY_POLICY"
    )
    max_risk: int = Field(default=7, ge=0, le=10, alias="PHASEGUARD_MAX_RISK")

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local", ".env.dev", ".env.test", ".env.prod"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def is_dev(self) -> bool:
        """True in the `dev` environment (enables server auto-reload)."""
        return self.environment == "dev"

    @property
    def is_test(self) -> bool:
        """True under the test suite."""
        return self.environment == "test"

    @property
    def is_prod(self) -> bool:
        return self.environment == "prod"

    def log_level_numeric(self) -> int:
        """Return the numeric logging level corresponding to `self.log_level`."""
        return getattr(logging, self.log_level, logging.INFO)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Build the process-wide `Settings` once.

    Tests that change `os.environ` call `load_settings.cache_clear()` first.
    """
    os.environ.setdefault("PHASEGUARD_ENV", "dev")
    return Settings()


# Export a ready-to-use instance (import-time read of env / .env files).
settings: Settings = load_settings()


def get_logger(name: str = "phaseguard") -> logging.Logger:
    """Return a logger configured to the current `LOG_LEVEL`."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )
        logger.addHandler(handler)
    logger.setLevel(load_settings().log_level_numeric())
    logger.propagate = False
    return logger


__all__ = ["Settings", "RecoveryPolicy", "load_settings", "settings", "get_logger"]

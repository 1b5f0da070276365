"""
solarledger/core/config.py
==========================
Centralised configuration for the Solar P2P Ledger node.

All settings are loaded from environment variables (12-Factor App).
Defaults are provided for optional values; ``LEDGER_OWNER`` is required and
raises a ``ValidationError`` at startup if missing.

Usage
-----
    from solarledger.core.config import get_settings

    cfg = get_settings()
    print(cfg.LEDGER_OWNER)
    print(cfg.API_PORT)

In application code that needs a module-level reference::

    from solarledger.core.config import settings   # lazy — resolved at first access
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """
    Ledger node settings resolved from environment variables.

    A ``.env`` file placed at ``config/.env`` is also auto-loaded when
    present.
    """

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / "config" / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Ledger identity
    # ------------------------------------------------------------------
    LEDGER_OWNER: str = Field(
        ...,
        description="Address of the account that deploys and owns the contract.",
        examples=["0x5a1e0000000000000000000000000000000000aa"],
    )

    @field_validator("LEDGER_OWNER", mode="before")
    @classmethod
    def validate_owner(cls, v: object) -> str:
        s = str(v).strip()
        if not s or any(ch.isspace() for ch in s):
            raise ValueError(f"LEDGER_OWNER must be a non-empty address, got: {v!r}")
        return s

    LEDGER_ID: str = Field(
        default="solar-p2p-001",
        description="Label for this ledger instance in logs and /health.",
    )

    # ------------------------------------------------------------------
    # REST API
    # ------------------------------------------------------------------
    API_HOST: str = Field(
        default="0.0.0.0",
        description="Bind address of the REST API.",
    )
    API_PORT: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="TCP port of the REST API (also serves /health and /metrics).",
    )
    API_KEY: str = Field(
        default="",
        description="Bearer token required on mutating routes (empty = dev mode).",
    )
    FAUCET_ENABLED: bool = Field(
        default=False,
        description="Expose POST /api/v1/accounts/{address}/fund for local testing.",
    )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: object) -> str:
        level = str(v).strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {_LOG_LEVELS}, got: {v!r}")
        return level

    # ------------------------------------------------------------------
    # Derived helpers (not environment variables)
    # ------------------------------------------------------------------
    @property
    def log_level_int(self) -> int:
        return logging.getLevelName(self.LOG_LEVEL)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the singleton ``Settings`` instance.

    In tests, call ``get_settings.cache_clear()`` before patching
    environment variables.
    """
    return Settings()  # type: ignore[call-arg]


class _LazySettings:
    """
    Proxy that resolves ``get_settings()`` on first attribute access, so
    importing ``settings`` never parses the environment at import time.
    """

    _instance: Optional[Settings] = None

    def _resolve(self) -> Settings:
        if self._instance is None:
            self._instance = get_settings()
        return self._instance

    def __getattr__(self, name: str) -> object:
        return getattr(self._resolve(), name)


#: Module-level lazy singleton — safe to import even without a .env file.
settings: Settings = _LazySettings()  # type: ignore[assignment]

"""Roomcast application configuration.

Loads settings from a single YAML file:
  * roomcast.settings.yaml: non-secret configuration

The path can be overridden with the ``ROOMCAST_SETTINGS`` environment
variable. Missing files fall back to defaults.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomcast.settings.yaml")
SETTINGS_ENV_VAR = "ROOMCAST_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8080
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class ChatSettings(BaseModel):
    """Tuning knobs for the message core."""
    retention_limit:            int   = 1000
    snapshot_limit:             int   = 200
    outbound_queue_size:        int   = 256
    grace_period_seconds:       float = 45.0
    heartbeat_timeout_seconds:  float = 90.0
    reaper_interval_seconds:    float = 15.0
    append_timeout_seconds:     float = 5.0
    append_retries:             int   = 3
    append_backoff_seconds:     float = 0.1
    catchup_put_timeout_seconds: float = 10.0
    min_send_interval_seconds:  float = 0.3
    max_text_length:            int   = 2000
    default_rooms:              List[str] = Field(default_factory=list)

    @field_validator(
        "retention_limit",
        "snapshot_limit",
        "outbound_queue_size",
        "max_text_length",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator(
        "grace_period_seconds",
        "heartbeat_timeout_seconds",
        "reaper_interval_seconds",
        "append_timeout_seconds",
        "catchup_put_timeout_seconds",
    )
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("append_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


class StorageSettings(BaseModel):
    backend: Literal["memory", "duckdb"] = "duckdb"
    db_path: str                         = "roomcast.duckdb"


class FileSettings(BaseModel):
    upload_dir:    str       = "uploads"
    max_upload_mb: int       = 10
    allowed_mime:  List[str] = Field(
        default_factory=lambda: ["image/png", "image/jpeg", "image/gif", "image/webp"]
    )


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    files:   FileSettings    = Field(default_factory=FileSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML into a single *AppConfig* object."""
    if path is None:
        path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    config = AppConfig(**_load_yaml(path))
    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, retention=%d)",
        config.server.host,
        config.server.port,
        config.storage.backend,
        config.chat.retention_limit,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the process-wide configuration (``None`` forces a reload)."""
    global _config
    _config = config

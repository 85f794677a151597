"""Overridable engine parameters and their layered loader."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from foldersync.config import (
    DEFAULT_BACKUP_RETENTION_DAYS,
    DEFAULT_CHECKPOINT_DAYS,
    DEFAULT_LOCK_STALE_SECONDS,
    DEFAULT_POLL_INTERVAL,
)

logger = logging.getLogger(__name__)

# Environment variable -> settings field
_ENV_KEYS: dict[str, dict[str, str]] = {
    "FOLDERSYNC_POLL_INTERVAL": {
        "field": "poll_interval_seconds",
        "description": "Seconds between folder scans",
    },
    "FOLDERSYNC_BACKUP_RETENTION_DAYS": {
        "field": "backup_retention_days",
        "description": "Days to keep archived working files",
    },
    "FOLDERSYNC_CHECKPOINT_DAYS": {
        "field": "checkpoint_interval_days",
        "description": "Days before a solo user's edits are folded into the base",
    },
    "FOLDERSYNC_LOCK_STALE_SECONDS": {
        "field": "lock_stale_seconds",
        "description": "Age after which a merge lock is treated as abandoned",
    },
    "FOLDERSYNC_LOG_LEVEL": {
        "field": "log_level",
        "description": "Logging level for the foldersync logger",
    },
}


class SyncSettings(BaseModel):
    """Tunable parameters of the sync engine."""

    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    backup_retention_days: int = Field(default=DEFAULT_BACKUP_RETENTION_DAYS, ge=0)
    checkpoint_interval_days: float = Field(default=DEFAULT_CHECKPOINT_DAYS, gt=0)
    lock_stale_seconds: float = Field(default=DEFAULT_LOCK_STALE_SECONDS, gt=0)
    log_level: str = "INFO"


def load_settings(
    config_dir: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SyncSettings:
    """Load merged settings: defaults -> config.json -> environment variables.

    Parameters
    ----------
    config_dir:
        Directory holding an optional ``config.json`` with settings field
        names as keys.  Keep it on the local machine, not the shared folder.
    env:
        Environment mapping; defaults to :data:`os.environ`.
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    if config_dir is not None:
        config_json = Path(config_dir) / "config.json"
        if config_json.is_file():
            try:
                data = json.loads(config_json.read_text(encoding="utf-8"))
                values.update(
                    {k: v for k, v in data.items() if k in SyncSettings.model_fields}
                )
            except (json.JSONDecodeError, OSError, AttributeError):
                logger.warning("Could not read %s, using defaults", config_json, exc_info=True)

    for key, info in _ENV_KEYS.items():
        env_val = env.get(key)
        if env_val is not None and env_val != "":
            values[info["field"]] = env_val

    try:
        return SyncSettings(**values)
    except ValidationError:
        logger.warning("Invalid sync settings %s, using defaults", values, exc_info=True)
        return SyncSettings()


def apply_log_level(settings: SyncSettings) -> None:
    """Set the ``foldersync`` logger level from *settings*."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        logger.warning("Unknown log level %r, keeping current level", settings.log_level)
        return
    logging.getLogger("foldersync").setLevel(level)


def generate_env_template(path: str | Path) -> Path:
    """Write a ``.env.example`` listing every setting with its default.

    Returns the path to the generated file.
    """
    env_path = Path(path) / ".env.example"
    defaults = SyncSettings()
    lines = ["# foldersync configuration template", ""]
    for key, info in _ENV_KEYS.items():
        lines.append(f"# {info['description']}")
        lines.append(f"{key}={getattr(defaults, info['field'])}")
        lines.append("")
    env_path.write_text("\n".join(lines), encoding="utf-8")
    return env_path

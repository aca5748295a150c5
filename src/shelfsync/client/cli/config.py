"""Configuration utilities for shelfsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any

from shelfsync.core.config import RemoteConfig, SyncSettings


def get_config_dir() -> Path:
    """Get the configuration directory for shelfsync.

    Returns:
        Path to ~/.shelfsync or equivalent.
    """
    return Path.home() / ".shelfsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_database_path() -> Path:
    """Get the local mirror database path.

    Returns:
        Path to the database (configured or default ~/.shelfsync/library.db).
    """
    config = load_config()
    if config.get("db_path"):
        return Path(config["db_path"]).expanduser().resolve()
    return get_config_dir() / "library.db"


def is_configured() -> bool:
    """Check if a remote has been configured."""
    config = load_config()
    return bool(config.get("url") and config.get("api_key"))


def remote_config_from(config: dict[str, Any]) -> RemoteConfig:
    """Build the remote connection settings from the config file contents."""
    return RemoteConfig(
        url=config["url"],
        api_key=config["api_key"],
        timeout=float(config.get("timeout", 30.0)),
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def sync_settings_from(config: dict[str, Any]) -> SyncSettings:
    """Build engine settings from the config file contents."""
    defaults = SyncSettings()
    return SyncSettings(
        page_size=int(config.get("page_size", defaults.page_size)),
        max_retries=int(config.get("max_retries", defaults.max_retries)),
        max_workers=int(config.get("max_workers", defaults.max_workers)),
        sync_interval=timedelta(
            seconds=float(
                config.get("sync_interval", defaults.sync_interval.total_seconds())
            )
        ),
        directions=dict(config.get("directions", {})),
        conflict_strategy=config.get("conflict_strategy", defaults.conflict_strategy),
        conflict_strategies=dict(config.get("conflict_strategies", {})),
    )

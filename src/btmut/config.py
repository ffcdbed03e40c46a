"""
Configuration -- where secrets, guard state, and the loopback store live.

Defaults follow the usual per-user locations for an app named `bt-mut`
and are resolved once, when the config is built. Nothing reads the
environment mid-operation.

    Linux:   ~/.config/bt-mut          ~/.local/share/bt-mut
    macOS:   ~/Library/Preferences/bt-mut
             ~/Library/Application Support/bt-mut
    Windows: %APPDATA%/bt-mut/Config   %LOCALAPPDATA%/bt-mut/Data

`BTMUT_HOME` replaces the config directory. A `config.yaml` inside it
may override any field.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel

from . import BTMUT_HOME

logger = logging.getLogger("btmut.config")

APP_NAME = "bt-mut"
CONFIG_FILE = "config.yaml"


def default_config_dir() -> Path:
    """Per-user configuration directory (also the default secret storage)."""
    if BTMUT_HOME:
        return Path(BTMUT_HOME).expanduser()
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Preferences" / APP_NAME
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA") or str(home / "AppData" / "Roaming")
        return Path(appdata) / APP_NAME / "Config"
    xdg = os.environ.get("XDG_CONFIG_HOME") or str(home / ".config")
    return Path(xdg) / APP_NAME


def default_data_dir() -> Path:
    """Per-user data directory for guard state and the loopback store."""
    if BTMUT_HOME:
        return Path(BTMUT_HOME).expanduser() / "data"
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_NAME
    if sys.platform == "win32":
        local = os.environ.get("LOCALAPPDATA") or str(home / "AppData" / "Local")
        return Path(local) / APP_NAME / "Data"
    xdg = os.environ.get("XDG_DATA_HOME") or str(home / ".local" / "share")
    return Path(xdg) / APP_NAME


class BtMutConfig(BaseModel):
    """Resolved runtime configuration."""

    secret_storage: Path
    state_dir: Path
    engine_store: Path
    log_level: str = "WARNING"

    @classmethod
    def defaults(cls) -> "BtMutConfig":
        data_dir = default_data_dir()
        return cls(
            secret_storage=default_config_dir(),
            state_dir=data_dir / "state",
            engine_store=data_dir / "store",
        )

    @classmethod
    def for_root(cls, root: Path) -> "BtMutConfig":
        """Keep everything under one directory (tests, portable installs)."""
        root = root.expanduser()
        return cls(
            secret_storage=root / "secrets",
            state_dir=root / "state",
            engine_store=root / "store",
        )


def load_config(
    path: Optional[Path] = None,
    **overrides: Optional[Path],
) -> BtMutConfig:
    """Build the config from defaults, `config.yaml`, then overrides.

    Args:
        path: Config file to read. Defaults to `<config dir>/config.yaml`.
        **overrides: Field values that win over the file (None is skipped).

    Returns:
        BtMutConfig: The resolved configuration.
    """
    config_file = path or default_config_dir() / CONFIG_FILE
    data = BtMutConfig.defaults().model_dump()

    if config_file.exists():
        try:
            loaded = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            if not isinstance(loaded, dict):
                raise ValueError("top level must be a mapping")
            data.update(loaded)
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load config %s: %s", config_file, exc)

    data.update({k: v for k, v in overrides.items() if v is not None})
    config = BtMutConfig(**data)
    return config.model_copy(
        update={
            "secret_storage": config.secret_storage.expanduser(),
            "state_dir": config.state_dir.expanduser(),
            "engine_store": config.engine_store.expanduser(),
        }
    )

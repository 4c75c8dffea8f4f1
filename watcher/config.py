"""Config loader. Loads the watcher's YAML config, provides get()/require().

The file is optional: a missing file means every key takes its default.
Path: $WATCHER_CONFIG, else ~/.watcher/config.yaml.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from watcher.common import WATCHER_DIR

log = logging.getLogger(__name__)

CONFIG_FILE = Path(os.environ.get("WATCHER_CONFIG", WATCHER_DIR / "config.yaml"))

_config: dict = {}
_loaded = False


def load() -> dict:
    """Load the config file. Safe to call multiple times (cached)."""
    global _config, _loaded
    if _loaded:
        return _config

    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {CONFIG_FILE} must contain a mapping, got {type(data).__name__}")
        _config = data
    else:
        log.debug(f"No config file at {CONFIG_FILE}, using defaults")
        _config = {}

    _loaded = True
    return _config


def get(dotpath: str, default: Any = None) -> Any:
    """Get a config value by dot-separated path. e.g. get('ipc.socket_path')"""
    load()
    keys = dotpath.split(".")
    node = _config
    for key in keys:
        if isinstance(node, dict) and key in node:
            node = node[key]
        else:
            return default
    return node


def require(dotpath: str) -> Any:
    """Get a config value or raise if missing/falsy (None, '', 0, False)."""
    value = get(dotpath)
    if not value:
        raise ValueError(
            f"Required config '{dotpath}' is missing or falsy (got {value!r}). "
            f"Check {CONFIG_FILE}."
        )
    return value


def get_path(dotpath: str, default: Path, env: str | None = None) -> Path:
    """Resolve a filesystem path: env var wins, then config, then default."""
    if env and os.environ.get(env):
        return Path(os.environ[env]).expanduser()
    value = get(dotpath)
    return Path(value).expanduser() if value else default


def reload() -> dict:
    """Force reload from disk (useful for tests)."""
    global _loaded
    _loaded = False
    return load()

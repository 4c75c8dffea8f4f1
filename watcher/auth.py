"""Credential material for the upstream transport.

Credentials live in a directory (default ~/.watcher/auth, overridable with
$WATCHER_AUTH_DIR or config ``auth.dir``). The transport hands us credential
updates as JSON fragments; we merge them into creds.json.
"""
from __future__ import annotations

import fcntl
import json
import logging
from pathlib import Path
from typing import Any

from watcher import config
from watcher.common import WATCHER_DIR

log = logging.getLogger(__name__)

CREDS_FILE_NAME = "creds.json"


def resolve_auth_dir() -> Path:
    auth_dir = config.get_path("auth.dir", WATCHER_DIR / "auth", env="WATCHER_AUTH_DIR")
    if not auth_dir.exists():
        auth_dir.mkdir(parents=True, exist_ok=True)
        auth_dir.chmod(0o700)
        log.info(f"Created auth directory: {auth_dir}")
    return auth_dir


class CredentialStore:
    """Directory-backed credentials consumed by the transport."""

    def __init__(self, auth_dir: Path | None = None):
        self.auth_dir = auth_dir or resolve_auth_dir()
        self._file = self.auth_dir / CREDS_FILE_NAME

    def has_existing_session(self) -> bool:
        return self._file.exists()

    def load(self) -> dict[str, Any]:
        if not self._file.exists():
            return {}
        try:
            return json.loads(self._file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            log.error(f"Failed to read credentials from {self._file}: {e}")
            return {}

    def save(self, update: dict[str, Any]) -> None:
        """Merge a credential update and write it atomically."""
        creds = self.load()
        creds.update(update)
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self._file.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            f.write(json.dumps(creds, indent=2))
        tmp_path.chmod(0o600)
        tmp_path.rename(self._file)

    def clear(self) -> None:
        """Forget credentials so the next open produces a pairing challenge."""
        self._file.unlink(missing_ok=True)

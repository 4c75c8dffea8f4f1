"""Synchronous IPC client for the watcher daemon.

Used by the CLI and by any short-lived process that wants to send or receive
through the daemon's connection. The session id defaults to
$WATCHER_SESSION_ID, then the tmux pane, so repeated invocations from one
terminal share a session.
"""
from __future__ import annotations

import json
import os
import socket as sock_module
import uuid
from pathlib import Path
from typing import Any, Optional

from watcher import config
from watcher.common import DEFAULT_WAIT_MS, IPC_SOCKET
from watcher.errors import WatcherError, error_for_code


class DaemonUnavailable(WatcherError):
    code = "daemon_unavailable"


def default_session_id() -> str:
    if os.environ.get("WATCHER_SESSION_ID"):
        return os.environ["WATCHER_SESSION_ID"]
    pane = os.environ.get("TMUX_PANE")
    return f"tmux:{pane}" if pane else "cli"


def resolve_socket_path() -> Path:
    return config.get_path("ipc.socket_path", IPC_SOCKET, env="WATCHER_SOCKET")


class WatcherClient:
    def __init__(self, session_id: Optional[str] = None, terminal_id: Optional[str] = None,
                 socket_path: Optional[Path] = None, timeout: float = 30.0):
        self.session_id = session_id or default_session_id()
        self.terminal_id = terminal_id or os.environ.get("TMUX_PANE")
        self.socket_path = socket_path or resolve_socket_path()
        self.timeout = timeout

    def request(self, method: str, params: Optional[dict[str, Any]] = None,
                timeout: Optional[float] = None) -> dict[str, Any]:
        """Send one request and return its result. Raises WatcherError on {ok: false}."""
        if not self.socket_path.exists():
            raise DaemonUnavailable(f"Daemon not running (no socket at {self.socket_path})")

        payload = {
            "id": uuid.uuid4().hex[:8],
            "sessionId": self.session_id,
            "method": method,
            "params": params or {},
        }
        if self.terminal_id:
            payload["terminalId"] = self.terminal_id

        s = sock_module.socket(sock_module.AF_UNIX, sock_module.SOCK_STREAM)
        s.settimeout(timeout or self.timeout)
        try:
            s.connect(str(self.socket_path))
            s.sendall((json.dumps(payload) + "\n").encode())
            data = b""
            while b"\n" not in data:
                chunk = s.recv(4096)
                if not chunk:
                    break
                data += chunk
        except (ConnectionRefusedError, FileNotFoundError):
            raise DaemonUnavailable("Daemon not responding")
        except sock_module.timeout:
            raise WatcherError(f"Timed out waiting for '{method}'")
        finally:
            s.close()

        if not data.strip():
            raise WatcherError(f"Daemon closed the connection without answering '{method}'")
        response = json.loads(data.decode().strip())
        if not response.get("ok"):
            raise error_for_code(response.get("code"), response.get("error") or "unknown error")
        return response.get("result") or {}

    # ── Convenience wrappers ─────────────────────────────────────

    def register(self, name: str) -> str:
        params = {"name": name}
        if self.terminal_id:
            params["terminalId"] = self.terminal_id
        return self.request("register", params)["name"]

    def send(self, message: str, recipient: Optional[str] = None) -> dict[str, Any]:
        params = {"message": message}
        if recipient:
            params["recipient"] = recipient
        return self.request("send", params)

    def receive(self, source: Optional[str] = None) -> list[dict[str, Any]]:
        return self.request("receive", {"from": source} if source else {})["messages"]

    def wait(self, timeout_ms: int = DEFAULT_WAIT_MS) -> list[dict[str, Any]]:
        # Socket timeout must outlast the server-side long-poll
        return self.request("wait", {"timeoutMs": timeout_ms}, timeout=timeout_ms / 1000 + 10)["messages"]

    def status(self) -> dict[str, Any]:
        return self.request("status")

"""
Terminal automation over tmux.

Sessions are tmux panes, identified by pane id (``%3``; clients send
$TMUX_PANE). A session's persisted label is the pane user option
``@watcher_name``. It survives daemon restarts and is what discovery scans.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from pydantic import BaseModel

from watcher import config

log = logging.getLogger(__name__)

LABEL_OPTION = "@watcher_name"

# Friendly key names -> tmux key names
KEYS = {
    "enter": "Enter",
    "escape": "Escape",
    "esc": "Escape",
    "tab": "Tab",
    "ctrl-c": "C-c",
    "up": "Up",
    "down": "Down",
    "left": "Left",
    "right": "Right",
}


class TerminalSession(BaseModel, frozen=True):
    id: str
    label: str = ""
    path: str = ""
    command: str = ""


class Terminal(Protocol):
    async def is_alive(self, terminal_id: str) -> bool: ...
    async def list_sessions(self) -> list[TerminalSession]: ...
    async def type_text(self, terminal_id: str, text: str) -> bool: ...
    async def send_keystroke(self, terminal_id: str, key: str) -> bool: ...
    async def focus(self, terminal_id: str) -> bool: ...
    async def get_label(self, terminal_id: str) -> Optional[str]: ...
    async def set_label(self, terminal_id: str, label: str) -> bool: ...


class TmuxTerminal:
    def __init__(self, tmux: Optional[str] = None, timeout: float = 5.0):
        self.tmux = tmux or config.get("terminal.tmux", "tmux")
        self.timeout = timeout

    async def _run(self, *args: str) -> Optional[str]:
        """Run a tmux command; stdout on success, None on any failure."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.tmux, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            log.warning(f"{self.tmux} not found; terminal automation disabled")
            return None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            log.warning(f"tmux {args[0]} timed out")
            return None
        if proc.returncode != 0:
            log.debug(f"tmux {args[0]} failed: {stderr.decode(errors='replace').strip()}")
            return None
        return stdout.decode(errors="replace")

    async def list_sessions(self) -> list[TerminalSession]:
        fmt = f"#{{pane_id}}\t#{{{LABEL_OPTION}}}\t#{{pane_current_path}}\t#{{pane_current_command}}"
        out = await self._run("list-panes", "-a", "-F", fmt)
        sessions = []
        for line in (out or "").splitlines():
            parts = line.split("\t")
            if not parts[0]:
                continue
            parts += [""] * (4 - len(parts))
            sessions.append(TerminalSession(id=parts[0], label=parts[1], path=parts[2], command=parts[3]))
        return sessions

    async def is_alive(self, terminal_id: str) -> bool:
        return await self._run("display-message", "-p", "-t", terminal_id, "#{pane_id}") is not None

    async def type_text(self, terminal_id: str, text: str) -> bool:
        return await self._run("send-keys", "-t", terminal_id, "-l", text) is not None

    async def send_keystroke(self, terminal_id: str, key: str) -> bool:
        return await self._run("send-keys", "-t", terminal_id, KEYS.get(key.lower(), key)) is not None

    async def focus(self, terminal_id: str) -> bool:
        if await self._run("select-window", "-t", terminal_id) is None:
            return False
        return await self._run("select-pane", "-t", terminal_id) is not None

    async def get_label(self, terminal_id: str) -> Optional[str]:
        out = await self._run("show-options", "-p", "-v", "-q", "-t", terminal_id, LABEL_OPTION)
        if not out or not out.strip():
            return None
        return out.strip()

    async def set_label(self, terminal_id: str, label: str) -> bool:
        return await self._run("set-option", "-p", "-t", terminal_id, LABEL_OPTION, label) is not None

"""
Slash commands typed into the self-conversation.

They drive the session registry and the active session's terminal from the
phone. A recognized command is answered in the self-conversation and never
queued; any other text, unknown slash words included, is delivered as usual.

    /h               help
    /s               list sessions
    /N [name]        switch to session N, optionally renaming it
    /e N             end session N
    /cc /esc /enter /tab /up /down /left /right
                     send that key to the active session
    /pick N [text]   choose option N of a menu, then optionally type text
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from watcher.errors import UnknownTarget, WatcherError
from watcher.registry import SessionRegistry
from watcher.terminal import Terminal

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

HELP_TEXT = "\n".join([
    "*Commands*",
    "/s - list sessions",
    "/N [name] - switch to session N (and rename it)",
    "/e N - end session N",
    "/cc /esc /enter /tab - send a key",
    "/up /down /left /right - arrow keys",
    "/pick N [text] - choose menu option N",
    "/h - this help",
])

# command -> (terminal key, confirmation)
KEY_COMMANDS = {
    "/cc": ("ctrl-c", "Ctrl+C sent"),
    "/esc": ("escape", "Esc sent"),
    "/enter": ("enter", "Enter sent"),
    "/tab": ("tab", "Tab sent"),
    "/up": ("up", "↑"),
    "/down": ("down", "↓"),
    "/left": ("left", "←"),
    "/right": ("right", "→"),
}

NO_ACTIVE = "No active session. Use /s to list and /N to select."


class SelfCommands:
    def __init__(
        self,
        registry: SessionRegistry,
        terminal: Optional[Terminal],
        reply: Callable[[str], Awaitable[None]],
        refresh: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.registry = registry
        self.terminal = terminal
        self.reply = reply
        self.refresh = refresh
        self.pick_delay = 0.05
        self.type_delay = 0.2

    @staticmethod
    def _split(text: str) -> tuple[str, str]:
        head, _, rest = text.strip().partition(" ")
        return head.lower(), rest.strip()

    def match(self, text: str) -> bool:
        """True if `text` is a command this handler answers."""
        if not text.strip().startswith("/"):
            return False
        word, _ = self._split(text)
        return (
            word in ("/h", "/help", "/s", "/e", "/pick")
            or word in KEY_COMMANDS
            or word[1:].isdigit()
        )

    async def run(self, text: str) -> None:
        word, rest = self._split(text)
        log.info(f"Self command: {word} {rest}".rstrip())
        lifecycle_log.info(f"COMMAND | TRIGGERED | {word}")
        try:
            if word in ("/h", "/help"):
                answer = HELP_TEXT
            elif word == "/s":
                answer = await self._list()
            elif word == "/e":
                answer = await self._end(rest)
            elif word == "/pick":
                answer = await self._pick(rest)
            elif word in KEY_COMMANDS:
                answer = await self._key(*KEY_COMMANDS[word])
            else:
                answer = await self._switch(word[1:], rest)
        except WatcherError as e:
            answer = str(e)
        await self.reply(answer)

    # ── Sessions ─────────────────────────────────────────────────

    async def _list(self) -> str:
        if self.refresh is not None:
            await self.refresh()
        ordered = self.registry.ordered()
        if not ordered:
            return "No sessions found."
        active_id = self.registry.active_id
        lines = []
        for n, entry in enumerate(ordered, 1):
            marker = " ← active" if entry.session_id == active_id else ""
            lines.append(f"{n}. {entry.name}{marker}")
        return "\n".join(lines)

    def _by_number(self, number: str):
        try:
            return self.registry.resolve(number)
        except UnknownTarget:
            raise UnknownTarget(f"Invalid session number. Use /s to list (1-{len(self.registry)}).")

    async def _switch(self, number: str, new_name: str) -> str:
        entry = self._by_number(number)
        if not await self.registry.confirm_live(entry.session_id, self.terminal):
            return "Session not found; it may have closed."
        self.registry.switch(entry.session_id)
        name = entry.name
        if new_name:
            name = self.registry.rename(entry.session_id, new_name)
            if self.terminal is not None and entry.terminal_id:
                await self.terminal.set_label(entry.terminal_id, name)
        if self.terminal is not None and entry.terminal_id:
            await self.terminal.focus(entry.terminal_id)
        return f"Switched to *{name}*"

    async def _end(self, number: str) -> str:
        if not number.isdigit():
            return "Usage: /e N"
        entry = self._by_number(number)
        self.registry.remove(entry.session_id)
        return f"Ended *{entry.name}*"

    # ── Keys ─────────────────────────────────────────────────────

    def _active_terminal(self) -> str:
        entry = self.registry.active
        if entry is None:
            raise UnknownTarget(NO_ACTIVE)
        if self.terminal is None or not entry.terminal_id:
            raise UnknownTarget(f"*{entry.name}* has no terminal to send keys to.")
        return entry.terminal_id

    async def _key(self, key: str, confirmation: str) -> str:
        terminal_id = self._active_terminal()
        if not await self.terminal.send_keystroke(terminal_id, key):
            return f"Could not send {key} to the active session."
        return confirmation

    async def _pick(self, rest: str) -> str:
        number, _, text = rest.partition(" ")
        text = text.strip()
        try:
            n = int(number)
        except ValueError:
            return "Usage: /pick N [text]"
        if n < 1:
            return "Pick number must be at least 1."
        terminal_id = self._active_terminal()
        for _ in range(n - 1):
            await self.terminal.send_keystroke(terminal_id, "down")
            await asyncio.sleep(self.pick_delay)
        await self.terminal.send_keystroke(terminal_id, "enter")
        if text:
            await asyncio.sleep(self.type_delay)
            await self.terminal.type_text(terminal_id, text)
        return f"Picked option {n}: {text}" if text else f"Picked option {n}"

#!/usr/bin/env python3
"""
Watcher daemon - the single owner of the upstream messaging connection.

- Holds one connection (via the bridge transport) and reconnects with backoff
- Serves the local IPC socket that client processes use to send and receive
- Routes self-conversation messages to the active session (queue, long-poll
  waiter, and optionally typed into its terminal) and contact messages to
  per-contact queues
- Answers slash commands typed into the self-conversation, and turns inbound
  images and voice notes into text before routing them

Run with `watcher watch` (foreground) or `watcher start` (background).
"""
from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from watcher import config
from watcher.auth import CredentialStore
from watcher.client import resolve_socket_path
from watcher.common import LOGS_DIR, SESSION_REGISTRY_FILE, STATE_DIR
from watcher.connection import ConnectionManager
from watcher.errors import WatcherError
from watcher.commands import SelfCommands
from watcher.ipc_server import IPCServer
from watcher.media import MediaResolver
from watcher.models import InboundEvent
from watcher.registry import SessionRegistry
from watcher.router import MessageRouter
from watcher.store import WatcherStore
from watcher.terminal import Terminal, TmuxTerminal
from watcher.transport import JsonRpcTransport, Transport
from watcher.voice import Transcriber, VoiceSynth

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

STARTUP_MESSAGE = "Watcher started."


def setup_logging(level: str = "INFO", lifecycle_file: Optional[Path] = None):
    """Console logging plus the lifecycle event log (COMPONENT | EVENT | detail)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s | %(levelname)s | %(message)s',
        handlers=[logging.StreamHandler()],
    )
    lifecycle_file = lifecycle_file or LOGS_DIR / "lifecycle.log"
    lifecycle_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(lifecycle_file)
    handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))
    lifecycle_log.addHandler(handler)
    lifecycle_log.setLevel(logging.INFO)


class Watcher:
    """Composition root: owns every component and their lifecycle."""

    def __init__(
        self,
        transport: Optional[Transport] = None,
        terminal: Optional[Terminal] = None,
        voice: Optional[VoiceSynth] = None,
        credentials: Optional[CredentialStore] = None,
        store: Optional[WatcherStore] = None,
        registry_file: Path = SESSION_REGISTRY_FILE,
        socket_path: Optional[Path] = None,
        transcriber: Optional[Transcriber] = None,
        media_dir: Optional[Path] = None,
    ):
        self.store = store or WatcherStore()
        self.credentials = credentials or CredentialStore()
        self.registry = SessionRegistry(registry_file)
        self.router = MessageRouter(self.registry)
        self.connection = ConnectionManager(transport or JsonRpcTransport(), self.credentials, self.store)
        if terminal is None and config.get("terminal.enabled", True):
            terminal = TmuxTerminal()
        self.terminal = terminal
        self.voice = voice or VoiceSynth()
        self.ipc = IPCServer(
            self.connection, self.registry, self.router, self.store,
            terminal=self.terminal, voice=self.voice,
            socket_path=socket_path or resolve_socket_path(),
        )
        media_kwargs = {"media_dir": media_dir} if media_dir else {}
        self.media = MediaResolver(self.connection, transcriber, **media_kwargs)
        self.commands = SelfCommands(self.registry, self.terminal, self._send_to_self,
                                     refresh=self.discover_sessions)
        self.type_into_terminal = bool(config.get("delivery.type_into_terminal", True))
        self.announce = bool(config.get("connection.announce", True))

        self.connection.on_self_message = self._on_self_message
        self.connection.on_contact_message = self._on_contact_message
        self.connection.on_connected.append(self._on_connected)

        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Inbound ──────────────────────────────────────────────────

    def _on_self_message(self, event: InboundEvent) -> None:
        if event.message_id in self.router.sent_ids:
            # Our own echo; the router consumes and drops it
            self.router.dispatch_self(event)
        elif event.kind != "text":
            self._spawn(self._resolve_self(event))
        else:
            self._handle_self(event)

    async def _resolve_self(self, event: InboundEvent) -> None:
        resolved = await self.media.resolve(event)
        if resolved is not None:
            self._handle_self(resolved)

    def _handle_self(self, event: InboundEvent) -> None:
        if event.kind == "text" and self.commands.match(event.body):
            self._spawn(self.commands.run(event.body))
            return
        session_id = self.router.dispatch_self(event)
        if session_id and self.type_into_terminal and self.terminal:
            entry = self.registry.get(session_id)
            if entry and entry.terminal_id:
                self._spawn(self._type_into(entry.terminal_id, event.body))

    async def _type_into(self, terminal_id: str, text: str) -> None:
        if await self.terminal.type_text(terminal_id, text):
            await self.terminal.send_keystroke(terminal_id, "enter")
        else:
            log.warning(f"Could not type into terminal {terminal_id}; message stays queued for IPC")

    def _on_contact_message(self, event: InboundEvent) -> None:
        if event.kind == "audio" and event.message_id not in self.router.sent_ids:
            self._spawn(self._resolve_contact(event))
        else:
            self.router.dispatch_contact(event)

    async def _resolve_contact(self, event: InboundEvent) -> None:
        resolved = await self.media.resolve(event)
        if resolved is not None:
            self.router.dispatch_contact(resolved)

    def _on_connected(self) -> None:
        if self.announce:
            self._spawn(self._send_announcement())

    async def _send_to_self(self, text: str) -> None:
        """Send to the self-conversation; the echo is suppressed."""
        try:
            msg_id = await self.connection.send(self.connection.self_jid, {"text": text})
            self.router.record_sent(msg_id)
        except WatcherError as e:
            log.warning(f"Could not send to self: {e}")

    async def _send_announcement(self) -> None:
        await self._send_to_self(STARTUP_MESSAGE)

    # ── Lifecycle ────────────────────────────────────────────────

    async def discover_sessions(self) -> None:
        """Prune restored sessions whose terminal is gone and pick up labelled terminals."""
        if self.terminal is None:
            return
        snapshot = await self.terminal.list_sessions()
        pruned = self.registry.prune_dead({s.id for s in snapshot})
        discovered = self.registry.discover([s.model_dump() for s in snapshot])
        log.info(f"Startup: {len(self.registry)} session(s), {len(discovered)} discovered, {len(pruned)} pruned")

    async def start(self) -> None:
        self.store.load_caches()
        await self.discover_sessions()
        await self.ipc.start()
        await self.connection.connect()
        lifecycle_log.info("DAEMON | START")

    async def stop(self) -> None:
        """Graceful shutdown: transport, then IPC listener and socket file."""
        log.info("DAEMON | SHUTDOWN | START")
        lifecycle_log.info("DAEMON | SHUTDOWN | START")
        try:
            await self.connection.close()
        except (WatcherError, OSError) as e:
            log.error(f"Error closing connection: {e}")
        try:
            await self.ipc.stop()
        except OSError as e:
            log.error(f"Error stopping IPC: {e}")
        for task in list(self._tasks):
            task.cancel()
        self.store.save_caches()
        self._stop.set()
        lifecycle_log.info("DAEMON | SHUTDOWN | COMPLETE")

    async def run(self) -> None:
        log.info("=" * 60)
        log.info("Watcher starting...")
        log.info(f"  IPC socket: {self.ipc.socket_path}")
        log.info(f"  Auth dir:   {self.credentials.auth_dir}")
        log.info("=" * 60)

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, lambda: asyncio.create_task(self.stop()))
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.create_task(self.stop()))

        await self.start()
        await self._stop.wait()


def main():
    config.load()
    setup_logging(config.get("logging.level", "INFO"))
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    STATE_DIR.mkdir(parents=True, exist_ok=True)

    async def _run():
        await Watcher().run()

    asyncio.run(_run())


if __name__ == "__main__":
    main()

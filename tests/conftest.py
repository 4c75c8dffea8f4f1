"""
Shared fixtures for watcher tests.

Tests exercise the daemon without a bridge process or tmux. FakeTransport
stands in for the bridge: it records every open/send and lets a test drive
the listener of the latest connection attempt (pairing, open, close,
message). FakeTerminal stands in for tmux.
"""
from __future__ import annotations

import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio

from watcher import config
from watcher.auth import CredentialStore
from watcher.errors import TransportError
from watcher.store import WatcherStore
from watcher.terminal import TerminalSession

SELF_PHONE = "41790000001"
SELF_JID = f"{SELF_PHONE}@s.whatsapp.net"
SELF_LID = "987654321@lid"
CONTACT_JID = "41790000002@s.whatsapp.net"


@pytest.fixture(autouse=True)
def empty_config():
    """Every test runs against defaults, never the user's config file."""
    config._config = {}
    config._loaded = True
    yield
    config._config = {}
    config._loaded = False


# ── Fake transport ──────────────────────────────────────────────────────

class FakeHandle:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.history_requests: list[dict] = []
        self.closed = False
        self.fail_send = False
        self.media = b"\x89PNG fake image"
        self.media_requests: list[dict] = []
        self.fail_media = False
        self._next_id = 1

    async def send(self, to: str, content: dict[str, Any]) -> str:
        if self.fail_send:
            raise TransportError("simulated send failure")
        msg_id = f"OUT{self._next_id}"
        self._next_id += 1
        self.sent.append((to, content))
        return msg_id

    async def fetch_history(self, jid: str, count: int, anchor: dict[str, Any]) -> None:
        self.history_requests.append({"jid": jid, "count": count, "anchor": anchor})

    async def download_media(self, message: dict[str, Any]) -> bytes:
        self.media_requests.append(message)
        if self.fail_media:
            raise TransportError("simulated download failure")
        return self.media

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Records connection attempts; `fail_opens` makes the next N opens fail."""

    def __init__(self):
        self.listeners: list = []
        self.handles: list[FakeHandle] = []
        self.fail_opens = 0

    @property
    def opens(self) -> int:
        return len(self.listeners)

    @property
    def listener(self):
        return self.listeners[-1]

    @property
    def handle(self) -> FakeHandle:
        return self.handles[-1]

    async def open(self, credentials, listener) -> FakeHandle:
        self.listeners.append(listener)
        if self.fail_opens:
            self.fail_opens -= 1
            raise TransportError("bridge unreachable")
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    def open_session(self, phone: str = SELF_PHONE, lid: Optional[str] = "987654321:7@lid"):
        """Report a successful open on the latest attempt."""
        user = {"id": f"{phone}:3@s.whatsapp.net"}
        if lid:
            user["lid"] = lid
        self.listener.on_open(user)


# ── Fake terminal ───────────────────────────────────────────────────────

class FakeTerminal:
    def __init__(self, sessions: Optional[list[TerminalSession]] = None):
        self.sessions = list(sessions or [])
        self.labels: dict[str, str] = {s.id: s.label for s in self.sessions if s.label}
        self.typed: list[tuple[str, str]] = []
        self.keys: list[tuple[str, str]] = []
        self.focused: list[str] = []
        self.dead: set[str] = set()

    async def is_alive(self, terminal_id: str) -> bool:
        return any(s.id == terminal_id for s in self.sessions) and terminal_id not in self.dead

    async def list_sessions(self) -> list[TerminalSession]:
        return [
            TerminalSession(id=s.id, label=self.labels.get(s.id, ""), path=s.path, command=s.command)
            for s in self.sessions if s.id not in self.dead
        ]

    async def type_text(self, terminal_id: str, text: str) -> bool:
        if terminal_id in self.dead:
            return False
        self.typed.append((terminal_id, text))
        return True

    async def send_keystroke(self, terminal_id: str, key: str) -> bool:
        self.keys.append((terminal_id, key))
        return True

    async def focus(self, terminal_id: str) -> bool:
        self.focused.append(terminal_id)
        return True

    async def get_label(self, terminal_id: str) -> Optional[str]:
        return self.labels.get(terminal_id)

    async def set_label(self, terminal_id: str, label: str) -> bool:
        self.labels[terminal_id] = label
        return True


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture
def registry_file(tmp_path):
    """Create a temporary session registry file."""
    reg_file = tmp_path / "sessions.json"
    reg_file.write_text("[]")
    return reg_file


@pytest.fixture
def registry(registry_file):
    """Create a SessionRegistry instance."""
    from watcher.registry import SessionRegistry
    return SessionRegistry(registry_file)


@pytest.fixture
def store(tmp_path):
    state = tmp_path / "state"
    return WatcherStore(
        chat_file=state / "chat-cache.json",
        contact_file=state / "contact-cache.json",
        message_file=state / "message-cache.json",
    )


@pytest.fixture
def credentials(tmp_path):
    auth_dir = tmp_path / "auth"
    auth_dir.mkdir()
    return CredentialStore(auth_dir)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def terminal_factory():
    return FakeTerminal


@pytest.fixture
def fake_terminal():
    return FakeTerminal([
        TerminalSession(id="%1", path="/work/api", command="zsh"),
        TerminalSession(id="%2", path="/work/web", command="zsh"),
    ])


@pytest_asyncio.fixture
async def connection(fake_transport, credentials, store):
    """A ConnectionManager with fast backoff. Closed after the test."""
    from watcher.connection import ConnectionManager
    manager = ConnectionManager(
        fake_transport, credentials, store,
        initial_backoff=1.0, max_backoff=60.0, replaced_limit=3, history_timeout=0.05,
    )
    yield manager
    await manager.close()


@pytest.fixture
def short_socket_dir():
    """Unix socket paths are limited to ~104 bytes, so avoid deep tmp_path dirs."""
    path = Path(tempfile.mkdtemp(prefix="wt-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def raw_message():
    """Factory for upstream messages as the bridge delivers them."""
    counter = {"n": 0}

    def _make(
        remote_jid: str = CONTACT_JID,
        text: Optional[str] = "Hello from test",
        msg_id: Optional[str] = None,
        from_me: bool = False,
        timestamp: Optional[int] = None,
        push_name: Optional[str] = None,
        content: Optional[dict] = None,
    ) -> dict:
        counter["n"] += 1
        msg = {
            "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": msg_id or f"IN{counter['n']}"},
            "messageTimestamp": timestamp if timestamp is not None else int(time.time()),
            "message": content if content is not None else ({"conversation": text} if text else {}),
        }
        if push_name:
            msg["pushName"] = push_name
        return msg
    return _make


@pytest.fixture
def inbound_event():
    """Factory for already-classified inbound events."""
    from watcher.models import InboundEvent
    counter = {"n": 0}

    def _make(body: str = "hello", msg_id: Optional[str] = None, is_self: bool = True,
              remote_jid: str = SELF_JID, timestamp: Optional[int] = None,
              kind: str = "text", push_name: Optional[str] = None):
        counter["n"] += 1
        return InboundEvent(
            message_id=msg_id or f"EV{counter['n']}",
            remote_jid=remote_jid,
            body=body,
            timestamp=timestamp if timestamp is not None else counter["n"],
            is_self=is_self,
            kind=kind,
            push_name=push_name,
        )
    return _make


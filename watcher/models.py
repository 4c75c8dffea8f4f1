"""
Data shapes shared across the watcher: connection status, sessions, queued
messages, contacts, IPC envelopes and voice settings.

Everything that crosses the IPC socket uses camelCase on the wire
(``sessionId``, ``phoneNumber``) and snake_case in Python; both spellings are
accepted when parsing. Files on disk use the Python names.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    LOGGED_OUT = "logged_out"  # terminal until trigger_login()
    REPLACED = "replaced"      # halted after repeated takeover by another instance


class ConnectionStatus(BaseModel, alias_generator=to_camel, populate_by_name=True):
    """Snapshot of the upstream connection. Only ConnectionManager mutates it."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    connected: bool = False
    phone_number: Optional[str] = None
    self_jid: Optional[str] = None     # canonical address, e.g. 4179...@s.whatsapp.net
    self_lid: Optional[str] = None     # linked-device id, device decoration stripped
    awaiting_pairing: bool = False
    pairing_code: Optional[str] = None
    reconnect_attempts: int = 0
    replaced_count: int = 0
    last_error: Optional[str] = None


class SessionOrigin(str, Enum):
    REGISTERED = "registered"  # client called register
    AUTO = "auto"              # created on first request from an unknown client
    DISCOVERED = "discovered"  # found by scanning terminal labels


class RegisteredSession(BaseModel, alias_generator=to_camel, populate_by_name=True):
    session_id: str
    name: str
    terminal_id: Optional[str] = None
    origin: SessionOrigin = SessionOrigin.REGISTERED
    registered_at: int = Field(default_factory=now_ms)
    # False for entries restored from disk until a liveness check passes
    verified: bool = True


class QueuedMessage(BaseModel, frozen=True):
    body: str
    timestamp: int  # epoch ms


class ContactEntry(BaseModel, alias_generator=to_camel, populate_by_name=True):
    jid: str
    name: Optional[str] = None
    phone_number: str
    last_seen: int = 0


class InboundEvent(BaseModel, frozen=True):
    """An upstream message after classification."""

    message_id: str
    remote_jid: str            # normalized (device stripped)
    body: str                  # text, or the caption of an image
    timestamp: int
    is_self: bool
    kind: str = "text"         # text | image | audio
    push_name: Optional[str] = None
    # Raw upstream message for image/audio events, needed to download the payload
    media: Optional[dict[str, Any]] = Field(None, exclude=True, repr=False)


class IpcRequest(BaseModel, populate_by_name=True, coerce_numbers_to_str=True):
    id: str
    session_id: str = Field("", alias="sessionId")
    terminal_id: Optional[str] = Field(None, alias="terminalId")
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class IpcResponse(BaseModel):
    id: str
    ok: bool
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_line(self) -> bytes:
        return (self.model_dump_json(exclude_none=True) + "\n").encode()


DEFAULT_PERSONAS: dict[str, str] = {
    "Nicole": "af_nicole",
    "George": "bm_george",
    "Daniel": "bm_daniel",
    "Fable": "bm_fable",
}


class VoiceConfig(BaseModel, alias_generator=to_camel, populate_by_name=True):
    default_voice: str = "bm_fable"
    # Preferences read by clients: reply with voice notes, or speak replies locally
    voice_mode: bool = False
    local_mode: bool = False
    personas: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_PERSONAS))

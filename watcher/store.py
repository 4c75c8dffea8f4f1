"""
On-disk caches for the upstream chat, contact and message stores, plus the
voice configuration file.

The message cache keeps only what a history fetch needs as an anchor
(``key``, ``messageTimestamp``, ``message``). All I/O is synchronous; it runs
at startup and from low-frequency events. Corrupt cache files are logged and
ignored so they never prevent startup.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from watcher.common import (
    CHAT_CACHE_FILE,
    CONTACT_CACHE_FILE,
    MESSAGE_CACHE_FILE,
    VOICE_CONFIG_FILE,
)
from watcher.models import VoiceConfig

log = logging.getLogger(__name__)


def message_timestamp(msg: dict[str, Any]) -> int:
    """Message timestamp in seconds (the bridge may send strings)."""
    try:
        return int(msg.get("messageTimestamp") or 0)
    except (TypeError, ValueError):
        return 0


def message_text(msg: dict[str, Any]) -> Optional[str]:
    content = msg.get("message") or {}
    return (
        content.get("conversation")
        or (content.get("extendedTextMessage") or {}).get("text")
        or None
    )


class WatcherStore:
    """Chats, contacts and history anchors mirrored from the upstream network."""

    def __init__(
        self,
        chat_file: Path = CHAT_CACHE_FILE,
        contact_file: Path = CONTACT_CACHE_FILE,
        message_file: Path = MESSAGE_CACHE_FILE,
    ):
        self._chat_file = chat_file
        self._contact_file = contact_file
        self._message_file = message_file
        self.chats: dict[str, dict[str, Any]] = {}
        self.contacts: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}

    # ── Load / save ──────────────────────────────────────────────

    def load_caches(self) -> None:
        for chat in self._read(self._chat_file, []):
            if isinstance(chat, dict) and chat.get("id"):
                self.chats[chat["id"]] = chat
        for contact in self._read(self._contact_file, []):
            if isinstance(contact, dict) and contact.get("id"):
                self.contacts[contact["id"]] = contact
        total = 0
        for jid, msgs in self._read(self._message_file, {}).items():
            if isinstance(msgs, list) and msgs:
                self.messages[jid] = msgs
                total += len(msgs)
        log.info(
            f"Loaded caches: {len(self.chats)} chats, {len(self.contacts)} contacts, "
            f"{total} messages across {len(self.messages)} chats"
        )

    def save_caches(self) -> None:
        try:
            self._write(self._chat_file, list(self.chats.values()))
            self._write(self._contact_file, list(self.contacts.values()))
            trimmed = {
                jid: [
                    {
                        "key": m.get("key") or {},
                        "messageTimestamp": message_timestamp(m) or None,
                        "message": m.get("message"),
                    }
                    for m in msgs
                ]
                for jid, msgs in self.messages.items()
            }
            self._write(self._message_file, trimmed)
        except OSError as e:
            log.error(f"Failed to save store cache: {e}")

    @staticmethod
    def _read(path: Path, default):
        if not path.exists():
            return default
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            log.warning(f"Ignoring corrupt cache {path.name}: {e}")
            return default
        return data if isinstance(data, type(default)) else default

    @staticmethod
    def _write(path: Path, data) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, default=str))
        tmp_path.rename(path)

    # ── Mutation ─────────────────────────────────────────────────

    def upsert_chats(self, chats: list[dict[str, Any]]) -> None:
        for chat in chats:
            if chat.get("id"):
                self.chats.setdefault(chat["id"], {}).update(chat)

    def delete_chats(self, jids: list[str]) -> None:
        for jid in jids:
            self.chats.pop(jid, None)

    def upsert_contacts(self, contacts: list[dict[str, Any]]) -> None:
        for contact in contacts:
            if contact.get("id"):
                self.contacts.setdefault(contact["id"], {}).update(contact)

    def add_message(self, jid: str, msg: dict[str, Any]) -> bool:
        """Store a message as a history anchor. Returns False for duplicates."""
        msg_id = (msg.get("key") or {}).get("id")
        arr = self.messages.setdefault(jid, [])
        if msg_id and any((m.get("key") or {}).get("id") == msg_id for m in arr):
            return False
        arr.append(msg)
        return True

    def oldest_anchor(self, jid: str) -> Optional[dict[str, Any]]:
        stored = self.messages.get(jid)
        if not stored:
            return None
        return min(stored, key=message_timestamp)

    def history(self, jid: str) -> list[dict[str, Any]]:
        return sorted(self.messages.get(jid, []), key=message_timestamp)


# ── Voice config ─────────────────────────────────────────────────

def load_voice_config(path: Path = VOICE_CONFIG_FILE) -> VoiceConfig:
    """Load voice settings, back-filling defaults and default personas."""
    defaults = VoiceConfig()
    if not path.exists():
        return defaults
    try:
        raw = json.loads(path.read_text())
        personas = {**defaults.personas, **(raw.get("personas") or {})}
        return VoiceConfig.model_validate({**raw, "personas": personas})
    except (ValueError, OSError, AttributeError) as e:
        log.warning(f"Corrupt voice config {path}, using defaults: {e}")
        return defaults


def save_voice_config(cfg: VoiceConfig, path: Path = VOICE_CONFIG_FILE) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(cfg.model_dump_json(indent=2))
    except OSError as e:
        log.error(f"Failed to save voice config: {e}")

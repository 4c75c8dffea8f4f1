"""
Shared paths, identity helpers and text formatting used by the daemon and CLI.

Addresses on the upstream network ("JIDs") look like
``41764502698@s.whatsapp.net`` for people, ``123456@g.us`` for groups and
``98765:12@lid`` for linked-device identities. The ``:12`` part is a device
decoration and must be stripped before two addresses are compared.
"""
from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

# Paths
HOME = Path.home()
WATCHER_DIR = Path(os.environ.get("WATCHER_HOME", HOME / ".watcher"))
STATE_DIR = WATCHER_DIR / "state"
LOGS_DIR = WATCHER_DIR / "logs"
SESSION_REGISTRY_FILE = STATE_DIR / "sessions.json"
CHAT_CACHE_FILE = STATE_DIR / "chat-cache.json"
CONTACT_CACHE_FILE = STATE_DIR / "contact-cache.json"
MESSAGE_CACHE_FILE = STATE_DIR / "message-cache.json"
VOICE_CONFIG_FILE = WATCHER_DIR / "voice-config.json"
PID_FILE = STATE_DIR / "watcher.pid"
LOG_FILE = LOGS_DIR / "watcher.log"
MEDIA_DIR = Path(tempfile.gettempdir()) / "watcher-media"

# Sockets
IPC_SOCKET = Path("/tmp/watcher.sock")
BRIDGE_SOCKET = Path("/tmp/watcher-bridge.sock")

# Longest newline-delimited JSON line accepted on either socket (bytes)
STREAM_LIMIT = 16 * 1024 * 1024

# Addressing
USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"

# Long-poll bounds (milliseconds)
DEFAULT_WAIT_MS = 120_000
MAX_WAIT_MS = 300_000

# Outbound ids are remembered this long for echo suppression (seconds)
SENT_ID_TTL = 30.0

DEFAULT_SESSION_NAME = "Unknown"

_DEVICE_RE = re.compile(r":\d+@")
_PHONE_RE = re.compile(r"^[+\d][\d\s\-().]+$")


def strip_device(jid: str) -> str:
    """Drop the ``:<device>`` decoration: ``4179:3@s.whatsapp.net`` -> ``4179@s.whatsapp.net``."""
    return _DEVICE_RE.sub("@", jid)


def phone_from_jid(jid: str) -> str:
    """Numeric part of an address, without device or server."""
    return jid.split(":")[0].split("@")[0]


def is_group_jid(jid: str) -> bool:
    return jid.endswith(f"@{GROUP_SERVER}")


def resolve_jid(recipient: str) -> str:
    """Convert a phone number or address to a normalized address.

    "+41 76 450-2698"            -> "41764502698@s.whatsapp.net"
    "41764502698@s.whatsapp.net" -> unchanged
    "123456789@g.us"             -> unchanged
    """
    trimmed = recipient.strip()
    if "@" in trimmed:
        return trimmed
    digits = re.sub(r"[\s\-().]", "", trimmed.lstrip("+"))
    return f"{digits}@{USER_SERVER}"


def looks_like_address(recipient: str) -> bool:
    """True for explicit addresses and phone-number-shaped strings."""
    trimmed = recipient.strip()
    return "@" in trimmed or bool(_PHONE_RE.match(trimmed))


def markdown_to_chat(text: str) -> str:
    """Convert a subset of Markdown to the network's inline formatting codes.

    ``**bold**`` -> ``*bold*``, ``*italic*`` -> ``_italic_``,
    `` `code` `` -> ```` ```code``` ````, headings become bold upper case,
    list bullets become ``•`` and checkboxes become ``☐``/``☑``.
    Block-level rules run before inline ones so substituted delimiters are
    not processed twice.
    """
    bold = "\x01"  # placeholder so the italic pass leaves bold alone
    text = re.sub(r"^#{1,6}\s+(.+)$", lambda m: f"{bold}{m.group(1).upper()}{bold}", text, flags=re.M)
    text = re.sub(r"^---+$", "———", text, flags=re.M)
    text = re.sub(r"^>\s?(.*)$", r"▎ \1", text, flags=re.M)
    text = re.sub(r"^(\s*)- \[x\]\s+", r"\1☑ ", text, flags=re.M)
    text = re.sub(r"^(\s*)- \[ \]\s+", r"\1☐ ", text, flags=re.M)
    text = re.sub(r"^(\s*)[-*]\s+", r"\1• ", text, flags=re.M)
    text = re.sub(r"\*\*(.+?)\*\*", f"{bold}\\1{bold}", text, flags=re.S)
    text = re.sub(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)", r"_\1_", text, flags=re.S)
    text = re.sub(r"`([^`]+)`", r"```\1```", text)
    return text.replace(bold, "*")


def preview(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


# Extension -> MIME type for send_file. Unknown extensions are sent as documents.
MIME_MAP: dict[str, str] = {
    # Documents
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".zip": "application/zip",
    ".json": "application/json",
    # Images
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    # Video
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    # Audio
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
}


def mime_for(path: Path) -> str:
    return MIME_MAP.get(path.suffix.lower(), "application/octet-stream")

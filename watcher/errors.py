"""
Error taxonomy for the watcher.

Every error carries a stable ``code``. The IPC server answers a failed
request with ``{ok: false, error, code}`` and the client raises the matching
class again, so callers can tell a halted connection (AuthInvalidated,
SessionReplaced) from a transient one (NotConnected) without parsing text.

Connection failures never escape connect()/trigger_login(); they are
recorded in the connection status. They surface as exceptions only when an
outbound operation is attempted. A long-poll timeout is not an error at all.
"""
from __future__ import annotations

from typing import Optional


class WatcherError(Exception):
    """Base class. The message is what IPC clients see."""

    code = "watcher_error"


class TransportError(WatcherError):
    """Transient upstream failure; the connection manager retries with backoff."""

    code = "transport_error"


class NotConnected(TransportError):
    """An outbound operation was attempted while the connection is down."""

    code = "not_connected"


class AuthInvalidated(WatcherError):
    """The remote revoked our credentials. Only an explicit login resumes."""

    code = "auth_invalidated"


class SessionReplaced(WatcherError):
    """Another process took over the upstream connection."""

    code = "session_replaced"


class IpcProtocolError(WatcherError):
    """Malformed IPC request; answered with an error and the connection is closed."""

    code = "protocol_error"


class UnknownTarget(WatcherError):
    """Missing file, recipient, session or history anchor."""

    code = "unknown_target"


class VoiceError(WatcherError):
    """Speech synthesis, transcription, transcoding or playback failed."""

    code = "voice_error"


def error_for_code(code: Optional[str], message: str) -> WatcherError:
    """Rebuild the exception an IPC error response describes."""
    classes = [WatcherError, TransportError, NotConnected, AuthInvalidated,
               SessionReplaced, IpcProtocolError, UnknownTarget, VoiceError]
    for cls in classes:
        if cls.code == code:
            return cls(message)
    return WatcherError(message)

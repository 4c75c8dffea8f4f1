"""
Upstream transport: the contract the connection manager consumes, and a
JSON-RPC client for the bridge process that actually speaks the network's
wire protocol.

The bridge listens on a unix socket and exchanges newline-delimited JSON-RPC
2.0 objects. We send requests (``open``, ``send``, ``fetchHistory``,
``downloadMedia``, ``close``) and receive responses plus notifications:

    pairing   {code}
    open      {user: {id, lid, name}}
    close     {reason, code, message}
    creds     {update}
    message   {message}
    chats     {chats, deleted?}
    contacts  {contacts}
    history   {messages, syncType}
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from watcher import config
from watcher.auth import CredentialStore
from watcher.common import BRIDGE_SOCKET, STREAM_LIMIT
from watcher.errors import TransportError

log = logging.getLogger(__name__)

# Status codes the bridge forwards from the network on close
LOGGED_OUT_CODE = 401
REPLACED_CODE = 440


class CloseReason(str, Enum):
    LOGGED_OUT = "logged_out"
    REPLACED = "replaced"
    CONNECTION_LOST = "connection_lost"
    ERROR = "error"

    @classmethod
    def from_wire(cls, reason: Optional[str], code: Optional[int]) -> "CloseReason":
        if reason in (cls.LOGGED_OUT.value, cls.REPLACED.value):
            return cls(reason)
        if code == LOGGED_OUT_CODE:
            return cls.LOGGED_OUT
        if code == REPLACED_CODE:
            return cls.REPLACED
        if reason == cls.CONNECTION_LOST.value:
            return cls.CONNECTION_LOST
        return cls.ERROR


class TransportListener(Protocol):
    """Event sink. All callbacks run on the event loop."""

    def on_pairing(self, code: str) -> None: ...
    def on_open(self, user: dict[str, Any]) -> None: ...
    def on_close(self, reason: CloseReason, detail: str) -> None: ...
    def on_message(self, msg: dict[str, Any]) -> None: ...
    def on_chats(self, chats: list[dict[str, Any]], deleted: list[str]) -> None: ...
    def on_contacts(self, contacts: list[dict[str, Any]]) -> None: ...
    def on_history(self, messages: list[dict[str, Any]], sync_type: Optional[str]) -> None: ...


class TransportHandle(Protocol):
    async def send(self, to: str, content: dict[str, Any]) -> str: ...
    async def fetch_history(self, jid: str, count: int, anchor: dict[str, Any]) -> None: ...
    async def download_media(self, message: dict[str, Any]) -> bytes: ...
    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self, credentials: CredentialStore, listener: TransportListener) -> TransportHandle: ...


class JsonRpcHandle:
    """One live bridge connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        credentials: CredentialStore,
        listener: TransportListener,
        request_timeout: float,
    ):
        self._reader = reader
        self._writer = writer
        self._credentials = credentials
        self._listener = listener
        self._request_timeout = request_timeout
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 1
        self._closing = False
        self._close_reported = False
        self._read_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._read_task = asyncio.create_task(self._read_loop())

    async def request(self, method: str, params: dict[str, Any], timeout: Optional[float] = None) -> Any:
        if self._writer.is_closing():
            raise TransportError("bridge connection is closed")
        req_id = self._next_id
        self._next_id += 1
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        line = json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}) + "\n"
        try:
            self._writer.write(line.encode())
            await self._writer.drain()
            return await asyncio.wait_for(fut, timeout or self._request_timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"bridge request '{method}' timed out")
        except (ConnectionError, OSError) as e:
            raise TransportError(f"bridge write failed: {e}")
        finally:
            self._pending.pop(req_id, None)

    async def send(self, to: str, content: dict[str, Any]) -> str:
        result = await self.request("send", {"to": to, "content": content})
        msg_id = (result or {}).get("id")
        if not msg_id:
            raise TransportError("bridge returned no message id")
        return str(msg_id)

    async def fetch_history(self, jid: str, count: int, anchor: dict[str, Any]) -> None:
        await self.request("fetchHistory", {"jid": jid, "count": count, "anchor": anchor})

    async def download_media(self, message: dict[str, Any]) -> bytes:
        """Decrypted payload of an image/audio/document message."""
        result = await self.request("downloadMedia", {"message": message})
        data = (result or {}).get("base64")
        if not data:
            raise TransportError("bridge returned no media")
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransportError(f"bridge returned undecodable media: {e}")

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            await self.request("close", {}, timeout=2.0)
        except TransportError as e:
            log.debug(f"Bridge close request failed: {e}")
        self._writer.close()
        if self._read_task:
            self._read_task.cancel()

    def abort(self) -> None:
        """Drop the connection without a close handshake or close event."""
        self._closing = True
        self._writer.close()
        if self._read_task:
            self._read_task.cancel()

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError as e:
                    # Over the stream limit; the oversize line is discarded
                    log.warning(f"Skipping oversize bridge line: {e}")
                    continue
                if not line:
                    break
                if line.strip():
                    self._process_line(line.decode(errors="replace"))
        except (ConnectionError, OSError) as e:
            log.warning(f"Bridge read error: {e}")
        finally:
            for fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(TransportError("bridge connection lost"))
            if not self._closing:
                self._report_close(CloseReason.CONNECTION_LOST, "bridge socket closed")

    def _process_line(self, line: str) -> None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            log.warning(f"Bridge sent invalid JSON: {line[:100]}")
            return
        if not isinstance(data, dict):
            log.warning(f"Bridge sent a non-object line: {line[:100]}")
            return

        if "id" in data and ("result" in data or "error" in data):
            fut = self._pending.get(data["id"])
            if fut is None or fut.done():
                return
            if data.get("error"):
                err = data["error"]
                message = err.get("message") if isinstance(err, dict) else str(err)
                fut.set_exception(TransportError(message or "bridge error"))
            else:
                fut.set_result(data.get("result"))
            return

        method = data.get("method")
        params = data.get("params") or {}
        try:
            self._notify(method, params)
        except Exception as e:
            log.exception(f"Error handling bridge notification '{method}': {e}")

    def _notify(self, method: str, params: dict[str, Any]) -> None:
        if method == "pairing":
            self._listener.on_pairing(str(params.get("code", "")))
        elif method == "open":
            self._listener.on_open(params.get("user") or {})
        elif method == "close":
            if self._closing:
                return
            reason = CloseReason.from_wire(params.get("reason"), params.get("code"))
            self._report_close(reason, params.get("message") or reason.value)
        elif method == "creds":
            self._credentials.save(params.get("update") or {})
        elif method == "message":
            self._listener.on_message(params.get("message") or {})
        elif method == "chats":
            self._listener.on_chats(params.get("chats") or [], params.get("deleted") or [])
        elif method == "contacts":
            self._listener.on_contacts(params.get("contacts") or [])
        elif method == "history":
            self._listener.on_history(params.get("messages") or [], params.get("syncType"))
        else:
            log.debug(f"Ignoring bridge notification: {method}")

    def _report_close(self, reason: CloseReason, detail: str) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        self._closing = True
        self._writer.close()
        self._listener.on_close(reason, detail)


class JsonRpcTransport:
    """Opens bridge connections. Socket path from config ``transport.socket_path``."""

    def __init__(self, socket_path: Optional[Path] = None, request_timeout: Optional[float] = None,
                 line_limit: int = STREAM_LIMIT):
        self.socket_path = socket_path or config.get_path("transport.socket_path", BRIDGE_SOCKET)
        self.request_timeout = request_timeout or float(config.get("transport.request_timeout", 30))
        self.line_limit = line_limit

    async def open(self, credentials: CredentialStore, listener: TransportListener) -> JsonRpcHandle:
        try:
            reader, writer = await asyncio.open_unix_connection(str(self.socket_path), limit=self.line_limit)
        except (ConnectionError, OSError) as e:
            raise TransportError(f"cannot reach bridge at {self.socket_path}: {e}")

        handle = JsonRpcHandle(reader, writer, credentials, listener, self.request_timeout)
        handle.start()
        try:
            await handle.request("open", {
                "authDir": str(credentials.auth_dir),
                "creds": credentials.load(),
            })
        except TransportError:
            handle.abort()
            raise
        log.info(f"Bridge connection opened at {self.socket_path}")
        return handle

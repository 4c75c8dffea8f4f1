"""
Unix socket IPC server for watcher clients.

Protocol: a client connects, writes one JSON line
``{id, sessionId, terminalId?, method, params}`` and reads one JSON line
``{id, ok, result | error}``; the server then closes the connection. ``wait``
is the exception: the connection stays open until a message arrives, the
timeout fires, or the client goes away (in which case nothing is sent).

Requests from an unknown session id (anything but ``register``) auto-register
it under the default name, so clients that outlive a daemon restart keep
working.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from watcher.common import (
    DEFAULT_WAIT_MS,
    IPC_SOCKET,
    MAX_WAIT_MS,
    STREAM_LIMIT,
    VOICE_CONFIG_FILE,
    markdown_to_chat,
    mime_for,
    preview,
)
from watcher.connection import ConnectionManager
from watcher.contacts import list_chats
from watcher.errors import IpcProtocolError, UnknownTarget, WatcherError
from watcher.models import IpcRequest, IpcResponse, QueuedMessage, now_ms
from watcher.registry import SessionRegistry
from watcher.router import MessageRouter
from watcher.store import WatcherStore, load_voice_config, message_timestamp, save_voice_config
from watcher.terminal import Terminal
from watcher.voice import VOICE_NOTE_MIMETYPE, VoiceSynth, resolve_voice

log = logging.getLogger(__name__)

Handler = Callable[[IpcRequest], Awaitable[dict[str, Any]]]


def _text_param(req: IpcRequest, key: str) -> Optional[str]:
    value = req.params.get(key)
    return str(value) if value is not None else None


def _int_param(req: IpcRequest, key: str, default: int) -> int:
    value = req.params.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise WatcherError(f"{key} must be a number, got {value!r}")


def _iso_date(ts: int) -> str:
    """Epoch seconds as ISO 8601 UTC with milliseconds, e.g. 2024-05-01T09:30:00.000Z."""
    stamp = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def _message_type(content: dict[str, Any]) -> str:
    if content.get("conversation") or content.get("extendedTextMessage"):
        return "text"
    for kind in ("image", "video", "audio", "document"):
        if content.get(f"{kind}Message"):
            return kind
    return "other"


class IPCServer:
    """Unix socket IPC server for watcher clients."""

    def __init__(
        self,
        connection: ConnectionManager,
        registry: SessionRegistry,
        router: MessageRouter,
        store: WatcherStore,
        terminal: Optional[Terminal] = None,
        voice: Optional[VoiceSynth] = None,
        socket_path: Path = IPC_SOCKET,
        read_timeout: float = 30.0,
        voice_config_file: Path = VOICE_CONFIG_FILE,
        line_limit: int = STREAM_LIMIT,
    ):
        self.connection = connection
        self.registry = registry
        self.router = router
        self.store = store
        self.terminal = terminal
        self.voice = voice
        self.socket_path = socket_path
        self.read_timeout = read_timeout
        self.voice_config_file = voice_config_file
        self.line_limit = line_limit
        self._server: Optional[asyncio.AbstractServer] = None
        self._background: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            "register": self._cmd_register,
            "rename": self._cmd_rename,
            "status": self._cmd_status,
            "send": self._cmd_send,
            "send_file": self._cmd_send_file,
            "receive": self._cmd_receive,
            "login": self._cmd_login,
            "contacts": self._cmd_contacts,
            "chats": self._cmd_chats,
            "history": self._cmd_history,
            "tts": self._cmd_tts,
            "speak": self._cmd_speak,
            "voice_config": self._cmd_voice_config,
            "sessions": self._cmd_sessions,
            "switch": self._cmd_switch,
            "end": self._cmd_end,
            "discover": self._cmd_discover,
        }

    async def start(self):
        # Clean up stale socket
        self.socket_path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self.socket_path), limit=self.line_limit,
        )
        self.socket_path.chmod(0o600)  # Owner-only access
        log.info(f"IPC server listening on {self.socket_path}")

    async def stop(self):
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        for task in list(self._background):
            task.cancel()
        self.socket_path.unlink(missing_ok=True)

    # ── Connection handling ──────────────────────────────────────

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            try:
                data = await asyncio.wait_for(reader.readline(), timeout=self.read_timeout)
            except asyncio.TimeoutError:
                return
            except ValueError:
                # readline() reports a line over the stream limit as ValueError
                log.warning(f"IPC request exceeds {self.line_limit} bytes; rejected")
                await self._reject(writer, IpcProtocolError(f"Request too large (limit {self.line_limit} bytes)"))
                return
            if not data.strip():
                return

            try:
                request = IpcRequest.model_validate_json(data)
            except ValidationError as e:
                detail = e.errors()[0].get("msg", str(e))
                log.warning(f"Malformed IPC request: {detail}")
                await self._reject(writer, IpcProtocolError(f"Invalid request: {detail}"))
                return

            response = await self._dispatch(request, reader)
            if response is None:
                return  # long-poll client went away
            delivered = await self._write(writer, response)
            if not delivered and request.method == "wait" and response.ok:
                batch = [QueuedMessage.model_validate(m) for m in response.result["messages"]]
                self.router.requeue_front(request.session_id, batch)
                log.info(f"Wait client for {request.session_id} gone; requeued {len(batch)} message(s)")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _write(self, writer: asyncio.StreamWriter, response: IpcResponse) -> bool:
        if writer.is_closing():
            return False
        try:
            writer.write(response.to_line())
            await writer.drain()
        except (ConnectionError, OSError) as e:
            log.debug(f"IPC write failed: {e}")
            return False
        return True

    async def _reject(self, writer: asyncio.StreamWriter, error: IpcProtocolError) -> None:
        await self._write(writer, IpcResponse(id="?", ok=False, error=str(error), code=error.code))

    async def _dispatch(self, request: IpcRequest, reader: asyncio.StreamReader) -> Optional[IpcResponse]:
        sid = request.session_id
        if request.method != "register" and sid:
            self.registry.upsert_default(sid, request.terminal_id)
            self.registry.mark_verified(sid)

        try:
            if request.method == "wait":
                result = await self._cmd_wait(request, reader)
                if result is None:
                    return None
            else:
                handler = self._handlers.get(request.method)
                if handler is None:
                    raise IpcProtocolError(f"Unknown method: {request.method}")
                result = await handler(request)
        except WatcherError as e:
            return IpcResponse(id=request.id, ok=False, error=str(e), code=e.code)
        except ValueError as e:
            return IpcResponse(id=request.id, ok=False, error=str(e))
        except Exception as e:
            log.exception(f"IPC handler '{request.method}' failed: {e}")
            return IpcResponse(id=request.id, ok=False, error=str(e) or type(e).__name__)
        return IpcResponse(id=request.id, ok=True, result=result)

    # ── Sessions ─────────────────────────────────────────────────

    async def _cmd_register(self, req: IpcRequest) -> dict:
        hint = _text_param(req, "terminalId") or req.terminal_id
        persisted = await self.terminal.get_label(hint) if hint and self.terminal else None
        name = self.registry.register(req.session_id, persisted or _text_param(req, "name"), hint)
        if hint and self.terminal and not persisted:
            await self.terminal.set_label(hint, name)
        log.info(
            f"Registered client {req.session_id} as '{name}'"
            f"{' [restored from terminal]' if persisted else ''} (terminal: {hint or 'unknown'})"
        )
        return {"registered": True, "name": name}

    async def _cmd_rename(self, req: IpcRequest) -> dict:
        new_name = _text_param(req, "name")
        if not new_name:
            raise WatcherError("name is required")
        name = self.registry.rename(req.session_id, new_name)
        entry = self.registry.get(req.session_id)
        if entry and entry.terminal_id and self.terminal:
            await self.terminal.set_label(entry.terminal_id, name)
        return {"success": True, "name": name}

    async def _cmd_sessions(self, req: IpcRequest) -> dict:
        active = self.registry.active_id
        sessions = []
        for index, entry in enumerate(self.registry.ordered(), start=1):
            sessions.append({
                "index": index,
                **entry.model_dump(mode="json", by_alias=True),
                "active": entry.session_id == active,
                "pending": self.router.pending(entry.session_id),
            })
        return {"sessions": sessions}

    async def _cmd_switch(self, req: IpcRequest) -> dict:
        target = self._selector(req)
        if not await self.registry.confirm_live(target.session_id, self.terminal):
            raise UnknownTarget(f"Session '{target.name}' is gone; its terminal has closed")
        entry = self.registry.switch(target.session_id)
        if entry.terminal_id and self.terminal:
            await self.terminal.focus(entry.terminal_id)
        return {"active": entry.session_id, "name": entry.name}

    async def _cmd_end(self, req: IpcRequest) -> dict:
        target = self._selector(req)
        self.registry.remove(target.session_id)
        return {"ended": target.session_id, "name": target.name}

    def _selector(self, req: IpcRequest):
        selector = _text_param(req, "session")
        if not selector:
            raise WatcherError("session is required (index, name or id)")
        return self.registry.resolve(selector)

    async def _cmd_discover(self, req: IpcRequest) -> dict:
        if self.terminal is None:
            raise WatcherError("Terminal automation is not configured")
        snapshot = await self.terminal.list_sessions()
        live = {s.id for s in snapshot}
        pruned = [e.name for e in self.registry.prune_dead(live)]
        alive = [e.name for e in self.registry.ordered()]
        discovered = self.registry.discover([s.model_dump() for s in snapshot])
        return {"alive": alive, "pruned": pruned, "discovered": discovered}

    # ── Connection ───────────────────────────────────────────────

    async def _cmd_status(self, req: IpcRequest) -> dict:
        active = self.registry.active
        return {
            **self.connection.status.model_dump(mode="json", by_alias=True),
            "activeSession": active.name if active else None,
            "sessionCount": len(self.registry),
        }

    async def _cmd_login(self, req: IpcRequest) -> dict:
        task = asyncio.create_task(self.connection.trigger_login())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return {"message": "Pairing initiated. Run 'watcher status' to see the pairing code."}

    # ── Sending ──────────────────────────────────────────────────

    def _target(self, recipient: Optional[str]) -> str:
        self.connection.require_ready()
        if recipient:
            return self.router.contacts.resolve_recipient(recipient)
        return self.connection.self_jid

    async def _send_content(self, target: str, content: dict[str, Any]) -> str:
        msg_id = await self.connection.send(target, content)
        self.router.record_sent(msg_id)
        if target != self.connection.self_jid:
            self.router.contacts.track(target, None, now_ms())
        return msg_id

    async def _cmd_send(self, req: IpcRequest) -> dict:
        message = _text_param(req, "message")
        if not message:
            raise WatcherError("message is required")
        target = self._target(_text_param(req, "recipient"))
        msg_id = await self._send_content(target, {"text": markdown_to_chat(message)})
        return {"preview": preview(message), "targetJid": target, "messageId": msg_id}

    async def _cmd_send_file(self, req: IpcRequest) -> dict:
        file_param = _text_param(req, "filePath")
        if not file_param:
            raise WatcherError("filePath is required")
        path = Path(file_param).expanduser()
        if not path.is_file():
            raise UnknownTarget(f"File not found: {file_param}")
        target = self._target(_text_param(req, "recipient"))
        caption = _text_param(req, "caption")

        mimetype = mime_for(path)
        media = {"url": str(path.resolve())}
        if mimetype.startswith("image/"):
            content: dict[str, Any] = {"image": media}
        elif mimetype.startswith("video/"):
            content = {"video": media}
        elif mimetype.startswith("audio/"):
            content = {"audio": media, "mimetype": mimetype, "ptt": False}
            caption = None
        else:
            content = {"document": media, "mimetype": mimetype, "fileName": path.name}
        if caption is not None:
            content["caption"] = caption

        msg_id = await self._send_content(target, content)
        return {"fileName": path.name, "fileSize": path.stat().st_size, "targetJid": target, "messageId": msg_id}

    # ── Receiving ────────────────────────────────────────────────

    async def _cmd_receive(self, req: IpcRequest) -> dict:
        source = _text_param(req, "from")
        if not source:
            batch = self.router.drain(req.session_id)
        elif source == "all":
            batch = self.router.drain_all(req.session_id)
        else:
            batch = self.router.drain_contact(self.router.contacts.resolve_recipient(source))
        return {"messages": [m.model_dump() for m in batch]}

    async def _cmd_wait(self, req: IpcRequest, reader: asyncio.StreamReader) -> Optional[dict]:
        """Long-poll. Returns None when the client disconnected first."""
        sid = req.session_id
        timeout_ms = min(max(_int_param(req, "timeoutMs", DEFAULT_WAIT_MS), 0), MAX_WAIT_MS)

        batch = self.router.drain(sid)
        if batch:
            return {"messages": [m.model_dump() for m in batch]}

        waiter = self.router.add_waiter(sid)
        hangup = asyncio.create_task(self._wait_for_hangup(reader))
        try:
            await asyncio.wait({waiter.future, hangup}, timeout=timeout_ms / 1000,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            hangup.cancel()
            if not waiter.resolved:
                self.router.remove_waiter(waiter)

        client_gone = hangup.done() and not hangup.cancelled()
        if waiter.future.done() and not waiter.future.cancelled():
            batch = waiter.future.result()
            if client_gone:
                self.router.requeue_front(sid, batch)
                log.info(f"Wait client for {sid} gone; requeued {len(batch)} message(s)")
                return None
            return {"messages": [m.model_dump() for m in batch]}
        if client_gone:
            log.debug(f"Wait client for {sid} disconnected")
            return None
        return {"messages": []}

    @staticmethod
    async def _wait_for_hangup(reader: asyncio.StreamReader) -> None:
        try:
            while await reader.read(4096):
                pass
        except (ConnectionError, OSError):
            pass

    # ── Directory ────────────────────────────────────────────────

    async def _cmd_contacts(self, req: IpcRequest) -> dict:
        entries = self.router.contacts.search(self.store, _text_param(req, "search"), _int_param(req, "limit", 50))
        return {"contacts": [c.model_dump(by_alias=True) for c in entries]}

    async def _cmd_chats(self, req: IpcRequest) -> dict:
        return {"chats": list_chats(self.store, _text_param(req, "search"), _int_param(req, "limit", 50))}

    async def _cmd_history(self, req: IpcRequest) -> dict:
        jid_param = _text_param(req, "jid")
        if not jid_param:
            raise WatcherError("jid is required")
        jid = self.router.contacts.resolve_recipient(jid_param)
        raw = await self.connection.fetch_history(jid, _int_param(req, "count", 50))

        messages = []
        for m in raw:
            content = m.get("message") or {}
            ts = message_timestamp(m)
            messages.append({
                "id": (m.get("key") or {}).get("id"),
                "fromMe": bool((m.get("key") or {}).get("fromMe")),
                "timestamp": ts,
                "date": _iso_date(ts),
                "text": (
                    content.get("conversation")
                    or (content.get("extendedTextMessage") or {}).get("text")
                    or (content.get("imageMessage") or {}).get("caption")
                    or "[non-text message]"
                ),
                "type": _message_type(content),
            })
        return {"messages": messages, "count": len(messages)}

    # ── Voice ────────────────────────────────────────────────────

    def _require_voice(self) -> VoiceSynth:
        if self.voice is None:
            raise WatcherError("Speech synthesis is not configured")
        return self.voice

    async def _cmd_tts(self, req: IpcRequest) -> dict:
        text = _text_param(req, "text") or ""
        if not text.strip():
            raise WatcherError("text is required for TTS")
        synth = self._require_voice()
        voice = resolve_voice(_text_param(req, "voice"), load_voice_config(self.voice_config_file))
        target = self._target(_text_param(req, "jid") or _text_param(req, "recipient"))
        audio = await synth.synthesize_voice_note(text, voice)
        await self._send_content(target, {
            "audio": {"base64": base64.b64encode(audio).decode()},
            "mimetype": VOICE_NOTE_MIMETYPE,
            "ptt": True,
        })
        return {"targetJid": target, "voice": voice, "bytesSent": len(audio)}

    async def _cmd_speak(self, req: IpcRequest) -> dict:
        text = _text_param(req, "text") or ""
        if not text.strip():
            raise WatcherError("text is required for speak")
        synth = self._require_voice()
        voice = resolve_voice(_text_param(req, "voice"), load_voice_config(self.voice_config_file))
        await synth.speak_locally(text, voice)
        return {"success": True, "voice": voice}

    async def _cmd_voice_config(self, req: IpcRequest) -> dict:
        action = _text_param(req, "action")
        cfg = load_voice_config(self.voice_config_file)
        if action == "set":
            updates = {to_snake(k): v for k, v in req.params.items() if k not in ("action", "personas")}
            personas = req.params.get("personas")
            if isinstance(personas, dict):
                updates["personas"] = {**cfg.personas, **{str(k): str(v) for k, v in personas.items()}}
            try:
                cfg = cfg.model_validate({**cfg.model_dump(), **updates})
            except ValidationError as e:
                raise WatcherError(f"Invalid voice config: {e.errors()[0].get('msg')}")
            save_voice_config(cfg, self.voice_config_file)
        elif action != "get":
            raise WatcherError("Unknown action. Use 'get' or 'set'.")
        return {"success": True, "config": cfg.model_dump(by_alias=True)}

"""
ConnectionManager - owns the single upstream connection.

State machine:

    disconnected -> connecting -> awaiting_pairing | connected
    connected -> disconnected          (retried with exponential backoff)
    connected -> logged_out            (terminal until trigger_login())
    connected -> disconnected/replaced (another instance took over; retried
                                        with a raised backoff floor, halted
                                        after `replaced_limit` takeovers)

Failures never propagate to callers of connect()/trigger_login(); they land in
`status.last_error` and the log. Only the outbound operations (send,
fetch_history, download_media) raise, so IPC handlers can report them: a
halted connection raises AuthInvalidated or SessionReplaced, anything else
that is down raises NotConnected.

Every connection attempt gets its own listener object. Events from a
superseded attempt (e.g. the close that follows trigger_login) are ignored.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

from watcher import config
from watcher.auth import CredentialStore
from watcher.common import USER_SERVER, phone_from_jid, preview, strip_device
from watcher.errors import AuthInvalidated, NotConnected, SessionReplaced, TransportError, UnknownTarget
from watcher.models import ConnectionState, ConnectionStatus, InboundEvent
from watcher.store import WatcherStore, message_text, message_timestamp
from watcher.transport import CloseReason, Transport, TransportHandle

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

# After a takeover the attempt counter is raised to at least this value,
# so the next delay is initial * 2**REPLACED_ATTEMPT_FLOOR (16s by default).
REPLACED_ATTEMPT_FLOOR = 4
ON_DEMAND_SYNC = "ON_DEMAND"


def compute_backoff(attempts: int, initial: float = 1.0, cap: float = 60.0) -> float:
    """Delay before reconnect attempt number `attempts` (1-based)."""
    return min(initial * 2 ** (max(attempts, 1) - 1), cap)


class _AttemptListener:
    """Transport listener bound to one connection attempt."""

    def __init__(self, manager: "ConnectionManager"):
        self._manager = manager

    def _live(self) -> bool:
        return self._manager._listener is self

    def on_pairing(self, code: str) -> None:
        if self._live():
            self._manager._on_pairing(code)

    def on_open(self, user: dict[str, Any]) -> None:
        if self._live():
            self._manager._on_open(user)

    def on_close(self, reason: CloseReason, detail: str) -> None:
        if self._live():
            self._manager._on_close(reason, detail)

    def on_message(self, msg: dict[str, Any]) -> None:
        if self._live():
            self._manager._on_message(msg)

    def on_chats(self, chats: list[dict[str, Any]], deleted: list[str]) -> None:
        if self._live():
            self._manager._on_chats(chats, deleted)

    def on_contacts(self, contacts: list[dict[str, Any]]) -> None:
        if self._live():
            self._manager._on_contacts(contacts)

    def on_history(self, messages: list[dict[str, Any]], sync_type: Optional[str]) -> None:
        if self._live():
            self._manager._on_history(messages, sync_type)


class ConnectionManager:
    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore,
        store: WatcherStore,
        initial_backoff: Optional[float] = None,
        max_backoff: Optional[float] = None,
        replaced_limit: Optional[int] = None,
        history_timeout: Optional[float] = None,
    ):
        self._transport = transport
        self._credentials = credentials
        self._store = store
        self.initial_backoff = initial_backoff if initial_backoff is not None else float(config.get("connection.initial_backoff", 1.0))
        self.max_backoff = max_backoff if max_backoff is not None else float(config.get("connection.max_backoff", 60.0))
        self.replaced_limit = replaced_limit if replaced_limit is not None else int(config.get("connection.replaced_limit", 3))
        self.history_timeout = history_timeout if history_timeout is not None else float(config.get("connection.history_timeout", 15.0))

        self._status = ConnectionStatus()
        self._handle: Optional[TransportHandle] = None
        self._listener: Optional[_AttemptListener] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopped = False
        self._history_waiters: list[asyncio.Future] = []
        self.last_backoff: Optional[float] = None

        # Wired by the composition root
        self.on_self_message: Optional[Callable[[InboundEvent], None]] = None
        self.on_contact_message: Optional[Callable[[InboundEvent], None]] = None
        self.on_connected: list[Callable[[], None]] = []

    @property
    def status(self) -> ConnectionStatus:
        """A copy; mutate only through this class."""
        return self._status.model_copy()

    @property
    def connected(self) -> bool:
        return self._status.connected and self._handle is not None

    @property
    def self_jid(self) -> Optional[str]:
        return self._status.self_jid

    # ── Lifecycle ────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the transport. Never raises; failures schedule a reconnect."""
        if self._stopped or self._status.state in (ConnectionState.LOGGED_OUT, ConnectionState.REPLACED):
            return
        listener = _AttemptListener(self)
        self._listener = listener
        self._status.state = ConnectionState.CONNECTING
        try:
            handle = await self._transport.open(self._credentials, listener)
        except TransportError as e:
            if self._listener is not listener:
                return
            log.warning(f"Connect failed: {e}")
            self._listener = None
            self._status.last_error = str(e)
            self._status.state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()
            return

        if self._listener is not listener or self._stopped:
            # Superseded while opening (closed, or trigger_login ran)
            await self._close_handle(handle)
            return
        self._handle = handle

    async def trigger_login(self) -> None:
        """Tear down any live connection, reset all state and re-pair."""
        lifecycle_log.info("CONNECTION | LOGIN_TRIGGERED")
        self._cancel_reconnect()
        was_logged_out = self._status.state == ConnectionState.LOGGED_OUT
        handle, self._handle, self._listener = self._handle, None, None
        if handle:
            await self._close_handle(handle)
        if was_logged_out:
            # Revoked credentials would only be rejected again
            self._credentials.clear()
        self._status = ConnectionStatus()
        self._stopped = False
        await self.connect()

    async def close(self) -> None:
        """Orderly shutdown; no further retries."""
        self._stopped = True
        self._cancel_reconnect()
        handle, self._handle, self._listener = self._handle, None, None
        if handle:
            await self._close_handle(handle)
        self._status.connected = False
        self._status.state = ConnectionState.DISCONNECTED
        lifecycle_log.info("CONNECTION | CLOSED")

    async def _close_handle(self, handle: TransportHandle) -> None:
        try:
            await handle.close()
        except TransportError as e:
            log.debug(f"Error closing transport: {e}")

    def _schedule_reconnect(self) -> None:
        if self._stopped or self._reconnect_task is not None:
            return
        if self._status.state in (ConnectionState.LOGGED_OUT, ConnectionState.REPLACED):
            return
        self._status.reconnect_attempts += 1
        delay = compute_backoff(self._status.reconnect_attempts, self.initial_backoff, self.max_backoff)
        self.last_backoff = delay
        log.info(f"Reconnecting in {delay:g}s (attempt {self._status.reconnect_attempts})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    # ── Transport events ─────────────────────────────────────────

    def _on_pairing(self, code: str) -> None:
        self._status.state = ConnectionState.AWAITING_PAIRING
        self._status.awaiting_pairing = True
        self._status.pairing_code = code
        log.warning(f"Pairing required. Link this device with code: {code}")
        lifecycle_log.info("CONNECTION | AWAITING_PAIRING")

    def _on_open(self, user: dict[str, Any]) -> None:
        s = self._status
        s.state = ConnectionState.CONNECTED
        s.connected = True
        s.awaiting_pairing = False
        s.pairing_code = None
        s.reconnect_attempts = 0
        s.replaced_count = 0
        s.last_error = None

        user_id = user.get("id")
        if user_id:
            s.phone_number = phone_from_jid(user_id)
            s.self_jid = f"{s.phone_number}@{USER_SERVER}"
        lid = user.get("lid")
        if lid:
            s.self_lid = strip_device(lid)

        log.info(f"Connected. Phone: +{s.phone_number or 'unknown'}")
        lifecycle_log.info(f"CONNECTION | OPEN | phone={s.phone_number}")
        for callback in self.on_connected:
            try:
                callback()
            except Exception as e:
                log.exception(f"on_connected callback failed: {e}")

    def _on_close(self, reason: CloseReason, detail: str) -> None:
        s = self._status
        self._handle = None
        self._listener = None
        s.connected = False
        s.awaiting_pairing = False
        s.last_error = detail

        if reason == CloseReason.LOGGED_OUT:
            s.state = ConnectionState.LOGGED_OUT
            log.error("Logged out by the remote. Run 'watcher login' to pair again.")
            lifecycle_log.info("CONNECTION | LOGGED_OUT")
            return

        if reason == CloseReason.REPLACED:
            s.replaced_count += 1
            if s.replaced_count >= self.replaced_limit:
                s.state = ConnectionState.REPLACED
                log.error(
                    f"Connection replaced {s.replaced_count} times; another instance holds "
                    f"the session. Stopping reconnection. Run 'watcher login' to recover."
                )
                lifecycle_log.info(f"CONNECTION | REPLACED_HALT | count={s.replaced_count}")
                return
            log.warning(
                f"Connection replaced by another instance ({s.replaced_count}/{self.replaced_limit}). "
                f"Retrying with longer backoff..."
            )
            s.reconnect_attempts = max(s.reconnect_attempts, REPLACED_ATTEMPT_FLOOR)
        else:
            log.warning(f"Connection closed ({reason.value}: {detail}). Will reconnect...")

        lifecycle_log.info(f"CONNECTION | CLOSED | reason={reason.value}")
        s.state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    def _on_chats(self, chats: list[dict[str, Any]], deleted: list[str]) -> None:
        self._store.upsert_chats(chats)
        self._store.delete_chats(deleted)
        log.debug(f"chats: {len(chats)} upserted, {len(deleted)} deleted; store has {len(self._store.chats)}")
        self._store.save_caches()

    def _on_contacts(self, contacts: list[dict[str, Any]]) -> None:
        self._store.upsert_contacts(contacts)
        self._store.save_caches()

    def _on_history(self, messages: list[dict[str, Any]], sync_type: Optional[str]) -> None:
        stored = 0
        for msg in messages:
            remote = (msg.get("key") or {}).get("remoteJid")
            if remote and self._store.add_message(strip_device(remote), msg):
                stored += 1
        log.info(f"history: stored {stored}/{len(messages)} messages (syncType={sync_type})")
        self._store.save_caches()

        if str(sync_type or "").upper() == ON_DEMAND_SYNC:
            for fut in self._history_waiters:
                if not fut.done():
                    fut.set_result(None)

    def _on_message(self, msg: dict[str, Any]) -> None:
        s = self._status
        if not (s.self_jid or s.self_lid or s.phone_number):
            return
        remote = (msg.get("key") or {}).get("remoteJid")
        if not remote:
            return

        # Every message is a potential history anchor, even without a body
        if self._store.add_message(strip_device(remote), msg):
            self._store.save_caches()

        event = self.classify(msg)
        if event is None:
            return
        callback = self.on_self_message if event.is_self else self.on_contact_message
        if callback:
            callback(event)
        else:
            log.debug(f"No handler for inbound message {event.message_id}")

    # ── Classification ───────────────────────────────────────────

    def is_self_jid(self, remote: str) -> bool:
        s = self._status
        norm = strip_device(remote)
        return bool(
            (s.self_jid and norm == strip_device(s.self_jid))
            or (s.self_lid and norm == s.self_lid)
            or (s.phone_number and remote.startswith(s.phone_number))
        )

    def classify(self, msg: dict[str, Any]) -> Optional[InboundEvent]:
        """Turn a raw upstream message into an InboundEvent, or None if it carries nothing deliverable."""
        key = msg.get("key") or {}
        remote = key.get("remoteJid")
        if not remote:
            return None
        content = msg.get("message") or {}

        body = message_text(msg)
        kind = "text"
        media = None
        if not body:
            image = content.get("imageMessage")
            if image is None:
                image = content.get("stickerMessage")
            if image is not None:
                kind = "image"
                body = image.get("caption") or ""
            elif content.get("audioMessage") is not None:
                kind = "audio"
                body = ""
            else:
                return None
            media = msg

        return InboundEvent(
            message_id=key.get("id") or uuid.uuid4().hex,
            remote_jid=strip_device(remote),
            body=body,
            timestamp=message_timestamp(msg) * 1000,
            is_self=self.is_self_jid(remote),
            kind=kind,
            push_name=msg.get("pushName"),
            media=media,
        )

    # ── Outbound ─────────────────────────────────────────────────

    def require_ready(self) -> None:
        """Raise the error that explains why nothing can be sent right now."""
        state = self._status.state
        if state == ConnectionState.LOGGED_OUT:
            raise AuthInvalidated("Logged out by the remote. Run 'watcher login' to pair again.")
        if state == ConnectionState.REPLACED:
            raise SessionReplaced(
                "Another instance holds the connection. Run 'watcher login' to take it back."
            )
        if not self.connected:
            raise NotConnected("Not connected. Check status with 'watcher status'.")
        if not self._status.self_jid:
            raise NotConnected("Self identity not yet known. Wait for the connection to open.")

    async def send(self, to: str, content: dict[str, Any]) -> str:
        """Send through the live handle; returns the transport message id."""
        self.require_ready()
        msg_id = await self._handle.send(to, content)
        log.debug(f"Sent {msg_id} to {to}: {preview(str(content.get('text', '')), 60)}")
        return msg_id

    async def fetch_history(self, jid: str, count: int = 50) -> list[dict[str, Any]]:
        """Ask the upstream for messages older than our oldest anchor for `jid`.

        Falls back to the locally stored anchors when no on-demand response
        arrives within `history_timeout`. Returns messages oldest first.
        """
        self.require_ready()
        anchor = self._store.oldest_anchor(jid)
        if anchor is None:
            raise UnknownTarget(
                "No anchor message found for this chat. Send or receive a message first to create an anchor."
            )

        ts = message_timestamp(anchor)
        ts_ms = ts * 1000 if ts < 1e12 else ts
        fut = asyncio.get_running_loop().create_future()
        self._history_waiters.append(fut)
        try:
            try:
                await self._handle.fetch_history(jid, count, {"key": anchor.get("key") or {}, "timestampMs": ts_ms})
            except TransportError as e:
                raise TransportError(f"history fetch failed: {e}")
            try:
                await asyncio.wait_for(fut, self.history_timeout)
            except asyncio.TimeoutError:
                log.info(f"No on-demand history for {jid} within {self.history_timeout:g}s, using local anchors")
        finally:
            self._history_waiters.remove(fut)
        return self._store.history(jid)

    async def download_media(self, msg: dict[str, Any]) -> bytes:
        """Payload of an inbound image or audio message."""
        self.require_ready()
        return await self._handle.download_media(msg)

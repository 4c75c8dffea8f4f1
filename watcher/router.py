"""
MessageRouter - per-session and per-contact queues, long-poll waiters and
self-echo suppression.

Self-conversation messages go to the active session: straight into a pending
waiter if there is one, otherwise onto that session's FIFO queue. Third-party
messages go to a FIFO queue per contact address; contact queues are only
drained by polling.

All state lives on the event loop thread; nothing here blocks or locks.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Optional

from watcher.common import SENT_ID_TTL, preview
from watcher.contacts import ContactDirectory
from watcher.models import InboundEvent, QueuedMessage
from watcher.registry import SessionRegistry

log = logging.getLogger(__name__)


class SentIdSet:
    """Outbound transport ids, each forgotten after `ttl` seconds."""

    def __init__(self, ttl: float = SENT_ID_TTL, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def _purge(self) -> None:
        now = self._clock()
        for msg_id in [m for m, exp in self._expiry.items() if exp <= now]:
            del self._expiry[msg_id]

    def add(self, msg_id: str) -> None:
        self._expiry[msg_id] = self._clock() + self._ttl

    def consume(self, msg_id: str) -> bool:
        """True (and forget the id) if `msg_id` was sent by us and has not expired."""
        self._purge()
        return self._expiry.pop(msg_id, None) is not None

    def __contains__(self, msg_id: str) -> bool:
        self._purge()
        return msg_id in self._expiry

    def __len__(self) -> int:
        self._purge()
        return len(self._expiry)


class Waiter:
    """One pending long-poll. Resolved at most once."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def resolved(self) -> bool:
        return self.future.done()

    def deliver(self, batch: list[QueuedMessage]) -> bool:
        if self.future.done():
            return False
        self.future.set_result(batch)
        return True

    def cancel(self) -> None:
        if not self.future.done():
            self.future.cancel()


class MessageRouter:
    def __init__(self, registry: SessionRegistry, sent_ids: Optional[SentIdSet] = None,
                 contacts: Optional[ContactDirectory] = None):
        self._registry = registry
        self.sent_ids = sent_ids or SentIdSet()
        self.contacts = contacts or ContactDirectory()
        self._queues: dict[str, deque[QueuedMessage]] = {}
        self._waiters: dict[str, list[Waiter]] = {}
        self._contact_queues: dict[str, deque[QueuedMessage]] = {}
        registry.on_removed(self.forget)

    def record_sent(self, msg_id: str) -> None:
        self.sent_ids.add(msg_id)

    # ── Inbound ──────────────────────────────────────────────────

    def dispatch_self(self, event: InboundEvent) -> Optional[str]:
        """Route a self-conversation message. Returns the receiving session id."""
        if self.sent_ids.consume(event.message_id):
            log.debug(f"Dropping echo of our own message {event.message_id}")
            return None
        session_id = self._registry.active_id
        if session_id is None:
            log.warning(f"No active session; dropping self message: {preview(event.body, 60)}")
            return None
        self._deliver(session_id, [QueuedMessage(body=event.body, timestamp=event.timestamp)])
        return session_id

    def dispatch_contact(self, event: InboundEvent) -> None:
        """Record a third-party message in the directory and its contact queue."""
        if self.sent_ids.consume(event.message_id):
            log.debug(f"Dropping echo of our own message {event.message_id}")
            return
        jid = event.remote_jid
        self.contacts.track(jid, event.push_name, event.timestamp)
        sender = f"{jid} ({event.push_name})" if event.push_name else jid
        if event.kind == "image":
            log.info(f"Incoming image from {sender} (not queued)")
            return
        self._contact_queues.setdefault(jid, deque()).append(
            QueuedMessage(body=event.body, timestamp=event.timestamp)
        )
        log.info(f"Incoming from {sender}: {preview(event.body, 60)}")

    def _deliver(self, session_id: str, batch: list[QueuedMessage]) -> None:
        waiters = self._waiters.get(session_id)
        while waiters:
            waiter = waiters.pop(0)
            if waiter.deliver(batch):
                return
        self._queues.setdefault(session_id, deque()).extend(batch)

    # ── Draining ─────────────────────────────────────────────────

    def pending(self, session_id: str) -> int:
        return len(self._queues.get(session_id, ()))

    def drain(self, session_id: str) -> list[QueuedMessage]:
        queue = self._queues.get(session_id)
        if not queue:
            return []
        batch = list(queue)
        queue.clear()
        return batch

    def drain_contact(self, jid: str) -> list[QueuedMessage]:
        queue = self._contact_queues.get(jid)
        if not queue:
            return []
        batch = list(queue)
        queue.clear()
        return batch

    def drain_all(self, session_id: str) -> list[QueuedMessage]:
        """Own queue plus every contact queue, oldest first.

        Contact messages are prefixed with ``[address] ``. The sort is
        stable, so equal timestamps keep their per-queue order.
        """
        combined = self.drain(session_id)
        for jid in list(self._contact_queues):
            combined.extend(
                QueuedMessage(body=f"[{jid}] {m.body}", timestamp=m.timestamp)
                for m in self.drain_contact(jid)
            )
        combined.sort(key=lambda m: m.timestamp)
        return combined

    def requeue_front(self, session_id: str, batch: list[QueuedMessage]) -> None:
        """Put an undelivered batch back ahead of anything queued since."""
        if batch:
            self._queues.setdefault(session_id, deque()).extendleft(reversed(batch))

    # ── Waiters ──────────────────────────────────────────────────

    def add_waiter(self, session_id: str) -> Waiter:
        waiter = Waiter(session_id)
        self._waiters.setdefault(session_id, []).append(waiter)
        return waiter

    def remove_waiter(self, waiter: Waiter) -> None:
        waiters = self._waiters.get(waiter.session_id)
        if waiters and waiter in waiters:
            waiters.remove(waiter)
        waiter.cancel()

    def waiter_count(self, session_id: str) -> int:
        return len(self._waiters.get(session_id, ()))

    def forget(self, session_id: str) -> None:
        """Drop the queue and waiters of a session that left the registry."""
        self._queues.pop(session_id, None)
        for waiter in self._waiters.pop(session_id, []):
            waiter.cancel()

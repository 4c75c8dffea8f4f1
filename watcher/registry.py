"""
SessionRegistry - durable, de-duplicated, named client sessions.

Maps the opaque session id a client sends with every request to a
RegisteredSession. Names are unique at all times: a colliding name gets the
lowest free numeric suffix ("Dev (2)", "Dev (3)", ...). The registry is
written to disk after every mutation and reloaded on construction; reloaded
entries are unverified until a liveness check or a request confirms them.
An unverified session is re-checked before it can become the active one.

The active session (target for unaddressed inbound messages) is in-memory
only. After a restart the first registration claims it.
"""
from __future__ import annotations

import fcntl
import json
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from watcher.common import DEFAULT_SESSION_NAME
from watcher.errors import UnknownTarget
from watcher.models import RegisteredSession, SessionOrigin, now_ms
from watcher.terminal import Terminal

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

DISCOVERED_PREFIX = "discovered:"


class SessionRegistry:
    """Persistent registry mapping session_id to RegisteredSession."""

    def __init__(self, registry_file: Path):
        self._file = registry_file
        self._sessions: dict[str, RegisteredSession] = {}
        self._active_id: Optional[str] = None
        self._removal_listeners: list[Callable[[str], None]] = []
        self._load()

    def _load(self):
        if not self._file.exists():
            return
        try:
            raw = json.loads(self._file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            log.error(f"Failed to load session registry: {e}")
            return
        for item in raw if isinstance(raw, list) else []:
            try:
                entry = RegisteredSession.model_validate({**item, "verified": False})
            except (ValidationError, TypeError) as e:
                log.warning(f"Skipping bad registry entry {item!r}: {e}")
                continue
            self._sessions[entry.session_id] = entry
        if self._sessions:
            log.info(f"Restored {len(self._sessions)} session(s) from registry")

    def _save(self):
        self._file.parent.mkdir(parents=True, exist_ok=True)
        entries = [s.model_dump(mode="json", exclude={"verified"}) for s in self._sessions.values()]
        tmp_path = self._file.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            f.write(json.dumps(entries, indent=2))
        tmp_path.rename(self._file)

    # ── Queries ──────────────────────────────────────────────────

    def get(self, session_id: str) -> Optional[RegisteredSession]:
        return self._sessions.get(session_id)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def all(self) -> dict[str, RegisteredSession]:
        return self._sessions.copy()

    def ordered(self) -> list[RegisteredSession]:
        """Sessions in registration order; the 1-based index used by switch/end."""
        return sorted(self._sessions.values(), key=lambda s: s.registered_at)

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active(self) -> Optional[RegisteredSession]:
        return self._sessions.get(self._active_id) if self._active_id else None

    def find_by_terminal(self, terminal_id: str) -> Optional[RegisteredSession]:
        for entry in self._sessions.values():
            if entry.terminal_id == terminal_id:
                return entry
        return None

    def resolve(self, selector: str) -> RegisteredSession:
        """Find a session by 1-based index, exact name, or session id."""
        selector = str(selector).strip()
        if selector.isdigit():
            ordered = self.ordered()
            index = int(selector)
            if 1 <= index <= len(ordered):
                return ordered[index - 1]
            raise UnknownTarget(f"Invalid session number {index}. Valid range: 1-{len(ordered)}.")
        for entry in self._sessions.values():
            if entry.name == selector:
                return entry
        if selector in self._sessions:
            return self._sessions[selector]
        raise UnknownTarget(f"No session matching '{selector}'")

    def deduplicate_name(self, name: str, exclude_id: Optional[str] = None) -> str:
        """Return `name`, or `name (N)` with the lowest free N >= 2."""
        taken = {s.name for sid, s in self._sessions.items() if sid != exclude_id}
        if name not in taken:
            return name
        n = 2
        while f"{name} ({n})" in taken:
            n += 1
        return f"{name} ({n})"

    # ── Mutation ─────────────────────────────────────────────────

    def on_removed(self, callback: Callable[[str], None]) -> None:
        """Call `callback(session_id)` whenever a session leaves the registry."""
        self._removal_listeners.append(callback)

    def register(self, session_id: str, proposed_name: Optional[str] = None,
                 terminal_hint: Optional[str] = None) -> str:
        """Register (or re-register) a session. Returns the effective name."""
        if not session_id:
            raise ValueError("session_id cannot be empty")

        # Last write wins: an earlier entry bound to the same terminal goes away
        if terminal_hint:
            for sid, entry in list(self._sessions.items()):
                if sid != session_id and entry.terminal_id == terminal_hint:
                    log.info(f"Replacing session {sid} ('{entry.name}') bound to terminal {terminal_hint}")
                    self._drop(sid)

        existing = self._sessions.get(session_id)
        name = self.deduplicate_name(proposed_name or DEFAULT_SESSION_NAME, exclude_id=session_id)
        self._sessions[session_id] = RegisteredSession(
            session_id=session_id,
            name=name,
            terminal_id=terminal_hint or (existing.terminal_id if existing else None),
            origin=SessionOrigin.REGISTERED,
            registered_at=existing.registered_at if existing else now_ms(),
            verified=True,
        )
        if self._active_id is None or self._active_id not in self._sessions or self._active_id == session_id:
            self._active_id = session_id
        self._save()
        lifecycle_log.info(f"SESSION | REGISTERED | {name} id={session_id} terminal={terminal_hint}")
        return name

    def upsert_default(self, session_id: str, terminal_hint: Optional[str] = None) -> Optional[RegisteredSession]:
        """Auto-register an unknown session under the default name.

        Returns the new entry, or None if the session was already known.
        """
        if not session_id or session_id in self._sessions:
            return None
        entry = RegisteredSession(
            session_id=session_id,
            name=self.deduplicate_name(DEFAULT_SESSION_NAME, exclude_id=session_id),
            terminal_id=terminal_hint,
            origin=SessionOrigin.AUTO,
        )
        self._sessions[session_id] = entry
        self._save()
        log.info(f"Auto-registered session {session_id} as '{entry.name}' (terminal: {terminal_hint or 'unknown'})")
        return entry

    def rename(self, session_id: str, new_name: str) -> str:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise UnknownTarget("Session not registered")
        entry.name = self.deduplicate_name(new_name, exclude_id=session_id)
        self._save()
        log.info(f"Renamed session {session_id} to '{entry.name}'")
        return entry.name

    def mark_verified(self, session_id: str) -> None:
        entry = self._sessions.get(session_id)
        if entry is not None:
            entry.verified = True

    async def confirm_live(self, session_id: str, terminal: Optional[Terminal]) -> bool:
        """Re-check an unverified session before trusting it as a routing target.

        A session restored from disk whose terminal is gone is removed and
        False is returned. Verified sessions, and sessions that cannot be
        checked (no terminal binding or no terminal automation), pass.
        """
        entry = self._sessions.get(session_id)
        if entry is None:
            return False
        if entry.verified or terminal is None or not entry.terminal_id:
            return True
        if await terminal.is_alive(entry.terminal_id):
            entry.verified = True
            return True
        log.info(f"Session {session_id} ('{entry.name}') failed its liveness check")
        self.remove(session_id)
        return False

    def switch(self, session_id: str) -> RegisteredSession:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise UnknownTarget(f"Unknown session {session_id}")
        self._active_id = session_id
        lifecycle_log.info(f"SESSION | SWITCHED | {entry.name}")
        return entry

    def remove(self, session_id: str) -> Optional[RegisteredSession]:
        entry = self._drop(session_id)
        if entry is not None:
            self._save()
            lifecycle_log.info(f"SESSION | ENDED | {entry.name}")
        return entry

    def prune_dead(self, live_ids: Iterable[str]) -> list[RegisteredSession]:
        """Drop entries bound to a terminal that is not in `live_ids`.

        Entries without a terminal binding are never pruned. Surviving bound
        entries are marked verified.
        """
        live = set(live_ids)
        pruned = []
        for sid, entry in list(self._sessions.items()):
            if not entry.terminal_id:
                continue
            if entry.terminal_id in live:
                entry.verified = True
                continue
            pruned.append(self._drop(sid))
            log.info(f"Pruned dead session {sid} ('{entry.name}')")
        if pruned:
            self._save()
        return pruned

    def discover(self, snapshot: Iterable[dict]) -> list[str]:
        """Add entries for labelled terminals not yet tracked.

        `snapshot` holds {"id": terminal id, "label": persisted name} items.
        Returns the effective names of the added entries.
        """
        known_terminals = {s.terminal_id for s in self._sessions.values() if s.terminal_id}
        added = []
        for item in snapshot:
            terminal_id, label = item.get("id"), item.get("label")
            if not terminal_id or not label or terminal_id in known_terminals:
                continue
            key = f"{DISCOVERED_PREFIX}{terminal_id}"
            name = self.deduplicate_name(label, exclude_id=key)
            self._sessions[key] = RegisteredSession(
                session_id=key,
                name=name,
                terminal_id=terminal_id,
                origin=SessionOrigin.DISCOVERED,
            )
            known_terminals.add(terminal_id)
            added.append(name)
            log.info(f"Discovered session in terminal {terminal_id} ('{name}')")
        if added:
            self._save()
        return added

    def _drop(self, session_id: str) -> Optional[RegisteredSession]:
        entry = self._sessions.pop(session_id, None)
        if entry is None:
            return None
        if self._active_id == session_id:
            self._active_id = None
        for callback in self._removal_listeners:
            callback(session_id)
        return entry

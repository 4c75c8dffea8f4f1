"""Contact directory and recipient resolution.

The directory records every third party we exchange messages with during the
daemon's lifetime (name, last-seen). Listings merge it with the contacts the
upstream network synced into the store.
"""
from __future__ import annotations

from typing import Optional

from watcher.common import looks_like_address, phone_from_jid, resolve_jid
from watcher.models import ContactEntry
from watcher.store import WatcherStore, message_timestamp


class ContactDirectory:
    def __init__(self):
        self._entries: dict[str, ContactEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, jid: str) -> Optional[ContactEntry]:
        return self._entries.get(jid)

    def track(self, jid: str, name: Optional[str], timestamp: int) -> None:
        """Record contact activity; newer timestamps win, names are never erased."""
        existing = self._entries.get(jid)
        if existing is None or timestamp > existing.last_seen:
            self._entries[jid] = ContactEntry(
                jid=jid,
                name=name or (existing.name if existing else None),
                phone_number=phone_from_jid(jid),
                last_seen=timestamp,
            )
        elif name and not existing.name:
            existing.name = name

    def resolve_name(self, name: str) -> Optional[str]:
        """First contact whose name contains `name` (case-insensitive)."""
        needle = name.lower()
        for entry in self._entries.values():
            if entry.name and needle in entry.name.lower():
                return entry.jid
        return None

    def resolve_recipient(self, recipient: str) -> str:
        """Map a phone number, address or contact name to an address."""
        trimmed = recipient.strip()
        if looks_like_address(trimmed):
            return resolve_jid(trimmed)
        return self.resolve_name(trimmed) or resolve_jid(trimmed)

    def search(self, store: WatcherStore, search: Optional[str] = None, limit: int = 50) -> list[ContactEntry]:
        """Directory merged with synced contacts, most recently seen first."""
        merged = {jid: entry.model_copy() for jid, entry in self._entries.items()}
        for jid, contact in store.contacts.items():
            store_name = contact.get("name") or contact.get("notify")
            if jid not in merged:
                merged[jid] = ContactEntry(jid=jid, name=store_name, phone_number=phone_from_jid(jid))
            elif not merged[jid].name:
                merged[jid].name = store_name

        entries = sorted(merged.values(), key=lambda c: c.last_seen, reverse=True)
        if search:
            needle = search.lower()
            entries = [
                c for c in entries
                if needle in c.phone_number or (c.name and needle in c.name.lower())
            ]
        return entries[:limit]


def list_chats(store: WatcherStore, search: Optional[str] = None, limit: int = 50) -> list[dict]:
    """Chats from the synced store, most recent activity first."""
    chats = []
    for jid, chat in store.chats.items():
        contact = store.contacts.get(jid) or {}
        ts = message_timestamp({"messageTimestamp": chat.get("conversationTimestamp")})
        chats.append({
            "jid": jid,
            "name": chat.get("name") or contact.get("name") or contact.get("notify") or phone_from_jid(jid),
            "lastMessageTimestamp": ts * 1000,
            "unreadCount": int(chat.get("unreadCount") or 0),
        })
    chats.sort(key=lambda c: c["lastMessageTimestamp"], reverse=True)
    if search:
        needle = search.lower()
        chats = [c for c in chats if needle in c["jid"] or needle in c["name"].lower()]
    return chats[:limit]

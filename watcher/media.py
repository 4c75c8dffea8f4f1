"""
Inbound media: turn image and audio events into deliverable text.

Images are downloaded through the bridge and kept under MEDIA_DIR; the
delivered body is the file path, followed by the caption when there is one.
Audio is downloaded and transcribed. Voice notes become
``[Voice note]: <transcript>``, other audio ``[Audio]: <transcript>``.
A failed download or transcription delivers nothing.
"""
from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Optional

from watcher.common import MEDIA_DIR
from watcher.connection import ConnectionManager
from watcher.errors import WatcherError
from watcher.models import InboundEvent, now_ms
from watcher.voice import Transcriber

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {"image/png": "png", "image/webp": "webp", "image/gif": "gif"}


def image_extension(mimetype: Optional[str]) -> str:
    base = (mimetype or "").split(";")[0].strip().lower()
    return IMAGE_EXTENSIONS.get(base, "jpg")


def _media_content(event: InboundEvent, field: str) -> dict[str, Any]:
    content = (event.media or {}).get("message") or {}
    return content.get(field) or {}


class MediaResolver:
    def __init__(self, connection: ConnectionManager, transcriber: Optional[Transcriber] = None,
                 media_dir: Path = MEDIA_DIR):
        self.connection = connection
        self.transcriber = transcriber or Transcriber()
        self.media_dir = media_dir

    async def resolve(self, event: InboundEvent) -> Optional[InboundEvent]:
        """The event with its body replaced by deliverable text, or None."""
        if event.kind == "text":
            return event
        if event.media is None:
            log.warning(f"Media event {event.message_id} carries no message to download")
            return None
        try:
            if event.kind == "image":
                body = await self._save_image(event)
            elif event.kind == "audio":
                body = await self._transcribe(event)
            else:
                log.debug(f"Ignoring media kind {event.kind}")
                return None
        except (WatcherError, OSError) as e:
            log.warning(f"Could not resolve {event.kind} {event.message_id}: {e}")
            return None
        return event.model_copy(update={"body": body})

    async def _save_image(self, event: InboundEvent) -> str:
        image = _media_content(event, "imageMessage") or _media_content(event, "stickerMessage")
        data = await self.connection.download_media(event.media)
        self.media_dir.mkdir(parents=True, exist_ok=True)
        path = self.media_dir / f"img-{now_ms()}-{uuid.uuid4().hex[:8]}.{image_extension(image.get('mimetype'))}"
        path.write_bytes(data)
        log.info(f"Saved image {event.message_id} to {path} ({len(data)} bytes)")
        return f"{path} {event.body}" if event.body else str(path)

    async def _transcribe(self, event: InboundEvent) -> str:
        audio = _media_content(event, "audioMessage")
        data = await self.connection.download_media(event.media)
        transcript = await self.transcriber.transcribe(data)
        label = "Voice note" if audio.get("ptt") else "Audio"
        log.info(f"Transcribed {label.lower()} {event.message_id}: {len(transcript)} chars")
        return f"[{label}]: {transcript}"

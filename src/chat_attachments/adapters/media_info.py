"""
Media info extraction for attachment payloads.

Images are measured and thumbnailed with Pillow. Audio duration is read from
WAV headers. Decoding runs in a worker thread to keep the event loop free.
"""

from __future__ import annotations

import asyncio
import io
import logging
import wave

from PIL import Image, UnidentifiedImageError

from chat_attachments.errors import MediaInfoError
from chat_attachments.models import Attachment, AttachmentKind, MediaInfo

logger = logging.getLogger(__name__)


def _image_info(data: bytes, thumbnail_size: int) -> MediaInfo:
    with Image.open(io.BytesIO(data)) as image:
        width, height = image.size
        thumb = image.copy()
        thumb.thumbnail((thumbnail_size, thumbnail_size))
        if thumb.mode not in ("RGB", "RGBA", "L", "LA"):
            thumb = thumb.convert("RGBA")
        buffer = io.BytesIO()
        thumb.save(buffer, format="PNG")
    return MediaInfo(width=width, height=height, thumbnail=buffer.getvalue())


def _wav_info(data: bytes) -> MediaInfo:
    with wave.open(io.BytesIO(data), "rb") as wav:
        frames = wav.getnframes()
        rate = wav.getframerate()
    return MediaInfo(duration_seconds=frames / rate if rate else 0.0)


class DefaultMediaInfoExtractor:
    """Extracts dimensions, thumbnails and durations from payload bytes."""

    def __init__(self, thumbnail_size: int = 256) -> None:
        self.thumbnail_size = thumbnail_size

    async def extract(self, attachment: Attachment, data: bytes) -> MediaInfo:
        try:
            if attachment.kind is AttachmentKind.IMAGE:
                info = await asyncio.to_thread(_image_info, data, self.thumbnail_size)
            elif attachment.kind is AttachmentKind.AUDIO:
                info = await asyncio.to_thread(_wav_info, data)
            else:
                raise MediaInfoError(
                    f"No media info extractor for {attachment.kind.value} attachment {attachment.id}",
                    attachment_id=attachment.id,
                )
        except (UnidentifiedImageError, wave.Error, EOFError, OSError) as e:
            raise MediaInfoError(
                f"Could not read media info for attachment {attachment.id}: {e}",
                attachment_id=attachment.id,
            ) from e
        logger.debug(f"Extracted media info for attachment {attachment.id}: {info}")
        return info

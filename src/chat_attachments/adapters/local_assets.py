"""Reads local files backing attachments."""

from __future__ import annotations

import logging
from pathlib import Path

import aiofiles

from chat_attachments.errors import AssetError
from chat_attachments.models import Attachment

logger = logging.getLogger(__name__)


class LocalAssetLoader:
    """Loads attachment bytes from ``attachment.local_path``.

    Relative paths are resolved against ``base_path`` when one is given.
    """

    def __init__(self, base_path: str | Path | None = None) -> None:
        self.base_path = Path(base_path) if base_path is not None else None

    def _resolve(self, attachment: Attachment) -> Path:
        if not attachment.local_path:
            raise AssetError(
                f"Attachment {attachment.id} has no local asset",
                attachment_id=attachment.id,
            )
        path = Path(attachment.local_path)
        if self.base_path is not None and not path.is_absolute():
            path = self.base_path / path
        return path

    async def read_local(self, attachment: Attachment) -> bytes:
        path = self._resolve(attachment)
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except OSError as e:
            raise AssetError(
                f"Failed to read asset {path} for attachment {attachment.id}: {e}",
                attachment_id=attachment.id,
            ) from e
        if attachment.size is None:
            attachment.size = len(data)
        logger.debug(f"Read {len(data)} bytes for attachment {attachment.id} from {path}")
        return data

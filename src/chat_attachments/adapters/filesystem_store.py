"""
Filesystem-backed attachment store.

Payloads are laid out per dialog: ``<root>/<dialog>/<attachment>.bin`` holds
the bytes and ``<attachment>.json`` the metadata. Both files are written to a
temporary name and moved into place, so readers see either the previous or
the complete new payload.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import json
import logging
import re
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from chat_attachments.errors import StoreError
from chat_attachments.models import MediaInfo, StoredPayload

logger = logging.getLogger(__name__)

UNASSIGNED_DIALOG = "_unassigned"
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


def _safe_name(value: str) -> str:
    """Map an identifier to a filesystem-safe, collision-free name."""
    cleaned = _SAFE_NAME.sub("_", value)
    if cleaned == value and not value.startswith("."):
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"{cleaned.lstrip('.')}-{digest}"


def _media_info_to_dict(info: MediaInfo | None) -> dict[str, Any] | None:
    if info is None:
        return None
    return {
        "width": info.width,
        "height": info.height,
        "duration_seconds": info.duration_seconds,
        "thumbnail": base64.b64encode(info.thumbnail).decode("ascii")
        if info.thumbnail is not None
        else None,
    }


def _media_info_from_dict(data: dict[str, Any] | None) -> MediaInfo | None:
    if data is None:
        return None
    thumbnail = data.get("thumbnail")
    return MediaInfo(
        width=data.get("width"),
        height=data.get("height"),
        duration_seconds=data.get("duration_seconds"),
        thumbnail=base64.b64decode(thumbnail) if thumbnail else None,
    )


class FileSystemAttachmentStore:
    """Stores attachment payloads under a base directory."""

    def __init__(self, storage_path: str | Path) -> None:
        """
        Initialize the store.

        Args:
            storage_path: Base directory for attachment payloads
        """
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        logger.info(
            f"FileSystemAttachmentStore initialized with storage path: {self.storage_path}"
        )

    def _dialog_dir(self, dialog_id: str | None) -> Path:
        return self.storage_path / _safe_name(dialog_id or UNASSIGNED_DIALOG)

    def _find_metadata(self, attachment_id: str) -> Path | None:
        name = f"{_safe_name(attachment_id)}.json"
        for dialog_dir in self.storage_path.iterdir():
            candidate = dialog_dir / name
            if candidate.is_file():
                return candidate
        return None

    async def _write_atomic(self, path: Path, content: bytes) -> None:
        temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(content)
        await aiofiles.os.replace(temp_path, path)

    async def get(self, attachment_id: str) -> StoredPayload | None:
        try:
            metadata_path = await asyncio.to_thread(self._find_metadata, attachment_id)
            if metadata_path is None:
                return None
            async with aiofiles.open(metadata_path, encoding="utf-8") as f:
                metadata = json.loads(await f.read())
            async with aiofiles.open(metadata_path.with_suffix(".bin"), "rb") as f:
                data = await f.read()
        except FileNotFoundError:
            # Deleted between lookup and read
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(
                f"Failed to read attachment {attachment_id}: {e}",
                attachment_id=attachment_id,
            ) from e

        return StoredPayload(
            attachment_id=metadata["attachment_id"],
            data=data,
            content_type=metadata.get("content_type"),
            media_info=_media_info_from_dict(metadata.get("media_info")),
            dialog_id=metadata.get("dialog_id"),
            message_ids=set(metadata.get("message_ids", [])),
            stored_at=datetime.fromisoformat(metadata["stored_at"]),
        )

    async def put(self, attachment_id: str, payload: StoredPayload) -> None:
        dialog_dir = self._dialog_dir(payload.dialog_id)
        name = _safe_name(attachment_id)
        data_path = dialog_dir / f"{name}.bin"
        metadata_path = dialog_dir / f"{name}.json"
        metadata = {
            "attachment_id": attachment_id,
            "content_type": payload.content_type,
            "dialog_id": payload.dialog_id,
            "message_ids": sorted(payload.message_ids),
            "stored_at": payload.stored_at.isoformat(),
            "size": payload.size,
            "sha256": hashlib.sha256(payload.data).hexdigest(),
            "media_info": _media_info_to_dict(payload.media_info),
        }
        try:
            previous = await asyncio.to_thread(self._find_metadata, attachment_id)
            await aiofiles.os.makedirs(dialog_dir, exist_ok=True)
            # Data first: the metadata file marks the payload as present
            await self._write_atomic(data_path, payload.data)
            await self._write_atomic(
                metadata_path,
                json.dumps(metadata).encode("utf-8"),
            )
            if previous is not None and previous.parent != dialog_dir:
                await self._remove_files(previous)
        except OSError as e:
            raise StoreError(
                f"Failed to store attachment {attachment_id}: {e}",
                attachment_id=attachment_id,
            ) from e
        logger.info(
            f"Stored attachment {attachment_id} ({payload.size} bytes) in {dialog_dir.name}"
        )

    async def _remove_files(self, metadata_path: Path) -> None:
        for path in (metadata_path, metadata_path.with_suffix(".bin")):
            with contextlib.suppress(FileNotFoundError):
                await aiofiles.os.remove(path)

    async def delete(self, attachment_id: str) -> None:
        try:
            metadata_path = await asyncio.to_thread(self._find_metadata, attachment_id)
            if metadata_path is not None:
                await self._remove_files(metadata_path)
                logger.info(f"Deleted attachment {attachment_id}")
        except OSError as e:
            raise StoreError(
                f"Failed to delete attachment {attachment_id}: {e}",
                attachment_id=attachment_id,
            ) from e

    async def delete_all_for_dialog(self, dialog_id: str) -> None:
        dialog_dir = self._dialog_dir(dialog_id)
        try:
            await asyncio.to_thread(shutil.rmtree, dialog_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StoreError(f"Failed to delete dialog {dialog_id}: {e}") from e
        logger.info(f"Deleted attachments for dialog {dialog_id}")

    async def delete_all_for_messages(
        self, message_ids: list[str], dialog_id: str
    ) -> None:
        wanted = set(message_ids)
        deleted = 0
        for dialog_dir in (self._dialog_dir(dialog_id), self._dialog_dir(None)):
            if not await aiofiles.os.path.isdir(dialog_dir):
                continue
            for metadata_path in await asyncio.to_thread(
                sorted, dialog_dir.glob("*.json")
            ):
                try:
                    async with aiofiles.open(metadata_path, encoding="utf-8") as f:
                        metadata = json.loads(await f.read())
                except FileNotFoundError:
                    continue
                except (OSError, json.JSONDecodeError) as e:
                    raise StoreError(f"Failed to read {metadata_path}: {e}") from e
                if wanted & set(metadata.get("message_ids", [])):
                    await self._remove_files(metadata_path)
                    deleted += 1
        logger.info(
            f"Deleted {deleted} attachments for {len(wanted)} messages in dialog {dialog_id}"
        )

    async def delete_all(self) -> None:
        try:
            for dialog_dir in await asyncio.to_thread(list, self.storage_path.iterdir()):
                if dialog_dir.is_dir():
                    await asyncio.to_thread(shutil.rmtree, dialog_dir)
        except OSError as e:
            raise StoreError(f"Failed to delete attachments: {e}") from e
        logger.info("Deleted all stored attachments")

"""
Protocols for the collaborators the attachment orchestrator depends on.

Storage, local assets, media info extraction, the byte transport and message
delivery are all supplied from outside. Reference implementations live in
``chat_attachments.adapters``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from chat_attachments.lifecycle import TaskStage
    from chat_attachments.models import (
        Attachment,
        AttachmentState,
        Dialog,
        MediaInfo,
        Message,
        RemoteRef,
        StoredPayload,
    )

ProgressCallback = Callable[[float], None]


class AttachmentStore(Protocol):
    """Key-value persistence for attachment payloads, keyed by attachment id."""

    async def get(self, attachment_id: str) -> StoredPayload | None:
        """Return the cached payload, or None if nothing is stored."""
        ...

    async def put(self, attachment_id: str, payload: StoredPayload) -> None:
        """Persist a payload. Readers see the old or the new value, never a partial one."""
        ...

    async def delete(self, attachment_id: str) -> None: ...

    async def delete_all_for_dialog(self, dialog_id: str) -> None: ...

    async def delete_all_for_messages(
        self, message_ids: list[str], dialog_id: str
    ) -> None: ...

    async def delete_all(self) -> None: ...


class AssetLoader(Protocol):
    """Reads the local device asset backing an attachment."""

    async def read_local(self, attachment: Attachment) -> bytes: ...


class MediaInfoExtractor(Protocol):
    """Derives duration, dimensions and thumbnails for an attachment."""

    async def extract(self, attachment: Attachment, data: bytes) -> MediaInfo:
        """Extract media info from the attachment payload.

        Raises:
            MediaInfoError: If the payload cannot be inspected.
        """
        ...


class AttachmentTransport(Protocol):
    """Performs the actual byte transfer for attachments.

    Both operations are cancellable through ``asyncio.Task.cancel()`` and
    report progress as a fraction in [0, 1].
    """

    async def download(
        self, attachment: Attachment, on_progress: ProgressCallback
    ) -> bytes: ...

    async def upload(
        self, attachment: Attachment, data: bytes, on_progress: ProgressCallback
    ) -> RemoteRef: ...


class MessageDelivery(Protocol):
    """Hands a message with uploaded attachments over to the chat."""

    async def send(self, message: Message, dialog: Dialog) -> Any: ...


@runtime_checkable
class AttachmentObserver(Protocol):
    """Receives state and progress notifications from the orchestrator."""

    def attachment_state_changed(
        self, attachment: Attachment, message_id: str, state: AttachmentState
    ) -> None: ...

    def attachment_progress_changed(
        self,
        message_id: str,
        attachment_id: str,
        progress: float,
        stage: TaskStage | None,
    ) -> None:
        """Progress of a transfer; ``stage`` is DOWNLOAD or UPLOAD."""
        ...


class BaseAttachmentObserver:
    """Observer base class with no-op defaults.

    Subclass and override only the notifications you care about.
    """

    def attachment_state_changed(
        self, attachment: Attachment, message_id: str, state: AttachmentState
    ) -> None:
        return None

    def attachment_progress_changed(
        self,
        message_id: str,
        attachment_id: str,
        progress: float,
        stage: TaskStage | None,
    ) -> None:
        return None

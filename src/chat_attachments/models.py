"""Domain models for chat attachments.

Attachments belong to messages, messages belong to dialogs. The byte payload
of an attachment is owned by the attachment store; the models here only carry
identity, references and derived metadata.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class AttachmentKind(Enum):
    """Kind of media carried by an attachment."""

    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"

    @property
    def is_playable(self) -> bool:
        """Whether the attachment can be streamed from its remote reference."""
        return self in {AttachmentKind.AUDIO, AttachmentKind.VIDEO}


class AttachmentState(Enum):
    """Processing state of an attachment within a message."""

    NOT_LOADED = "not_loaded"  # No active work, nothing cached
    DOWNLOADING = "downloading"  # Transport download in progress
    UPLOADING = "uploading"  # Transport upload in progress
    PREPARING = "preparing"  # Asset loading or media info extraction
    LOADED = "loaded"  # Payload persisted
    ERROR = "error"  # Last request failed

    @property
    def is_active(self) -> bool:
        return self in _ACTIVE_STATES


_ACTIVE_STATES = {
    AttachmentState.DOWNLOADING,
    AttachmentState.UPLOADING,
    AttachmentState.PREPARING,
}


@dataclass
class MediaInfo:
    """Auxiliary information derived from an attachment payload."""

    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None
    thumbnail: bytes | None = None

    @property
    def has_dimensions(self) -> bool:
        return self.width is not None and self.height is not None


@dataclass(frozen=True)
class RemoteRef:
    """Reference to an uploaded payload returned by the transport."""

    remote_id: str
    url: str | None = None


@dataclass
class Attachment:
    """A media object embedded in a chat message.

    ``id`` is the attachment identity. ``state``, ``payload_ref`` and ``error``
    are updated by the orchestrator as work on the attachment completes.
    """

    id: str
    kind: AttachmentKind = AttachmentKind.FILE
    name: str | None = None
    content_type: str | None = None
    remote_id: str | None = None
    remote_url: str | None = None
    local_path: str | None = None
    size: int | None = None
    media_info: MediaInfo | None = None
    state: AttachmentState = AttachmentState.NOT_LOADED
    payload_ref: str | None = None
    error: Exception | None = None

    @property
    def has_remote_ref(self) -> bool:
        return bool(self.remote_id or self.remote_url)

    def apply_remote_ref(self, ref: RemoteRef) -> None:
        self.remote_id = ref.remote_id
        if ref.url:
            self.remote_url = ref.url


@dataclass
class Message:
    """A chat message carrying zero or more attachments."""

    id: str
    dialog_id: str
    attachments: list[Attachment] = field(default_factory=list)
    text: str | None = None

    def attachment(self, attachment_id: str) -> Attachment | None:
        for attachment in self.attachments:
            if attachment.id == attachment_id:
                return attachment
        return None


@dataclass
class Dialog:
    """A conversation that messages are delivered to."""

    id: str
    name: str | None = None


@dataclass
class StoredPayload:
    """What the attachment store holds for one attachment id."""

    attachment_id: str
    data: bytes
    content_type: str | None = None
    media_info: MediaInfo | None = None
    dialog_id: str | None = None
    message_ids: set[str] = field(default_factory=set)
    stored_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def size(self) -> int:
        return len(self.data)

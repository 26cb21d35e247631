"""
Chat attachment lifecycle orchestration.

Deduplicated, cancellable download/prepare/upload work for chat message
attachments, with state and progress fanned out to observers.
"""

from chat_attachments.errors import (
    AssetError,
    AttachmentError,
    DeliveryError,
    InvalidTransitionError,
    MediaInfoError,
    NotFoundError,
    OperationCancelledError,
    StoreError,
    TransportError,
)
from chat_attachments.interfaces import AttachmentObserver, BaseAttachmentObserver
from chat_attachments.lifecycle import OperationKind, TaskStage
from chat_attachments.models import (
    Attachment,
    AttachmentKind,
    AttachmentState,
    Dialog,
    MediaInfo,
    Message,
    RemoteRef,
    StoredPayload,
)
from chat_attachments.operations import OperationHandle, OperationOutcome
from chat_attachments.service import AttachmentService

__all__ = [
    "AssetError",
    "Attachment",
    "AttachmentError",
    "AttachmentKind",
    "AttachmentObserver",
    "AttachmentService",
    "AttachmentState",
    "BaseAttachmentObserver",
    "DeliveryError",
    "Dialog",
    "InvalidTransitionError",
    "MediaInfo",
    "MediaInfoError",
    "Message",
    "NotFoundError",
    "OperationCancelledError",
    "OperationHandle",
    "OperationKind",
    "OperationOutcome",
    "RemoteRef",
    "StoreError",
    "StoredPayload",
    "TaskStage",
    "TransportError",
]

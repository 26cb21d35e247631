"""
Exceptions raised by the attachment lifecycle orchestrator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chat_attachments.lifecycle import TaskStage
    from chat_attachments.models import AttachmentState


class AttachmentError(Exception):
    """Base exception for all attachment processing errors."""

    def __init__(
        self,
        message: str,
        attachment_id: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.attachment_id = attachment_id
        self.retryable = retryable
        # Set by the operation registry to the stage that failed
        self.stage: TaskStage | None = None


class NotFoundError(AttachmentError):
    """Raised when there is neither a cached payload nor a way to obtain one."""


class TransportError(AttachmentError):
    """Raised when a download or upload fails."""

    def __init__(
        self,
        message: str,
        attachment_id: str | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, attachment_id=attachment_id, retryable=retryable)
        self.status_code = status_code


class MediaInfoError(AttachmentError):
    """Raised when media info extraction fails.

    The payload may still be usable without the info; whether the failure is
    fatal depends on the attachment kind.
    """


class StoreError(AttachmentError):
    """Raised when the attachment store fails to read or persist a payload."""


class AssetError(AttachmentError):
    """Raised when a local asset backing an attachment cannot be read."""


class DeliveryError(AttachmentError):
    """Raised when the message delivery collaborator rejects a message."""


class OperationCancelledError(AttachmentError):
    """Raised to every waiter of an operation that was explicitly cancelled.

    Distinct from a failure: cancellation is not recorded as an error state.
    """


class InvalidTransitionError(AttachmentError):
    """Raised when a state change is not allowed by the attachment lifecycle."""

    def __init__(
        self,
        source: AttachmentState,
        target: AttachmentState,
        attachment_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Invalid attachment state transition {source.value} -> {target.value}",
            attachment_id=attachment_id,
        )
        self.source = source
        self.target = target

"""
Attachment lifecycle state machine.

The state of an attachment is never stored on its own. It is derived from the
operation registry (is there work in flight, and at which stage?), from the
failure log (did the last request fail?) and from the attachment store (is a
payload cached?). This module holds the transition rules and the derivation.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum

from chat_attachments.errors import AttachmentError, InvalidTransitionError
from chat_attachments.models import AttachmentState

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRACKED_FAILURES = 1000


class OperationKind(Enum):
    """What a composite task was started for."""

    FETCH = "fetch"
    PREPARE = "prepare"
    UPLOAD = "upload"


class TaskStage(Enum):
    """A single step of a composite task."""

    STORE_LOOKUP = "store_lookup"
    ASSET_LOAD = "asset_load"
    DOWNLOAD = "download"
    MEDIA_INFO = "media_info"
    UPLOAD = "upload"
    PERSIST = "persist"
    SEND = "send"


# Stages that do not appear here keep the task's current state
STAGE_STATES: dict[TaskStage, AttachmentState] = {
    TaskStage.ASSET_LOAD: AttachmentState.PREPARING,
    TaskStage.DOWNLOAD: AttachmentState.DOWNLOADING,
    TaskStage.MEDIA_INFO: AttachmentState.PREPARING,
    TaskStage.UPLOAD: AttachmentState.UPLOADING,
}

TRANSITIONS: dict[AttachmentState, frozenset[AttachmentState]] = {
    AttachmentState.NOT_LOADED: frozenset({
        AttachmentState.DOWNLOADING,
        AttachmentState.UPLOADING,
        AttachmentState.PREPARING,
        AttachmentState.LOADED,  # store lookup found a cached payload
        AttachmentState.ERROR,  # failed before any transfer started
    }),
    AttachmentState.LOADED: frozenset({
        AttachmentState.UPLOADING,
        AttachmentState.PREPARING,
        AttachmentState.NOT_LOADED,  # cached data removed
    }),
    AttachmentState.DOWNLOADING: frozenset({
        AttachmentState.PREPARING,
        AttachmentState.LOADED,
        AttachmentState.ERROR,
        AttachmentState.NOT_LOADED,  # cancelled
    }),
    AttachmentState.UPLOADING: frozenset({
        AttachmentState.PREPARING,
        AttachmentState.LOADED,
        AttachmentState.ERROR,
        AttachmentState.NOT_LOADED,
    }),
    AttachmentState.PREPARING: frozenset({
        AttachmentState.UPLOADING,
        AttachmentState.LOADED,
        AttachmentState.ERROR,
        AttachmentState.NOT_LOADED,
    }),
    AttachmentState.ERROR: frozenset({
        AttachmentState.DOWNLOADING,
        AttachmentState.UPLOADING,
        AttachmentState.PREPARING,
        AttachmentState.LOADED,
        AttachmentState.NOT_LOADED,
    }),
}


def can_transition(source: AttachmentState, target: AttachmentState) -> bool:
    return target in TRANSITIONS[source]


def validate_transition(
    source: AttachmentState,
    target: AttachmentState,
    attachment_id: str | None = None,
) -> AttachmentState:
    """Return ``target`` if the lifecycle allows moving there from ``source``.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if not can_transition(source, target):
        raise InvalidTransitionError(source, target, attachment_id=attachment_id)
    return target


def state_for_stage(stage: TaskStage, current: AttachmentState) -> AttachmentState:
    """State an attachment is in while ``stage`` runs."""
    return STAGE_STATES.get(stage, current)


def derive_state(
    task_state: AttachmentState | None,
    failed: bool,
    cached: bool,
) -> AttachmentState:
    """Derive the externally visible state of an attachment.

    Args:
        task_state: State of the in-flight task, or None if there is none
        failed: Whether the last request for the attachment failed
        cached: Whether the store holds a payload for the attachment

    Returns:
        The attachment state
    """
    if task_state is not None:
        return task_state
    if failed:
        return AttachmentState.ERROR
    if cached:
        return AttachmentState.LOADED
    return AttachmentState.NOT_LOADED


@dataclass
class FailureRecord:
    """The last failure seen for an attachment."""

    error: AttachmentError
    message_ids: set[str] = field(default_factory=set)
    dialog_ids: set[str] = field(default_factory=set)


class FailureLog:
    """Bounded record of failed attachments.

    Oldest entries are evicted once ``max_entries`` is reached.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_TRACKED_FAILURES) -> None:
        self.max_entries = max_entries
        self._records: OrderedDict[str, FailureRecord] = OrderedDict()

    def __contains__(self, attachment_id: object) -> bool:
        return attachment_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, attachment_id: str) -> FailureRecord | None:
        return self._records.get(attachment_id)

    def record(
        self,
        attachment_id: str,
        error: AttachmentError,
        message_ids: set[str],
        dialog_ids: set[str],
    ) -> None:
        self._records[attachment_id] = FailureRecord(
            error=error,
            message_ids=set(message_ids),
            dialog_ids=set(dialog_ids),
        )
        self._records.move_to_end(attachment_id)
        while len(self._records) > self.max_entries:
            evicted, _ = self._records.popitem(last=False)
            logger.debug(f"Evicted failure record for attachment {evicted}")

    def forget(self, attachment_id: str) -> None:
        self._records.pop(attachment_id, None)

    def forget_for_messages(self, message_ids: list[str]) -> None:
        wanted = set(message_ids)
        for attachment_id, record in list(self._records.items()):
            if record.message_ids & wanted:
                del self._records[attachment_id]

    def forget_for_dialog(self, dialog_id: str) -> None:
        for attachment_id, record in list(self._records.items()):
            if dialog_id in record.dialog_ids:
                del self._records[attachment_id]

    def clear(self) -> None:
        self._records.clear()

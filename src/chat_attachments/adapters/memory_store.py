"""In-memory attachment store, for tests and short-lived processes."""

from __future__ import annotations

import dataclasses
import logging

from chat_attachments.models import StoredPayload

logger = logging.getLogger(__name__)


def _copy(payload: StoredPayload) -> StoredPayload:
    return dataclasses.replace(payload, message_ids=set(payload.message_ids))


class InMemoryAttachmentStore:
    """Keeps attachment payloads in a dictionary keyed by attachment id.

    Payloads are copied on the way in and out so callers never share a
    mutable payload with the store.
    """

    def __init__(self) -> None:
        self._payloads: dict[str, StoredPayload] = {}
        self.put_count = 0

    def __len__(self) -> int:
        return len(self._payloads)

    def __contains__(self, attachment_id: object) -> bool:
        return attachment_id in self._payloads

    async def get(self, attachment_id: str) -> StoredPayload | None:
        payload = self._payloads.get(attachment_id)
        return _copy(payload) if payload is not None else None

    async def put(self, attachment_id: str, payload: StoredPayload) -> None:
        self._payloads[attachment_id] = _copy(payload)
        self.put_count += 1
        logger.debug(f"Stored {payload.size} bytes for attachment {attachment_id}")

    async def delete(self, attachment_id: str) -> None:
        self._payloads.pop(attachment_id, None)

    async def delete_all_for_dialog(self, dialog_id: str) -> None:
        for attachment_id, payload in list(self._payloads.items()):
            if payload.dialog_id == dialog_id:
                del self._payloads[attachment_id]

    async def delete_all_for_messages(
        self, message_ids: list[str], dialog_id: str
    ) -> None:
        wanted = set(message_ids)
        for attachment_id, payload in list(self._payloads.items()):
            if payload.dialog_id not in (dialog_id, None):
                continue
            if payload.message_ids & wanted:
                del self._payloads[attachment_id]

    async def delete_all(self) -> None:
        self._payloads.clear()

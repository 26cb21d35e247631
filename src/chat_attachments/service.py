"""
Attachment service: the public entry point of the attachment lifecycle.

The service composes store, asset, media info, transport and delivery
collaborators into composite tasks, hands them to the operation registry
(which deduplicates and runs them) and derives attachment state from the
registry, the failure log and the store.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from PIL import Image, UnidentifiedImageError

from chat_attachments.config_models import MediaInfoConfig, OperationsConfig
from chat_attachments.errors import (
    AssetError,
    AttachmentError,
    DeliveryError,
    MediaInfoError,
    NotFoundError,
    StoreError,
    TransportError,
)
from chat_attachments.lifecycle import (
    FailureLog,
    OperationKind,
    TaskStage,
    derive_state,
)
from chat_attachments.models import (
    Attachment,
    AttachmentKind,
    AttachmentState,
    Dialog,
    Message,
    StoredPayload,
)
from chat_attachments.notifications import Dispatcher, NotificationHub
from chat_attachments.operations import (
    OperationHandle,
    OperationKey,
    OperationOutcome,
    OperationPlan,
    OperationRegistry,
    Stage,
    StageContext,
)

if TYPE_CHECKING:
    from chat_attachments.interfaces import (
        AssetLoader,
        AttachmentObserver,
        AttachmentStore,
        AttachmentTransport,
        MediaInfoExtractor,
        MessageDelivery,
        ProgressCallback,
    )

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[OperationOutcome], None]


def _has_data(context: StageContext) -> bool:
    return context.data is not None


def _uploaded_or_has_data(context: StageContext) -> bool:
    return context.data is not None or context.attachment.has_remote_ref


def _require_data(
    context: StageContext, error_class: type[AttachmentError], action: str
) -> bytes:
    if context.data is None:
        raise error_class(
            f"No payload to {action} for attachment {context.attachment.id}",
            attachment_id=context.attachment.id,
        )
    return context.data


def _nothing_to_persist(context: StageContext) -> bool:
    payload = context.payload
    return context.data is None or (
        payload is not None
        and context.from_cache
        and payload.media_info is context.media_info
        and context.message_ids <= payload.message_ids
    )


class AttachmentService:
    """Orchestrates downloading, preparing and uploading chat attachments."""

    def __init__(
        self,
        store: AttachmentStore,
        transport: AttachmentTransport,
        asset_loader: AssetLoader,
        media_info: MediaInfoExtractor,
        delivery: MessageDelivery | None = None,
        media_info_config: MediaInfoConfig | None = None,
        operations_config: OperationsConfig | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        """
        Initialize the attachment service.

        Args:
            store: Persistence for attachment payloads
            transport: Performs downloads and uploads
            asset_loader: Reads local assets backing attachments
            media_info: Extracts duration/dimensions from payloads
            delivery: Sends messages once their attachments are uploaded
            media_info_config: Which kinds get (mandatory) media info
            operations_config: Registry limits
            dispatcher: Optional context observers are notified on
        """
        self.store = store
        self.transport = transport
        self.asset_loader = asset_loader
        self.media_info = media_info
        self.delivery = delivery
        self.media_info_config = media_info_config or MediaInfoConfig()
        operations_config = operations_config or OperationsConfig()

        self.hub = NotificationHub(dispatcher=dispatcher)
        self.failures = FailureLog(operations_config.max_tracked_failures)
        self.registry = OperationRegistry(
            self.hub,
            failures=self.failures,
            stage_timeout_seconds=operations_config.stage_timeout_seconds,
        )

    # --- Observers ---

    def add_observer(self, observer: AttachmentObserver) -> None:
        self.hub.add_observer(observer)

    def remove_observer(self, observer: AttachmentObserver) -> None:
        self.hub.remove_observer(observer)

    @property
    def legacy_observer(self) -> AttachmentObserver | None:
        """Single observer slot kept for older callers.

        Deprecated: use ``add_observer`` instead.
        """
        return self.hub.legacy_observer

    @legacy_observer.setter
    def legacy_observer(self, observer: AttachmentObserver | None) -> None:
        self.hub.legacy_observer = observer

    # --- State queries ---

    async def state_for(
        self, message: Message, attachment_id: str | None = None
    ) -> AttachmentState:
        """Return the current state of an attachment in a message.

        Args:
            message: The message containing the attachment
            attachment_id: Attachment to query; the first attachment when None

        Returns:
            The derived attachment state
        """
        if attachment_id is None:
            if not message.attachments:
                return AttachmentState.NOT_LOADED
            attachment_id = message.attachments[0].id

        task_state = self.registry.state_of(attachment_id)
        if task_state is not None:
            return task_state
        cached = await self.store.get(attachment_id) is not None
        # Registry and failures are read after the await: a request may have
        # started or finished meanwhile
        return derive_state(
            self.registry.state_of(attachment_id),
            attachment_id in self.failures,
            cached,
        )

    async def is_ready_to_play(self, attachment: Attachment, message: Message) -> bool:
        """Whether playable bytes are available without starting new work."""
        if await self.store.get(attachment.id) is not None:
            return True
        return attachment.kind.is_playable and attachment.has_remote_ref

    # --- Operations ---

    def fetch(
        self,
        attachment_id: str,
        message: Message,
        on_progress: ProgressCallback | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> OperationHandle:
        """Make an attachment's payload available locally.

        Looks the payload up in the store and downloads it when absent,
        extracting media info on the way. Joins an in-flight operation for
        the same attachment if there is one.

        Raises:
            NotFoundError: If the message has no such attachment
        """
        attachment = message.attachment(attachment_id)
        if attachment is None:
            raise NotFoundError(
                f"Message {message.id} has no attachment {attachment_id}",
                attachment_id=attachment_id,
            )
        key = OperationKey(
            attachment_id, message.id, message.dialog_id, OperationKind.FETCH
        )

        def build() -> OperationPlan:
            return OperationPlan(
                kind=OperationKind.FETCH,
                attachment=attachment,
                stages=self._with_media_info(
                    attachment,
                    [
                        self._lookup_stage(),
                        Stage(
                            TaskStage.DOWNLOAD,
                            self._download,
                            TransportError,
                            skip_if=_has_data,
                        ),
                    ],
                    [self._persist_stage()],
                ),
            )

        return self.registry.start_or_join(key, build, on_progress, on_complete)

    def prepare(
        self,
        attachment: Attachment,
        message: Message,
        on_complete: CompletionCallback | None = None,
    ) -> OperationHandle:
        """Load a local attachment's asset and media info. Never uses the transport.

        The prepared payload is recorded against the message and its dialog,
        so removing either drops it again.
        """
        if message.attachment(attachment.id) is None:
            message.attachments.append(attachment)
        key = OperationKey(
            attachment.id, message.id, message.dialog_id, OperationKind.PREPARE
        )

        def build() -> OperationPlan:
            return OperationPlan(
                kind=OperationKind.PREPARE,
                attachment=attachment,
                stages=self._with_media_info(
                    attachment,
                    [
                        self._lookup_stage(),
                        Stage(
                            TaskStage.ASSET_LOAD,
                            self._load_asset,
                            AssetError,
                            skip_if=_has_data,
                        ),
                    ],
                    [self._persist_stage()],
                ),
            )

        return self.registry.start_or_join(key, build, on_complete=on_complete)

    def upload_and_send(
        self,
        message: Message,
        dialog: Dialog,
        attachment: Attachment,
        on_complete: CompletionCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> OperationHandle:
        """Upload a locally created attachment, then send its message.

        The message only reaches the delivery collaborator after the upload
        has succeeded and the payload is persisted. If a fetch or prepare of
        the same attachment is in flight, the upload starts once it finishes.

        Raises:
            RuntimeError: If the service has no message delivery collaborator
        """
        if self.delivery is None:
            raise RuntimeError("upload_and_send requires a message delivery collaborator")
        if message.attachment(attachment.id) is None:
            message.attachments.append(attachment)
        key = OperationKey(attachment.id, message.id, dialog.id, OperationKind.UPLOAD)
        delivery = self.delivery

        async def send(context: StageContext) -> None:
            context.ack = await delivery.send(message, dialog)
            logger.info(f"Sent message {message.id} to dialog {dialog.id}")

        def build() -> OperationPlan:
            return OperationPlan(
                kind=OperationKind.UPLOAD,
                attachment=attachment,
                stages=self._with_media_info(
                    attachment,
                    [
                        self._lookup_stage(),
                        Stage(
                            TaskStage.ASSET_LOAD,
                            self._load_asset,
                            AssetError,
                            skip_if=_uploaded_or_has_data,
                        ),
                    ],
                    [
                        Stage(
                            TaskStage.UPLOAD,
                            self._upload,
                            TransportError,
                            skip_if=lambda context: context.attachment.has_remote_ref,
                        ),
                        self._persist_stage(),
                        Stage(TaskStage.SEND, send, DeliveryError),
                    ],
                ),
            )

        return self.registry.start_or_join(key, build, on_progress, on_complete)

    async def image_for_attachment(
        self, attachment: Attachment, message: Message
    ) -> Image.Image:
        """Fetch an image attachment and decode it.

        Raises:
            ValueError: If the attachment is not an image
            MediaInfoError: If the payload is not a decodable image
        """
        if attachment.kind is not AttachmentKind.IMAGE:
            raise ValueError(f"Attachment {attachment.id} is not an image")
        if message.attachment(attachment.id) is None:
            message.attachments.append(attachment)
        outcome = await self.fetch(attachment.id, message)
        if outcome.payload is None:
            raise NotFoundError(
                f"No payload for attachment {attachment.id}", attachment_id=attachment.id
            )
        try:
            return await asyncio.to_thread(_decode_image, outcome.payload.data)
        except (UnidentifiedImageError, OSError) as e:
            raise MediaInfoError(
                f"Attachment {attachment.id} is not a valid image: {e}",
                attachment_id=attachment.id,
            ) from e

    # --- Cancellation and removal ---

    def cancel(self, message_id: str) -> None:
        """Cancel every operation associated with a message, for all callers."""
        self.registry.cancel_all_for_message(message_id)

    async def remove_all(self) -> None:
        """Remove all cached attachment data."""
        self.registry.cancel_all()
        await self.registry.drain()
        await self.store.delete_all()
        self.failures.clear()
        logger.info("Removed all cached attachments")

    async def remove_for_dialog(self, dialog_id: str) -> None:
        """Remove cached attachment data for every message in a dialog."""
        self.registry.cancel_all_for_dialog(dialog_id)
        await self.registry.drain()
        await self.store.delete_all_for_dialog(dialog_id)
        self.failures.forget_for_dialog(dialog_id)
        logger.info(f"Removed cached attachments for dialog {dialog_id}")

    async def remove_for_message(self, message_id: str, dialog_id: str) -> None:
        await self.remove_for_messages([message_id], dialog_id)

    async def remove_for_messages(
        self, message_ids: Iterable[str], dialog_id: str
    ) -> None:
        """Remove cached attachment data for the given messages of a dialog."""
        message_ids = list(message_ids)
        self.registry.cancel_all_for_messages(message_ids)
        await self.registry.drain()
        await self.store.delete_all_for_messages(message_ids, dialog_id)
        self.failures.forget_for_messages(message_ids)
        logger.info(
            f"Removed cached attachments for {len(message_ids)} messages "
            f"in dialog {dialog_id}"
        )

    async def aclose(self) -> None:
        """Cancel all in-flight operations and wait for them to unwind."""
        self.registry.cancel_all()
        await self.registry.drain()

    # --- Stages ---

    def _with_media_info(
        self, attachment: Attachment, before: list[Stage], after: list[Stage]
    ) -> list[Stage]:
        if attachment.kind not in self.media_info_config.extract_kinds:
            return before + after
        media_stage = Stage(
            TaskStage.MEDIA_INFO,
            self._extract_media_info,
            MediaInfoError,
            skip_if=lambda context: context.data is None
            or context.media_info is not None,
            required=attachment.kind in self.media_info_config.required_kinds,
        )
        return [*before, media_stage, *after]

    def _lookup_stage(self) -> Stage:
        return Stage(TaskStage.STORE_LOOKUP, self._lookup, StoreError)

    def _persist_stage(self) -> Stage:
        return Stage(
            TaskStage.PERSIST, self._persist, StoreError, skip_if=_nothing_to_persist
        )

    async def _lookup(self, context: StageContext) -> None:
        payload = await self.store.get(context.attachment.id)
        if payload is None:
            return
        context.payload = payload
        context.data = payload.data
        context.media_info = payload.media_info
        context.from_cache = True
        if payload.media_info is not None:
            context.attachment.media_info = payload.media_info

    async def _download(self, context: StageContext) -> None:
        attachment = context.attachment
        if not attachment.has_remote_ref:
            raise NotFoundError(
                f"Attachment {attachment.id} is not cached and has no remote reference",
                attachment_id=attachment.id,
            )
        context.data = await self.transport.download(
            attachment, context.report_progress
        )
        if attachment.size is None:
            attachment.size = len(context.data)

    async def _load_asset(self, context: StageContext) -> None:
        context.data = await self.asset_loader.read_local(context.attachment)

    async def _extract_media_info(self, context: StageContext) -> None:
        data = _require_data(context, MediaInfoError, "extract media info from")
        info = await self.media_info.extract(context.attachment, data)
        context.media_info = info
        context.attachment.media_info = info

    async def _upload(self, context: StageContext) -> None:
        data = _require_data(context, TransportError, "upload")
        ref = await self.transport.upload(
            context.attachment, data, context.report_progress
        )
        context.attachment.apply_remote_ref(ref)
        context.remote_ref = ref

    async def _persist(self, context: StageContext) -> None:
        data = _require_data(context, StoreError, "persist")
        attachment = context.attachment
        message_ids = set(context.message_ids)
        if context.payload is not None:
            message_ids |= context.payload.message_ids
        payload = StoredPayload(
            attachment_id=attachment.id,
            data=data,
            content_type=attachment.content_type,
            media_info=context.media_info,
            dialog_id=context.dialog_id
            or (context.payload.dialog_id if context.payload else None),
            message_ids=message_ids,
        )
        await self.store.put(attachment.id, payload)
        context.payload = payload


def _decode_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image

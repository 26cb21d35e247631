"""Builds an AttachmentService and its collaborators from configuration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from chat_attachments.adapters import (
    DefaultMediaInfoExtractor,
    FileSystemAttachmentStore,
    HttpTransport,
    InMemoryAttachmentStore,
    LocalAssetLoader,
)
from chat_attachments.service import AttachmentService

if TYPE_CHECKING:
    from chat_attachments.config_models import AppConfig, StoreConfig
    from chat_attachments.interfaces import AttachmentStore, MessageDelivery
    from chat_attachments.notifications import Dispatcher

logger = logging.getLogger(__name__)


def build_store(config: StoreConfig) -> AttachmentStore:
    if config.backend == "memory":
        return InMemoryAttachmentStore()
    return FileSystemAttachmentStore(config.storage_path)


def build_service(
    config: AppConfig,
    delivery: MessageDelivery | None = None,
    dispatcher: Dispatcher | None = None,
) -> AttachmentService:
    """
    Create a service wired to the reference adapters.

    Args:
        config: Application configuration
        delivery: Message delivery collaborator, needed for upload_and_send
        dispatcher: Optional context observers are notified on

    Returns:
        The configured AttachmentService. Its transport owns an HTTP client;
        call ``transport.aclose()`` when done.
    """
    store = build_store(config.store)
    transport = HttpTransport(
        base_url=config.transport.base_url,
        timeout_seconds=config.transport.timeout_seconds,
        chunk_size=config.transport.chunk_size,
        headers=config.transport.headers,
    )
    logger.info(
        f"Building attachment service: store={config.store.backend}, "
        f"transport={config.transport.base_url}"
    )
    return AttachmentService(
        store=store,
        transport=transport,
        asset_loader=LocalAssetLoader(),
        media_info=DefaultMediaInfoExtractor(config.media_info.thumbnail_size),
        delivery=delivery,
        media_info_config=config.media_info,
        operations_config=config.operations,
        dispatcher=dispatcher,
    )

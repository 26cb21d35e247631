import logging
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from chat_attachments.adapters import InMemoryAttachmentStore
from chat_attachments.service import AttachmentService
from tests.mocks.adapters import (
    FakeAssetLoader,
    FakeDelivery,
    FakeMediaInfo,
    FakeTransport,
    RecordingObserver,
)

# Configure logging for tests (optional, but can be helpful)
logging.basicConfig(level=logging.INFO)


@pytest.fixture
def store() -> InMemoryAttachmentStore:
    return InMemoryAttachmentStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def asset_loader() -> FakeAssetLoader:
    return FakeAssetLoader()


@pytest.fixture
def media_info() -> FakeMediaInfo:
    return FakeMediaInfo()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest_asyncio.fixture
async def service(
    store: InMemoryAttachmentStore,
    transport: FakeTransport,
    asset_loader: FakeAssetLoader,
    media_info: FakeMediaInfo,
    delivery: FakeDelivery,
    observer: RecordingObserver,
) -> AsyncGenerator[AttachmentService, None]:
    """Service wired to in-memory fakes, with a recording observer attached."""
    service = AttachmentService(
        store=store,
        transport=transport,
        asset_loader=asset_loader,
        media_info=media_info,
        delivery=delivery,
    )
    service.add_observer(observer)
    yield service
    await service.aclose()

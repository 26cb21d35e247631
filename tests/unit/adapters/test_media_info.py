"""Tests for DefaultMediaInfoExtractor."""

from __future__ import annotations

import io
import wave

import pytest
from PIL import Image

from chat_attachments.adapters import DefaultMediaInfoExtractor
from chat_attachments.errors import MediaInfoError
from chat_attachments.models import Attachment, AttachmentKind


def png_bytes(size: tuple[int, int], mode: str = "RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size).save(buffer, format="PNG")
    return buffer.getvalue()


def wav_bytes(seconds: float, rate: int = 8000) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(rate)
        wav.writeframes(b"\x00\x00" * int(seconds * rate))
    return buffer.getvalue()


@pytest.fixture
def extractor() -> DefaultMediaInfoExtractor:
    return DefaultMediaInfoExtractor(thumbnail_size=64)


class TestImages:
    """Tests for image dimensions and thumbnails."""

    @pytest.mark.asyncio
    async def test_dimensions_and_thumbnail(
        self, extractor: DefaultMediaInfoExtractor
    ) -> None:
        info = await extractor.extract(
            Attachment(id="a1", kind=AttachmentKind.IMAGE), png_bytes((400, 200))
        )

        assert (info.width, info.height) == (400, 200)
        assert info.has_dimensions
        assert info.thumbnail is not None
        with Image.open(io.BytesIO(info.thumbnail)) as thumbnail:
            assert thumbnail.size == (64, 32)

    @pytest.mark.asyncio
    async def test_palette_image(self, extractor: DefaultMediaInfoExtractor) -> None:
        info = await extractor.extract(
            Attachment(id="a1", kind=AttachmentKind.IMAGE), png_bytes((10, 10), "P")
        )

        assert info.width == 10

    @pytest.mark.asyncio
    async def test_invalid_image(self, extractor: DefaultMediaInfoExtractor) -> None:
        with pytest.raises(MediaInfoError) as exc_info:
            await extractor.extract(
                Attachment(id="a1", kind=AttachmentKind.IMAGE), b"not an image"
            )

        assert exc_info.value.attachment_id == "a1"


class TestAudio:
    """Tests for audio duration."""

    @pytest.mark.asyncio
    async def test_wav_duration(self, extractor: DefaultMediaInfoExtractor) -> None:
        info = await extractor.extract(
            Attachment(id="a1", kind=AttachmentKind.AUDIO), wav_bytes(1.5)
        )

        assert info.duration_seconds == pytest.approx(1.5)
        assert not info.has_dimensions

    @pytest.mark.asyncio
    async def test_unsupported_audio_format(
        self, extractor: DefaultMediaInfoExtractor
    ) -> None:
        with pytest.raises(MediaInfoError):
            await extractor.extract(
                Attachment(id="a1", kind=AttachmentKind.AUDIO), b"ID3 not a wav"
            )


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", [AttachmentKind.VIDEO, AttachmentKind.FILE])
async def test_unsupported_kinds(
    extractor: DefaultMediaInfoExtractor, kind: AttachmentKind
) -> None:
    with pytest.raises(MediaInfoError):
        await extractor.extract(Attachment(id="a1", kind=kind), b"data")

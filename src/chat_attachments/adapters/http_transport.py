"""
HTTP transport for attachment payloads.

Downloads stream the payload from the attachment's URL (or ``/blobs/<id>``
on the configured server) and uploads POST the bytes to ``/blobs``. Progress
is reported per chunk as a fraction of the expected size.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx

from chat_attachments.errors import NotFoundError, TransportError
from chat_attachments.interfaces import ProgressCallback
from chat_attachments.models import Attachment, RemoteRef

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class HttpTransport:
    """Transfers attachment bytes over HTTP using httpx."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the transport.

        Args:
            base_url: Server that serves ``/blobs``
            timeout_seconds: Per-request timeout
            chunk_size: Bytes per progress step
            headers: Extra headers sent with every request
            client: Preconfigured client; one is created when None
        """
        self.chunk_size = chunk_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers=headers,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _download_url(self, attachment: Attachment) -> str:
        if attachment.remote_url:
            return attachment.remote_url
        if attachment.remote_id:
            return f"/blobs/{attachment.remote_id}"
        raise NotFoundError(
            f"Attachment {attachment.id} has no remote reference",
            attachment_id=attachment.id,
        )

    async def download(
        self, attachment: Attachment, on_progress: ProgressCallback
    ) -> bytes:
        url = self._download_url(attachment)
        received = bytearray()
        try:
            async with self._client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise TransportError(
                        f"Download of attachment {attachment.id} failed with HTTP {response.status_code}",
                        attachment_id=attachment.id,
                        retryable=_is_retryable_status(response.status_code),
                        status_code=response.status_code,
                    )
                total = int(response.headers.get("Content-Length") or 0) or (
                    attachment.size or 0
                )
                async for chunk in response.aiter_bytes(self.chunk_size):
                    received.extend(chunk)
                    if total:
                        on_progress(min(len(received) / total, 1.0))
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Download of attachment {attachment.id} timed out: {e}",
                attachment_id=attachment.id,
                retryable=True,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Download of attachment {attachment.id} failed: {e}",
                attachment_id=attachment.id,
                retryable=True,
            ) from e

        on_progress(1.0)
        logger.info(f"Downloaded attachment {attachment.id} ({len(received)} bytes)")
        return bytes(received)

    async def upload(
        self, attachment: Attachment, data: bytes, on_progress: ProgressCallback
    ) -> RemoteRef:
        total = len(data)

        async def body() -> AsyncIterator[bytes]:
            for offset in range(0, total, self.chunk_size):
                chunk = data[offset : offset + self.chunk_size]
                yield chunk
                on_progress((offset + len(chunk)) / total)

        headers = {
            "Content-Type": attachment.content_type or "application/octet-stream",
            "Content-Length": str(total),
            "X-Attachment-Id": attachment.id,
        }
        if attachment.name:
            headers["X-Attachment-Name"] = attachment.name

        try:
            response = await self._client.post("/blobs", content=body(), headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Upload of attachment {attachment.id} timed out: {e}",
                attachment_id=attachment.id,
                retryable=True,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Upload of attachment {attachment.id} failed: {e}",
                attachment_id=attachment.id,
                retryable=True,
            ) from e

        if response.status_code >= 400:
            raise TransportError(
                f"Upload of attachment {attachment.id} failed with HTTP {response.status_code}",
                attachment_id=attachment.id,
                retryable=_is_retryable_status(response.status_code),
                status_code=response.status_code,
            )
        try:
            body_json = response.json()
            ref = RemoteRef(remote_id=str(body_json["id"]), url=body_json.get("url"))
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(
                f"Unexpected upload response for attachment {attachment.id}: {e}",
                attachment_id=attachment.id,
            ) from e

        on_progress(1.0)
        logger.info(
            f"Uploaded attachment {attachment.id} ({total} bytes) as {ref.remote_id}"
        )
        return ref

"""Pydantic models for chat attachment configuration.

Configuration priority (lowest to highest):
1. Code defaults (defined in model Field defaults)
2. config.yaml file
3. Environment variables
4. CLI arguments
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chat_attachments.models import AttachmentKind


class StoreConfig(BaseModel):
    """Where attachment payloads are cached."""

    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "filesystem"] = "filesystem"
    storage_path: str = "data/attachments"


class TransportConfig(BaseModel):
    """HTTP transport used for downloads and uploads."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = "http://localhost:8080"
    timeout_seconds: float = Field(default=30.0, gt=0)
    chunk_size: int = Field(default=64 * 1024, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)


class MediaInfoConfig(BaseModel):
    """Which attachment kinds get media info, and for which it is mandatory.

    A failed extraction for a kind in ``required_kinds`` fails the whole
    operation; for other kinds the payload is kept without media info.
    """

    model_config = ConfigDict(extra="forbid")

    extract_kinds: set[AttachmentKind] = Field(
        default_factory=lambda: {
            AttachmentKind.IMAGE,
            AttachmentKind.AUDIO,
            AttachmentKind.VIDEO,
        }
    )
    required_kinds: set[AttachmentKind] = Field(
        default_factory=lambda: {AttachmentKind.AUDIO, AttachmentKind.VIDEO}
    )
    thumbnail_size: int = Field(default=256, gt=0)

    @model_validator(mode="after")
    def _required_are_extracted(self) -> MediaInfoConfig:
        missing = self.required_kinds - self.extract_kinds
        if missing:
            names = ", ".join(sorted(kind.value for kind in missing))
            raise ValueError(f"required_kinds not in extract_kinds: {names}")
        return self


class OperationsConfig(BaseModel):
    """Limits applied by the operation registry."""

    model_config = ConfigDict(extra="forbid")

    stage_timeout_seconds: float | None = Field(default=None, gt=0)
    max_tracked_failures: int = Field(default=1000, gt=0)


class AppConfig(BaseModel):
    """Root configuration for the chat attachments service."""

    model_config = ConfigDict(extra="forbid")

    store: StoreConfig = Field(default_factory=StoreConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    media_info: MediaInfoConfig = Field(default_factory=MediaInfoConfig)
    operations: OperationsConfig = Field(default_factory=OperationsConfig)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

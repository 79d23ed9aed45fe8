import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Protocol, runtime_checkable

from app.modules.media.keys import MediaRole


class RecordNotFound(LookupError):
    """The record owning a media asset does not exist."""


@dataclass(frozen=True)
class MediaAssetRef:
    owner_id: uuid.UUID
    role: MediaRole
    submission_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ProtectionSettings:
    enable_watermark: bool = False
    watermark_position: str | None = "bottom-right"
    protect_from_ai: bool = False
    protect_from_download: bool = False
    owner_name: str | None = None


@dataclass(frozen=True)
class ProcessingMetadata:
    watermarked: bool
    compressed: bool
    format: str

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MediaAssetPatch:
    storage_key: str
    processing_metadata: ProcessingMetadata | None = None
    processed_at: datetime | None = None


@runtime_checkable
class RecordStorePort(Protocol):
    async def get_media_key(self, ref: MediaAssetRef) -> str | None: ...
    async def update_media_asset(self, ref: MediaAssetRef, patch: MediaAssetPatch) -> None: ...
    async def get_protection_settings(self, owner_id: uuid.UUID) -> ProtectionSettings | None: ...
    async def get_submission_owner(self, submission_id: uuid.UUID) -> uuid.UUID | None: ...

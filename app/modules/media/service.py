import asyncio
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.modules.events.outbox import MEDIA_ASSET_REPLACED, MEDIA_OBJECTS_PURGED, OutboxRepository
from app.modules.imaging.cropper import FocalPoint, crop_to_focal_point
from app.modules.imaging.encoder import EncodedImage, encode_canonical
from app.modules.imaging.image_io import sniff, UnreadableImage
from app.modules.ingestion.steps import protect
from app.modules.media.keys import (
    UploadKind, new_object_key, owner_prefixes, public_url_for, submission_prefixes,
)
from app.modules.submissions.repository import SubmissionRepository
from app.modules.users.models import User
from app.modules.users.repository import UserRepository
from app.platform.ports.object_storage import ObjectStoragePort, StorageError
from app.platform.ports.record_store import ProcessingMetadata, ProtectionSettings
from app.platform.provider_registry import registry

log = logging.getLogger("media.lifecycle")

def _now() -> datetime:
    return datetime.now(timezone.utc)

def _protection_for(user: User | None) -> ProtectionSettings | None:
    if user is None:
        return None
    return ProtectionSettings(
        enable_watermark=bool(user.enable_watermark),
        watermark_position=user.watermark_position,
        protect_from_ai=bool(user.protect_from_ai),
        protect_from_download=bool(user.protect_from_download),
        owner_name=user.display_name,
    )

class MediaService:
    """Synchronous upload path and owner-driven lifecycle (replace, purge, preview)."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        storage: ObjectStoragePort | None = None,
        users: UserRepository | None = None,
        submissions: SubmissionRepository | None = None,
        outbox: OutboxRepository | None = None,
    ):
        self.session = session
        self._storage = storage
        self.users = users or UserRepository(session)
        self.submissions = submissions or SubmissionRepository(session)
        self.outbox = outbox or OutboxRepository(session)

    @property
    def storage(self) -> ObjectStoragePort:
        if self._storage is None:
            self._storage = registry.object_storage()
        return self._storage

    async def owns_submission(self, user_id: uuid.UUID, submission_id: uuid.UUID) -> bool:
        sub = await self.submissions.get(submission_id)
        return sub is not None and sub.user_id == user_id

    # ---- Processing ----

    async def process_bytes(self, user_id: uuid.UUID, kind: UploadKind, data: bytes) -> tuple[EncodedImage, ProcessingMetadata]:
        """Watermark, attribute and canonicalize in-line; raises ``UnreadableImage``."""
        if len(data) > settings.MAX_INGEST_BYTES:
            raise UnreadableImage(f"{len(data)} bytes exceeds {settings.MAX_INGEST_BYTES}")
        fmt, animated = await asyncio.to_thread(sniff, data)
        if fmt is None:
            raise UnreadableImage("not a supported image")

        watermarked = False
        if kind == UploadKind.SUBMISSION and fmt != "GIF" and not animated:
            prefs = _protection_for(await self.users.get(user_id))
            if prefs is not None:
                decision = await protect(
                    data, prefs,
                    opacity=settings.WATERMARK_OPACITY,
                    size_ratio=settings.WATERMARK_SIZE_RATIO,
                    margin_ratio=settings.WATERMARK_MARGIN_RATIO,
                    default_attribution=settings.DEFAULT_ATTRIBUTION,
                    mark_path=settings.WATERMARK_MARK_PATH,
                    owner_label=str(user_id),
                )
                data, watermarked = decision.data, decision.watermarked

        encoded = await asyncio.to_thread(
            encode_canonical, data,
            max_long_edge=settings.CANONICAL_MAX_LONG_EDGE, quality=settings.CANONICAL_QUALITY,
        )
        return encoded, ProcessingMetadata(watermarked=watermarked, compressed=True, format=encoded.format)

    async def upload(self, user_id: uuid.UUID, kind: UploadKind, data: bytes, *, scope_id: uuid.UUID | None = None) -> tuple[str, ProcessingMetadata]:
        """Store a processed upload and return its public URL; no record is touched."""
        encoded, metadata = await self.process_bytes(user_id, kind, data)
        key = new_object_key(kind, scope_id or user_id, encoded.extension)
        await asyncio.to_thread(self.storage.put_bytes, key, encoded.data, encoded.content_type)
        log.info("Stored %s upload %s (%d bytes, watermarked=%s)", kind.value, key, len(encoded.data), metadata.watermarked)
        return public_url_for(key), metadata

    # ---- Replacement: write new -> commit record -> delete old ----

    async def replace_submission_image(self, user_id: uuid.UUID, submission_id: uuid.UUID, data: bytes) -> tuple[str, ProcessingMetadata] | None:
        sub = await self.submissions.get(submission_id)
        if not sub or sub.user_id != user_id:
            return None
        encoded, metadata = await self.process_bytes(user_id, UploadKind.SUBMISSION, data)
        new_key = new_object_key(UploadKind.SUBMISSION, user_id, encoded.extension)
        old_key = sub.image_key
        await asyncio.to_thread(self.storage.put_bytes, new_key, encoded.data, encoded.content_type)
        try:
            await self.submissions.set_image(submission_id, key=new_key, metadata=metadata.as_dict(), processed_at=_now())
            await self._replaced("submission", submission_id, old_key, new_key)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            log.error("INCONSISTENCY: submission %s image stored at %s but record not updated", submission_id, new_key)
            raise
        await self._retire(old_key)
        return public_url_for(new_key), metadata

    async def replace_profile_image(self, user_id: uuid.UUID, data: bytes) -> tuple[str, ProcessingMetadata] | None:
        user = await self.users.get(user_id)
        if not user:
            return None
        encoded, metadata = await self.process_bytes(user_id, UploadKind.PROFILE, data)
        new_key = new_object_key(UploadKind.PROFILE, user_id, encoded.extension)
        old_key = user.profile_image_key
        await asyncio.to_thread(self.storage.put_bytes, new_key, encoded.data, encoded.content_type)
        try:
            await self.users.set_profile_image(user_id, key=new_key, metadata=metadata.as_dict(), processed_at=_now())
            await self._replaced("user", user_id, old_key, new_key)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            log.error("INCONSISTENCY: profile image of %s stored at %s but record not updated", user_id, new_key)
            raise
        await self._retire(old_key)
        return public_url_for(new_key), metadata

    async def _replaced(self, subject_type: str, subject_id: uuid.UUID, old_key: str | None, new_key: str):
        await self.outbox.enqueue(
            event_type=MEDIA_ASSET_REPLACED,
            subject_type=subject_type,
            subject_id=subject_id,
            payload={"old_key": old_key, "new_key": new_key},
        )

    async def _retire(self, key: str | None):
        if not key:
            return
        try:
            await asyncio.to_thread(self.storage.delete, key)
        except StorageError as e:
            log.warning("Orphaned %s after replacement: %s", key, e)

    # ---- Deletion with prefix purge ----

    async def delete_submission(self, user_id: uuid.UUID, submission_id: uuid.UUID) -> list[str] | None:
        sub = await self.submissions.get(submission_id)
        if not sub or sub.user_id != user_id:
            return None
        prefixes = submission_prefixes(submission_id)
        extra = [sub.image_key] if sub.image_key else []
        await self.submissions.delete(submission_id)
        await self.outbox.enqueue(
            event_type=MEDIA_OBJECTS_PURGED,
            subject_type="submission",
            subject_id=submission_id,
            payload={"prefixes": prefixes, "keys": extra},
        )
        await self.session.commit()
        return await self.purge(prefixes, extra_keys=extra)

    async def delete_account(self, user_id: uuid.UUID) -> list[str] | None:
        user = await self.users.get(user_id)
        if not user:
            return None
        prefixes = owner_prefixes(user_id)
        for submission_id in await self.submissions.list_ids_for_user(user_id):
            prefixes.extend(submission_prefixes(submission_id))
            await self.submissions.delete(submission_id)
        await self.users.delete(user_id)
        await self.outbox.enqueue(
            event_type=MEDIA_OBJECTS_PURGED,
            subject_type="user",
            subject_id=user_id,
            payload={"prefixes": prefixes},
        )
        await self.session.commit()
        return await self.purge(prefixes)

    async def purge(self, prefixes: list[str], *, extra_keys: list[str] | None = None) -> list[str]:
        """Delete every object under ``prefixes``; best effort, returns what was deleted."""
        keys: list[str] = list(extra_keys or [])
        for prefix in prefixes:
            try:
                keys.extend(await asyncio.to_thread(self.storage.list_keys, prefix))
            except StorageError as e:
                log.warning("Could not list %s for purge: %s", prefix, e)
        deleted = []
        for key in dict.fromkeys(keys):
            try:
                await asyncio.to_thread(self.storage.delete, key)
                deleted.append(key)
            except StorageError as e:
                log.warning("Could not purge %s: %s", key, e)
        log.info("Purged %d/%d objects under %s", len(deleted), len(keys), prefixes)
        return deleted

    # ---- Preview ----

    async def preview(self, submission_id: uuid.UUID, width: int, height: int) -> bytes | None:
        sub = await self.submissions.get(submission_id)
        if not sub or not sub.image_key:
            return None
        data = await asyncio.to_thread(self.storage.get_bytes, sub.image_key)
        focal = None
        if sub.focal_point_x is not None and sub.focal_point_y is not None:
            focal = FocalPoint(sub.focal_point_x, sub.focal_point_y)
        return await asyncio.to_thread(crop_to_focal_point, data, width, height, focal)

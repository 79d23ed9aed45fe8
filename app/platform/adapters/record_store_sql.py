import uuid
import logging
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.core.db import SessionLocal
from app.modules.events.outbox import MEDIA_ASSET_PROCESSED, OutboxRepository
from app.modules.media.keys import MediaRole
from app.modules.submissions.repository import SubmissionRepository
from app.modules.users.repository import UserRepository
from app.platform.ports.record_store import (
    RecordStorePort, RecordNotFound, MediaAssetRef, MediaAssetPatch, ProtectionSettings,
)

log = logging.getLogger("records.sql")

class SqlRecordStore(RecordStorePort):
    """Record store over the relational DB; every call runs in its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = session_factory or SessionLocal

    async def _owned_submission(self, session: AsyncSession, ref: MediaAssetRef):
        if ref.submission_id is None:
            raise RecordNotFound("submission image requires a submission id")
        sub = await SubmissionRepository(session).get(ref.submission_id)
        if not sub or sub.user_id != ref.owner_id:
            raise RecordNotFound(f"submission {ref.submission_id} not found for user {ref.owner_id}")
        return sub

    async def get_media_key(self, ref: MediaAssetRef) -> str | None:
        async with self.session_factory() as session:
            if ref.role == MediaRole.SUBMISSION_IMAGE:
                return (await self._owned_submission(session, ref)).image_key
            user = await UserRepository(session).get(ref.owner_id)
            if not user:
                raise RecordNotFound(f"user {ref.owner_id} not found")
            return user.profile_image_key

    async def update_media_asset(self, ref: MediaAssetRef, patch: MediaAssetPatch) -> None:
        metadata = patch.processing_metadata.as_dict() if patch.processing_metadata else None
        async with self.session_factory() as session:
            if ref.role == MediaRole.SUBMISSION_IMAGE:
                await self._owned_submission(session, ref)
                await SubmissionRepository(session).set_image(
                    ref.submission_id, key=patch.storage_key, metadata=metadata, processed_at=patch.processed_at,
                )
            else:
                user = await UserRepository(session).set_profile_image(
                    ref.owner_id, key=patch.storage_key, metadata=metadata, processed_at=patch.processed_at,
                )
                if not user:
                    raise RecordNotFound(f"user {ref.owner_id} not found")
            await OutboxRepository(session).enqueue(
                event_type=MEDIA_ASSET_PROCESSED,
                subject_type="submission" if ref.role == MediaRole.SUBMISSION_IMAGE else "user",
                subject_id=ref.submission_id or ref.owner_id,
                payload={
                    "role": ref.role.value,
                    "owner_id": str(ref.owner_id),
                    "storage_key": patch.storage_key,
                    "processing_metadata": metadata,
                },
            )
            await session.commit()
        log.debug("Committed %s key=%s for owner=%s", ref.role.value, patch.storage_key, ref.owner_id)

    async def get_protection_settings(self, owner_id: uuid.UUID) -> ProtectionSettings | None:
        async with self.session_factory() as session:
            user = await UserRepository(session).get(owner_id)
            if not user:
                return None
            return ProtectionSettings(
                enable_watermark=bool(user.enable_watermark),
                watermark_position=user.watermark_position,
                protect_from_ai=bool(user.protect_from_ai),
                protect_from_download=bool(user.protect_from_download),
                owner_name=user.display_name,
            )

    async def get_submission_owner(self, submission_id: uuid.UUID) -> uuid.UUID | None:
        async with self.session_factory() as session:
            sub = await SubmissionRepository(session).get(submission_id)
            return sub.user_id if sub else None

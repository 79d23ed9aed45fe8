import uuid
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from app.modules.submissions.models import Submission

class SubmissionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, submission_id: uuid.UUID) -> Submission | None:
        res = await self.session.execute(select(Submission).where(Submission.id == submission_id))
        return res.scalar_one_or_none()

    async def list_ids_for_user(self, user_id: uuid.UUID) -> Sequence[uuid.UUID]:
        res = await self.session.execute(select(Submission.id).where(Submission.user_id == user_id))
        return res.scalars().all()

    async def set_image(self, submission_id: uuid.UUID, *, key: str, metadata: dict | None, processed_at) -> Submission | None:
        s = await self.get(submission_id)
        if not s:
            return None
        s.image_key = key
        s.image_processing_metadata = metadata
        s.image_processed_at = processed_at
        s.version = (s.version or 0) + 1
        await self.session.flush()
        return s

    async def delete(self, submission_id: uuid.UUID) -> bool:
        res = await self.session.execute(delete(Submission).where(Submission.id == submission_id))
        return (res.rowcount or 0) > 0

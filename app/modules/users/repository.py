import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from app.modules.users.models import User

class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: uuid.UUID) -> User | None:
        res = await self.session.execute(select(User).where(User.id == user_id))
        return res.scalar_one_or_none()

    async def set_profile_image(self, user_id: uuid.UUID, *, key: str, metadata: dict | None, processed_at) -> User | None:
        u = await self.get(user_id)
        if not u:
            return None
        u.profile_image_key = key
        u.profile_image_processing_metadata = metadata
        u.profile_image_processed_at = processed_at
        u.version = (u.version or 0) + 1
        await self.session.flush()
        return u

    async def delete(self, user_id: uuid.UUID) -> bool:
        res = await self.session.execute(delete(User).where(User.id == user_id))
        return (res.rowcount or 0) > 0

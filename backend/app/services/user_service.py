from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.schemas.user import UserUpsert


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def list_all(self) -> list[User]:
        result = await self.db.execute(select(User).order_by(User.created_at.desc()))
        return list(result.scalars().all())

    async def upsert(self, data: UserUpsert) -> tuple[User, bool]:
        """
        Create the user or update the fields that were supplied.
        Returns (user, is_new_user).

        Fields left as None on `data` keep their stored values, so a profile
        edit never wipes the avatar or admin flag written at sign-in.
        """
        user = await self.get_by_id(data.id)
        values = data.model_dump(exclude_none=True, exclude={"id"})

        if user is None:
            user = User(id=data.id, **values)
            self.db.add(user)
            await self.db.flush()
            await self.db.refresh(user)
            return user, True

        for field, value in values.items():
            setattr(user, field, value)
        await self.db.flush()
        await self.db.refresh(user)
        return user, False

    async def set_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        user = await self.get_by_id(user_id)
        if user is None:
            return None
        user.is_admin = is_admin
        await self.db.flush()
        await self.db.refresh(user)
        return user

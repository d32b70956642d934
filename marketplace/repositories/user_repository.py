"""User contact repository (delivery addresses and notification preferences)"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.interfaces import IUserRepository
from marketplace.db.models import UserModel
from marketplace.domain.entities import UserContact


class UserRepository(IUserRepository):

    def __init__(self, db_session: AsyncSession):
        self._db = db_session

    async def get_by_id(self, user_id: str) -> Optional[UserContact]:
        result = await self._db.execute(select(UserModel).where(UserModel.id == user_id))
        db_user = result.scalar_one_or_none()
        if db_user is None:
            return None
        return UserContact(
            id=db_user.id,
            display_name=db_user.display_name,
            email=db_user.email,
            phone=db_user.phone,
            push_endpoint=db_user.push_endpoint,
            email_order_updates=db_user.email_order_updates,
            sms_order_updates=db_user.sms_order_updates,
            push_enabled=db_user.push_enabled,
        )

    async def save(self, user: UserContact) -> UserContact:
        self._db.add(UserModel(
            id=user.id,
            display_name=user.display_name,
            email=user.email,
            phone=user.phone,
            push_endpoint=user.push_endpoint,
            email_order_updates=user.email_order_updates,
            sms_order_updates=user.sms_order_updates,
            push_enabled=user.push_enabled,
        ))
        await self._db.flush()
        return user

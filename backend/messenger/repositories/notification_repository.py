# backend/messenger/repositories/notification_repository.py
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.db.database import get_utc_now
from messenger.db.models.notification import Notification


class NotificationRepository:
    @staticmethod
    async def list_for_user(
        db: AsyncSession, user_id: int, page: int, limit: int, unread_only: bool = False
    ) -> Tuple[List[Notification], int]:
        conditions = [Notification.user_id == user_id]
        if unread_only:
            conditions.append(Notification.is_read == False)

        total = (await db.execute(select(func.count(Notification.id)).where(*conditions))).scalar_one()
        stmt = (
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def get_for_user(db: AsyncSession, notification_id: int, user_id: int) -> Optional[Notification]:
        stmt = select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def mark_read(db: AsyncSession, notification: Notification) -> Notification:
        # 이미 읽은 알림의 read_at 은 유지
        if not notification.is_read:
            notification.is_read = True
            notification.is_seen = True
            notification.read_at = get_utc_now()
            await db.flush()
        return notification

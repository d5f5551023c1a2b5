# backend/messenger/repositories/presence_repository.py
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from messenger.db.database import get_utc_now
from messenger.db.models.user import User
from messenger.db.models.typing_status import TypingStatus


class PresenceRepository:
    """유저 접속 상태(User.is_online/last_seen)와 입력 중 상태(TypingStatus) 영속성."""

    @staticmethod
    async def set_user_presence(db: AsyncSession, user_id: int, is_online: bool, connection_handle: Optional[str]):
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(is_online=is_online, last_seen=get_utc_now(), connection_handle=connection_handle)
        )

    @staticmethod
    async def upsert_typing(db: AsyncSession, conversation_id: int, user_id: int, is_typing: bool) -> TypingStatus:
        """
        (conversation_id, user_id) 당 한 행. 마지막 상태가 이깁니다.
        동시에 처음 INSERT 하는 경우 유니크 제약 위반 시 UPDATE 로 재시도합니다.
        """
        now = get_utc_now()
        values = {
            "is_typing": is_typing,
            "started_typing_at": now if is_typing else None,
            "last_typing_at": now,
        }
        stmt = select(TypingStatus).where(
            TypingStatus.conversation_id == conversation_id,
            TypingStatus.user_id == user_id,
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = TypingStatus(conversation_id=conversation_id, user_id=user_id, **values)
            db.add(row)
            try:
                await db.flush()
                return row
            except IntegrityError:
                await db.rollback()
                row = (await db.execute(stmt)).scalar_one()

        if is_typing and row.is_typing and row.started_typing_at is not None:
            # 계속 입력 중이면 시작 시각은 유지
            values["started_typing_at"] = row.started_typing_at
        for key, value in values.items():
            setattr(row, key, value)
        await db.flush()
        return row

    @staticmethod
    async def clear_user_typing(db: AsyncSession, user_id: int) -> List[int]:
        """유저의 모든 입력 중 상태를 해제하고, 해제된 대화방 id 목록을 반환합니다."""
        result = await db.execute(
            select(TypingStatus.conversation_id).where(
                TypingStatus.user_id == user_id,
                TypingStatus.is_typing == True,
            )
        )
        conversation_ids = list(result.scalars().all())
        await db.execute(
            update(TypingStatus)
            .where(TypingStatus.user_id == user_id)
            .values(is_typing=False, started_typing_at=None)
            .execution_options(synchronize_session=False)
        )
        return conversation_ids

    @staticmethod
    async def list_typing_users(
        db: AsyncSession, conversation_id: int, exclude_user_id: int, stale_seconds: int
    ) -> List[TypingStatus]:
        threshold = get_utc_now() - timedelta(seconds=stale_seconds)
        stmt = (
            select(TypingStatus)
            .options(selectinload(TypingStatus.user))
            .where(
                TypingStatus.conversation_id == conversation_id,
                TypingStatus.is_typing == True,
                TypingStatus.user_id != exclude_user_id,
                TypingStatus.last_typing_at >= threshold,
            )
            .order_by(TypingStatus.last_typing_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

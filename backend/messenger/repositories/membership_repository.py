# backend/messenger/repositories/membership_repository.py
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from messenger.db.database import get_utc_now
from messenger.db.models.user import User
from messenger.db.models.conversation import (
    Conversation,
    ConversationMember,
    ConversationType,
    MemberRole,
    build_private_key,
)


def _with_members():
    return (
        selectinload(Conversation.members).selectinload(ConversationMember.user),
        selectinload(Conversation.creator),
    )


class MembershipRepository:
    """
    대화방/멤버십 영속성 관리.
    커밋은 호출하는 서비스가 책임지며, 여기서는 flush 까지만 수행합니다.
    """

    @staticmethod
    async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
        return await db.get(User, user_id)

    @staticmethod
    async def find_existing_user_ids(db: AsyncSession, user_ids: Iterable[int]) -> set[int]:
        ids = set(user_ids)
        if not ids:
            return set()
        result = await db.execute(select(User.id).where(User.id.in_(ids)))
        return set(result.scalars().all())

    @staticmethod
    async def create_conversation(
        db: AsyncSession,
        conversation_type: ConversationType,
        created_by: int,
        member_ids: Sequence[int],
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Conversation:
        """
        대화방과 멤버 행을 추가합니다 (생성자는 admin).
        private 의 경우 private_key 유니크 제약이 중복 생성을 막습니다.
        """
        is_group = conversation_type == ConversationType.GROUP
        now = get_utc_now()
        conversation = Conversation(
            type=conversation_type.value,
            name=name if is_group else None,
            description=description if is_group else None,
            created_by=created_by,
            is_active=True,
            last_message_at=now,
            private_key=None if is_group else build_private_key(created_by, member_ids[0]),
        )
        db.add(conversation)
        await db.flush()

        db.add(ConversationMember(
            conversation_id=conversation.id,
            user_id=created_by,
            role=MemberRole.ADMIN.value,
            joined_at=now,
        ))
        for user_id in member_ids:
            db.add(ConversationMember(
                conversation_id=conversation.id,
                user_id=user_id,
                role=MemberRole.MEMBER.value,
                joined_at=now,
            ))
        await db.flush()
        return conversation

    @staticmethod
    async def find_private_conversation(db: AsyncSession, user_a: int, user_b: int) -> Optional[Conversation]:
        """
        두 유저가 모두 속한 대화방을 멤버십 기준으로 묶고(COUNT DISTINCT = 2),
        그 중 private 타입인 대화방을 찾습니다.
        """
        shared = (
            select(ConversationMember.conversation_id)
            .where(ConversationMember.user_id.in_([user_a, user_b]))
            .group_by(ConversationMember.conversation_id)
            .having(func.count(ConversationMember.user_id.distinct()) == 2)
        )
        stmt = (
            select(Conversation)
            .options(*_with_members())
            .where(
                Conversation.type == ConversationType.PRIVATE.value,
                Conversation.is_active == True,
                Conversation.id.in_(shared),
            )
            .order_by(Conversation.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def get_by_private_key(db: AsyncSession, private_key: str) -> Optional[Conversation]:
        stmt = (
            select(Conversation)
            .options(*_with_members())
            .where(Conversation.private_key == private_key, Conversation.is_active == True)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_conversation(db: AsyncSession, conversation_id: int) -> Optional[Conversation]:
        stmt = (
            select(Conversation)
            .options(*_with_members())
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def is_active_member(db: AsyncSession, conversation_id: int, user_id: int) -> bool:
        stmt = select(ConversationMember.id).where(
            ConversationMember.conversation_id == conversation_id,
            ConversationMember.user_id == user_id,
            ConversationMember.left_at.is_(None),
        )
        result = await db.execute(stmt)
        return result.first() is not None

    @staticmethod
    async def list_active_member_ids(db: AsyncSession, conversation_id: int) -> List[int]:
        stmt = (
            select(ConversationMember.user_id)
            .where(
                ConversationMember.conversation_id == conversation_id,
                ConversationMember.left_at.is_(None),
            )
            .order_by(ConversationMember.user_id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_active_conversations_for_user(db: AsyncSession, user_id: int) -> List[Conversation]:
        """유저가 활성 멤버인 대화방 목록 (최근 메시지 순)."""
        mine = select(ConversationMember.conversation_id).where(
            ConversationMember.user_id == user_id,
            ConversationMember.left_at.is_(None),
        )
        stmt = (
            select(Conversation)
            .options(*_with_members())
            .where(Conversation.id.in_(mine), Conversation.is_active == True)
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_active_members(db: AsyncSession, conversation_id: int) -> int:
        stmt = select(func.count(ConversationMember.id)).where(
            ConversationMember.conversation_id == conversation_id,
            ConversationMember.left_at.is_(None),
        )
        return (await db.execute(stmt)).scalar_one()

# backend/messenger/repositories/message_repository.py
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from messenger.db.database import get_utc_now
from messenger.db.models.user import User  # relationship 대상 모델 등록
from messenger.db.models.conversation import Conversation, ConversationMember
from messenger.db.models.message import Message, MessageStatus, DeliveryStatus


def _hydrate_options():
    return (
        selectinload(Message.sender),
        selectinload(Message.reply_to).selectinload(Message.sender),
        selectinload(Message.statuses),
    )


class MessageRepository:
    """
    메시지 영속성 + 수신자별 상태(fan-out) 관리.
    append 는 flush 까지만 하고, 커밋/롤백은 서비스 트랜잭션 경계에서 처리합니다.
    """

    @staticmethod
    async def append(db: AsyncSession, message: Message) -> Tuple[Message, List[MessageStatus]]:
        """
        하나의 트랜잭션 안에서:
        1. 메시지 행 INSERT
        2. Conversation.last_message_at 갱신
        3. 현재 활성 멤버마다 MessageStatus 생성 (보낸 사람은 read, 나머지는 sent)

        활성 멤버 목록은 메시지 INSERT 이후 같은 트랜잭션에서 읽습니다.
        """
        now = get_utc_now()
        message.created_at = message.created_at or now
        db.add(message)
        await db.flush()

        await db.execute(
            update(Conversation)
            .where(Conversation.id == message.conversation_id)
            .values(last_message_at=message.created_at)
        )

        member_result = await db.execute(
            select(ConversationMember.user_id).where(
                ConversationMember.conversation_id == message.conversation_id,
                ConversationMember.left_at.is_(None),
            )
        )
        statuses = []
        for user_id in member_result.scalars().all():
            is_sender = user_id == message.sender_id
            status = MessageStatus(
                message_id=message.id,
                user_id=user_id,
                status=DeliveryStatus.READ.value if is_sender else DeliveryStatus.SENT.value,
                delivered_at=now,
                read_at=now if is_sender else None,
            )
            db.add(status)
            statuses.append(status)
        await db.flush()
        return message, statuses

    @staticmethod
    async def get_message(db: AsyncSession, message_id: int) -> Optional[Message]:
        return await db.get(Message, message_id)

    @staticmethod
    async def get_hydrated(db: AsyncSession, message_id: int) -> Optional[Message]:
        stmt = (
            select(Message)
            .options(*_hydrate_options())
            .where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_read(db: AsyncSession, message_id: int, user_id: int) -> Tuple[Optional[MessageStatus], bool]:
        """
        본인 상태 행만 read 로 전이합니다. 이미 read 이면 read_at 을 건드리지 않습니다.
        (status 행, 이번 호출로 전이되었는지) 를 반환합니다.
        """
        now = get_utc_now()
        result = await db.execute(
            update(MessageStatus)
            .where(
                MessageStatus.message_id == message_id,
                MessageStatus.user_id == user_id,
                MessageStatus.status != DeliveryStatus.READ.value,
            )
            .values(status=DeliveryStatus.READ.value, read_at=now)
        )
        changed = result.rowcount > 0

        row = await db.execute(
            select(MessageStatus)
            .where(MessageStatus.message_id == message_id, MessageStatus.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return row.scalar_one_or_none(), changed

    @staticmethod
    async def advance_last_read(db: AsyncSession, conversation_id: int, user_id: int, message_id: int):
        await db.execute(
            update(ConversationMember)
            .where(
                ConversationMember.conversation_id == conversation_id,
                ConversationMember.user_id == user_id,
                or_(
                    ConversationMember.last_read_message_id.is_(None),
                    ConversationMember.last_read_message_id < message_id,
                ),
            )
            .values(last_read_message_id=message_id)
        )

    @staticmethod
    async def mark_conversation_read(db: AsyncSession, conversation_id: int, user_id: int) -> int:
        """대화방 안의 읽지 않은 내 상태 행을 일괄 read 처리하고 변경 건수를 반환합니다."""
        now = get_utc_now()
        message_ids = select(Message.id).where(
            Message.conversation_id == conversation_id,
            Message.is_deleted == False,
        )
        result = await db.execute(
            update(MessageStatus)
            .where(
                MessageStatus.user_id == user_id,
                MessageStatus.status != DeliveryStatus.READ.value,
                MessageStatus.message_id.in_(message_ids),
            )
            .values(status=DeliveryStatus.READ.value, read_at=now)
            .execution_options(synchronize_session=False)
        )
        latest = await db.execute(
            select(func.max(Message.id)).where(Message.conversation_id == conversation_id)
        )
        latest_id = latest.scalar_one_or_none()
        if latest_id is not None:
            await MessageRepository.advance_last_read(db, conversation_id, user_id, latest_id)
        return result.rowcount

    @staticmethod
    async def list_page(db: AsyncSession, conversation_id: int, page: int, limit: int) -> Tuple[List[Message], int]:
        """최신 메시지부터 page 단위로 가져옵니다 (삭제된 메시지 제외)."""
        base = Message.conversation_id == conversation_id, Message.is_deleted == False
        total = (await db.execute(select(func.count(Message.id)).where(*base))).scalar_one()
        stmt = (
            select(Message)
            .options(
                selectinload(Message.sender),
                selectinload(Message.reply_to).selectinload(Message.sender),
                selectinload(Message.statuses).selectinload(MessageStatus.user),
            )
            .where(*base)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def search(
        db: AsyncSession,
        user_id: int,
        query: str,
        conversation_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[Message]:
        """
        내가 활성 멤버인 대화방 안에서만, 평문 사본에 대해 대소문자 무시 부분 일치 검색.
        """
        mine = select(ConversationMember.conversation_id).where(
            ConversationMember.user_id == user_id,
            ConversationMember.left_at.is_(None),
        )
        conditions = [
            Message.conversation_id.in_(mine),
            Message.is_deleted == False,
            Message.content_plain.icontains(query, autoescape=True),
        ]
        if conversation_id is not None:
            conditions.append(Message.conversation_id == conversation_id)

        stmt = (
            select(Message)
            .options(selectinload(Message.sender), selectinload(Message.conversation))
            .where(*conditions)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def last_message(db: AsyncSession, conversation_id: int) -> Optional[Message]:
        stmt = (
            select(Message)
            .options(selectinload(Message.sender))
            .where(Message.conversation_id == conversation_id, Message.is_deleted == False)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def count_messages(db: AsyncSession, conversation_id: int) -> int:
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == conversation_id,
            Message.is_deleted == False,
        )
        return (await db.execute(stmt)).scalar_one()

    @staticmethod
    async def count_unread(db: AsyncSession, conversation_id: int, user_id: int) -> int:
        stmt = (
            select(func.count(MessageStatus.id))
            .join(Message, Message.id == MessageStatus.message_id)
            .where(
                MessageStatus.user_id == user_id,
                MessageStatus.status != DeliveryStatus.READ.value,
                Message.conversation_id == conversation_id,
                Message.is_deleted == False,
            )
        )
        return (await db.execute(stmt)).scalar_one()

    @staticmethod
    async def count_statuses(db: AsyncSession, message_id: int) -> int:
        stmt = select(func.count(MessageStatus.id)).where(MessageStatus.message_id == message_id)
        return (await db.execute(stmt)).scalar_one()

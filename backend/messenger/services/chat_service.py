# backend/messenger/services/chat_service.py
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.core import config
from messenger.core.crypto import encrypt_message, decrypt_message
from messenger.core.errors import (
    ConversationNotFound,
    InvalidConversationType,
    InvalidMember,
    MessageNotFound,
    NotificationNotFound,
    NotMember,
    PersistenceFailure,
    UnknownCreator,
    UserNotFound,
    ValidationFailure,
    WrongPrivateMemberCount,
)
from messenger.db.database import get_utc_now
from messenger.db.models.conversation import Conversation, ConversationType, build_private_key
from messenger.db.models.message import Message
from messenger.repositories.membership_repository import MembershipRepository
from messenger.repositories.message_repository import MessageRepository
from messenger.repositories.notification_repository import NotificationRepository
from messenger.repositories.presence_repository import PresenceRepository
from messenger.schemas.chat import (
    ConversationCreate,
    ConversationRead,
    ConversationReadReceipt,
    ConversationStats,
    ConversationSummary,
    LastMessage,
    MemberRead,
    MessageCreate,
    MessagePage,
    MessageRead,
    MessageStatusRead,
    NotificationPage,
    NotificationRead,
    Pagination,
    ReadReceipt,
    ReplyPreview,
    TypingUser,
    UserBrief,
    UserStatus,
)
from messenger.services import notification_service
from messenger.services.notification_service import MessageEvent

logger = logging.getLogger(__name__)


def _loaded(obj, attr: str) -> bool:
    return attr not in inspect(obj).unloaded


@asynccontextmanager
async def _transaction(db: AsyncSession, action: str):
    """SQLAlchemy 오류는 전체 롤백 후 재시도 가능한 PersistenceFailure 로 변환합니다."""
    try:
        yield
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[ChatService] {action} 실패, 롤백: {e}")
        raise PersistenceFailure()


# --- 직렬화 ---

def serialize_conversation(conversation: Conversation, model=ConversationRead, **extra):
    members = [MemberRead.model_validate(m) for m in conversation.members if m.left_at is None]
    creator = conversation.creator if _loaded(conversation, "creator") else None
    return model(
        id=conversation.id,
        type=conversation.type,
        name=conversation.name,
        description=conversation.description,
        created_by=conversation.created_by,
        is_active=conversation.is_active,
        last_message_at=conversation.last_message_at,
        created_at=conversation.created_at,
        creator=UserBrief.model_validate(creator) if creator else None,
        members=members,
        **extra,
    )


def serialize_message(message: Message, include_conversation: bool = False) -> MessageRead:
    sender = message.sender if _loaded(message, "sender") else None

    reply_to = None
    if message.reply_to_message_id and _loaded(message, "reply_to") and message.reply_to is not None:
        target = message.reply_to
        target_sender = target.sender if _loaded(target, "sender") else None
        reply_to = ReplyPreview(
            id=target.id,
            sender_id=target.sender_id,
            content=decrypt_message(target.content),
            message_type=target.message_type,
            sender=UserBrief.model_validate(target_sender) if target_sender else None,
        )

    statuses = None
    if _loaded(message, "statuses"):
        statuses = [MessageStatusRead.model_validate(s) for s in message.statuses]

    conversation = None
    if include_conversation and _loaded(message, "conversation") and message.conversation is not None:
        conversation = {
            "id": message.conversation.id,
            "type": message.conversation.type,
            "name": message.conversation.name,
        }

    return MessageRead(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=decrypt_message(message.content),
        message_type=message.message_type,
        reply_to_message_id=message.reply_to_message_id,
        forward_from_message_id=message.forward_from_message_id,
        attachment_url=message.attachment_url,
        attachment_name=message.attachment_name,
        attachment_size=message.attachment_size,
        attachment_mime_type=message.attachment_mime_type,
        metadata=message.metadata_json,
        is_edited=message.is_edited,
        is_deleted=message.is_deleted,
        created_at=message.created_at,
        sender=UserBrief.model_validate(sender) if sender else None,
        reply_to=reply_to,
        statuses=statuses,
        conversation=conversation,
    )


class ChatService:
    """
    대화방/메시지 비즈니스 로직. HTTP 라우터와 웹소켓 게이트웨이가 함께 사용합니다.
    트랜잭션 경계(commit/rollback)는 이 계층에서만 다룹니다.
    """

    # --- 권한 ---

    @staticmethod
    async def require_member(db: AsyncSession, conversation_id: int, user_id: int):
        if not await MembershipRepository.is_active_member(db, conversation_id, user_id):
            raise NotMember()

    # --- 대화방 ---

    @staticmethod
    async def create_conversation(
        db: AsyncSession, creator_id: int, payload: ConversationCreate
    ) -> Tuple[ConversationRead, bool]:
        """
        대화방을 생성하고 (대화방, 새로 생성 여부) 를 반환합니다.
        private 는 같은 두 유저 사이에 하나만 존재하며, 동시 생성 경합에서 진 쪽도 같은 대화방을 받습니다.
        """
        try:
            conversation_type = ConversationType(payload.type)
        except ValueError:
            raise InvalidConversationType()

        member_ids = list(dict.fromkeys(payload.member_ids))
        if conversation_type == ConversationType.PRIVATE:
            if len(member_ids) != 1 or member_ids[0] == creator_id:
                raise WrongPrivateMemberCount()
        else:
            if not payload.name:
                raise ValidationFailure("Group conversations require a name")
            member_ids = [user_id for user_id in member_ids if user_id != creator_id]

        async with _transaction(db, "대화방 생성"):
            if await MembershipRepository.get_user(db, creator_id) is None:
                raise UnknownCreator()
            existing_ids = await MembershipRepository.find_existing_user_ids(db, member_ids)
            if len(existing_ids) != len(member_ids):
                raise InvalidMember()

            if conversation_type == ConversationType.PRIVATE:
                existing = await MembershipRepository.find_private_conversation(db, creator_id, member_ids[0])
                if existing is not None:
                    return serialize_conversation(existing), False

                try:
                    conversation = await MembershipRepository.create_conversation(
                        db, conversation_type, creator_id, member_ids
                    )
                    await db.commit()
                except IntegrityError:
                    # 동시 생성 경합: 유니크 키에서 진 쪽은 이긴 쪽 대화방을 돌려받습니다.
                    await db.rollback()
                    winner = await MembershipRepository.get_by_private_key(
                        db, build_private_key(creator_id, member_ids[0])
                    )
                    if winner is None:
                        raise PersistenceFailure()
                    logger.info(f"[ChatService] private 대화방 생성 경합 해소 -> Conversation {winner.id}")
                    return serialize_conversation(winner), False
            else:
                conversation = await MembershipRepository.create_conversation(
                    db,
                    conversation_type,
                    creator_id,
                    member_ids,
                    name=payload.name,
                    description=payload.description,
                )
                await db.commit()

            created = await MembershipRepository.get_conversation(db, conversation.id)

        logger.info(f"[ChatService] Conversation {created.id} 생성 ({created.type}, by User {creator_id})")
        return serialize_conversation(created), True

    @staticmethod
    async def get_conversation(db: AsyncSession, conversation_id: int, user_id: int) -> ConversationRead:
        await ChatService.require_member(db, conversation_id, user_id)
        conversation = await MembershipRepository.get_conversation(db, conversation_id)
        if conversation is None or not conversation.is_active:
            raise ConversationNotFound()
        return serialize_conversation(conversation)

    @staticmethod
    async def list_conversations(db: AsyncSession, user_id: int) -> List[ConversationSummary]:
        conversations = await MembershipRepository.list_active_conversations_for_user(db, user_id)
        summaries = []
        for conversation in conversations:
            last = await MessageRepository.last_message(db, conversation.id)
            last_message = None
            if last is not None:
                last_message = LastMessage(
                    id=last.id,
                    content=decrypt_message(last.content),
                    message_type=last.message_type,
                    created_at=last.created_at,
                    sender=UserBrief.model_validate(last.sender) if last.sender else None,
                    is_sent_by_me=last.sender_id == user_id,
                )
            unread = await MessageRepository.count_unread(db, conversation.id, user_id)
            summaries.append(serialize_conversation(
                conversation, model=ConversationSummary, last_message=last_message, unread_count=unread
            ))
        return summaries

    @staticmethod
    async def list_room_ids(db: AsyncSession, user_id: int) -> List[int]:
        conversations = await MembershipRepository.list_active_conversations_for_user(db, user_id)
        return [c.id for c in conversations]

    @staticmethod
    async def list_member_ids(db: AsyncSession, conversation_id: int) -> List[int]:
        return await MembershipRepository.list_active_member_ids(db, conversation_id)

    # --- 메시지 ---

    @staticmethod
    async def send_message(
        db: AsyncSession, sender_id: int, conversation_id: int, payload: MessageCreate
    ) -> MessageRead:
        """
        1. Authorize: 활성 멤버가 아니면 NotMember (DB 쓰기 없음)
        2. Encode: 본문 암호화 + 평문 사본
        3. Persist: 메시지 + 멤버별 상태를 한 트랜잭션으로 커밋
        4. Hydrate: 발신자/답장 정보를 포함해 다시 읽기
        5. Notify: 커밋 이후 알림 큐에 적재 (실패해도 전송 결과에 영향 없음)
        """
        await ChatService.require_member(db, conversation_id, sender_id)

        if payload.reply_to_message_id is not None:
            target = await MessageRepository.get_message(db, payload.reply_to_message_id)
            if target is None or target.is_deleted or target.conversation_id != conversation_id:
                raise MessageNotFound("Reply target not found in this conversation")

        if payload.forward_from_message_id is not None:
            source = await MessageRepository.get_message(db, payload.forward_from_message_id)
            if source is None or source.is_deleted:
                raise MessageNotFound("Forwarded message not found")
            await ChatService.require_member(db, source.conversation_id, sender_id)

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=encrypt_message(payload.content) if payload.content else None,
            content_plain=payload.content,
            message_type=payload.message_type.value,
            reply_to_message_id=payload.reply_to_message_id,
            forward_from_message_id=payload.forward_from_message_id,
            attachment_url=payload.attachment_url,
            attachment_name=payload.attachment_name,
            attachment_size=payload.attachment_size,
            attachment_mime_type=payload.attachment_mime_type,
            metadata_json=payload.metadata,
            is_edited=False,
            is_deleted=False,
            created_at=get_utc_now(),
        )

        async with _transaction(db, "메시지 저장"):
            message, statuses = await MessageRepository.append(db, message)
            await db.commit()
        message_id = message.id

        logger.info(
            f"[ChatService] Message {message_id} 저장 (Conversation {conversation_id}, "
            f"User {sender_id}, 상태 {len(statuses)}건)"
        )

        # 커밋 이후에는 전송 성공입니다. 재조회가 실패하면 메모리의 행으로 응답합니다.
        try:
            hydrated = await MessageRepository.get_hydrated(db, message_id)
            result = serialize_message(hydrated)
        except SQLAlchemyError as e:
            logger.warning(f"[ChatService] Message {message_id} 재조회 실패, 저장된 값으로 응답: {e}")
            result = serialize_message(message).model_copy(
                update={"statuses": [MessageStatusRead.model_validate(s) for s in statuses]}
            )
            await db.rollback()

        notification_service.get_dispatcher().enqueue(MessageEvent(
            message_id=result.id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            sender_name=result.sender.name if result.sender else f"User {sender_id}",
            message_type=result.message_type,
            content_plain=payload.content,
            created_at=result.created_at,
        ))
        return result

    @staticmethod
    async def get_messages(
        db: AsyncSession, conversation_id: int, user_id: int, page: int = 1, limit: int = 50
    ) -> MessagePage:
        await ChatService.require_member(db, conversation_id, user_id)
        messages, total = await MessageRepository.list_page(db, conversation_id, page, limit)
        # 최신 페이지를 가져온 뒤 오래된 순으로 돌려줍니다.
        messages.reverse()
        return MessagePage(
            messages=[serialize_message(m) for m in messages],
            pagination=Pagination.build(page, limit, total),
        )

    @staticmethod
    async def mark_message_read(
        db: AsyncSession, user_id: int, message_id: int, conversation_id: Optional[int] = None
    ) -> ReadReceipt:
        message = await MessageRepository.get_message(db, message_id)
        if message is None or message.is_deleted:
            raise MessageNotFound()
        if conversation_id is not None and conversation_id != message.conversation_id:
            raise ValidationFailure("Message does not belong to this conversation")
        await ChatService.require_member(db, message.conversation_id, user_id)

        async with _transaction(db, "읽음 처리"):
            status, changed = await MessageRepository.mark_read(db, message_id, user_id)
            if changed:
                await MessageRepository.advance_last_read(db, message.conversation_id, user_id, message_id)
            await db.commit()

        return ReadReceipt(
            message_id=message_id,
            conversation_id=message.conversation_id,
            user_id=user_id,
            read_at=status.read_at if status else None,
            changed=changed,
        )

    @staticmethod
    async def mark_conversation_read(db: AsyncSession, user_id: int, conversation_id: int) -> ConversationReadReceipt:
        await ChatService.require_member(db, conversation_id, user_id)
        async with _transaction(db, "대화방 읽음 처리"):
            count = await MessageRepository.mark_conversation_read(db, conversation_id, user_id)
            await db.commit()
        return ConversationReadReceipt(
            conversation_id=conversation_id,
            user_id=user_id,
            read_at=get_utc_now(),
            message_count=count,
        )

    @staticmethod
    async def search_messages(
        db: AsyncSession, user_id: int, query: str, conversation_id: Optional[int] = None
    ) -> List[MessageRead]:
        query = (query or "").strip()
        if len(query) < 2:
            raise ValidationFailure("Search query must be at least 2 characters long")
        if conversation_id is not None:
            await ChatService.require_member(db, conversation_id, user_id)

        messages = await MessageRepository.search(
            db, user_id, query, conversation_id=conversation_id, limit=config.SEARCH_RESULT_LIMIT
        )
        return [serialize_message(m, include_conversation=True) for m in messages]

    @staticmethod
    async def get_stats(db: AsyncSession, conversation_id: int, user_id: int) -> ConversationStats:
        await ChatService.require_member(db, conversation_id, user_id)
        return ConversationStats(
            message_count=await MessageRepository.count_messages(db, conversation_id),
            member_count=await MembershipRepository.count_active_members(db, conversation_id),
            unread_count=await MessageRepository.count_unread(db, conversation_id, user_id),
        )

    # --- 입력 중 / 접속 상태 ---

    @staticmethod
    async def update_typing_status(db: AsyncSession, user_id: int, conversation_id: int, is_typing: bool):
        await ChatService.require_member(db, conversation_id, user_id)
        async with _transaction(db, "입력 상태 갱신"):
            row = await PresenceRepository.upsert_typing(db, conversation_id, user_id, is_typing)
            await db.commit()
        return row

    @staticmethod
    async def clear_typing_statuses(db: AsyncSession, user_id: int) -> List[int]:
        async with _transaction(db, "입력 상태 초기화"):
            conversation_ids = await PresenceRepository.clear_user_typing(db, user_id)
            await db.commit()
        return conversation_ids

    @staticmethod
    async def get_typing_users(db: AsyncSession, conversation_id: int, user_id: int) -> List[TypingUser]:
        await ChatService.require_member(db, conversation_id, user_id)
        rows = await PresenceRepository.list_typing_users(
            db, conversation_id, exclude_user_id=user_id, stale_seconds=config.TYPING_STALE_SECONDS
        )
        return [
            TypingUser(
                user_id=row.user_id,
                name=row.user.display_name,
                started_typing_at=row.started_typing_at,
                last_typing_at=row.last_typing_at,
            )
            for row in rows
        ]

    @staticmethod
    async def set_presence(db: AsyncSession, user_id: int, is_online: bool, connection_handle: Optional[str]):
        async with _transaction(db, "접속 상태 갱신"):
            await PresenceRepository.set_user_presence(db, user_id, is_online, connection_handle)
            await db.commit()

    @staticmethod
    async def get_user_status(db: AsyncSession, user_id: int) -> UserStatus:
        user = await MembershipRepository.get_user(db, user_id)
        if user is None:
            raise UserNotFound()
        await db.refresh(user)
        return UserStatus(id=user.id, name=user.display_name, is_online=user.is_online, last_seen=user.last_seen)

    # --- 알림 ---

    @staticmethod
    async def list_notifications(
        db: AsyncSession, user_id: int, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> NotificationPage:
        notifications, total = await NotificationRepository.list_for_user(db, user_id, page, limit, unread_only)
        return NotificationPage(
            notifications=[NotificationRead.model_validate(n) for n in notifications],
            pagination=Pagination.build(page, limit, total),
        )

    @staticmethod
    async def mark_notification_read(db: AsyncSession, user_id: int, notification_id: int) -> NotificationRead:
        notification = await NotificationRepository.get_for_user(db, notification_id, user_id)
        if notification is None:
            raise NotificationNotFound()
        async with _transaction(db, "알림 읽음 처리"):
            await NotificationRepository.mark_read(db, notification)
            await db.commit()
        return NotificationRead.model_validate(notification)

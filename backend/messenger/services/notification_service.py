# backend/messenger/services/notification_service.py
"""
Notification Dispatch Bridge.

메시지 전송 트랜잭션이 커밋된 뒤 MessageEvent 를 큐에 넣으면,
별도 워커가 오프라인 멤버에게 Notification 행을 만들고 Redis 로 발행합니다.
이 단계의 실패는 로그만 남기고 삼킵니다. 전송 결과에는 영향을 주지 않습니다.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from messenger.core import config
from messenger.db.database import AsyncSessionLocal
from messenger.db.database_redis import RedisManager
from messenger.db.models.user import User
from messenger.db.models.conversation import Conversation, ConversationMember, ConversationType
from messenger.db.models.message import MessageType
from messenger.db.models.notification import Notification

logger = logging.getLogger(__name__)

Publisher = Callable[[int, dict], Awaitable[object]]

MEDIA_LABELS = {
    MessageType.IMAGE.value: "Photo",
    MessageType.VIDEO.value: "Video",
    MessageType.AUDIO.value: "Audio",
    MessageType.FILE.value: "File",
}


@dataclass(frozen=True)
class MessageEvent:
    message_id: int
    conversation_id: int
    sender_id: int
    sender_name: str
    message_type: str
    content_plain: Optional[str]
    created_at: datetime


def build_title(conversation: Conversation, sender_name: str) -> str:
    if conversation.type == ConversationType.PRIVATE.value:
        return f"New message from {sender_name}"
    return f"{sender_name} in {conversation.name or 'Group'}"


def build_body(event: MessageEvent) -> str:
    if event.message_type == MessageType.TEXT.value:
        body = event.content_plain or "[Message]"
        limit = config.NOTIFICATION_PREVIEW_LENGTH
        if len(body) > limit:
            body = body[:limit] + "..."
        return body
    return MEDIA_LABELS.get(event.message_type, "Sent an attachment")


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        publisher: Optional[Publisher] = None,
    ):
        self._session_factory = session_factory
        self._publisher = publisher or RedisManager.publish_chat_notification
        self._queue: asyncio.Queue[MessageEvent] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    # --- lifecycle ---

    def start(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
            logger.info("[Notify] 알림 디스패처 시작")

    async def stop(self):
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info("[Notify] 알림 디스패처 종료")

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, event: MessageEvent):
        """전송 경로에서 호출. 절대 예외를 올리지 않습니다."""
        try:
            self._queue.put_nowait(event)
        except Exception:
            logger.exception(f"[Notify] 큐 적재 실패 (message {event.message_id})")

    async def drain(self):
        """큐에 쌓인 이벤트가 모두 처리될 때까지 기다립니다. 워커가 없으면 직접 처리합니다."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    # --- processing ---

    async def dispatch(self, event: MessageEvent) -> List[int]:
        """오프라인 수신자에게 알림을 만들고 발행합니다. 알림을 받은 user_id 목록을 반환합니다."""
        try:
            notifications = await self._create_notifications(event)
        except Exception as e:
            logger.error(f"[Notify] 알림 생성 실패 (message {event.message_id}): {e}")
            return []

        delivered = []
        for notification in notifications:
            payload = {
                "type": "CHAT_NOTIFICATION",
                "notification_id": notification.id,
                "conversation_id": event.conversation_id,
                "message_id": event.message_id,
                "from_user_id": event.sender_id,
                "sender_nickname": event.sender_name,
                "title": notification.title,
                "body": notification.body,
                "created_at": event.created_at.isoformat(),
            }
            try:
                await self._publisher(notification.user_id, payload)
                delivered.append(notification.id)
            except Exception as e:
                logger.error(f"[Notify] Redis 발행 실패 (User {notification.user_id}, message {event.message_id}): {e}")

        if delivered:
            try:
                async with self._session_factory() as db:
                    await db.execute(
                        update(Notification).where(Notification.id.in_(delivered)).values(push_sent=True)
                    )
                    await db.commit()
            except Exception as e:
                logger.error(f"[Notify] push_sent 갱신 실패 (message {event.message_id}): {e}")

        logger.info(f"[Notify] message {event.message_id}: 알림 {len(notifications)}건 생성, {len(delivered)}건 발행")
        return [n.user_id for n in notifications]

    async def _create_notifications(self, event: MessageEvent) -> List[Notification]:
        async with self._session_factory() as db:
            conversation = await db.get(Conversation, event.conversation_id)
            if conversation is None:
                return []

            stmt = (
                select(ConversationMember.user_id)
                .join(User, User.id == ConversationMember.user_id)
                .where(
                    ConversationMember.conversation_id == event.conversation_id,
                    ConversationMember.user_id != event.sender_id,
                    ConversationMember.left_at.is_(None),
                    User.is_online == False,
                )
                .order_by(ConversationMember.user_id)
            )
            offline_ids = list((await db.execute(stmt)).scalars().all())
            if not offline_ids:
                return []

            title = build_title(conversation, event.sender_name)
            body = build_body(event)
            notifications = [
                Notification(
                    user_id=user_id,
                    message_id=event.message_id,
                    conversation_id=event.conversation_id,
                    type="message",
                    title=title,
                    body=body,
                    data={"conversationId": event.conversation_id, "messageId": event.message_id},
                    is_seen=False,
                    is_read=False,
                    push_sent=False,
                )
                for user_id in offline_ids
            ]
            db.add_all(notifications)
            await db.commit()
            return notifications


dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return dispatcher

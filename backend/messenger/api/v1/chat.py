# backend/messenger/api/v1/chat.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.core.rate_limit import rate_limit
from messenger.core.security import get_current_user_id
from messenger.db.database import get_db
from messenger.schemas.chat import (
    ConversationCreate,
    ConversationRead,
    ConversationReadReceipt,
    ConversationStats,
    ConversationSummary,
    MessageCreate,
    MessagePage,
    MessageRead,
    NotificationPage,
    NotificationRead,
    ReadReceipt,
    TypingState,
    TypingUpdate,
    TypingUser,
    UserStatus,
)
from messenger.services.chat_service import ChatService
from messenger.sockets.chat_socket import get_gateway

# 영속 연결을 유지할 수 없는 클라이언트용 REST API.
# 전송/읽음 결과는 웹소켓 경로와 같은 게이트웨이 브로드캐스트로 퍼집니다.
router = APIRouter()


@router.get("/status")
async def get_chat_status():
    """
    채팅 게이트웨이의 현재 상태를 확인합니다.
    """
    gateway = get_gateway()
    return {
        "status": "online",
        "active_connections": len(gateway.registry.connections),
        "online_users": len(gateway.registry.online_user_ids()),
    }


# --- 대화방 ---

@router.post("/conversations", response_model=ConversationRead)
async def create_conversation(
    payload: ConversationCreate,
    response: Response,
    current_user_id: int = Depends(rate_limit("create_conversation")),
    db: AsyncSession = Depends(get_db),
):
    conversation, created = await ChatService.create_conversation(db, current_user_id, payload)
    get_gateway().announce_conversation(conversation, created)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return conversation


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.list_conversations(db, current_user_id)


@router.get("/conversations/{conversation_id}", response_model=ConversationRead)
async def get_conversation(
    conversation_id: int,
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.get_conversation(db, conversation_id, current_user_id)


@router.get("/conversations/{conversation_id}/stats", response_model=ConversationStats)
async def get_conversation_stats(
    conversation_id: int,
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.get_stats(db, conversation_id, current_user_id)


@router.put("/conversations/{conversation_id}/read", response_model=ConversationReadReceipt)
async def mark_conversation_read(
    conversation_id: int,
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    receipt = await ChatService.mark_conversation_read(db, current_user_id, conversation_id)
    get_gateway().publish_conversation_read(receipt)
    return receipt


# --- 메시지 ---

@router.get("/conversations/{conversation_id}/messages", response_model=MessagePage)
async def get_messages(
    conversation_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.get_messages(db, conversation_id, current_user_id, page, limit)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: int,
    payload: MessageCreate,
    current_user_id: int = Depends(rate_limit("send_message")),
    db: AsyncSession = Depends(get_db),
):
    message = await ChatService.send_message(db, current_user_id, conversation_id, payload)
    get_gateway().publish_new_message(message)
    return message


@router.put("/messages/{message_id}/read", response_model=ReadReceipt)
async def mark_message_read(
    message_id: int,
    conversation_id: Optional[int] = Query(None, alias="conversationId"),
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    receipt = await ChatService.mark_message_read(db, current_user_id, message_id, conversation_id)
    get_gateway().publish_read_receipt(receipt)
    return receipt


@router.get("/search", response_model=List[MessageRead])
async def search_messages(
    q: str = Query(..., max_length=200),
    conversation_id: Optional[int] = Query(None, alias="conversationId"),
    current_user_id: int = Depends(rate_limit("search")),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.search_messages(db, current_user_id, q, conversation_id)


# --- 입력 중 ---

@router.get("/conversations/{conversation_id}/typing", response_model=List[TypingUser])
async def get_typing_users(
    conversation_id: int,
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.get_typing_users(db, conversation_id, current_user_id)


@router.post("/conversations/{conversation_id}/typing", response_model=TypingState)
async def update_typing_status(
    conversation_id: int,
    payload: TypingUpdate,
    current_user_id: int = Depends(rate_limit("typing")),
    db: AsyncSession = Depends(get_db),
):
    await ChatService.update_typing_status(db, current_user_id, conversation_id, payload.is_typing)
    user = await ChatService.get_user_status(db, current_user_id)
    get_gateway().publish_typing(conversation_id, current_user_id, user.name, payload.is_typing)
    return TypingState(conversation_id=conversation_id, user_id=current_user_id, is_typing=payload.is_typing)


# --- 유저 / 알림 ---

@router.get("/users/{user_id}/status", response_model=UserStatus)
async def get_user_status(
    user_id: int,
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.get_user_status(db, user_id)


@router.get("/notifications", response_model=NotificationPage)
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False, alias="unreadOnly"),
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.list_notifications(db, current_user_id, page, limit, unread_only)


@router.put("/notifications/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: int,
    current_user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChatService.mark_notification_read(db, current_user_id, notification_id)

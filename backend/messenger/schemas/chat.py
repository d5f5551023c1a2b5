from pydantic import BaseModel, ConfigDict, Field, AliasChoices, model_validator
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Any, Dict, List, Optional

from messenger.core import config
from messenger.db.models.message import MessageType


class CamelModel(BaseModel):
    """입력은 camelCase / snake_case 모두 허용하고, 출력은 camelCase 로 직렬화합니다."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Inbound ---

class ConversationCreate(CamelModel):
    type: str
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    member_ids: List[int] = Field(default_factory=list, max_length=config.MAX_GROUP_MEMBERS)

    @model_validator(mode="after")
    def check_member_ids(self):
        if any(member_id < 1 for member_id in self.member_ids):
            raise ValueError("Member IDs must be positive integers")
        return self


class MessageCreate(CamelModel):
    content: Optional[str] = Field(default=None, max_length=config.MAX_MESSAGE_LENGTH)
    message_type: MessageType = MessageType.TEXT
    reply_to_message_id: Optional[int] = Field(default=None, ge=1)
    forward_from_message_id: Optional[int] = Field(default=None, ge=1)
    attachment_url: Optional[str] = Field(default=None, max_length=500)
    attachment_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    attachment_size: Optional[int] = Field(default=None, ge=0, le=config.MAX_ATTACHMENT_SIZE)
    attachment_mime_type: Optional[str] = Field(default=None, min_length=1, max_length=100)
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def check_content_or_attachment(self):
        if not self.content and not self.attachment_url:
            raise ValueError("Either content or attachment must be provided")
        return self


class SendMessagePayload(MessageCreate):
    conversation_id: int = Field(ge=1)


class ConversationRef(CamelModel):
    conversation_id: int = Field(ge=1)


class MarkReadPayload(CamelModel):
    message_id: int = Field(ge=1)
    conversation_id: Optional[int] = Field(default=None, ge=1)


class TypingUpdate(CamelModel):
    is_typing: bool


# --- Outbound ---

class UserBrief(CamelModel):
    id: int
    name: str = Field(validation_alias=AliasChoices("display_name", "name"))
    is_online: bool = False
    last_seen: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MemberRead(CamelModel):
    id: int
    user_id: int
    role: str
    is_muted: bool
    is_pinned: bool
    last_read_message_id: Optional[int] = None
    joined_at: datetime
    left_at: Optional[datetime] = None
    user: Optional[UserBrief] = None

    model_config = ConfigDict(from_attributes=True)


class ConversationRead(CamelModel):
    id: int
    type: str
    name: Optional[str] = None
    description: Optional[str] = None
    created_by: int
    is_active: bool
    last_message_at: datetime
    created_at: datetime
    creator: Optional[UserBrief] = None
    members: List[MemberRead] = []

    model_config = ConfigDict(from_attributes=True)


class MessageStatusRead(CamelModel):
    user_id: int
    status: str
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReplyPreview(CamelModel):
    id: int
    sender_id: int
    content: Optional[str] = None
    message_type: str
    sender: Optional[UserBrief] = None


class MessageRead(CamelModel):
    id: int
    conversation_id: int
    sender_id: int
    content: Optional[str] = None
    message_type: str
    reply_to_message_id: Optional[int] = None
    forward_from_message_id: Optional[int] = None
    attachment_url: Optional[str] = None
    attachment_name: Optional[str] = None
    attachment_size: Optional[int] = None
    attachment_mime_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    is_edited: bool = False
    is_deleted: bool = False
    created_at: datetime
    sender: Optional[UserBrief] = None
    reply_to: Optional[ReplyPreview] = None
    statuses: Optional[List[MessageStatusRead]] = None
    conversation: Optional[Dict[str, Any]] = None


class LastMessage(CamelModel):
    id: int
    content: Optional[str] = None
    message_type: str
    created_at: datetime
    sender: Optional[UserBrief] = None
    is_sent_by_me: bool


class ConversationSummary(ConversationRead):
    last_message: Optional[LastMessage] = None
    unread_count: int = 0


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    has_next_page: bool
    has_previous_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        )


class MessagePage(CamelModel):
    messages: List[MessageRead]
    pagination: Pagination


class ReadReceipt(CamelModel):
    message_id: int
    conversation_id: int
    user_id: int
    read_at: Optional[datetime] = None
    changed: bool


class ConversationReadReceipt(CamelModel):
    conversation_id: int
    user_id: int
    read_at: datetime
    message_count: int


class TypingState(CamelModel):
    conversation_id: int
    user_id: int
    is_typing: bool


class ConversationStats(CamelModel):
    message_count: int
    member_count: int
    unread_count: int


class TypingUser(CamelModel):
    user_id: int
    name: str
    started_typing_at: Optional[datetime] = None
    last_typing_at: datetime


class UserStatus(CamelModel):
    id: int
    name: str
    is_online: bool
    last_seen: Optional[datetime] = None


class NotificationRead(CamelModel):
    id: int
    user_id: int
    message_id: Optional[int] = None
    conversation_id: Optional[int] = None
    type: str
    title: str
    body: str
    data: Optional[Dict[str, Any]] = None
    is_seen: bool
    is_read: bool
    push_sent: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationPage(CamelModel):
    notifications: List[NotificationRead]
    pagination: Pagination

# backend/messenger/db/models/message.py
from enum import Enum
from sqlalchemy import Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional, List, TYPE_CHECKING
from messenger.db.database import Base, get_utc_now

if TYPE_CHECKING:
    from messenger.db.models.user import User
    from messenger.db.models.conversation import Conversation


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey("conversations.id"), index=True, nullable=False)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)

    # 본문은 암호문으로 저장하고, 검색용 평문 사본을 함께 둡니다.
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_plain: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_type: Mapped[str] = mapped_column(String(20), default=MessageType.TEXT.value)

    reply_to_message_id: Mapped[Optional[int]] = mapped_column(ForeignKey("messages.id"), nullable=True)
    forward_from_message_id: Mapped[Optional[int]] = mapped_column(ForeignKey("messages.id"), nullable=True)

    # 첨부 파일 (파일 저장소는 외부 모듈)
    attachment_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    attachment_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    attachment_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    attachment_mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now, index=True)

    # --- 관계 ---
    sender: Mapped["User"] = relationship("User", foreign_keys=[sender_id])
    conversation: Mapped["Conversation"] = relationship("Conversation")
    reply_to: Mapped[Optional["Message"]] = relationship(
        "Message", remote_side=[id], foreign_keys=[reply_to_message_id]
    )
    statuses: Mapped[List["MessageStatus"]] = relationship(
        "MessageStatus",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageStatus.user_id",
    )


class MessageStatus(Base):
    """수신자별 전달/읽음 상태. 메시지 생성과 같은 트랜잭션에서 활성 멤버 수만큼 만들어집니다."""
    __tablename__ = "message_statuses"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id"), index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DeliveryStatus.SENT.value, index=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    message: Mapped["Message"] = relationship("Message", back_populates="statuses")
    user: Mapped["User"] = relationship("User")

# backend/messenger/db/models/conversation.py
from enum import Enum
from sqlalchemy import Integer, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional, List, TYPE_CHECKING
from messenger.db.database import Base, get_utc_now

if TYPE_CHECKING:
    from messenger.db.models.user import User


class ConversationType(str, Enum):
    PRIVATE = "private"
    GROUP = "group"


class MemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


def build_private_key(user_a: int, user_b: int) -> str:
    """두 유저의 순서와 무관한 1:1 대화 키 (min:max)."""
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}:{high}"


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # private, group
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # group 전용
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # group 전용
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_message_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now)

    # 1:1 대화 중복 방지용 정규화 키. group 은 NULL 이라 유니크 제약에 걸리지 않습니다.
    # 비활성화할 때는 NULL 로 비워야 같은 두 유저가 새 대화방을 만들 수 있습니다.
    private_key: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    # --- 관계 ---
    creator: Mapped["User"] = relationship("User", foreign_keys=[created_by])
    members: Mapped[List["ConversationMember"]] = relationship(
        "ConversationMember",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMember.id",
    )


class ConversationMember(Base):
    __tablename__ = "conversation_members"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_member"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey("conversations.id"), index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=MemberRole.MEMBER.value)
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    last_read_message_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now)
    left_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # NULL = 활성 멤버

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="members")
    user: Mapped["User"] = relationship("User")

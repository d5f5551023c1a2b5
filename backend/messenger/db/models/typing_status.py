from sqlalchemy import Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional, TYPE_CHECKING
from messenger.db.database import Base, get_utc_now

if TYPE_CHECKING:
    from messenger.db.models.user import User


class TypingStatus(Base):
    __tablename__ = "typing_statuses"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_typing_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey("conversations.id"), index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    is_typing: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    started_typing_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_typing_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now)

    user: Mapped["User"] = relationship("User")

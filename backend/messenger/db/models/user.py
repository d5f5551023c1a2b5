# backend/messenger/db/models/user.py
from sqlalchemy import Integer, String, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from messenger.db.database import Base, get_utc_now
from datetime import datetime
from typing import Optional


class User(Base):
    """
    인증/프로필은 외부 모듈 소관입니다. 채팅 코어는 id, 표시 이름, 접속 상태만 사용합니다.
    """
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now)

    # --- 접속 상태 (게이트웨이가 관리, 라이브 연결 집합에서 파생) ---
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    connection_handle: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    @property
    def display_name(self) -> str:
        return self.nickname or self.username

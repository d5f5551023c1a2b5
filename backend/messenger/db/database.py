# backend/messenger/db/database.py
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from datetime import datetime, timezone
from typing import AsyncGenerator
import logging

from messenger.core import config

logger = logging.getLogger(__name__)

engine_kwargs = {"echo": config.DB_ECHO}
if config.DB_POOL == "null":
    # 테스트/스크립트처럼 이벤트 루프가 여러 개인 환경에서는 커넥션을 재사용하지 않습니다.
    engine_kwargs["poolclass"] = NullPool

engine = create_async_engine(config.DATABASE_URL, **engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


def get_utc_now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_db():
    """
    서버 시작 시 테이블을 생성합니다.
    접속 상태(is_online)는 프로세스 메모리에서 다시 만들어지므로 모두 오프라인으로 초기화합니다.
    """
    # Base.metadata 등록을 위해 모델 임포트
    from messenger.db.models import user, conversation, message, typing_status, notification

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    from sqlalchemy import update
    from messenger.db.models.user import User

    async with AsyncSessionLocal() as session:
        await session.execute(
            update(User)
            .where(User.is_online == True)
            .values(is_online=False, connection_handle=None)
        )
        await session.commit()
    logger.info("[DB] 테이블 초기화 및 접속 상태 리셋 완료")

# backend/messenger/api/v1/routers.py
from fastapi import APIRouter

from messenger.api.v1 import chat

# 메인 API 라우터 (/v1)
api_router = APIRouter(prefix="/v1")

# 채팅 라우터 (인증/유저 관리는 외부 인증 서비스 소관)
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from messenger.core import config
from messenger.core.crypto import build_cipher
from messenger.core.errors import ChatError
from messenger.api.v1.routers import api_router
from messenger.sockets.chat_socket import router as chat_socket_router, get_gateway
from messenger.db.database import init_db
from messenger.db.database_redis import RedisManager
from messenger.services.notification_service import get_dispatcher

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(title="Messenger Realtime API")

# CORS 미들웨어 설정
# 프론트엔드가 다른 도메인에서 API를 호출할 수 있도록 허용합니다.
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,  # 환경 변수 기반 설정
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, **exc.to_dict()},
    )


# 서버 시작 시 실행되는 이벤트 핸들러
@app.on_event("startup")
async def on_startup():
    """
    서버가 시작될 때 초기화 작업을 수행합니다.
    1. 메시지 암호화 키 확인 (CHAT_REQUIRE_ENCRYPTION_KEY=1 이면 키가 없을 때 기동 실패)
    2. DB 초기화 (테이블 생성, 접속 상태 리셋)
    3. 알림 디스패처 워커 시작
    """
    build_cipher()
    await init_db()
    get_dispatcher().start()
    logger.info("[Main] 서버 기동 완료")


# 라우터 등록
# REST API와 WebSocket 엔드포인트를 메인 앱에 연결합니다.
app.include_router(api_router)
app.include_router(chat_socket_router)


@app.get("/")
async def root():
    """
    서버 상태 확인용 루트 엔드포인트입니다.
    """
    return {"message": "Welcome to Messenger Realtime API"}


@app.on_event("shutdown")
async def on_shutdown():
    """
    서버 종료 시 리소스를 안전하게 해제합니다.
    """
    await get_gateway().close_all()
    await get_dispatcher().stop()
    await RedisManager.close()  # Redis 연결 풀 닫기

# backend/messenger/core/security.py
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

from messenger.core import config
from messenger.core.errors import AuthenticationFailure

# 토큰 발급은 외부 인증 모듈 소관입니다. 여기서는 검증과 (운영/테스트용) 발급 헬퍼만 둡니다.

# Swagger UI 인증용 (실제 로그인 엔드포인트는 인증 서비스에 있음)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/v1/auth/login")


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: int
    display_name: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """JWT 액세스 토큰을 생성합니다."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: Optional[str]) -> int:
    """
    JWT 토큰을 디코딩하고 user_id(sub)를 반환합니다. 실패 시 AuthenticationFailure.
    """
    if not token:
        raise AuthenticationFailure("Authentication token required")
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise AuthenticationFailure("Could not validate credentials")
    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationFailure("Could not validate credentials")
    try:
        return int(user_id)
    except (TypeError, ValueError):
        raise AuthenticationFailure("Could not validate credentials")


# --- HTTP API 검증 ---

def verify_token(token: str) -> int:
    try:
        return decode_access_token(token)
    except AuthenticationFailure as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user_id(token: str = Depends(oauth2_scheme)) -> int:
    """
    FastAPI Dependency: 헤더에서 토큰을 추출하고 검증하여 user_id를 반환합니다.
    """
    return verify_token(token)


# --- 웹소켓 검증 ---

def extract_websocket_token(websocket: WebSocket) -> Optional[str]:
    """핸드셰이크의 ?token= 쿼리 또는 Authorization: Bearer 헤더에서 토큰을 꺼냅니다."""
    token = websocket.query_params.get("token")
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def authenticate_websocket(token: Optional[str]) -> AuthenticatedUser:
    """
    토큰을 검증하고 유저 저장소에서 {user_id, display_name} 을 확인합니다.
    실패하면 AuthenticationFailure 를 던지고, 게이트웨이는 연결 자체를 거부합니다.
    """
    user_id = decode_access_token(token)

    from messenger.db.database import AsyncSessionLocal
    from messenger.db.models.user import User

    async with AsyncSessionLocal() as db:
        user = await db.get(User, user_id)
        if user is None or not user.is_active:
            raise AuthenticationFailure("User not found")
        return AuthenticatedUser(user_id=user.id, display_name=user.display_name)

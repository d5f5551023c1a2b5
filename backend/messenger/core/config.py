# backend/messenger/core/config.py
import os
from pathlib import Path
from dotenv import load_dotenv

# 프로젝트 루트의 .env 를 먼저 읽고, 이미 설정된 환경 변수는 덮어쓰지 않습니다.
env_path = Path(__file__).resolve().parent.parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# --- Database ---
POSTGRES_USER = os.getenv("POSTGRES_USER")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "db")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")
POSTGRES_DB = os.getenv("POSTGRES_DB")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}",
)
DB_ECHO = os.getenv("DB_ECHO", "0") == "1"
DB_POOL = os.getenv("DB_POOL", "queue")  # "null" -> NullPool

# --- Redis ---
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# --- JWT ---
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-very-secret")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

# --- Message encryption ---
# 키가 없으면 기본값으로 동작하되 경고를 남깁니다. CHAT_REQUIRE_ENCRYPTION_KEY=1 이면 기동 실패.
CHAT_ENCRYPTION_KEY = os.getenv("CHAT_ENCRYPTION_KEY")
DEFAULT_CHAT_ENCRYPTION_KEY = "default-key-change-in-production"
CHAT_REQUIRE_ENCRYPTION_KEY = os.getenv("CHAT_REQUIRE_ENCRYPTION_KEY", "0") == "1"

# --- CORS ---
ALLOWED_ORIGINS = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")]

# --- Realtime ---
WS_PING_INTERVAL = float(os.getenv("WS_PING_INTERVAL", "25"))
WS_PING_TIMEOUT = float(os.getenv("WS_PING_TIMEOUT", "60"))
TYPING_STALE_SECONDS = int(os.getenv("TYPING_STALE_SECONDS", "10"))

# --- Rate limits: (max requests, window seconds) ---
RATE_LIMITS = {
    "send_message": (int(os.getenv("RATE_LIMIT_MESSAGES", "60")), 60),
    "typing": (int(os.getenv("RATE_LIMIT_TYPING", "120")), 60),
    "create_conversation": (int(os.getenv("RATE_LIMIT_CONVERSATIONS", "10")), 60 * 60),
    "search": (int(os.getenv("RATE_LIMIT_SEARCH", "100")), 60 * 60),
}

# --- Validation limits ---
MAX_MESSAGE_LENGTH = 4000
MAX_ATTACHMENT_SIZE = 100_000_000  # 100MB
MAX_GROUP_MEMBERS = 50
SEARCH_RESULT_LIMIT = 50
NOTIFICATION_PREVIEW_LENGTH = 100

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

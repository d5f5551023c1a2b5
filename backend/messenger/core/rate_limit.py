# backend/messenger/core/rate_limit.py
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from fastapi import Depends

from messenger.core import config
from messenger.core.errors import RateLimited
from messenger.core.security import get_current_user_id

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    requests: int
    reset_at: float


class RateLimiter:
    """
    유저 + 이벤트 종류별 고정 윈도우 카운터 (단일 프로세스 기준).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, cleanup_interval: float = 60.0):
        self._clock = clock
        self._windows: Dict[Tuple[int, str], _Window] = {}
        self._cleanup_interval = cleanup_interval
        self._next_cleanup = clock() + cleanup_interval

    def is_limited(self, user_id: int, event: str, max_requests: int, window_seconds: float) -> bool:
        now = self._clock()
        # 만료된 윈도우는 주기적으로 정리합니다.
        if now >= self._next_cleanup:
            self.cleanup()
        key = (user_id, event)
        window = self._windows.get(key)

        if window is None or now > window.reset_at:
            self._windows[key] = _Window(requests=1, reset_at=now + window_seconds)
            return False

        if window.requests >= max_requests:
            logger.warning(f"[RateLimit] User {user_id} 이벤트 '{event}' 한도 초과")
            return True

        window.requests += 1
        return False

    def check(self, user_id: int, event: str):
        """config.RATE_LIMITS 기준으로 검사하고 초과 시 RateLimited 를 던집니다."""
        max_requests, window_seconds = config.RATE_LIMITS[event]
        if self.is_limited(user_id, event, max_requests, window_seconds):
            raise RateLimited()

    def remaining(self, user_id: int, event: str, max_requests: int) -> int:
        window = self._windows.get((user_id, event))
        if window is None or self._clock() > window.reset_at:
            return max_requests
        return max(0, max_requests - window.requests)

    def reset(self, user_id: int, event: str):
        self._windows.pop((user_id, event), None)

    def clear(self):
        self._windows.clear()

    def cleanup(self):
        now = self._clock()
        self._next_cleanup = now + self._cleanup_interval
        for key in [k for k, w in self._windows.items() if now > w.reset_at]:
            del self._windows[key]


rate_limiter = RateLimiter()


def rate_limit(event: str):
    """FastAPI Dependency: 현재 유저 기준으로 이벤트 한도를 검사합니다."""

    async def dependency(current_user_id: int = Depends(get_current_user_id)) -> int:
        rate_limiter.check(current_user_id, event)
        return current_user_id

    return dependency

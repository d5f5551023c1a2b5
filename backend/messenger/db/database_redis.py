import json
import redis.asyncio as redis

from messenger.core import config

# Connection Pool (Reusable)
pool = redis.ConnectionPool.from_url(config.REDIS_URL, decode_responses=True)


def notification_channel(user_id: int) -> str:
    return f"user:{user_id}:notifications"


class RedisManager:
    @staticmethod
    def get_client() -> redis.Redis:
        """
        Returns an async Redis client from the global connection pool.
        """
        return redis.Redis(connection_pool=pool)

    @staticmethod
    async def publish_chat_notification(user_id: int, payload: dict) -> int:
        """
        유저별 알림 채널로 payload를 발행합니다. 수신한 구독자 수를 반환합니다.
        """
        client = RedisManager.get_client()
        return await client.publish(notification_channel(user_id), json.dumps(payload, default=str))

    @staticmethod
    async def close():
        await pool.disconnect()

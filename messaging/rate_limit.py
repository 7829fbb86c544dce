import time
import uuid
import logging

from messaging.config import settings
from messaging.exceptions import RateLimited

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Per-user rolling window kept in a redis sorted set (score = timestamp)."""

    def __init__(self, redis_client, limit: int = None, window_seconds: int = None, prefix: str = "ratelimit:send"):
        self.redis = redis_client
        self.limit = limit or settings.MESSAGE_RATE_LIMIT
        self.window_seconds = window_seconds or settings.MESSAGE_RATE_WINDOW_SECONDS
        self.prefix = prefix
        self.clock = time.time

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    async def hit(self, user_id: str) -> bool:
        """Record one attempt. False when the user is over the limit."""
        key = self._key(user_id)
        now = self.clock()
        member = f"{now}:{uuid.uuid4().hex}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.expire(key, self.window_seconds)
        _, _, count, _ = await pipe.execute()

        if count > self.limit:
            # Rejected attempts do not consume the window
            await self.redis.zrem(key, member)
            return False
        return True

    async def check(self, user_id: str):
        if not await self.hit(user_id):
            logger.info("User %s exceeded %d sends per %ss", user_id, self.limit, self.window_seconds)
            raise RateLimited()

    async def reset(self, user_id: str):
        await self.redis.delete(self._key(user_id))

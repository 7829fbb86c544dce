from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from messaging.database import get_db, get_redis
from messaging.rate_limit import SlidingWindowRateLimiter
from messaging.services.conversations import ConversationService
from messaging.services.fanout import DeliveryFanout
from messaging.services.messages import MessageService
from messaging.websocket_manager import manager

fanout = DeliveryFanout(manager)


def get_fanout() -> DeliveryFanout:
    return fanout


async def get_rate_limiter(redis_client=Depends(get_redis)) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(redis_client)


def get_conversation_service(db: AsyncSession = Depends(get_db)) -> ConversationService:
    return ConversationService(db)


def get_message_service(
    db: AsyncSession = Depends(get_db),
    delivery: DeliveryFanout = Depends(get_fanout),
    rate_limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter)
) -> MessageService:
    return MessageService(db, delivery, rate_limiter)


def detect_platform(user_agent: Optional[str]) -> str:
    return "mobile" if user_agent and "Mobile" in user_agent else "web"

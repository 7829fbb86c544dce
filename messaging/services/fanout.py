"""Delivery fan-out: pushes state changes to participants after the write."""

import asyncio
import logging
from typing import Iterable, Set

logger = logging.getLogger(__name__)

MESSAGE_NEW = "message:new"
MESSAGE_READ = "message:read"
MESSAGE_REACTION = "message:reaction"
MESSAGE_DELETED = "message:deleted"


class DeliveryFanout:
    """Fire-and-forget publisher over a push channel.

    The channel only has to provide ``notify(user_id, event, data)``. Every
    publish runs in its own task so the caller's response never waits on
    sockets, and failures are logged rather than raised: by the time an
    event is published the durable state is already committed.
    """

    def __init__(self, channel):
        self.channel = channel
        self._pending: Set[asyncio.Task] = set()

    def publish(self, recipient_ids: Iterable[str], event: str, data: dict) -> asyncio.Task:
        recipients = list(dict.fromkeys(recipient_ids))
        task = asyncio.create_task(self._deliver(recipients, event, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, recipient_ids, event: str, data: dict):
        delivered = 0
        for user_id in recipient_ids:
            try:
                if await self.channel.notify(user_id, event, data):
                    delivered += 1
            except Exception:
                logger.exception("Fan-out of %s to user %s failed", event, user_id)
        logger.debug("%s delivered in real time to %d/%d users", event, delivered, len(recipient_ids))
        return delivered

    async def wait_idle(self):
        """Wait for in-flight publishes, used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # Event helpers

    def message_created(self, recipient_ids, message_payload: dict):
        return self.publish(recipient_ids, MESSAGE_NEW, message_payload)

    def messages_read(self, recipient_ids, conversation_id: str, message_ids, reader: dict, read_at: str):
        return self.publish(recipient_ids, MESSAGE_READ, {
            "conversation_id": conversation_id,
            "message_ids": list(message_ids),
            "read_by": reader,
            "read_at": read_at,
        })

    def reaction_changed(self, recipient_ids, conversation_id: str, message_id: str, user_id: str, emoji, action: str):
        return self.publish(recipient_ids, MESSAGE_REACTION, {
            "conversation_id": conversation_id,
            "message_id": message_id,
            "user_id": user_id,
            "emoji": emoji,
            "action": action,
        })

    def message_deleted(self, recipient_ids, conversation_id: str, message_id: str, deleted_by: str, for_everyone: bool):
        return self.publish(recipient_ids, MESSAGE_DELETED, {
            "conversation_id": conversation_id,
            "message_id": message_id,
            "deleted_by": deleted_by,
            "delete_for_everyone": for_everyone,
        })

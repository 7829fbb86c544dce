from datetime import datetime
from typing import Optional, List, Dict

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, and_, or_, desc, func
from sqlalchemy.orm import selectinload

from messaging.database import dialect_insert
from messaging.models.base import utcnow
from messaging.models.message import Message, MessageType, MessageStatus
from messaging.models.message_delivery import MessageDelivery
from messaging.models.message_read_receipt import MessageReadReceipt
from messaging.models.message_reaction import MessageReaction
from messaging.models.message_deletion import MessageDeletion


def _with_details():
    return (
        selectinload(Message.sender),
        selectinload(Message.deliveries),
        selectinload(Message.read_receipts),
        selectinload(Message.reactions),
        selectinload(Message.deletions),
        selectinload(Message.reply_to).selectinload(Message.sender),
    )


def _unread_by(user_id: str):
    """Messages from someone else that the user has no receipt for."""
    return and_(
        Message.sender_id != user_id,
        ~Message.read_receipts.any(MessageReadReceipt.user_id == user_id),
    )


def _visible_to(user_id: str):
    return ~Message.deletions.any(MessageDeletion.user_id == user_id)


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class MessageRepository:
    """Message storage. Per-user annotations are written with ON CONFLICT so
    concurrent writers never duplicate or lose a row. Methods flush, callers commit."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        attachments: Optional[List[dict]] = None,
        reply_to_id: Optional[str] = None,
        client_id: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            type=message_type,
            content=content,
            attachments=attachments or [],
            reply_to_id=reply_to_id,
            status=MessageStatus.SENT,
            client_id=client_id,
            platform=platform,
        )
        self.db.add(message)
        await self.db.flush()
        return message

    async def get_by_id(self, message_id: str) -> Optional[Message]:
        result = await self.db.execute(
            select(Message)
            .options(*_with_details())
            .where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_many(self, message_ids: List[str]) -> List[Message]:
        if not message_ids:
            return []
        result = await self.db.execute(
            select(Message)
            .where(Message.id.in_(message_ids))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_by_client_id(self, sender_id: str, client_id: str) -> Optional[Message]:
        """Lookup by idempotency token to short-circuit retried sends."""
        result = await self.db.execute(
            select(Message)
            .options(*_with_details())
            .where(and_(Message.sender_id == sender_id, Message.client_id == client_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_history(
        self,
        conversation_id: str,
        viewer_id: str,
        before: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
        before_id: Optional[str] = None
    ) -> List[Message]:
        """Newest-first page of the conversation as seen by viewer_id.

        The cursor is (before, before_id) so messages sharing the boundary
        timestamp are not skipped.
        """
        conditions = [Message.conversation_id == conversation_id, _visible_to(viewer_id)]
        if before is not None:
            if before_id:
                conditions.append(or_(
                    Message.created_at < before,
                    and_(Message.created_at == before, Message.id < before_id),
                ))
            else:
                conditions.append(Message.created_at < before)

        result = await self.db.execute(
            select(Message)
            .options(*_with_details())
            .where(and_(*conditions))
            .order_by(desc(Message.created_at), desc(Message.id))
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def add_deliveries(self, message_id: str, user_ids: List[str]) -> None:
        if not user_ids:
            return
        now = utcnow()
        await self.db.execute(
            dialect_insert(self.db, MessageDelivery)
            .values([{"message_id": message_id, "user_id": user_id, "delivered_at": now} for user_id in user_ids])
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )

    async def add_read_receipt(self, message_id: str, user_id: str) -> bool:
        """Add user to readBy. Returns False when the receipt already existed."""
        result = await self.db.execute(
            dialect_insert(self.db, MessageReadReceipt)
            .values(message_id=message_id, user_id=user_id, read_at=utcnow())
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        return result.rowcount == 1

    async def add_read_receipts(self, message_ids: List[str], user_id: str) -> None:
        if not message_ids:
            return
        now = utcnow()
        await self.db.execute(
            dialect_insert(self.db, MessageReadReceipt)
            .values([{"message_id": message_id, "user_id": user_id, "read_at": now} for message_id in message_ids])
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )

    async def get_read_receipts(self, message_id: str) -> List[MessageReadReceipt]:
        result = await self.db.execute(
            select(MessageReadReceipt)
            .options(selectinload(MessageReadReceipt.user))
            .where(MessageReadReceipt.message_id == message_id)
            .order_by(MessageReadReceipt.read_at)
        )
        return list(result.scalars().all())

    async def get_unread_messages(self, conversation_id: str, user_id: str) -> List[Message]:
        result = await self.db.execute(
            select(Message)
            .where(and_(Message.conversation_id == conversation_id, _unread_by(user_id)))
            .order_by(Message.created_at, Message.id)
        )
        return list(result.scalars().all())

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Message.id)).where(
                and_(Message.conversation_id == conversation_id, _unread_by(user_id))
            )
        )
        return result.scalar() or 0

    async def count_unread_by_conversation(self, user_id: str, conversation_ids: List[str]) -> Dict[str, int]:
        if not conversation_ids:
            return {}
        result = await self.db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(and_(Message.conversation_id.in_(conversation_ids), _unread_by(user_id)))
            .group_by(Message.conversation_id)
        )
        counts = {conversation_id: 0 for conversation_id in conversation_ids}
        counts.update({conversation_id: count for conversation_id, count in result.all()})
        return counts

    async def set_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        now = utcnow()
        stmt = dialect_insert(self.db, MessageReaction).values(
            message_id=message_id, user_id=user_id, emoji=emoji, reacted_at=now
        )
        await self.db.execute(
            stmt.on_conflict_do_update(
                index_elements=["message_id", "user_id"],
                set_={"emoji": emoji, "reacted_at": now},
            )
        )

    async def remove_reaction(self, message_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            delete(MessageReaction).where(
                and_(MessageReaction.message_id == message_id, MessageReaction.user_id == user_id)
            )
        )
        return result.rowcount > 0

    async def mark_deleted(self, message_id: str) -> bool:
        """Tombstone the message for everyone. False if it already was."""
        now = utcnow()
        result = await self.db.execute(
            update(Message)
            .where(and_(Message.id == message_id, Message.is_deleted.is_(False)))
            .values(is_deleted=True, deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def hide_for_user(self, message_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            dialect_insert(self.db, MessageDeletion)
            .values(message_id=message_id, user_id=user_id, deleted_at=utcnow())
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        return result.rowcount == 1

    async def search(
        self,
        conversation_ids: List[str],
        viewer_id: str,
        term: str,
        limit: int = 20,
        offset: int = 0
    ) -> List[Message]:
        if not conversation_ids:
            return []
        result = await self.db.execute(
            select(Message)
            .options(*_with_details())
            .where(
                and_(
                    Message.conversation_id.in_(conversation_ids),
                    Message.is_deleted.is_(False),
                    _visible_to(viewer_id),
                    Message.content.ilike(_like_pattern(term), escape="\\"),
                )
            )
            .order_by(desc(Message.created_at), desc(Message.id))
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

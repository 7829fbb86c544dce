"""Message store and status machine.

Every write commits before anything is published, and publishing goes
through DeliveryFanout which never raises into the caller.
"""

import logging
from datetime import datetime, timedelta
from typing import List, NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from messaging.config import settings
from messaging.exceptions import (
    DeleteWindowExpired,
    InvalidArgument,
    NotFound,
    TransientStoreError,
    Unauthorized,
)
from messaging.models.base import as_naive_utc, utcnow
from messaging.models.conversation import Conversation
from messaging.models.message import Message
from messaging.models.user import User
from messaging.repositories.conversation_repository import ConversationRepository
from messaging.repositories.message_repository import MessageRepository
from messaging.schemas.message import (
    MessageCreate,
    MessageListResponse,
    MessageResponse,
    MessageSearchResponse,
    ReadReceiptResponse,
    SenderInfo,
)
from messaging.services.base import ensure_id, write_transaction
from messaging.services.conversations import ConversationService
from messaging.services.fanout import DeliveryFanout

logger = logging.getLogger(__name__)


class SendResult(NamedTuple):
    message: MessageResponse
    # True when the client_id matched an earlier send and nothing was written
    duplicate: bool


def _present(message: Message, conversation: Conversation) -> MessageResponse:
    return MessageResponse.from_message(message, conversation.recipient_ids(message.sender_id))


def _user_info(user: User) -> dict:
    return SenderInfo.model_validate(user).model_dump(mode="json")


class MessageService:
    def __init__(self, db: AsyncSession, fanout: DeliveryFanout, rate_limiter=None):
        self.db = db
        self.fanout = fanout
        self.rate_limiter = rate_limiter
        self.directory = ConversationService(db)
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)

    async def _get_message(self, message_id: str, viewer_id: str) -> Message:
        ensure_id(message_id, "message")
        message = await self.messages.get_by_id(message_id)
        if not message or message.is_hidden_for(viewer_id):
            raise NotFound("Message not found")
        return message

    async def _present_duplicate(self, existing: Message, conversation: Optional[Conversation] = None) -> MessageResponse:
        # A retried client_id may belong to a message in another conversation
        if conversation is None or conversation.id != existing.conversation_id:
            conversation = await self.conversations.get_by_id(existing.conversation_id)
        return _present(existing, conversation)

    async def send(self, sender: User, data: MessageCreate, platform: Optional[str] = None) -> SendResult:
        sender_id = sender.id
        if self.rate_limiter is not None:
            await self.rate_limiter.check(sender_id)

        ensure_id(data.conversation_id, "conversation")
        content = (data.content or "").strip()
        attachments = [attachment.model_dump(exclude_none=True) for attachment in data.attachments]
        if not content and not attachments:
            raise InvalidArgument("Message content or attachments are required")
        if len(content) > settings.MAX_MESSAGE_LENGTH:
            raise InvalidArgument(f"Message content exceeds {settings.MAX_MESSAGE_LENGTH} characters")

        conversation = await self.directory.get_for_participant(data.conversation_id, sender_id)

        if data.client_id:
            existing = await self.messages.get_by_client_id(sender_id, data.client_id)
            if existing:
                logger.info("Suppressed duplicate send %s from user %s", data.client_id, sender_id)
                return SendResult(await self._present_duplicate(existing, conversation), True)

        if data.reply_to:
            ensure_id(data.reply_to, "reply-to message")
            target = await self.messages.get_by_id(data.reply_to)
            if not target or target.conversation_id != conversation.id:
                raise InvalidArgument("Invalid reply-to message")

        conversation_id = conversation.id
        recipient_ids = conversation.recipient_ids(sender_id)
        try:
            async with write_transaction(self.db):
                message = await self.messages.create(
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    content=content,
                    message_type=data.type,
                    attachments=attachments,
                    reply_to_id=data.reply_to,
                    client_id=data.client_id,
                    platform=platform,
                )
                # Accepted by the server counts as delivered to every active recipient
                await self.messages.add_deliveries(message.id, recipient_ids)
                await self.conversations.record_message(conversation_id, message.id, message.created_at)
        except IntegrityError as exc:
            # Lost a race against a retry carrying the same client_id.
            # The rollback expired every loaded object, so reload.
            if data.client_id:
                existing = await self.messages.get_by_client_id(sender_id, data.client_id)
                if existing:
                    return SendResult(await self._present_duplicate(existing), True)
            logger.error("Message insert violated a constraint: %s", exc)
            raise TransientStoreError() from exc

        message = await self.messages.get_by_id(message.id)
        response = _present(message, conversation)
        self.fanout.message_created(recipient_ids, response.model_dump(mode="json"))
        return SendResult(response, False)

    async def history(
        self,
        conversation_id: str,
        viewer: User,
        before: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
        mark_read: bool = True,
        before_id: Optional[str] = None
    ) -> MessageListResponse:
        conversation = await self.directory.get_for_participant(conversation_id, viewer.id)
        if before is not None:
            before = as_naive_utc(before)
        offset = 0 if before is not None else (page - 1) * limit

        rows = await self.messages.get_history(conversation.id, viewer.id, before, limit + 1, offset, before_id)
        has_more = len(rows) > limit
        rows = rows[:limit]

        if mark_read:
            unread_ids = [m.id for m in rows if m.sender_id != viewer.id and not m.is_read_by(viewer.id)]
            if unread_ids:
                await self._record_reads(conversation, viewer, unread_ids)
                rows = (await self.messages.get_history(conversation.id, viewer.id, before, limit, offset, before_id))[:limit]

        rows.reverse()
        return MessageListResponse(
            messages=[_present(m, conversation) for m in rows],
            has_more=has_more,
            next_cursor=rows[0].created_at if rows else None,
            next_cursor_id=rows[0].id if rows else None,
        )

    async def _record_reads(self, conversation: Conversation, reader: User, message_ids: List[str]):
        async with write_transaction(self.db):
            await self.messages.add_read_receipts(message_ids, reader.id)
            await self.conversations.update_last_read(conversation.id, reader.id)

        self.fanout.messages_read(
            conversation.recipient_ids(reader.id),
            conversation.id,
            message_ids,
            _user_info(reader),
            utcnow().isoformat(),
        )

    async def mark_as_read(self, message_id: str, reader: User) -> bool:
        """Add a read receipt. False when nothing changed."""
        message = await self._get_message(message_id, reader.id)
        conversation = await self.directory.get_for_participant(message.conversation_id, reader.id)

        # Bulk sweeps do not filter out the reader's own messages
        if message.sender_id == reader.id:
            return False

        async with write_transaction(self.db):
            added = await self.messages.add_read_receipt(message.id, reader.id)
            if added:
                await self.conversations.update_last_read(conversation.id, reader.id)

        if added:
            self.fanout.messages_read(
                conversation.recipient_ids(reader.id),
                conversation.id,
                [message.id],
                _user_info(reader),
                utcnow().isoformat(),
            )
        return added

    async def mark_conversation_read(self, conversation_id: str, reader: User) -> List[str]:
        conversation = await self.directory.get_for_participant(conversation_id, reader.id)
        unread = await self.messages.get_unread_messages(conversation.id, reader.id)
        message_ids = [m.id for m in unread]

        if message_ids:
            await self._record_reads(conversation, reader, message_ids)
        else:
            async with write_transaction(self.db):
                await self.conversations.update_last_read(conversation.id, reader.id)
        return message_ids

    async def read_receipts(self, message_id: str, user: User) -> List[ReadReceiptResponse]:
        message = await self._get_message(message_id, user.id)
        await self.directory.get_for_participant(message.conversation_id, user.id)
        receipts = await self.messages.get_read_receipts(message.id)
        return [
            ReadReceiptResponse(user_id=r.user_id, name=r.user.name, read_at=r.read_at)
            for r in receipts
        ]

    async def add_reaction(self, message_id: str, user: User, emoji: str) -> MessageResponse:
        emoji = (emoji or "").strip()
        if not emoji:
            raise InvalidArgument("Valid emoji is required")

        message = await self._get_message(message_id, user.id)
        if message.is_deleted:
            raise InvalidArgument("Cannot react to a deleted message")
        conversation = await self.directory.get_for_participant(message.conversation_id, user.id)

        async with write_transaction(self.db):
            await self.messages.set_reaction(message.id, user.id, emoji)

        self.fanout.reaction_changed(
            conversation.recipient_ids(user.id), conversation.id, message.id, user.id, emoji, "add"
        )
        return _present(await self.messages.get_by_id(message.id), conversation)

    async def remove_reaction(self, message_id: str, user: User) -> bool:
        message = await self._get_message(message_id, user.id)
        conversation = await self.directory.get_for_participant(message.conversation_id, user.id)

        async with write_transaction(self.db):
            removed = await self.messages.remove_reaction(message.id, user.id)

        if removed:
            self.fanout.reaction_changed(
                conversation.recipient_ids(user.id), conversation.id, message.id, user.id, None, "remove"
            )
        return removed

    async def delete(self, message_id: str, user: User, for_everyone: bool = False) -> bool:
        message = await self._get_message(message_id, user.id)
        conversation = await self.directory.get_for_participant(message.conversation_id, user.id)

        if not for_everyone:
            async with write_transaction(self.db):
                hidden = await self.messages.hide_for_user(message.id, user.id)
            if hidden:
                # Only the actor's other sessions need to hide it
                self.fanout.message_deleted([user.id], conversation.id, message.id, user.id, False)
            return hidden

        if message.sender_id != user.id:
            raise Unauthorized("You can only delete your own messages for everyone")
        # Inclusive boundary: a message exactly one window old can still go
        window = timedelta(seconds=settings.DELETE_FOR_EVERYONE_WINDOW_SECONDS)
        if utcnow() - message.created_at > window:
            raise DeleteWindowExpired()

        async with write_transaction(self.db):
            deleted = await self.messages.mark_deleted(message.id)
            if deleted:
                await self.conversations.refresh_last_message(conversation.id)

        if deleted:
            logger.info("Message %s deleted for everyone by %s", message.id, user.id)
            self.fanout.message_deleted(
                conversation.recipient_ids(user.id), conversation.id, message.id, user.id, True
            )
        return deleted

    async def search(
        self,
        user: User,
        term: str,
        conversation_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> MessageSearchResponse:
        term = (term or "").strip()
        if len(term) < settings.SEARCH_MIN_LENGTH:
            raise InvalidArgument(f"Search term must be at least {settings.SEARCH_MIN_LENGTH} characters long")

        if conversation_id:
            conversations = [await self.directory.get_for_participant(conversation_id, user.id)]
        else:
            ids = await self.conversations.get_active_conversation_ids(user.id)
            conversations = [await self.conversations.get_by_id(cid) for cid in ids]
        by_id = {c.id: c for c in conversations if c is not None}

        rows = await self.messages.search(list(by_id), user.id, term, limit + 1, (page - 1) * limit)
        has_more = len(rows) > limit
        return MessageSearchResponse(
            messages=[_present(m, by_id[m.conversation_id]) for m in rows[:limit]],
            query=term,
            page=page,
            limit=limit,
            has_more=has_more,
        )

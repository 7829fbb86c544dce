"""Conversation Directory: membership, archive state and conversation lists."""

import logging
from typing import List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from messaging.exceptions import InvalidArgument, InvalidParticipant, NotFound, Unauthorized
from messaging.models.conversation import Conversation
from messaging.repositories.conversation_repository import ConversationRepository
from messaging.repositories.message_repository import MessageRepository
from messaging.repositories.user_repository import UserRepository
from messaging.schemas.conversation import ConversationSummary, CreateGroupConversation
from messaging.services.base import ensure_id, write_transaction

logger = logging.getLogger(__name__)


class ConversationService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)
        self.users = UserRepository(db)

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        """Load a conversation the user is an active participant of."""
        ensure_id(conversation_id, "conversation")
        conversation = await self.conversations.get_by_id(conversation_id)
        if not conversation:
            raise NotFound("Conversation not found")
        if not conversation.can_user_send_message(user_id):
            raise Unauthorized()
        return conversation

    async def find_or_create_direct(self, user_id: str, other_user_id: str) -> Tuple[Conversation, bool]:
        ensure_id(other_user_id, "user")
        if user_id == other_user_id:
            raise InvalidParticipant()

        if not await self.users.get_by_id(other_user_id):
            raise NotFound("User not found")

        async with write_transaction(self.db):
            conversation, created = await self.conversations.find_or_create_direct(user_id, other_user_id)
            own = conversation.get_participant(user_id)
            if own is not None and not own.is_active:
                # Starting the chat again brings a user who left back in
                await self.conversations.reactivate_participant(conversation.id, user_id)

        if created:
            logger.info("Created direct conversation %s", conversation.id)
        return await self.conversations.get_by_id(conversation.id), created

    async def create_group(self, creator_id: str, data: CreateGroupConversation) -> Conversation:
        member_ids = list(dict.fromkeys(ensure_id(m, "user") for m in data.member_ids if m != creator_id))
        if len(member_ids) < 2:
            raise InvalidArgument("A group needs at least two other members")

        users = await self.users.get_many(member_ids)
        missing = set(member_ids) - {user.id for user in users}
        if missing:
            raise NotFound(f"User {sorted(missing)[0]} not found")

        async with write_transaction(self.db):
            conversation = await self.conversations.create_group(creator_id, data.name, member_ids)

        logger.info("Created group conversation %s with %d members", conversation.id, len(member_ids) + 1)
        return await self.conversations.get_by_id(conversation.id)

    async def summarize(self, conversation: Conversation, user_id: str) -> ConversationSummary:
        unread = await self.messages.count_unread(conversation.id, user_id)
        last_message = None
        if conversation.last_message_id:
            found = await self.messages.get_many([conversation.last_message_id])
            last_message = found[0] if found else None
        return ConversationSummary.from_conversation(conversation, user_id, unread, last_message)

    async def get_summary(self, conversation_id: str, user_id: str) -> ConversationSummary:
        conversation = await self.get_for_participant(conversation_id, user_id)
        return await self.summarize(conversation, user_id)

    async def list_conversations(
        self,
        user_id: str,
        include_archived: bool = False,
        page: int = 1,
        limit: int = 20
    ) -> List[ConversationSummary]:
        conversations = await self.conversations.get_user_conversations(
            user_id, include_archived=include_archived, limit=limit, offset=(page - 1) * limit
        )
        conversation_ids = [c.id for c in conversations]
        unread = await self.messages.count_unread_by_conversation(user_id, conversation_ids)
        last_messages = {
            m.id: m for m in await self.messages.get_many([c.last_message_id for c in conversations if c.last_message_id])
        }

        return [
            ConversationSummary.from_conversation(
                conversation,
                user_id,
                unread.get(conversation.id, 0),
                last_messages.get(conversation.last_message_id),
            )
            for conversation in conversations
        ]

    async def set_archive_status(self, conversation_id: str, user_id: str, archived: bool) -> None:
        conversation = await self.get_for_participant(conversation_id, user_id)
        async with write_transaction(self.db):
            await self.conversations.set_archive_status(conversation.id, user_id, archived)

    async def update_last_read(self, conversation_id: str, user_id: str) -> None:
        conversation = await self.get_for_participant(conversation_id, user_id)
        async with write_transaction(self.db):
            await self.conversations.update_last_read(conversation.id, user_id)

    async def leave(self, conversation_id: str, user_id: str) -> None:
        conversation = await self.get_for_participant(conversation_id, user_id)
        async with write_transaction(self.db):
            await self.conversations.deactivate_participant(conversation.id, user_id)
        logger.info("User %s left conversation %s", user_id, conversation.id)

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        conversation = await self.get_for_participant(conversation_id, user_id)
        return await self.messages.count_unread(conversation.id, user_id)

    async def contact_ids(self, user_id: str) -> List[str]:
        return await self.conversations.get_contact_ids(user_id)

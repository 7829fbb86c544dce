from datetime import datetime
from typing import Optional, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, desc, case
from sqlalchemy.orm import selectinload

from messaging.database import dialect_insert
from messaging.models.base import utcnow, new_id
from messaging.models.conversation import Conversation, ConversationType, direct_key
from messaging.models.conversation_participant import ConversationParticipant
from messaging.models.message import Message


def _with_participants():
    return selectinload(Conversation.participants).selectinload(ConversationParticipant.user)


class ConversationRepository:
    """Conversation Directory storage. Methods flush, callers commit."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, conversation_id: str) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation)
            .options(_with_participants())
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation)
            .options(_with_participants())
            .where(Conversation.direct_key == direct_key(user_a, user_b))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_or_create_direct(self, user_a: str, user_b: str):
        """Return (conversation, created) for the pair, creating it at most once.

        Two callers racing on the same pair both hit the unique direct_key;
        only the winning insert adds the participants.
        """
        existing = await self.get_direct(user_a, user_b)
        if existing:
            return existing, False

        now = utcnow()
        conversation_id = new_id()
        stmt = dialect_insert(self.db, Conversation).values(
            id=conversation_id,
            kind=ConversationType.DIRECT,
            direct_key=direct_key(user_a, user_b),
            message_count=0,
            last_activity_at=now,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["direct_key"])
        result = await self.db.execute(stmt)

        created = result.rowcount == 1
        if created:
            for user_id in (user_a, user_b):
                self.db.add(ConversationParticipant(
                    conversation_id=conversation_id,
                    user_id=user_id,
                    joined_at=now,
                ))
            await self.db.flush()

        return await self.get_direct(user_a, user_b), created

    async def create_group(self, creator_id: str, name: Optional[str], member_ids: List[str]) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            kind=ConversationType.GROUP,
            name=name,
            message_count=0,
            last_activity_at=now,
        )
        self.db.add(conversation)
        await self.db.flush()

        self.db.add(ConversationParticipant(conversation_id=conversation.id, user_id=creator_id, joined_at=now))
        for member_id in member_ids:
            if member_id != creator_id:
                self.db.add(ConversationParticipant(conversation_id=conversation.id, user_id=member_id, joined_at=now))
        await self.db.flush()

        return await self.get_by_id(conversation.id)

    async def get_user_conversations(
        self,
        user_id: str,
        include_archived: bool = False,
        limit: int = 20,
        offset: int = 0
    ) -> List[Conversation]:
        """Conversations where the user is active, most recent activity first."""
        conditions = [
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.is_active.is_(True),
        ]
        if not include_archived:
            conditions.append(ConversationParticipant.is_archived.is_(False))

        result = await self.db.execute(
            select(Conversation)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
            .options(_with_participants())
            .where(and_(*conditions))
            .order_by(desc(Conversation.last_activity_at), desc(Conversation.id))
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().unique().all())

    async def get_active_conversation_ids(self, user_id: str) -> List[str]:
        result = await self.db.execute(
            select(ConversationParticipant.conversation_id).where(
                and_(
                    ConversationParticipant.user_id == user_id,
                    ConversationParticipant.is_active.is_(True),
                )
            )
        )
        return list(result.scalars().all())

    async def get_contact_ids(self, user_id: str) -> List[str]:
        """Every active partner across the user's conversations."""
        conversation_ids = select(ConversationParticipant.conversation_id).where(
            and_(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.is_active.is_(True),
            )
        )
        result = await self.db.execute(
            select(ConversationParticipant.user_id).distinct().where(
                and_(
                    ConversationParticipant.conversation_id.in_(conversation_ids),
                    ConversationParticipant.user_id != user_id,
                    ConversationParticipant.is_active.is_(True),
                )
            )
        )
        return list(result.scalars().all())

    async def _update_participant(self, conversation_id: str, user_id: str, **values) -> bool:
        result = await self.db.execute(
            update(ConversationParticipant)
            .where(
                and_(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id,
                )
            )
            .values(**values)
        )
        return result.rowcount > 0

    async def set_archive_status(self, conversation_id: str, user_id: str, archived: bool) -> bool:
        return await self._update_participant(conversation_id, user_id, is_archived=archived)

    async def update_last_read(self, conversation_id: str, user_id: str) -> bool:
        return await self._update_participant(conversation_id, user_id, last_read_at=utcnow())

    async def deactivate_participant(self, conversation_id: str, user_id: str) -> bool:
        return await self._update_participant(conversation_id, user_id, is_active=False, left_at=utcnow())

    async def reactivate_participant(self, conversation_id: str, user_id: str) -> bool:
        return await self._update_participant(
            conversation_id, user_id, is_active=True, is_archived=False, left_at=None
        )

    async def record_message(self, conversation_id: str, message_id: str, created_at: datetime) -> None:
        """Count an accepted message and move the activity markers forward.

        The counter is incremented in SQL and the markers only move when the
        message is newer, so concurrent senders never overwrite each other.
        """
        is_newer = Conversation.last_activity_at <= created_at
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(
                message_count=Conversation.message_count + 1,
                last_activity_at=case((is_newer, created_at), else_=Conversation.last_activity_at),
                last_message_id=case((is_newer, message_id), else_=Conversation.last_message_id),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def refresh_last_message(self, conversation_id: str) -> Optional[str]:
        """Point last_message_id at the newest message that is not deleted."""
        latest = (
            select(Message.id)
            .where(and_(Message.conversation_id == conversation_id, Message.is_deleted.is_(False)))
            .order_by(desc(Message.created_at), desc(Message.id))
            .limit(1)
            .scalar_subquery()
        )
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_id=latest)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            select(Conversation.last_message_id).where(Conversation.id == conversation_id)
        )
        return result.scalar_one_or_none()

from enum import Enum as PyEnum

from sqlalchemy import Column, String, Enum, Integer, DateTime
from sqlalchemy.orm import relationship

from .base import BaseModel, utcnow


class ConversationType(PyEnum):
    DIRECT = "direct"
    GROUP = "group"


def direct_key(user_a: str, user_b: str) -> str:
    """Normalized key for an unordered pair of user ids."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


class Conversation(BaseModel):
    __tablename__ = "conversations"

    kind = Column(Enum(ConversationType), nullable=False, default=ConversationType.DIRECT)
    name = Column(String(100), nullable=True)  # groups only
    # One row per unordered pair of users, NULL for groups
    direct_key = Column(String(80), nullable=True, unique=True)
    last_message_id = Column(String(36), nullable=True)
    last_activity_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    message_count = Column(Integer, default=0, nullable=False)

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationParticipant.joined_at",
    )
    messages = relationship("Message", back_populates="conversation")

    @property
    def active_participants(self):
        return [p for p in self.participants if p.is_active]

    def get_participant(self, user_id: str):
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def can_user_send_message(self, user_id: str) -> bool:
        participant = self.get_participant(user_id)
        return participant is not None and participant.is_active

    def recipient_ids(self, actor_id: str) -> list:
        """Active participants other than the actor."""
        return [p.user_id for p in self.active_participants if p.user_id != actor_id]

    def get_other_participant(self, user_id: str):
        if self.kind != ConversationType.DIRECT:
            return None
        for participant in self.participants:
            if participant.user_id != user_id:
                return participant
        return None

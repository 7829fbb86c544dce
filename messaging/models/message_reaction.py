from sqlalchemy import Column, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    # One reaction per user per message, a new emoji replaces the old one
    message_id = Column(String(36), ForeignKey("messages.id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    emoji = Column(String(32), nullable=False)
    reacted_at = Column(DateTime, default=utcnow, nullable=False)

    message = relationship("Message", back_populates="reactions")

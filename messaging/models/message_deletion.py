from sqlalchemy import Column, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class MessageDeletion(Base):
    """A message hidden for one user only ("delete for me")."""

    __tablename__ = "message_deletions"

    message_id = Column(String(36), ForeignKey("messages.id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True, index=True)
    deleted_at = Column(DateTime, default=utcnow, nullable=False)

    message = relationship("Message", back_populates="deletions")

from sqlalchemy import Column, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class MessageReadReceipt(Base):
    __tablename__ = "message_read_receipts"

    # Composite key: a user reads a message at most once
    message_id = Column(String(36), ForeignKey("messages.id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True, index=True)
    read_at = Column(DateTime, default=utcnow, nullable=False)

    message = relationship("Message", back_populates="read_receipts")
    user = relationship("User")

from sqlalchemy import Column, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class MessageDelivery(Base):
    __tablename__ = "message_deliveries"

    message_id = Column(String(36), ForeignKey("messages.id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    delivered_at = Column(DateTime, default=utcnow, nullable=False)

    message = relationship("Message", back_populates="deliveries")

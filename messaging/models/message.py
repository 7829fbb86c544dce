from enum import Enum as PyEnum

from sqlalchemy import Column, String, ForeignKey, Text, DateTime, Boolean, Enum, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from .base import BaseModel


class MessageType(PyEnum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    LOCATION = "location"
    SYSTEM = "system"


class MessageStatus(PyEnum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Message(BaseModel):
    __tablename__ = "messages"

    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(Enum(MessageType), nullable=False, default=MessageType.TEXT)
    content = Column(Text, nullable=False, default="")
    attachments = Column(JSON, nullable=False, default=list)
    reply_to_id = Column(String(36), ForeignKey("messages.id"), nullable=True)
    # Written once at creation; responses derive the live value from receipts
    status = Column(Enum(MessageStatus), nullable=False, default=MessageStatus.SENT)
    client_id = Column(String(100), nullable=True)
    platform = Column(String(20), nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id])
    reply_to = relationship("Message", remote_side="Message.id", foreign_keys=[reply_to_id])
    deliveries = relationship("MessageDelivery", back_populates="message", cascade="all, delete-orphan")
    read_receipts = relationship("MessageReadReceipt", back_populates="message", cascade="all, delete-orphan")
    reactions = relationship("MessageReaction", back_populates="message", cascade="all, delete-orphan")
    deletions = relationship("MessageDeletion", back_populates="message", cascade="all, delete-orphan")

    __table_args__ = (
        # Idempotency token is unique per sender
        UniqueConstraint("sender_id", "client_id", name="unique_sender_client_id"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    def is_read_by(self, user_id: str) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_receipts)

    def is_delivered_to(self, user_id: str) -> bool:
        return any(delivery.user_id == user_id for delivery in self.deliveries)

    def is_hidden_for(self, user_id: str) -> bool:
        return any(deletion.user_id == user_id for deletion in self.deletions)

    def aggregate_status(self, recipient_ids) -> MessageStatus:
        """Sender-facing status derived from per-recipient receipts."""
        if self.status == MessageStatus.FAILED or not recipient_ids:
            return self.status
        if all(self.is_read_by(user_id) for user_id in recipient_ids):
            return MessageStatus.READ
        if all(self.is_delivered_to(user_id) for user_id in recipient_ids):
            return MessageStatus.DELIVERED
        return MessageStatus.SENT

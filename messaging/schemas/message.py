from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from messaging.models.message import Message, MessageType, MessageStatus


class Attachment(BaseModel):
    """Descriptor of an already-uploaded file, opaque to messaging."""

    url: str
    mime_type: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    filename: Optional[str] = None
    thumbnail: Optional[str] = None


class MessageCreate(BaseModel):
    conversation_id: str
    content: Optional[str] = ""
    type: MessageType = MessageType.TEXT
    attachments: List[Attachment] = []
    reply_to: Optional[str] = None
    client_id: Optional[str] = Field(None, max_length=100)


class ReactionCreate(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)


class DeleteMessageRequest(BaseModel):
    delete_for_everyone: bool = False


class SenderInfo(BaseModel):
    id: str
    name: str
    avatar_url: Optional[str] = None
    is_verified: bool = False

    class Config:
        from_attributes = True


class Receipt(BaseModel):
    user_id: str
    at: datetime


class ReactionResponse(BaseModel):
    user_id: str
    emoji: str
    reacted_at: datetime


class ReplyPreview(BaseModel):
    id: str
    sender: Optional[SenderInfo] = None
    type: MessageType
    content: Optional[str] = None
    is_deleted: bool


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender: SenderInfo
    type: MessageType
    content: Optional[str] = None
    attachments: List[Attachment] = []
    reply_to: Optional[ReplyPreview] = None
    status: MessageStatus
    delivered_to: List[Receipt] = []
    read_by: List[Receipt] = []
    reactions: List[ReactionResponse] = []
    is_deleted: bool = False
    client_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_message(cls, message: Message, recipient_ids: List[str]) -> "MessageResponse":
        """Build the wire shape; tombstones never carry content."""
        reply = None
        if message.reply_to is not None:
            target = message.reply_to
            reply = ReplyPreview(
                id=target.id,
                sender=SenderInfo.model_validate(target.sender) if target.sender else None,
                type=target.type,
                content=None if target.is_deleted else target.content,
                is_deleted=target.is_deleted,
            )

        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender=SenderInfo.model_validate(message.sender),
            type=message.type,
            content=None if message.is_deleted else message.content,
            attachments=[] if message.is_deleted else message.attachments,
            reply_to=reply,
            status=message.aggregate_status(recipient_ids),
            delivered_to=[Receipt(user_id=d.user_id, at=d.delivered_at) for d in message.deliveries],
            read_by=[Receipt(user_id=r.user_id, at=r.read_at) for r in message.read_receipts],
            reactions=[
                ReactionResponse(user_id=r.user_id, emoji=r.emoji, reacted_at=r.reacted_at)
                for r in message.reactions
            ],
            is_deleted=message.is_deleted,
            client_id=message.client_id,
            created_at=message.created_at,
        )


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]
    has_more: bool
    next_cursor: Optional[datetime] = None
    next_cursor_id: Optional[str] = None


class MessageSearchResponse(BaseModel):
    messages: List[MessageResponse]
    query: str
    page: int
    limit: int
    has_more: bool


class ReadReceiptResponse(BaseModel):
    user_id: str
    name: str
    read_at: datetime


class SendMessageWebSocket(MessageCreate):
    pass


class MarkMessageRead(BaseModel):
    message_id: str


class MarkConversationRead(BaseModel):
    conversation_id: str


class TypingIndicator(BaseModel):
    conversation_id: str

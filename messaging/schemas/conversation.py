from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from messaging.models.conversation import Conversation, ConversationType
from messaging.models.message import Message, MessageType


class CreateGroupConversation(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    member_ids: List[str]


class ArchiveRequest(BaseModel):
    archived: bool = True


class ParticipantResponse(BaseModel):
    user_id: str
    name: str
    avatar_url: Optional[str] = None
    is_verified: bool = False
    is_active: bool
    is_archived: bool
    joined_at: datetime
    last_read_at: Optional[datetime] = None

    @classmethod
    def from_participant(cls, participant) -> "ParticipantResponse":
        return cls(
            user_id=participant.user_id,
            name=participant.user.name,
            avatar_url=participant.user.avatar_url,
            is_verified=participant.user.is_verified,
            is_active=participant.is_active,
            is_archived=participant.is_archived,
            joined_at=participant.joined_at,
            last_read_at=participant.last_read_at,
        )


class LastMessagePreview(BaseModel):
    id: str
    sender_id: str
    type: MessageType
    content: str
    created_at: datetime


class ConversationSummary(BaseModel):
    id: str
    kind: ConversationType
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool = False
    participants: List[ParticipantResponse]
    other_participant: Optional[ParticipantResponse] = None
    last_message: Optional[LastMessagePreview] = None
    last_activity_at: datetime
    message_count: int
    unread_count: int
    is_archived: bool = False

    @classmethod
    def from_conversation(
        cls,
        conversation: Conversation,
        viewer_id: str,
        unread_count: int,
        last_message: Optional[Message] = None
    ) -> "ConversationSummary":
        other = conversation.get_other_participant(viewer_id)
        other_response = ParticipantResponse.from_participant(other) if other else None
        own = conversation.get_participant(viewer_id)

        preview = None
        if last_message is not None and not last_message.is_deleted:
            preview = LastMessagePreview(
                id=last_message.id,
                sender_id=last_message.sender_id,
                type=last_message.type,
                content=last_message.content,
                created_at=last_message.created_at,
            )

        return cls(
            id=conversation.id,
            kind=conversation.kind,
            name=conversation.name or (other_response.name if other_response else None),
            avatar_url=other_response.avatar_url if other_response else None,
            is_verified=other_response.is_verified if other_response else False,
            participants=[ParticipantResponse.from_participant(p) for p in conversation.participants],
            other_participant=other_response,
            last_message=preview,
            last_activity_at=conversation.last_activity_at,
            message_count=conversation.message_count,
            unread_count=unread_count,
            is_archived=own.is_archived if own else False,
        )


class UnreadCountResponse(BaseModel):
    conversation_id: str
    unread_count: int

from typing import List
from fastapi import APIRouter, Depends, Query, Response, status

from messaging.auth import get_current_active_user
from messaging.dependencies import get_conversation_service, get_message_service
from messaging.models.user import User
from messaging.schemas.conversation import (
    ArchiveRequest,
    ConversationSummary,
    CreateGroupConversation,
    UnreadCountResponse,
)
from messaging.services.conversations import ConversationService
from messaging.services.messages import MessageService

router = APIRouter()


@router.get("/", response_model=List[ConversationSummary])
async def get_user_conversations(
    include_archived: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: ConversationService = Depends(get_conversation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Conversations of the current user, most recent activity first"""
    return await service.list_conversations(current_user.id, include_archived, page, limit)


@router.post("/direct/{other_user_id}", response_model=ConversationSummary)
async def create_or_get_direct_conversation(
    other_user_id: str,
    response: Response,
    service: ConversationService = Depends(get_conversation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Find the direct conversation with another user, creating it on first contact"""
    conversation, created = await service.find_or_create_direct(current_user.id, other_user_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return await service.summarize(conversation, current_user.id)


@router.post("/group", response_model=ConversationSummary, status_code=status.HTTP_201_CREATED)
async def create_group_conversation(
    data: CreateGroupConversation,
    service: ConversationService = Depends(get_conversation_service),
    current_user: User = Depends(get_current_active_user)
):
    conversation = await service.create_group(current_user.id, data)
    return await service.summarize(conversation, current_user.id)


@router.get("/{conversation_id}", response_model=ConversationSummary)
async def get_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
    current_user: User = Depends(get_current_active_user)
):
    return await service.get_summary(conversation_id, current_user.id)


@router.post("/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: str,
    data: ArchiveRequest,
    service: ConversationService = Depends(get_conversation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Archive or unarchive for the current user only"""
    await service.set_archive_status(conversation_id, current_user.id, data.archived)
    return {
        "success": True,
        "message": f"Conversation {'archived' if data.archived else 'unarchived'} successfully",
    }


@router.post("/{conversation_id}/leave")
async def leave_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
    current_user: User = Depends(get_current_active_user)
):
    await service.leave(conversation_id, current_user.id)
    return {"success": True, "message": "Left conversation"}


@router.post("/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    """Mark every unread message in the conversation as read"""
    message_ids = await service.mark_conversation_read(conversation_id, current_user)
    unread_count = await service.directory.unread_count(conversation_id, current_user.id)
    return {"conversation_id": conversation_id, "message_ids": message_ids, "unread_count": unread_count}


@router.get("/{conversation_id}/unread", response_model=UnreadCountResponse)
async def get_unread_count(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
    current_user: User = Depends(get_current_active_user)
):
    unread_count = await service.unread_count(conversation_id, current_user.id)
    return UnreadCountResponse(conversation_id=conversation_id, unread_count=unread_count)

from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, Query, Response, status

from messaging.auth import get_current_active_user
from messaging.dependencies import detect_platform, get_message_service
from messaging.models.user import User
from messaging.schemas.message import (
    DeleteMessageRequest,
    MessageCreate,
    MessageListResponse,
    MessageResponse,
    MessageSearchResponse,
    ReactionCreate,
    ReadReceiptResponse,
)
from messaging.services.messages import MessageService

router = APIRouter()


@router.post("/", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    message_data: MessageCreate,
    response: Response,
    user_agent: Optional[str] = Header(None),
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    """Send a message. A repeated client_id returns the original with 200."""
    result = await service.send(current_user, message_data, platform=detect_platform(user_agent))
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return result.message


@router.get("/", response_model=MessageListResponse)
async def get_conversation_history(
    conversation_id: str,
    before: Optional[datetime] = None,
    before_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    mark_read: bool = Query(True),
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    """Message history in chronological order; viewing marks unread messages as read.

    Page backwards by passing next_cursor and next_cursor_id as before and before_id.
    """
    return await service.history(conversation_id, current_user, before, page, limit, mark_read, before_id)


@router.get("/search", response_model=MessageSearchResponse)
async def search_messages(
    q: str = Query(...),
    conversation_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    return await service.search(current_user, q, conversation_id, page, limit)


@router.post("/{message_id}/read")
async def mark_message_read(
    message_id: str,
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    success = await service.mark_as_read(message_id, current_user)
    if success:
        return {"success": True, "message": "Message marked as read"}
    return {"success": True, "message": "Message was already read"}


@router.get("/{message_id}/read-receipts", response_model=List[ReadReceiptResponse])
async def get_message_read_receipts(
    message_id: str,
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    """Users who have read the message"""
    return await service.read_receipts(message_id, current_user)


@router.post("/{message_id}/reactions", response_model=MessageResponse)
async def add_reaction(
    message_id: str,
    data: ReactionCreate,
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    """Set the current user's reaction, replacing any previous one"""
    return await service.add_reaction(message_id, current_user, data.emoji)


@router.delete("/{message_id}/reactions")
async def remove_reaction(
    message_id: str,
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    removed = await service.remove_reaction(message_id, current_user)
    return {"success": True, "removed": removed}


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    data: Optional[DeleteMessageRequest] = None,
    service: MessageService = Depends(get_message_service),
    current_user: User = Depends(get_current_active_user)
):
    for_everyone = data.delete_for_everyone if data else False
    await service.delete(message_id, current_user, for_everyone=for_everyone)
    return {
        "success": True,
        "message": "Message deleted for everyone" if for_everyone else "Message deleted for you",
    }

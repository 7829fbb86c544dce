import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from messaging.auth import get_user_from_token
from messaging.database import get_db, get_redis
from messaging.dependencies import detect_platform, get_fanout
from messaging.exceptions import InvalidArgument, MessagingError
from messaging.models.user import User
from messaging.rate_limit import SlidingWindowRateLimiter
from messaging.schemas.message import (
    MarkConversationRead,
    MarkMessageRead,
    SendMessageWebSocket,
    TypingIndicator,
)
from messaging.services.conversations import ConversationService
from messaging.services.messages import MessageService
from messaging.websocket_manager import ConnectionManager, manager

logger = logging.getLogger(__name__)

router = APIRouter()


def _session_provider(websocket: WebSocket):
    # Websocket handlers open their own sessions, so honour overrides here too
    return websocket.app.dependency_overrides.get(get_db, get_db)


@router.websocket("/chat")
async def websocket_chat(websocket: WebSocket, token: Optional[str] = None):
    if not token:
        await websocket.close(code=1008, reason="Token required")
        return

    session_provider = _session_provider(websocket)

    async for db in session_provider():
        try:
            user = await get_user_from_token(token, db)
        except HTTPException:
            await websocket.close(code=1008, reason="Invalid token")
            return
        contact_ids = await ConversationService(db).contact_ids(user.id)
        break

    user_id = user.id
    if await manager.connect(websocket, user_id):
        await manager.broadcast_user_status(user_id, "online", contact_ids)

    platform = detect_platform(websocket.headers.get("user-agent"))
    rate_limiter = SlidingWindowRateLimiter(await get_redis())

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message_data = json.loads(data)
                action = message_data.get("action")
                payload = message_data.get("data") or {}

                async for db in session_provider():
                    service = MessageService(db, get_fanout(), rate_limiter)
                    await handle_websocket_message(action, payload, user, service, platform=platform)
                    break

            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({
                    "type": "error",
                    "data": {"code": "INVALID_ARGUMENT", "message": "Invalid JSON format"}
                }))
            except Exception:
                logger.exception("Failed to process websocket frame from user %s", user_id)
                await websocket.send_text(json.dumps({
                    "type": "error",
                    "data": {"code": "INTERNAL_ERROR", "message": "Error processing message"}
                }))

    except WebSocketDisconnect:
        pass
    finally:
        if await manager.disconnect(websocket, user_id):
            await manager.broadcast_user_status(user_id, "offline", contact_ids)


async def handle_websocket_message(
    action: str,
    payload: dict,
    user: User,
    service: MessageService,
    connections: ConnectionManager = None,
    platform: Optional[str] = None
):
    connections = connections or manager

    if action == "message:send":
        await handle_send_message(payload, user, service, connections, platform)

    elif action == "message:read":
        await handle_mark_read(payload, user, service, connections)

    elif action == "conversation:read":
        await handle_conversation_read(payload, user, service, connections)

    elif action in ("typing:start", "typing:stop"):
        await handle_typing_indicator(payload, user, service, connections, action == "typing:start")

    elif action == "ping":
        await connections.notify(user.id, "pong", {})

    else:
        await connections.notify(user.id, "error", {
            "code": "INVALID_ARGUMENT",
            "message": f"Unknown action: {action}"
        })


async def _send_error(connections: ConnectionManager, user_id: str, exc: Exception, event: str = "error", **extra):
    if isinstance(exc, ValidationError):
        exc = InvalidArgument(exc.errors()[0].get("msg", "Invalid payload"))
    await connections.notify(user_id, event, {"code": exc.code, "message": exc.message, **extra})


async def handle_send_message(
    payload: dict,
    user: User,
    service: MessageService,
    connections: ConnectionManager,
    platform: Optional[str] = None
):
    client_id = payload.get("client_id")
    try:
        message_data = SendMessageWebSocket(**payload)
        result = await service.send(user, message_data, platform=platform)
    except (MessagingError, ValidationError) as exc:
        await _send_error(connections, user.id, exc, "message:error", client_id=client_id)
        return

    # The sender's ack; recipients get message:new through the fan-out
    await connections.notify(user.id, "message:sent", {
        "client_id": client_id,
        "duplicate": result.duplicate,
        "message": result.message.model_dump(mode="json"),
    })


async def handle_mark_read(payload: dict, user: User, service: MessageService, connections: ConnectionManager):
    try:
        mark_read_data = MarkMessageRead(**payload)
        await service.mark_as_read(mark_read_data.message_id, user)
    except (MessagingError, ValidationError) as exc:
        await _send_error(connections, user.id, exc)


async def handle_conversation_read(payload: dict, user: User, service: MessageService, connections: ConnectionManager):
    try:
        read_data = MarkConversationRead(**payload)
        await service.mark_conversation_read(read_data.conversation_id, user)
    except (MessagingError, ValidationError) as exc:
        await _send_error(connections, user.id, exc)


async def handle_typing_indicator(
    payload: dict,
    user: User,
    service: MessageService,
    connections: ConnectionManager,
    is_typing: bool
):
    try:
        typing_data = TypingIndicator(**payload)
        conversation = await service.directory.get_for_participant(typing_data.conversation_id, user.id)
    except (MessagingError, ValidationError) as exc:
        await _send_error(connections, user.id, exc)
        return

    await connections.handle_typing_indicator(
        conversation.id,
        user.id,
        is_typing,
        conversation.recipient_ids(user.id),
        user.name
    )


@router.get("/online-users")
async def get_online_users():
    connected_users = manager.get_connected_users()
    return {"online_users": connected_users, "count": len(connected_users)}

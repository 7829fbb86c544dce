import json
import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

from messaging.config import settings

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Per-user push channel: each user id maps to zero or more live sockets.

    Delivery is best effort. A user without sockets simply misses the event
    and picks the state up on the next list call.
    """

    def __init__(self, send_timeout: float = None, typing_timeout: float = None):
        self.active_connections: Dict[str, List[WebSocket]] = {}
        # conversation id -> user id -> auto-stop task
        self.typing_users: Dict[str, Dict[str, asyncio.Task]] = {}
        self.typing_audiences: Dict[str, List[str]] = {}
        self.send_timeout = send_timeout or settings.FANOUT_SEND_TIMEOUT_SECONDS
        self.typing_timeout = typing_timeout or settings.TYPING_TIMEOUT_SECONDS

    async def connect(self, websocket: WebSocket, user_id: str) -> bool:
        """Register the socket. Returns True when the user just came online."""
        await websocket.accept()

        if user_id not in self.active_connections:
            self.active_connections[user_id] = []

        self.active_connections[user_id].append(websocket)
        logger.info("User %s connected (%d sockets)", user_id, len(self.active_connections[user_id]))
        return len(self.active_connections[user_id]) == 1

    async def disconnect(self, websocket: WebSocket, user_id: str) -> bool:
        """Drop the socket. Returns True when the user's last socket went away."""
        if user_id not in self.active_connections:
            return False

        if websocket in self.active_connections[user_id]:
            self.active_connections[user_id].remove(websocket)

        if self.active_connections[user_id]:
            return False

        del self.active_connections[user_id]
        logger.info("User %s went offline", user_id)

        for conversation_id in list(self.typing_users.keys()):
            if user_id in self.typing_users[conversation_id]:
                await self.stop_typing(conversation_id, user_id)
        return True

    async def send_personal_message(self, message: str, user_id: str) -> int:
        """Send a raw frame to every socket of the user, returns how many got it."""
        delivered = 0
        disconnected_connections = []
        for connection in list(self.active_connections.get(user_id, [])):
            try:
                await asyncio.wait_for(connection.send_text(message), timeout=self.send_timeout)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping socket of user %s: %s", user_id, exc)
                disconnected_connections.append(connection)

        for connection in disconnected_connections:
            connections = self.active_connections.get(user_id)
            if connections and connection in connections:
                connections.remove(connection)
                if not connections:
                    del self.active_connections[user_id]

        return delivered

    async def notify(self, user_id: str, event: str, data: dict) -> bool:
        if user_id not in self.active_connections:
            return False
        frame = json.dumps({"type": event, "data": data}, default=str)
        return await self.send_personal_message(frame, user_id) > 0

    async def handle_typing_indicator(
        self,
        conversation_id: str,
        user_id: str,
        is_typing: bool,
        recipient_ids: List[str],
        user_name: Optional[str] = None
    ):
        if is_typing:
            self.typing_audiences[conversation_id] = list(recipient_ids)
            await self.start_typing(conversation_id, user_id, user_name)
        else:
            await self.stop_typing(conversation_id, user_id)

    async def start_typing(self, conversation_id: str, user_id: str, user_name: Optional[str] = None):
        typing = self.typing_users.setdefault(conversation_id, {})
        previous = typing.get(user_id)
        if previous is not None:
            previous.cancel()
        typing[user_id] = asyncio.create_task(self._expire_typing(conversation_id, user_id))

        await self.broadcast_typing_status(conversation_id, user_id, True, user_name)

    async def stop_typing(self, conversation_id: str, user_id: str):
        typing = self.typing_users.get(conversation_id)
        if not typing or user_id not in typing:
            return

        task = typing.pop(user_id)
        if task is not asyncio.current_task():
            task.cancel()
        audience = self.typing_audiences.get(conversation_id, [])
        if not typing:
            del self.typing_users[conversation_id]
            self.typing_audiences.pop(conversation_id, None)

        await self.broadcast_typing_status(conversation_id, user_id, False, recipient_ids=audience)

    async def _expire_typing(self, conversation_id: str, user_id: str):
        await asyncio.sleep(self.typing_timeout)
        await self.stop_typing(conversation_id, user_id)

    async def broadcast_typing_status(
        self,
        conversation_id: str,
        user_id: str,
        is_typing: bool,
        user_name: Optional[str] = None,
        recipient_ids: Optional[List[str]] = None
    ):
        event = "typing:start" if is_typing else "typing:stop"
        data = {"conversation_id": conversation_id, "user_id": user_id}
        if user_name:
            data["user_name"] = user_name

        if recipient_ids is None:
            recipient_ids = self.typing_audiences.get(conversation_id, [])
        for recipient_id in recipient_ids:
            if recipient_id != user_id:
                await self.notify(recipient_id, event, data)

    async def broadcast_user_status(self, user_id: str, status: str, recipient_ids: List[str]):
        data = {"user_id": user_id, "status": status}
        for recipient_id in recipient_ids:
            if recipient_id != user_id:
                await self.notify(recipient_id, "user:status", data)

    def get_typing_users(self, conversation_id: str) -> List[str]:
        return list(self.typing_users.get(conversation_id, {}).keys())

    def get_connected_users(self) -> List[str]:
        return list(self.active_connections.keys())

    def is_user_online(self, user_id: str) -> bool:
        return user_id in self.active_connections


manager = ConnectionManager()

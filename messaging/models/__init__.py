from .base import Base
from .user import User
from .conversation import Conversation, ConversationType
from .conversation_participant import ConversationParticipant
from .message import Message, MessageType, MessageStatus
from .message_delivery import MessageDelivery
from .message_read_receipt import MessageReadReceipt
from .message_reaction import MessageReaction
from .message_deletion import MessageDeletion

__all__ = [
    "Base",
    "User",
    "Conversation",
    "ConversationType",
    "ConversationParticipant",
    "Message",
    "MessageType",
    "MessageStatus",
    "MessageDelivery",
    "MessageReadReceipt",
    "MessageReaction",
    "MessageDeletion",
]

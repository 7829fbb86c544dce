from fastapi import status


class MessagingError(Exception):
    """Base error rendered as {"success": false, "message", "code"}."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "MESSAGING_ERROR"
    default_message = "Request could not be processed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidArgument(MessagingError):
    code = "INVALID_ARGUMENT"
    default_message = "Invalid argument"


class InvalidParticipant(InvalidArgument):
    code = "INVALID_PARTICIPANT"
    default_message = "Cannot create conversation with yourself"


class Unauthorized(MessagingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "UNAUTHORIZED"
    default_message = "You are not a participant of this conversation"


class NotFound(MessagingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Not found"


class DeleteWindowExpired(MessagingError):
    code = "DELETE_WINDOW_EXPIRED"
    default_message = "Messages can only be deleted for everyone within 1 hour of sending"


class RateLimited(MessagingError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"
    default_message = "Too many messages sent. Please slow down."


class TransientStoreError(MessagingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "TRANSIENT_STORE_ERROR"
    default_message = "Storage is temporarily unavailable, retry with the same client_id"

"""
Domain errors raised by the chat request, message and room-access services.

Every error carries an HTTP status, a stable machine-readable ``code`` and a
user-facing message. Routers let them propagate; ``app.main`` renders them.
"""

from typing import Optional


class ChatError(Exception):
    status_code: int = 400
    code: str = "chat_error"
    default_message: str = "Chat operation failed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(ChatError):
    status_code = 422
    code = "validation_error"
    default_message = "Invalid input."

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["field"] = self.field
        return data


class ForbiddenError(ChatError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied."


class NotFoundError(ChatError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class AlreadyRespondedError(ChatError):
    status_code = 409
    code = "already_responded"
    default_message = "Request already responded to."


class RequestExpiredError(ChatError):
    status_code = 410
    code = "request_expired"
    default_message = "Request has expired."


class ExpiredError(ChatError):
    """The private room exists but its time window is over."""
    status_code = 410
    code = "room_expired"
    default_message = "This private chat room has expired."


class DuplicatePendingError(ChatError):
    status_code = 409
    code = "duplicate_pending"
    default_message = "You already have a pending request to this user on this post."


class CrossCampusError(ChatError):
    code = "cross_campus"
    default_message = "Can only chat with users from your campus."


class SelfReferenceError(ChatError):
    code = "self_request"
    default_message = "Cannot send chat request to yourself."


# Errors a room-scoped caller must not tell apart in user-facing output.
ROOM_ACCESS_ERRORS = (NotFoundError, ForbiddenError, ExpiredError)

from fastapi import HTTPException


class ChatError(Exception):
    """Base class for errors raised by the chat core.

    Each subclass carries the HTTP status the routers translate it to.
    """

    status_code = 500
    default_detail = "Chat service error."

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class Unauthenticated(ChatError):
    status_code = 401
    default_detail = "Invalid authentication."


class Forbidden(ChatError):
    status_code = 403
    default_detail = "You are not a member of this conversation."


class InvalidArgument(ChatError):
    status_code = 400
    default_detail = "Invalid request."


class NotFound(ChatError):
    status_code = 404
    default_detail = "Not found."


class Conflict(ChatError):
    status_code = 409
    default_detail = "Conflicting conversation state."


class OrphanedConversation(ChatError):
    """Chat row was created but its memberships could not be written."""

    status_code = 500
    default_detail = "Conversation was created without its members."

    def __init__(self, chat_id: str, cleaned_up: bool):
        self.chat_id = chat_id
        self.cleaned_up = cleaned_up
        super().__init__(
            f"Failed to add members to conversation {chat_id} "
            f"(rolled back: {str(cleaned_up).lower()})."
        )


class SubscriptionError(ChatError):
    status_code = 503
    default_detail = "Live message feed is unavailable."

# backend/messenger/core/errors.py
"""
채팅 코어에서 사용하는 예외 계층입니다.

REST 계층은 `status_code`로 HTTP 응답을 만들고,
실시간 게이트웨이는 `code`/`message`로 요청한 연결에만 error 이벤트를 보냅니다.
"""


class ChatError(Exception):
    code = "chat_error"
    status_code = 400
    retryable = False
    default_message = "Chat operation failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.retryable:
            payload["retryable"] = True
        return payload


class AuthenticationFailure(ChatError):
    code = "authentication_failed"
    status_code = 401
    default_message = "Authentication failed"


class AuthorizationFailure(ChatError):
    code = "forbidden"
    status_code = 403
    default_message = "Access denied"


class NotMember(AuthorizationFailure):
    code = "not_member"
    default_message = "User is not a member of this conversation"


class ValidationFailure(ChatError):
    code = "validation_failed"
    status_code = 400
    default_message = "Invalid payload"


class InvalidConversationType(ValidationFailure):
    code = "invalid_conversation_type"
    default_message = "Invalid conversation type"


class WrongPrivateMemberCount(ValidationFailure):
    code = "wrong_private_member_count"
    default_message = "Private conversations must have exactly 2 members"


class UnknownCreator(ValidationFailure):
    code = "unknown_creator"
    default_message = "Creator user not found"


class InvalidMember(ValidationFailure):
    code = "invalid_member"
    default_message = "One or more member IDs are invalid"


class NotFound(ChatError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found"


class ConversationNotFound(NotFound):
    code = "conversation_not_found"
    default_message = "Conversation not found"


class MessageNotFound(NotFound):
    code = "message_not_found"
    default_message = "Message not found"


class UserNotFound(NotFound):
    code = "user_not_found"
    default_message = "User not found"


class NotificationNotFound(NotFound):
    code = "notification_not_found"
    default_message = "Notification not found"


class RateLimited(ChatError):
    code = "rate_limited"
    status_code = 429
    retryable = True
    default_message = "Too many requests, slow down"


class PersistenceFailure(ChatError):
    code = "persistence_failure"
    status_code = 503
    retryable = True
    default_message = "Database operation failed. Please try again"

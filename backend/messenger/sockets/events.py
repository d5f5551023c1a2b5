# backend/messenger/sockets/events.py
from enum import Enum

# 웹소켓 메시지 형식: {"event": "<이름>", "data": {...}}


class ClientEvent(str, Enum):
    """클라이언트 -> 서버"""
    JOIN_CONVERSATION = "join_conversation"
    LEAVE_CONVERSATION = "leave_conversation"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    MARK_MESSAGE_READ = "mark_message_read"
    CREATE_CONVERSATION = "create_conversation"
    PING = "ping"


class ServerEvent(str, Enum):
    """서버 -> 클라이언트"""
    CONNECTED = "connected"
    PONG = "pong"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    NEW_MESSAGE = "new_message"
    CONVERSATION_UPDATED = "conversation_updated"
    USER_TYPING = "user_typing"
    MESSAGE_READ = "message_read"
    CONVERSATION_READ = "conversation_read"
    CONVERSATION_CREATED = "conversation_created"
    ERROR = "error"


# 인증 실패 시 accept 전에 닫는 코드 (policy violation 영역)
WS_AUTH_FAILED_CLOSE_CODE = 4001
WS_IDLE_TIMEOUT_CLOSE_CODE = 4008


def conversation_room(conversation_id: int) -> str:
    return f"conversation_{conversation_id}"


def user_room(user_id: int) -> str:
    return f"user_{user_id}"

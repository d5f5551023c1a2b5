# backend/messenger/sockets/chat_socket.py
"""
Presence & Realtime Gateway.

- 연결 테이블은 connection id 기준이고, user_id -> 연결 집합 / room -> 연결 집합 인덱스를 함께 유지합니다.
- 유저의 온라인 여부는 "라이브 연결이 하나 이상 있는가" 에서 파생됩니다.
- 연결마다 outbox 큐와 전송 태스크를 두고, 브로드캐스트는 await 없이 큐에 넣기만 합니다.
  그래서 한 room 안의 이벤트는 게이트웨이가 처리한 순서대로 모든 구독자에게 전달됩니다.
"""
import asyncio
import json
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from messenger.core import config
from messenger.core.errors import AuthenticationFailure, ChatError, ValidationFailure
from messenger.core.rate_limit import RateLimiter, rate_limiter
from messenger.core.security import AuthenticatedUser, authenticate_websocket, extract_websocket_token
from messenger.db.database import AsyncSessionLocal, get_utc_now
from messenger.schemas.chat import (
    ConversationCreate,
    ConversationRead,
    ConversationReadReceipt,
    ConversationRef,
    MarkReadPayload,
    MessageRead,
    ReadReceipt,
    SendMessagePayload,
)
from messenger.services.chat_service import ChatService
from messenger.sockets.events import (
    ClientEvent,
    ServerEvent,
    WS_AUTH_FAILED_CLOSE_CODE,
    WS_IDLE_TIMEOUT_CLOSE_CODE,
    conversation_room,
    user_room,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid payload")


class Connection:
    """디바이스 하나의 웹소켓 연결."""

    def __init__(self, websocket: WebSocket, user: AuthenticatedUser):
        self.id = uuid.uuid4().hex
        self.user_id = user.user_id
        self.display_name = user.display_name
        self.websocket = websocket
        self.rooms: Set[str] = set()
        self.closed = False
        self.writable = True
        self.outbox: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def start(self):
        self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.id}")

    def send(self, event: ServerEvent, data: dict):
        if self.closed or not self.writable:
            return
        self.outbox.put_nowait({"event": event.value, "data": data})

    async def drain(self):
        """큐에 쌓인 이벤트가 모두 전송될 때까지 기다립니다."""
        if self._writer is not None and not self._writer.done():
            await self.outbox.join()

    async def stop(self):
        self.writable = False
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        self._discard_pending()

    def _discard_pending(self):
        while not self.outbox.empty():
            self.outbox.get_nowait()
            self.outbox.task_done()

    async def _write_loop(self):
        while True:
            envelope = await self.outbox.get()
            try:
                await self.websocket.send_json(envelope)
            except Exception as e:
                logger.warning(f"[Gateway] 전송 실패 (conn {self.id}, User {self.user_id}): {e}")
                self.writable = False
                self._discard_pending()
                return
            finally:
                self.outbox.task_done()


class ConnectionRegistry:
    """
    프로세스 메모리의 연결/room 테이블. 재시작 시 비어 있는 상태에서 다시 만들어집니다.
    모든 메서드는 동기이므로 이벤트 루프 안에서 원자적으로 실행됩니다.
    """

    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self.by_user: Dict[int, List[str]] = {}
        self.rooms: Dict[str, Set[str]] = defaultdict(set)

    def add(self, connection: Connection) -> bool:
        """연결을 등록합니다. 이 유저의 첫 연결이면 True."""
        self.connections[connection.id] = connection
        conn_ids = self.by_user.setdefault(connection.user_id, [])
        conn_ids.append(connection.id)
        return len(conn_ids) == 1

    def remove(self, connection: Connection) -> bool:
        """연결과 room 구독을 모두 제거합니다. 이 유저의 마지막 연결이었으면 True."""
        if self.connections.pop(connection.id, None) is None:
            return False
        for room in list(connection.rooms):
            self.leave(connection, room)

        conn_ids = self.by_user.get(connection.user_id, [])
        if connection.id in conn_ids:
            conn_ids.remove(connection.id)
        if not conn_ids:
            self.by_user.pop(connection.user_id, None)
            return True
        return False

    def join(self, connection: Connection, room: str):
        if connection.id not in self.connections:
            return
        self.rooms[room].add(connection.id)
        connection.rooms.add(room)

    def leave(self, connection: Connection, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)

    def room_connections(self, room: str) -> List[Connection]:
        return [self.connections[cid] for cid in self.rooms.get(room, ()) if cid in self.connections]

    def user_connections(self, user_id: int) -> List[Connection]:
        return [self.connections[cid] for cid in self.by_user.get(user_id, ()) if cid in self.connections]

    def is_online(self, user_id: int) -> bool:
        return bool(self.by_user.get(user_id))

    def latest_connection_id(self, user_id: int) -> Optional[str]:
        conn_ids = self.by_user.get(user_id)
        return conn_ids[-1] if conn_ids else None

    def online_user_ids(self) -> List[int]:
        return list(self.by_user.keys())

    def all_connections(self) -> List[Connection]:
        return list(self.connections.values())


Handler = Callable[[Connection, dict], Awaitable[None]]


class ChatGateway:
    def __init__(self, session_factory=AsyncSessionLocal, limiter: RateLimiter = rate_limiter):
        self.registry = ConnectionRegistry()
        self._session_factory = session_factory
        self._limiter = limiter
        # 유저별 락과 대기 중인 호출 수. 대기자가 없으면 항목을 지웁니다.
        self._presence_locks: Dict[int, asyncio.Lock] = {}
        self._presence_waiters: Dict[int, int] = {}
        self._handlers: Dict[ClientEvent, Handler] = {
            ClientEvent.JOIN_CONVERSATION: self.on_join_conversation,
            ClientEvent.LEAVE_CONVERSATION: self.on_leave_conversation,
            ClientEvent.SEND_MESSAGE: self.on_send_message,
            ClientEvent.TYPING_START: self.on_typing_start,
            ClientEvent.TYPING_STOP: self.on_typing_stop,
            ClientEvent.MARK_MESSAGE_READ: self.on_mark_message_read,
            ClientEvent.CREATE_CONVERSATION: self.on_create_conversation,
            ClientEvent.PING: self.on_ping,
        }

    @property
    def handlers(self) -> Dict[ClientEvent, Handler]:
        return self._handlers

    # --- 전송 ---

    def emit_to_room(self, room: str, event: ServerEvent, data: dict, exclude_user_id: Optional[int] = None):
        for connection in self.registry.room_connections(room):
            if exclude_user_id is not None and connection.user_id == exclude_user_id:
                continue
            connection.send(event, data)

    def emit_to_user(self, user_id: int, event: ServerEvent, data: dict):
        self.emit_to_room(user_room(user_id), event, data)

    def emit_to_others(self, user_id: int, event: ServerEvent, data: dict):
        for connection in self.registry.all_connections():
            if connection.user_id != user_id:
                connection.send(event, data)

    # --- 연결 수명 주기 ---

    async def handle_connect(self, websocket: WebSocket, user: AuthenticatedUser) -> Connection:
        """
        인증이 끝난(accept 된) 웹소켓을 등록합니다.
        1. 연결/유저 room 등록
        2. 활성 멤버인 모든 대화방 room 에 join
        3. 첫 연결이면 온라인 상태 기록 + user_online 브로드캐스트
        """
        connection = Connection(websocket, user)
        connection.start()
        first = self.registry.add(connection)
        self.registry.join(connection, user_room(user.user_id))

        try:
            async with self._session_factory() as db:
                conversation_ids = await ChatService.list_room_ids(db, user.user_id)
        except Exception:
            await self.handle_disconnect(connection)
            raise
        for conversation_id in conversation_ids:
            self.registry.join(connection, conversation_room(conversation_id))

        connection.send(ServerEvent.CONNECTED, {
            "connectionId": connection.id,
            "userId": user.user_id,
            "conversationIds": conversation_ids,
            "pingInterval": config.WS_PING_INTERVAL,
            "pingTimeout": config.WS_PING_TIMEOUT,
        })
        logger.info(
            f"[Gateway] User {user.user_id} 연결 (conn {connection.id}, 대화방 {len(conversation_ids)}개, "
            f"접속 연결 {len(self.registry.connections)}개)"
        )

        # 기기를 추가할 때마다 최신 연결 핸들을 기록하고, 알림은 첫 연결에서만 보냅니다.
        try:
            await self._sync_presence(user.user_id)
        except ChatError as e:
            logger.error(f"[Gateway] 온라인 상태 기록 실패 (User {user.user_id}): {e.message}")
        if first:
            self.emit_to_others(user.user_id, ServerEvent.USER_ONLINE, {
                "userId": user.user_id,
                "name": user.display_name,
                "timestamp": _iso(get_utc_now()),
            })
        return connection

    async def handle_disconnect(self, connection: Connection):
        """
        연결 종료 처리. 같은 연결에 대해 여러 번 호출되어도 한 번만 수행됩니다.
        """
        if connection.closed:
            return
        connection.closed = True

        last = self.registry.remove(connection)
        await connection.stop()

        try:
            async with self._session_factory() as db:
                conversation_ids = await ChatService.clear_typing_statuses(db, connection.user_id)
        except ChatError as e:
            logger.error(f"[Gateway] 입력 상태 초기화 실패 (User {connection.user_id}): {e.message}")
            conversation_ids = []
        for conversation_id in conversation_ids:
            self.publish_typing(conversation_id, connection.user_id, connection.display_name, False)

        try:
            await self._sync_presence(connection.user_id)
        except ChatError as e:
            logger.error(f"[Gateway] 접속 상태 기록 실패 (User {connection.user_id}): {e.message}")
        if last:
            self.emit_to_others(connection.user_id, ServerEvent.USER_OFFLINE, {
                "userId": connection.user_id,
                "name": connection.display_name,
                "lastSeen": _iso(get_utc_now()),
            })
        logger.info(f"[Gateway] User {connection.user_id} 연결 종료 (conn {connection.id}, 마지막 연결: {last})")

    async def _sync_presence(self, user_id: int):
        # 유저별 락 안에서 "현재" 연결 집합 기준 상태를 기록하므로 마지막 기록이 항상 실제 상태와 같습니다.
        lock = self._presence_locks.setdefault(user_id, asyncio.Lock())
        self._presence_waiters[user_id] = self._presence_waiters.get(user_id, 0) + 1
        try:
            async with lock:
                online = self.registry.is_online(user_id)
                handle = self.registry.latest_connection_id(user_id)
                async with self._session_factory() as db:
                    await ChatService.set_presence(db, user_id, online, handle)
        finally:
            self._presence_waiters[user_id] -= 1
            if self._presence_waiters[user_id] == 0:
                del self._presence_waiters[user_id]
                del self._presence_locks[user_id]

    async def close_all(self):
        for connection in self.registry.all_connections():
            try:
                await connection.websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"[Gateway] 종료 중 소켓 닫기 실패 (conn {connection.id}): {e}")
            await self.handle_disconnect(connection)

    # --- 수신 디스패치 ---

    async def dispatch(self, connection: Connection, raw: str):
        """
        {"event", "data"} 메시지 하나를 처리합니다.
        실패는 요청한 연결에만 error 이벤트로 알리고, room 으로는 절대 보내지 않습니다.
        """
        try:
            envelope = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            connection.send(ServerEvent.ERROR, ValidationFailure("Malformed JSON message").to_dict())
            return
        if not isinstance(envelope, dict) or "event" not in envelope:
            connection.send(ServerEvent.ERROR, ValidationFailure("Message must have an 'event' field").to_dict())
            return

        try:
            event = ClientEvent(envelope["event"])
        except ValueError:
            connection.send(ServerEvent.ERROR, ValidationFailure(f"Unknown event: {envelope['event']}").to_dict())
            return

        data = envelope.get("data") or {}
        if not isinstance(data, dict):
            connection.send(ServerEvent.ERROR, ValidationFailure("'data' must be an object").to_dict())
            return

        await self.handle_event(connection, event, data)

    async def handle_event(self, connection: Connection, event: ClientEvent, data: dict):
        handler = self._handlers[event]
        try:
            await handler(connection, data)
        except ChatError as e:
            logger.info(f"[Gateway] {event.value} 거부 (User {connection.user_id}): {e.code}")
            connection.send(ServerEvent.ERROR, {**e.to_dict(), "event": event.value})
        except ValidationError as e:
            error = ValidationFailure(_validation_message(e))
            connection.send(ServerEvent.ERROR, {**error.to_dict(), "event": event.value})
        except Exception:
            logger.exception(f"[Gateway] {event.value} 처리 중 예외 (User {connection.user_id})")
            connection.send(ServerEvent.ERROR, {
                "code": "internal_error",
                "message": "Internal server error",
                "event": event.value,
            })

    # --- 이벤트 핸들러 ---

    async def on_join_conversation(self, connection: Connection, data: dict):
        ref = ConversationRef.model_validate(data)
        async with self._session_factory() as db:
            await ChatService.require_member(db, ref.conversation_id, connection.user_id)
        self.registry.join(connection, conversation_room(ref.conversation_id))

    async def on_leave_conversation(self, connection: Connection, data: dict):
        ref = ConversationRef.model_validate(data)
        self.registry.leave(connection, conversation_room(ref.conversation_id))

    async def on_send_message(self, connection: Connection, data: dict):
        self._limiter.check(connection.user_id, "send_message")
        payload = SendMessagePayload.model_validate(data)
        async with self._session_factory() as db:
            message = await ChatService.send_message(db, connection.user_id, payload.conversation_id, payload)
        self.publish_new_message(message, requester=connection)

    async def on_typing_start(self, connection: Connection, data: dict):
        await self._update_typing(connection, data, True)

    async def on_typing_stop(self, connection: Connection, data: dict):
        await self._update_typing(connection, data, False)

    async def _update_typing(self, connection: Connection, data: dict, is_typing: bool):
        self._limiter.check(connection.user_id, "typing")
        ref = ConversationRef.model_validate(data)
        async with self._session_factory() as db:
            await ChatService.update_typing_status(db, connection.user_id, ref.conversation_id, is_typing)
        self.publish_typing(ref.conversation_id, connection.user_id, connection.display_name, is_typing)

    async def on_mark_message_read(self, connection: Connection, data: dict):
        payload = MarkReadPayload.model_validate(data)
        async with self._session_factory() as db:
            receipt = await ChatService.mark_message_read(
                db, connection.user_id, payload.message_id, payload.conversation_id
            )
        self.publish_read_receipt(receipt)

    async def on_create_conversation(self, connection: Connection, data: dict):
        self._limiter.check(connection.user_id, "create_conversation")
        payload = ConversationCreate.model_validate(data)
        async with self._session_factory() as db:
            conversation, created = await ChatService.create_conversation(db, connection.user_id, payload)
        self.announce_conversation(conversation, created, requester=connection)

    async def on_ping(self, connection: Connection, data: dict):
        connection.send(ServerEvent.PONG, {"timestamp": _iso(get_utc_now())})

    # --- 브로드캐스트 (REST 경로도 사용) ---

    def publish_new_message(self, message: MessageRead, requester: Optional[Connection] = None):
        room = conversation_room(message.conversation_id)
        payload = message.model_dump(mode="json", by_alias=True)
        self.emit_to_room(room, ServerEvent.NEW_MESSAGE, payload)
        if requester is not None and room not in requester.rooms:
            requester.send(ServerEvent.NEW_MESSAGE, payload)

        self.emit_to_room(room, ServerEvent.CONVERSATION_UPDATED, {
            "conversationId": message.conversation_id,
            "lastMessage": {
                "id": message.id,
                "content": message.content,
                "messageType": message.message_type,
                "senderId": message.sender_id,
                "createdAt": _iso(message.created_at),
            },
            "last_message_at": _iso(message.created_at),
        })

    def publish_typing(self, conversation_id: int, user_id: int, user_name: str, is_typing: bool):
        self.emit_to_room(conversation_room(conversation_id), ServerEvent.USER_TYPING, {
            "userId": user_id,
            "userName": user_name,
            "conversationId": conversation_id,
            "isTyping": is_typing,
        }, exclude_user_id=user_id)

    def publish_read_receipt(self, receipt: ReadReceipt):
        # 중복 요청도 다시 알립니다. read_at 은 처음 읽은 시각 그대로입니다.
        self.emit_to_room(conversation_room(receipt.conversation_id), ServerEvent.MESSAGE_READ, {
            "messageId": receipt.message_id,
            "conversationId": receipt.conversation_id,
            "userId": receipt.user_id,
            "readAt": _iso(receipt.read_at),
        })

    def publish_conversation_read(self, receipt: ConversationReadReceipt):
        self.emit_to_room(
            conversation_room(receipt.conversation_id),
            ServerEvent.CONVERSATION_READ,
            receipt.model_dump(mode="json", by_alias=True),
        )

    def announce_conversation(
        self, conversation: ConversationRead, created: bool, requester: Optional[Connection] = None
    ):
        """
        멤버들의 라이브 연결을 새 room 에 join 시키고, 각 멤버의 user_<id> room 으로 알립니다.
        이미 있던 private 대화방이 반환된 경우에는 요청자에게만 돌려줍니다.
        """
        room = conversation_room(conversation.id)
        member_ids = [member.user_id for member in conversation.members]
        for member_id in member_ids:
            for connection in self.registry.user_connections(member_id):
                self.registry.join(connection, room)

        payload = conversation.model_dump(mode="json", by_alias=True)
        if created:
            for member_id in member_ids:
                self.emit_to_user(member_id, ServerEvent.CONVERSATION_CREATED, payload)
        elif requester is not None:
            requester.send(ServerEvent.CONVERSATION_CREATED, payload)


gateway = ChatGateway()


def get_gateway() -> ChatGateway:
    return gateway


@router.websocket("/ws/chat")
async def chat_endpoint(websocket: WebSocket):
    """
    실시간 채팅 웹소켓 엔드포인트.
    핸드셰이크에서 ?token= 또는 Authorization: Bearer 로 인증하며, 실패 시 accept 하지 않고 닫습니다.
    """
    try:
        user = await authenticate_websocket(extract_websocket_token(websocket))
    except AuthenticationFailure as e:
        logger.warning(f"[Gateway] 핸드셰이크 인증 실패: {e.message}")
        await websocket.close(code=WS_AUTH_FAILED_CLOSE_CODE)
        return

    await websocket.accept()
    chat = get_gateway()
    connection = await chat.handle_connect(websocket, user)
    try:
        while True:
            try:
                message = await asyncio.wait_for(websocket.receive(), timeout=config.WS_PING_TIMEOUT)
            except asyncio.TimeoutError:
                logger.info(f"[Gateway] User {user.user_id} 하트비트 타임아웃 (conn {connection.id})")
                await websocket.close(code=WS_IDLE_TIMEOUT_CLOSE_CODE)
                break

            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            await chat.dispatch(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await chat.handle_disconnect(connection)

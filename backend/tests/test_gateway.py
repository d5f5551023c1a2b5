import asyncio
import json

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from conftest import count_rows
from messenger.core import config
from messenger.db.database import AsyncSessionLocal
from messenger.db.models.message import Message, MessageStatus
from messenger.db.models.notification import Notification
from messenger.db.models.typing_status import TypingStatus
from messenger.db.models.user import User
from messenger.repositories.message_repository import MessageRepository
from messenger.schemas.chat import ConversationCreate, MessageCreate
from messenger.services.chat_service import ChatService
from messenger.sockets.events import ClientEvent, conversation_room


def envelope(event, **data):
    return json.dumps({"event": event, "data": data})


async def make_group(creator_id, *member_ids, name="Team"):
    async with AsyncSessionLocal() as db:
        conversation, _ = await ChatService.create_conversation(
            db, creator_id, ConversationCreate(type="group", name=name, member_ids=list(member_ids))
        )
    return conversation


async def drain(*connections):
    for connection in connections:
        await connection.drain()


async def user_row(user_id):
    async with AsyncSessionLocal() as db:
        return await db.get(User, user_id)


async def test_dispatch_table_covers_every_client_event(gateway):
    assert set(gateway.handlers) == set(ClientEvent)


async def test_connect_joins_conversation_rooms(users, connect):
    conversation = await make_group(1, 2)
    connection, ws = await connect(1)

    assert conversation_room(conversation.id) in connection.rooms
    assert ws.names()[0] == "connected"
    connected = ws.events("connected")[0]
    assert connected["conversationIds"] == [conversation.id]
    assert connected["pingInterval"] == config.WS_PING_INTERVAL


async def test_presence_is_derived_from_live_connections(users, gateway, connect):
    observer, observer_ws = await connect(2)
    phone, phone_ws = await connect(1)
    await drain(observer)

    assert [e["userId"] for e in observer_ws.events("user_online")] == [1]
    assert phone_ws.events("user_online") == []
    online = await user_row(1)
    assert online.is_online is True
    assert online.connection_handle == phone.id

    laptop, _ = await connect(1)
    await drain(observer)
    assert len(observer_ws.events("user_online")) == 1

    await gateway.handle_disconnect(phone)
    await drain(observer)
    assert observer_ws.events("user_offline") == []
    still_online = await user_row(1)
    assert still_online.is_online is True
    assert still_online.connection_handle == laptop.id

    await gateway.handle_disconnect(laptop)
    await drain(observer)
    [offline] = observer_ws.events("user_offline")
    assert offline["userId"] == 1
    assert offline["name"] == "User1"
    gone = await user_row(1)
    assert gone.is_online is False
    assert gone.connection_handle is None
    assert gone.last_seen is not None
    assert gateway._presence_locks == {}


async def test_send_message_reaches_every_member_connection(users, gateway, connect):
    conversation = await make_group(1, 2, 3)
    sender, sender_ws = await connect(1)
    second, second_ws = await connect(2)
    third, third_ws = await connect(3)
    outsider, outsider_ws = await connect(4)
    for ws in (sender_ws, second_ws, third_ws, outsider_ws):
        ws.clear()

    await gateway.dispatch(sender, envelope("send_message", conversationId=conversation.id, content="hello"))
    await drain(sender, second, third, outsider)

    for ws in (sender_ws, second_ws, third_ws):
        [message] = ws.events("new_message")
        assert message["content"] == "hello"
        assert message["senderId"] == 1
        assert message["sender"]["name"] == "User1"
        [updated] = ws.events("conversation_updated")
        assert updated["conversationId"] == conversation.id
        assert updated["lastMessage"]["content"] == "hello"
    assert outsider_ws.sent == []

    async with AsyncSessionLocal() as db:
        rows = await db.execute(select(MessageStatus.user_id, MessageStatus.status).order_by(MessageStatus.user_id))
        assert [tuple(r) for r in rows.all()] == [(1, "read"), (2, "sent"), (3, "sent")]


async def test_committed_send_survives_failed_reload(users, gateway, connect, dispatcher, monkeypatch):
    conversation = await make_group(1, 2, 3)
    sender, sender_ws = await connect(1)
    member, member_ws = await connect(2)
    sender_ws.clear()
    member_ws.clear()

    async def broken_reload(session, message_id):
        raise SQLAlchemyError("connection reset")

    monkeypatch.setattr(MessageRepository, "get_hydrated", staticmethod(broken_reload))

    await gateway.dispatch(sender, envelope("send_message", conversationId=conversation.id, content="made it"))
    await drain(sender, member)

    assert sender_ws.events("error") == []
    [message] = member_ws.events("new_message")
    assert message["content"] == "made it"
    assert {s["userId"]: s["status"] for s in message["statuses"]} == {1: "read", 2: "sent", 3: "sent"}
    assert await count_rows(Message) == 1
    assert await count_rows(MessageStatus) == 3

    await dispatcher.drain()
    async with AsyncSessionLocal() as db:
        notified = (await db.execute(select(Notification.user_id))).scalars().all()
    assert notified == [3]


async def test_failures_only_reach_the_requester(users, gateway, connect):
    conversation = await make_group(1, 2)
    member, member_ws = await connect(1)
    outsider, outsider_ws = await connect(3)
    member_ws.clear()
    outsider_ws.clear()

    await gateway.dispatch(outsider, envelope("send_message", conversationId=conversation.id, content="let me in"))
    await drain(member, outsider)

    [error] = outsider_ws.events("error")
    assert error["code"] == "not_member"
    assert error["event"] == "send_message"
    assert member_ws.sent == []


async def test_invalid_payloads_are_rejected_locally(users, gateway, connect):
    conversation = await make_group(1, 2)
    connection, ws = await connect(1)
    ws.clear()

    await gateway.dispatch(connection, "not json")
    await gateway.dispatch(connection, json.dumps({"data": {}}))
    await gateway.dispatch(connection, envelope("self_destruct"))
    await gateway.dispatch(connection, envelope("send_message", conversationId=conversation.id))
    await drain(connection)

    errors = ws.events("error")
    assert len(errors) == 4
    assert all(e["code"] == "validation_failed" for e in errors)
    assert ws.events("new_message") == []


async def test_typing_is_relayed_to_others_only(users, gateway, connect):
    conversation = await make_group(1, 2)
    typist, typist_ws = await connect(1)
    reader, reader_ws = await connect(2)
    typist_ws.clear()
    reader_ws.clear()

    await gateway.dispatch(typist, envelope("typing_start", conversationId=conversation.id))
    await drain(typist, reader)

    assert typist_ws.events("user_typing") == []
    [typing] = reader_ws.events("user_typing")
    assert typing == {"userId": 1, "userName": "User1", "conversationId": conversation.id, "isTyping": True}

    async with AsyncSessionLocal() as db:
        typing_users = await ChatService.get_typing_users(db, conversation.id, 2)
    assert [t.user_id for t in typing_users] == [1]

    await gateway.dispatch(typist, envelope("typing_stop", conversationId=conversation.id))
    await drain(reader)
    assert [t["isTyping"] for t in reader_ws.events("user_typing")] == [True, False]


async def test_disconnect_clears_typing_exactly_once(users, gateway, connect):
    conversation = await make_group(9, 1)
    typist, _ = await connect(9)
    observer, observer_ws = await connect(1)

    await gateway.dispatch(typist, envelope("typing_start", conversationId=conversation.id))
    await drain(observer)
    observer_ws.clear()

    await gateway.handle_disconnect(typist)
    await gateway.handle_disconnect(typist)
    await drain(observer)

    assert len(observer_ws.events("user_offline")) == 1
    assert observer_ws.events("user_typing") == [
        {"userId": 9, "userName": "User9", "conversationId": conversation.id, "isTyping": False}
    ]
    async with AsyncSessionLocal() as db:
        row = (await db.execute(
            select(TypingStatus).where(TypingStatus.conversation_id == conversation.id, TypingStatus.user_id == 9)
        )).scalar_one()
    assert row.is_typing is False
    assert typist.id not in gateway.registry.connections


async def test_repeated_read_receipt_keeps_first_read_at(users, gateway, connect):
    conversation = await make_group(1, 2)
    sender, sender_ws = await connect(1)
    reader, _ = await connect(2)

    await gateway.dispatch(sender, envelope("send_message", conversationId=conversation.id, content="ping me"))
    await drain(sender)
    message_id = sender_ws.events("new_message")[0]["id"]
    sender_ws.clear()

    read = envelope("mark_message_read", messageId=message_id, conversationId=conversation.id)
    await gateway.dispatch(reader, read)
    await gateway.dispatch(reader, read)
    await drain(sender)

    first, second = sender_ws.events("message_read")
    assert first["messageId"] == second["messageId"] == message_id
    assert first["userId"] == second["userId"] == 2
    assert first["readAt"] is not None
    assert second["readAt"] == first["readAt"]
    assert sender_ws.events("error") == []


async def test_read_mark_retry_reannounces_receipt(users, gateway, connect):
    conversation = await make_group(1, 2)
    async with AsyncSessionLocal() as db:
        message = await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="seen?"))
        first = await ChatService.mark_message_read(db, 2, message.id, conversation.id)
    sender, sender_ws = await connect(1)
    reader, _ = await connect(2)
    sender_ws.clear()

    await gateway.dispatch(reader, envelope("mark_message_read", messageId=message.id, conversationId=conversation.id))
    await drain(sender)

    [receipt] = sender_ws.events("message_read")
    assert receipt["userId"] == 2
    assert receipt["readAt"] == first.read_at.isoformat()


async def test_create_conversation_notifies_and_joins_members(users, gateway, connect):
    creator, creator_ws = await connect(1)
    member, member_ws = await connect(2)
    creator_ws.clear()
    member_ws.clear()

    await gateway.dispatch(creator, envelope("create_conversation", type="group", name="New", memberIds=[2, 3]))
    await drain(creator, member)

    [created] = member_ws.events("conversation_created")
    assert created["name"] == "New"
    assert sorted(m["userId"] for m in created["members"]) == [1, 2, 3]
    assert creator_ws.events("conversation_created")[0]["id"] == created["id"]
    assert conversation_room(created["id"]) in member.rooms

    await gateway.dispatch(creator, envelope("send_message", conversationId=created["id"], content="welcome"))
    await drain(member)
    assert [m["content"] for m in member_ws.events("new_message")] == ["welcome"]


async def test_existing_private_conversation_is_returned_to_requester_only(users, gateway, connect):
    first, first_ws = await connect(5)
    other, other_ws = await connect(7)

    await gateway.dispatch(first, envelope("create_conversation", type="private", memberIds=[7]))
    await drain(first, other)
    original_id = first_ws.events("conversation_created")[0]["id"]
    first_ws.clear()
    other_ws.clear()

    await gateway.dispatch(other, envelope("create_conversation", type="private", memberIds=[5]))
    await drain(first, other)

    assert [c["id"] for c in other_ws.events("conversation_created")] == [original_id]
    assert first_ws.events("conversation_created") == []


async def test_join_requires_membership_and_leave_stops_delivery(users, gateway, connect):
    conversation = await make_group(1, 2)
    sender, _ = await connect(1)
    member, member_ws = await connect(2)
    outsider, outsider_ws = await connect(3)

    await gateway.dispatch(outsider, envelope("join_conversation", conversationId=conversation.id))
    await drain(outsider)
    assert outsider_ws.events("error")[0]["code"] == "not_member"
    assert conversation_room(conversation.id) not in outsider.rooms

    await gateway.dispatch(member, envelope("leave_conversation", conversationId=conversation.id))
    await gateway.dispatch(sender, envelope("send_message", conversationId=conversation.id, content="anyone?"))
    await drain(member)
    assert member_ws.events("new_message") == []

    await gateway.dispatch(member, envelope("join_conversation", conversationId=conversation.id))
    await gateway.dispatch(sender, envelope("send_message", conversationId=conversation.id, content="back"))
    await drain(member)
    assert [m["content"] for m in member_ws.events("new_message")] == ["back"]


async def test_ping_pong(users, gateway, connect):
    connection, ws = await connect(1)
    ws.clear()
    await gateway.dispatch(connection, envelope("ping"))
    await drain(connection)
    assert ws.names() == ["pong"]


async def test_socket_events_are_rate_limited(users, gateway, connect, monkeypatch):
    monkeypatch.setitem(config.RATE_LIMITS, "send_message", (1, 60))
    conversation = await make_group(1, 2)
    connection, ws = await connect(1)
    ws.clear()

    for text in ("first", "second"):
        await gateway.dispatch(connection, envelope("send_message", conversationId=conversation.id, content=text))
    await drain(connection)

    assert [m["content"] for m in ws.events("new_message")] == ["first"]
    [error] = ws.events("error")
    assert error["code"] == "rate_limited"
    assert error["retryable"] is True


async def test_broken_socket_does_not_block_others(users, gateway, connect):
    conversation = await make_group(1, 2)
    sender, sender_ws = await connect(1)
    broken, broken_ws = await connect(2)

    async def fail(data):
        raise RuntimeError("socket gone")

    broken_ws.send_json = fail
    await gateway.dispatch(sender, envelope("send_message", conversationId=conversation.id, content="still works"))
    await drain(sender, broken)

    assert [m["content"] for m in sender_ws.events("new_message")] == ["still works"]
    assert broken.writable is False


async def test_presence_locks_are_released_after_concurrent_connects(users, gateway, connect):
    phone, laptop = await asyncio.gather(connect(1), connect(1))
    assert gateway._presence_locks == {}

    await asyncio.gather(gateway.handle_disconnect(phone[0]), gateway.handle_disconnect(laptop[0]))
    assert gateway._presence_locks == {}
    assert gateway._presence_waiters == {}
    assert (await user_row(1)).is_online is False

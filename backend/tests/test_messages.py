import asyncio

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from conftest import count_rows
from messenger.core.crypto import DECRYPTION_PLACEHOLDER
from messenger.core.errors import MessageNotFound, NotMember, PersistenceFailure, ValidationFailure
from messenger.db.database import AsyncSessionLocal, get_utc_now
from messenger.db.models.conversation import Conversation, ConversationMember
from messenger.db.models.message import Message, MessageStatus
from messenger.repositories.membership_repository import MembershipRepository
from messenger.repositories.message_repository import MessageRepository
from messenger.schemas.chat import ConversationCreate, MessageCreate
from messenger.services.chat_service import ChatService


async def make_group(db, creator_id, *member_ids, name="Team"):
    conversation, _ = await ChatService.create_conversation(
        db, creator_id, ConversationCreate(type="group", name=name, member_ids=list(member_ids))
    )
    return conversation


async def statuses_of(message_id):
    async with AsyncSessionLocal() as db:
        rows = await db.execute(
            select(MessageStatus.user_id, MessageStatus.status)
            .where(MessageStatus.message_id == message_id)
            .order_by(MessageStatus.user_id)
        )
        return [tuple(r) for r in rows.all()]


async def test_group_send_fans_out_to_every_active_member(db, users):
    conversation = await make_group(db, 1, 2, 3)
    before = conversation.last_message_at

    await asyncio.sleep(0.01)
    sent = await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="hello"))

    assert sent.content == "hello"
    assert sent.sender.name == "User1"
    assert await statuses_of(sent.id) == [(1, "read"), (2, "sent"), (3, "sent")]
    async with AsyncSessionLocal() as fresh:
        status_count = await MessageRepository.count_statuses(fresh, sent.id)
        member_count = await MembershipRepository.count_active_members(fresh, conversation.id)
    assert status_count == member_count == 3

    async with AsyncSessionLocal() as fresh:
        stored = await fresh.get(Message, sent.id)
        refreshed = await fresh.get(Conversation, conversation.id)
    assert stored.content != "hello"
    assert stored.content_plain == "hello"
    assert refreshed.last_message_at > before
    assert refreshed.last_message_at == stored.created_at


async def test_fan_out_skips_members_who_left(db, users):
    conversation = await make_group(db, 1, 2, 3)
    await db.execute(
        update(ConversationMember)
        .where(ConversationMember.conversation_id == conversation.id, ConversationMember.user_id == 3)
        .values(left_at=get_utc_now())
    )
    await db.commit()

    sent = await ChatService.send_message(db, 2, conversation.id, MessageCreate(content="two of us"))
    assert await statuses_of(sent.id) == [(1, "sent"), (2, "read")]


async def test_non_member_send_writes_nothing(db, users):
    conversation = await make_group(db, 1, 2, 3)

    with pytest.raises(NotMember):
        await ChatService.send_message(db, 4, conversation.id, MessageCreate(content="intruder"))

    assert await count_rows(Message) == 0
    assert await count_rows(MessageStatus) == 0


async def test_failed_append_rolls_back_everything(db, users, monkeypatch):
    conversation = await make_group(db, 1, 2, 3)
    original_append = MessageRepository.append

    async def broken_append(session, message):
        await original_append(session, message)
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(MessageRepository, "append", staticmethod(broken_append))

    with pytest.raises(PersistenceFailure) as exc_info:
        await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="lost"))

    assert exc_info.value.retryable is True
    assert await count_rows(Message) == 0
    assert await count_rows(MessageStatus) == 0
    async with AsyncSessionLocal() as fresh:
        stored = await fresh.get(Conversation, conversation.id)
    assert stored.last_message_at == conversation.last_message_at


async def test_reply_must_target_same_conversation(db, users):
    first = await make_group(db, 1, 2, name="First")
    second = await make_group(db, 1, 2, name="Second")
    original = await ChatService.send_message(db, 1, first.id, MessageCreate(content="original"))

    with pytest.raises(MessageNotFound):
        await ChatService.send_message(
            db, 2, second.id, MessageCreate(content="reply", reply_to_message_id=original.id)
        )

    reply = await ChatService.send_message(
        db, 2, first.id, MessageCreate(content="reply", reply_to_message_id=original.id)
    )
    assert reply.reply_to.id == original.id
    assert reply.reply_to.content == "original"
    assert reply.reply_to.sender.name == "User1"


async def test_forward_requires_access_to_source(db, users):
    private_room = await make_group(db, 1, 2, name="Private")
    other_room = await make_group(db, 3, 4, name="Other")
    secret = await ChatService.send_message(db, 1, private_room.id, MessageCreate(content="secret"))

    with pytest.raises(NotMember):
        await ChatService.send_message(
            db, 3, other_room.id, MessageCreate(content="fwd", forward_from_message_id=secret.id)
        )


async def test_attachment_only_message(db, users):
    conversation = await make_group(db, 1, 2)
    sent = await ChatService.send_message(
        db, 1, conversation.id,
        MessageCreate(
            message_type="image",
            attachment_url="https://files.example/cat.png",
            attachment_name="cat.png",
            attachment_size=2048,
            attachment_mime_type="image/png",
            metadata={"width": 640},
        ),
    )
    assert sent.content is None
    assert sent.message_type == "image"
    assert sent.metadata == {"width": 640}


async def test_read_is_idempotent(db, users):
    conversation = await make_group(db, 1, 2, 3)
    sent = await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="read me"))

    first = await ChatService.mark_message_read(db, 2, sent.id, conversation.id)
    await asyncio.sleep(0.01)
    second = await ChatService.mark_message_read(db, 2, sent.id)

    assert first.changed is True
    assert second.changed is False
    assert first.read_at is not None
    assert second.read_at == first.read_at

    async with AsyncSessionLocal() as fresh:
        member = (await fresh.execute(
            select(ConversationMember).where(
                ConversationMember.conversation_id == conversation.id,
                ConversationMember.user_id == 2,
            )
        )).scalar_one()
    assert member.last_read_message_id == sent.id
    assert await statuses_of(sent.id) == [(1, "read"), (2, "read"), (3, "sent")]


async def test_read_checks_conversation_and_membership(db, users):
    conversation = await make_group(db, 1, 2)
    other = await make_group(db, 3, 4, name="Other")
    sent = await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="hi"))

    with pytest.raises(ValidationFailure):
        await ChatService.mark_message_read(db, 2, sent.id, other.id)
    with pytest.raises(NotMember):
        await ChatService.mark_message_read(db, 3, sent.id)
    with pytest.raises(MessageNotFound):
        await ChatService.mark_message_read(db, 2, 9999)


async def test_mark_conversation_read(db, users):
    conversation = await make_group(db, 1, 2)
    for text in ("one", "two", "three"):
        await ChatService.send_message(db, 1, conversation.id, MessageCreate(content=text))

    stats = await ChatService.get_stats(db, conversation.id, 2)
    assert (stats.message_count, stats.member_count, stats.unread_count) == (3, 2, 3)

    receipt = await ChatService.mark_conversation_read(db, 2, conversation.id)
    assert receipt.message_count == 3
    again = await ChatService.mark_conversation_read(db, 2, conversation.id)
    assert again.message_count == 0

    stats = await ChatService.get_stats(db, conversation.id, 2)
    assert stats.unread_count == 0


async def test_messages_are_paginated_newest_page_first(db, users):
    conversation = await make_group(db, 1, 2)
    for i in range(5):
        await ChatService.send_message(db, 1, conversation.id, MessageCreate(content=f"m{i}"))

    first_page = await ChatService.get_messages(db, conversation.id, 2, page=1, limit=2)
    assert [m.content for m in first_page.messages] == ["m3", "m4"]
    assert first_page.pagination.total_items == 5
    assert first_page.pagination.total_pages == 3
    assert first_page.pagination.has_next_page is True
    assert first_page.pagination.has_previous_page is False
    assert {s.user_id for s in first_page.messages[0].statuses} == {1, 2}

    last_page = await ChatService.get_messages(db, conversation.id, 2, page=3, limit=2)
    assert [m.content for m in last_page.messages] == ["m0"]
    assert last_page.pagination.has_next_page is False

    with pytest.raises(NotMember):
        await ChatService.get_messages(db, conversation.id, 5)


async def test_corrupt_row_does_not_break_history(db, users):
    conversation = await make_group(db, 1, 2)
    good = await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="fine"))
    bad = await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="broken"))
    await db.execute(update(Message).where(Message.id == bad.id).values(content="garbage"))
    await db.commit()

    page = await ChatService.get_messages(db, conversation.id, 1)
    contents = {m.id: m.content for m in page.messages}
    assert contents == {good.id: "fine", bad.id: DECRYPTION_PLACEHOLDER}


async def test_search_is_scoped_to_my_conversations(db, users):
    mine = await make_group(db, 1, 2, name="Mine")
    theirs = await make_group(db, 3, 4, name="Theirs")
    await ChatService.send_message(db, 2, mine.id, MessageCreate(content="Project Kickoff at 10"))
    await ChatService.send_message(db, 1, mine.id, MessageCreate(content="lunch?"))
    await ChatService.send_message(db, 3, theirs.id, MessageCreate(content="kickoff secrets"))

    results = await ChatService.search_messages(db, 1, "KICKOFF")
    assert [r.content for r in results] == ["Project Kickoff at 10"]
    assert results[0].conversation == {"id": mine.id, "type": "group", "name": "Mine"}

    assert await ChatService.search_messages(db, 1, "lunch", conversation_id=mine.id)
    with pytest.raises(NotMember):
        await ChatService.search_messages(db, 1, "kickoff", conversation_id=theirs.id)


async def test_search_treats_wildcards_literally(db, users):
    conversation = await make_group(db, 1, 2)
    await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="100% done"))
    await ChatService.send_message(db, 1, conversation.id, MessageCreate(content="1000 done"))

    results = await ChatService.search_messages(db, 1, "0% d")
    assert [r.content for r in results] == ["100% done"]


@pytest.mark.parametrize("query", ["", " ", "a", " b "])
async def test_search_query_too_short(db, users, query):
    with pytest.raises(ValidationFailure):
        await ChatService.search_messages(db, 1, query)

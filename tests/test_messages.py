from datetime import timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from messaging.exceptions import (
    DeleteWindowExpired,
    InvalidArgument,
    NotFound,
    RateLimited,
    Unauthorized,
)
from messaging.models.base import new_id, utcnow
from messaging.models.message import Message, MessageStatus
from messaging.models.message_reaction import MessageReaction
from messaging.models.message_read_receipt import MessageReadReceipt
from messaging.rate_limit import SlidingWindowRateLimiter
from messaging.repositories.message_repository import MessageRepository
from messaging.schemas.conversation import CreateGroupConversation
from messaging.schemas.message import Attachment, MessageCreate
from messaging.services.messages import MessageService


async def count(db, model, *conditions):
    result = await db.execute(select(func.count()).select_from(model).where(*conditions))
    return result.scalar()


async def test_send_persists_and_marks_delivered(message_service, direct_conversation, alice, bob, channel, fanout):
    conversation = await direct_conversation()

    result = await message_service.send(
        alice, MessageCreate(conversation_id=conversation.id, content="  hello  ", client_id="c-1")
    )
    await fanout.wait_idle()

    message = result.message
    assert result.duplicate is False
    assert message.content == "hello"
    assert message.status == MessageStatus.DELIVERED
    assert [d.user_id for d in message.delivered_to] == [bob.id]
    assert message.read_by == []
    assert message.client_id == "c-1"
    assert message.sender.name == "Alice"
    assert message.sender.is_verified is True

    new_events = channel.for_user(bob.id, "message:new")
    assert [e["id"] for e in new_events] == [message.id]
    assert new_events[0]["sender"]["avatar_url"] == "https://cdn.example.com/alice.png"
    assert channel.for_user(alice.id) == []


async def test_send_updates_conversation_markers(message_service, conversation_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()

    await send(alice, conversation, "one")
    last = await send(bob, conversation, "two")

    reloaded = await conversation_service.conversations.get_by_id(conversation.id)
    assert reloaded.message_count == 2
    assert reloaded.last_message_id == last.id
    assert reloaded.last_activity_at == last.created_at


async def test_send_with_same_client_id_is_idempotent(message_service, direct_conversation, alice, db):
    conversation = await direct_conversation()
    data = MessageCreate(conversation_id=conversation.id, content="retry me", client_id="tmp-42")

    first = await message_service.send(alice, data)
    second = await message_service.send(alice, data)

    assert second.duplicate is True
    assert second.message.id == first.message.id
    assert await count(db, Message, Message.client_id == "tmp-42") == 1

    reloaded = await message_service.conversations.get_by_id(conversation.id)
    assert reloaded.message_count == 1


async def test_client_id_race_resolves_to_existing(message_service, direct_conversation, alice, db, monkeypatch):
    conversation = await direct_conversation()
    data = MessageCreate(conversation_id=conversation.id, content="retry me", client_id="tmp-7")
    first = await message_service.send(alice, data)

    original = MessageRepository.get_by_client_id
    calls = []

    async def late_lookup(self, sender_id, client_id):
        # Miss the first lookup so the insert hits the unique constraint
        calls.append(client_id)
        if len(calls) == 1:
            return None
        return await original(self, sender_id, client_id)

    monkeypatch.setattr(MessageRepository, "get_by_client_id", late_lookup)

    second = await message_service.send(alice, data)

    assert second.duplicate is True
    assert second.message.id == first.message.id
    assert await count(db, Message, Message.client_id == "tmp-7") == 1


async def test_client_id_reused_in_another_conversation(message_service, direct_conversation, alice, bob, carol):
    with_bob = await direct_conversation()
    with_carol = await direct_conversation(alice, carol)
    first = await message_service.send(alice, MessageCreate(conversation_id=with_bob.id, content="a", client_id="x"))
    await message_service.mark_as_read(first.message.id, bob)

    retried = await message_service.send(alice, MessageCreate(conversation_id=with_carol.id, content="a", client_id="x"))

    assert retried.duplicate is True
    assert retried.message.id == first.message.id
    assert retried.message.conversation_id == with_bob.id
    assert retried.message.status == MessageStatus.READ


async def test_same_client_id_from_different_senders(message_service, direct_conversation, alice, bob):
    conversation = await direct_conversation()

    first = await message_service.send(alice, MessageCreate(conversation_id=conversation.id, content="a", client_id="x"))
    second = await message_service.send(bob, MessageCreate(conversation_id=conversation.id, content="b", client_id="x"))

    assert second.duplicate is False
    assert second.message.id != first.message.id


async def test_send_requires_content_or_attachments(message_service, direct_conversation, alice):
    conversation = await direct_conversation()

    with pytest.raises(InvalidArgument):
        await message_service.send(alice, MessageCreate(conversation_id=conversation.id, content="   "))

    result = await message_service.send(
        alice,
        MessageCreate(
            conversation_id=conversation.id,
            attachments=[Attachment(url="https://cdn.example.com/cat.png", mime_type="image/png")],
        ),
    )
    assert result.message.attachments[0].url == "https://cdn.example.com/cat.png"


async def test_send_rejects_overlong_content(message_service, direct_conversation, alice):
    conversation = await direct_conversation()

    with pytest.raises(InvalidArgument):
        await message_service.send(alice, MessageCreate(conversation_id=conversation.id, content="x" * 4001))


async def test_send_to_unknown_or_malformed_conversation(message_service, alice):
    with pytest.raises(NotFound):
        await message_service.send(alice, MessageCreate(conversation_id=new_id(), content="hi"))
    with pytest.raises(InvalidArgument):
        await message_service.send(alice, MessageCreate(conversation_id="42", content="hi"))


async def test_non_participant_cannot_send(message_service, direct_conversation, carol):
    conversation = await direct_conversation()

    with pytest.raises(Unauthorized):
        await message_service.send(carol, MessageCreate(conversation_id=conversation.id, content="hi"))


async def test_reply_to_must_be_in_same_conversation(message_service, direct_conversation, send, alice, bob, carol):
    conversation = await direct_conversation(alice, bob)
    other = await direct_conversation(alice, carol)
    elsewhere = await send(alice, other, "elsewhere")

    with pytest.raises(InvalidArgument):
        await message_service.send(
            alice, MessageCreate(conversation_id=conversation.id, content="re", reply_to=elsewhere.id)
        )


async def test_rate_limit_rejects_before_persisting(db, fanout, redis_client, direct_conversation, alice):
    conversation = await direct_conversation()
    service = MessageService(db, fanout, SlidingWindowRateLimiter(redis_client, limit=2, window_seconds=60))

    for content in ("one", "two"):
        await service.send(alice, MessageCreate(conversation_id=conversation.id, content=content))
    with pytest.raises(RateLimited):
        await service.send(alice, MessageCreate(conversation_id=conversation.id, content="three"))

    assert await count(db, Message, Message.conversation_id == conversation.id) == 2


async def test_mark_as_read_is_monotonic(message_service, direct_conversation, send, alice, bob, db, channel, fanout):
    conversation = await direct_conversation()
    message = await send(alice, conversation)

    results = [await message_service.mark_as_read(message.id, bob) for _ in range(3)]
    await fanout.wait_idle()

    assert results == [True, False, False]
    assert await count(db, MessageReadReceipt, MessageReadReceipt.message_id == message.id) == 1
    read_events = channel.for_user(alice.id, "message:read")
    assert len(read_events) == 1
    assert read_events[0]["message_ids"] == [message.id]
    assert read_events[0]["read_by"]["name"] == "Bob"


async def test_sender_reading_own_message_is_noop(message_service, direct_conversation, send, alice, db):
    conversation = await direct_conversation()
    message = await send(alice, conversation)

    assert await message_service.mark_as_read(message.id, alice) is False
    assert await count(db, MessageReadReceipt) == 0


async def test_status_moves_to_read(message_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()
    message = await send(alice, conversation)
    assert message.status == MessageStatus.DELIVERED

    await message_service.mark_as_read(message.id, bob)

    history = await message_service.history(conversation.id, alice, mark_read=False)
    assert history.messages[0].status == MessageStatus.READ


async def test_group_status_needs_every_reader(message_service, conversation_service, send, alice, bob, carol):
    conversation = await conversation_service.create_group(
        alice.id, CreateGroupConversation(name="Trio", member_ids=[bob.id, carol.id])
    )
    message = await send(alice, conversation)

    await message_service.mark_as_read(message.id, bob)
    history = await message_service.history(conversation.id, alice, mark_read=False)
    assert history.messages[0].status == MessageStatus.DELIVERED

    await message_service.mark_as_read(message.id, carol)
    history = await message_service.history(conversation.id, alice, mark_read=False)
    assert history.messages[0].status == MessageStatus.READ


async def test_history_is_oldest_first_and_marks_read(message_service, direct_conversation, send, alice, bob, channel, fanout):
    conversation = await direct_conversation()
    sent = [await send(alice, conversation, f"m{i}") for i in range(3)]
    await fanout.wait_idle()
    channel.clear()

    history = await message_service.history(conversation.id, bob, limit=2)
    await fanout.wait_idle()

    assert [m.id for m in history.messages] == [sent[1].id, sent[2].id]
    assert history.has_more is True
    assert history.next_cursor == sent[1].created_at
    assert all(bob.id in [r.user_id for r in m.read_by] for m in history.messages)
    assert channel.for_user(alice.id, "message:read")[0]["message_ids"] == [sent[2].id, sent[1].id]

    older = await message_service.history(conversation.id, bob, before=history.next_cursor, limit=2)
    assert [m.id for m in older.messages] == [sent[0].id]
    assert older.has_more is False


async def test_history_cursor_keeps_messages_sharing_a_timestamp(message_service, direct_conversation, send, alice, bob, db):
    conversation = await direct_conversation()
    sent = [await send(alice, conversation, f"m{i}") for i in range(3)]
    await db.execute(update(Message).where(Message.id == sent[0].id).values(created_at=sent[1].created_at))
    await db.commit()

    page = await message_service.history(conversation.id, bob, limit=1, mark_read=False)
    seen = [m.id for m in page.messages]
    while page.has_more:
        page = await message_service.history(
            conversation.id, bob, before=page.next_cursor, before_id=page.next_cursor_id, limit=1, mark_read=False
        )
        seen.extend(m.id for m in page.messages)

    assert seen == [sent[2].id] + sorted([sent[0].id, sent[1].id], reverse=True)


async def test_history_accepts_offset_aware_cursor(message_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()
    sent = [await send(alice, conversation, f"m{i}") for i in range(3)]
    cursor = sent[2].created_at
    plus_two = (cursor + timedelta(hours=2)).replace(tzinfo=timezone(timedelta(hours=2)))

    naive = await message_service.history(conversation.id, bob, before=cursor, mark_read=False)
    aware = await message_service.history(conversation.id, bob, before=plus_two, mark_read=False)

    assert [m.id for m in aware.messages] == [m.id for m in naive.messages] == [sent[0].id, sent[1].id]


async def test_history_without_marking_read(message_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()
    await send(alice, conversation)

    await message_service.history(conversation.id, bob, mark_read=False)

    assert await message_service.directory.unread_count(conversation.id, bob.id) == 1


async def test_reactions_replace_previous(message_service, direct_conversation, send, alice, bob, db, channel, fanout):
    conversation = await direct_conversation()
    message = await send(alice, conversation)

    await message_service.add_reaction(message.id, bob, "👍")
    response = await message_service.add_reaction(message.id, bob, "❤️")
    await fanout.wait_idle()

    assert [(r.user_id, r.emoji) for r in response.reactions] == [(bob.id, "❤️")]
    assert await count(db, MessageReaction, MessageReaction.message_id == message.id) == 1
    actions = [e["action"] for e in channel.for_user(alice.id, "message:reaction")]
    assert actions == ["add", "add"]


async def test_remove_reaction(message_service, direct_conversation, send, alice, bob, channel, fanout):
    conversation = await direct_conversation()
    message = await send(alice, conversation)
    await message_service.add_reaction(message.id, bob, "🔥")
    await fanout.wait_idle()
    channel.clear()

    assert await message_service.remove_reaction(message.id, bob) is True
    assert await message_service.remove_reaction(message.id, bob) is False
    await fanout.wait_idle()

    removals = channel.for_user(alice.id, "message:reaction")
    assert len(removals) == 1
    assert removals[0]["action"] == "remove"
    assert removals[0]["emoji"] is None


async def test_reaction_requires_emoji(message_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()
    message = await send(alice, conversation)

    with pytest.raises(InvalidArgument):
        await message_service.add_reaction(message.id, bob, "  ")


async def test_delete_for_everyone_hides_content(message_service, direct_conversation, send, alice, bob, channel, fanout):
    conversation = await direct_conversation()
    message = await send(alice, conversation, "secret")
    await fanout.wait_idle()
    channel.clear()

    assert await message_service.delete(message.id, alice, for_everyone=True) is True
    await fanout.wait_idle()

    for viewer in (alice, bob):
        history = await message_service.history(conversation.id, viewer, mark_read=False)
        assert [m.id for m in history.messages] == [message.id]
        assert history.messages[0].is_deleted is True
        assert history.messages[0].content is None

    deleted_events = channel.for_user(bob.id, "message:deleted")
    assert deleted_events[0]["delete_for_everyone"] is True

    reloaded = await message_service.conversations.get_by_id(conversation.id)
    assert reloaded.last_message_id is None


async def test_delete_for_everyone_only_by_sender(message_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()
    message = await send(alice, conversation)

    with pytest.raises(Unauthorized):
        await message_service.delete(message.id, bob, for_everyone=True)


async def test_delete_for_everyone_after_window(message_service, direct_conversation, send, alice, db):
    conversation = await direct_conversation()
    message = await send(alice, conversation)
    await db.execute(
        update(Message)
        .where(Message.id == message.id)
        .values(created_at=utcnow() - timedelta(hours=1, seconds=5))
    )
    await db.commit()

    with pytest.raises(DeleteWindowExpired):
        await message_service.delete(message.id, alice, for_everyone=True)


async def test_delete_window_boundary_is_inclusive(message_service, direct_conversation, send, alice, monkeypatch):
    conversation = await direct_conversation()
    message = await send(alice, conversation)
    monkeypatch.setattr(
        "messaging.services.messages.utcnow", lambda: message.created_at + timedelta(hours=1)
    )

    assert await message_service.delete(message.id, alice, for_everyone=True) is True


async def test_delete_for_self(message_service, direct_conversation, send, alice, bob, channel, fanout):
    conversation = await direct_conversation()
    message = await send(alice, conversation, "only for bob")
    await fanout.wait_idle()
    channel.clear()

    assert await message_service.delete(message.id, alice) is True
    await fanout.wait_idle()

    alice_view = await message_service.history(conversation.id, alice, mark_read=False)
    bob_view = await message_service.history(conversation.id, bob, mark_read=False)
    assert alice_view.messages == []
    assert [m.content for m in bob_view.messages] == ["only for bob"]

    assert [e["delete_for_everyone"] for e in channel.for_user(alice.id, "message:deleted")] == [False]
    assert channel.for_user(bob.id) == []

    with pytest.raises(NotFound):
        await message_service.add_reaction(message.id, alice, "👍")


async def test_read_receipts(message_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()
    message = await send(alice, conversation)
    await message_service.mark_as_read(message.id, bob)

    receipts = await message_service.read_receipts(message.id, alice)

    assert [(r.user_id, r.name) for r in receipts] == [(bob.id, "Bob")]


async def test_search(message_service, direct_conversation, send, alice, bob, carol):
    conversation = await direct_conversation(alice, bob)
    foreign = await direct_conversation(bob, carol)
    first = await send(alice, conversation, "Lunch tomorrow?")
    second = await send(bob, conversation, "lunch sounds good")
    await send(alice, conversation, "see you")
    await send(carol, foreign, "lunch with carol")
    hidden = await send(bob, conversation, "lunch is 100% on me")
    await message_service.delete(hidden.id, alice)

    results = await message_service.search(alice, "LUNCH")

    assert [m.id for m in results.messages] == [second.id, first.id]
    assert results.has_more is False

    scoped = await message_service.search(alice, "lunch", conversation_id=conversation.id, limit=1)
    assert [m.id for m in scoped.messages] == [second.id]
    assert scoped.has_more is True


async def test_search_escapes_wildcards(message_service, direct_conversation, send, alice):
    conversation = await direct_conversation()
    await send(alice, conversation, "100% done")
    await send(alice, conversation, "1000 items")

    results = await message_service.search(alice, "0%")

    assert [m.content for m in results.messages] == ["100% done"]


async def test_search_term_too_short(message_service, alice):
    with pytest.raises(InvalidArgument):
        await message_service.search(alice, " a ")


async def test_reply_survives_delete_of_parent(message_service, direct_conversation, send, alice, bob):
    conversation = await direct_conversation()
    parent = await send(alice, conversation, "original")
    await message_service.mark_as_read(parent.id, bob)
    reply = await send(alice, conversation, "follow up", reply_to=parent.id)

    assert reply.reply_to.id == parent.id
    assert reply.reply_to.content == "original"

    await message_service.delete(parent.id, alice, for_everyone=True)

    history = await message_service.history(conversation.id, bob, mark_read=False)
    by_id = {m.id: m for m in history.messages}
    assert by_id[reply.id].content == "follow up"
    assert by_id[reply.id].is_deleted is False
    assert by_id[reply.id].reply_to.id == parent.id
    assert by_id[reply.id].reply_to.is_deleted is True
    assert by_id[reply.id].reply_to.content is None

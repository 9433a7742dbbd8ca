import asyncio
from dataclasses import replace

import pytest

from relaybot.agent.policy import (
    ATTACHMENT_APOLOGY,
    FALLBACK_GREETING,
    GREETING_PROMPT,
    REPLY_APOLOGY,
    TEXT_APOLOGY,
)
from relaybot.bus.events import (
    CONTENT_GROUP_UPDATED,
    CONTENT_REMOTE_ATTACHMENT,
    Attachment,
    EventKind,
    GroupUpdate,
    InboundEvent,
    RemoteAttachment,
    ReplyContent,
)
from relaybot.errors import StoreResetRequired

from tests.conftest import (
    BOT_ADDRESS,
    BOT_INBOX,
    FAST_DELAY,
    FakeConversation,
    make_message,
    make_reply,
    text_event,
)


async def _settle() -> None:
    await asyncio.sleep(FAST_DELAY * 4)


def _reply_event(conv, msg) -> InboundEvent:
    return InboundEvent(kind=EventKind.REPLY, conversation=conv, message=msg)


# ── text ──


async def test_dm_text_is_answered_after_quiet_period(dispatcher, client, backend, mappings) -> None:
    conv = client.add(FakeConversation("dm-1"))

    await dispatcher.handle_text(text_event(conv, make_message("hello")))
    assert backend.calls == []

    await _settle()

    assert len(backend.calls) == 1
    call = backend.calls[0]
    assert call["message"] == "hello"
    assert call["sender"] == "0xuser-inbox"
    assert call["conversation_id"] == "dm-1"
    assert conv.sent == ["backend says hi"]

    mapping = mappings.lookup("dm-1")
    assert mapping is not None
    assert mapping.conversation_id == "dm-1"
    assert mapping.wallet_address == "0xuser-inbox"
    assert mapping.agent_id == "agent-1"


async def test_duplicate_delivery_is_processed_once(dispatcher, client, backend) -> None:
    conv = client.add(FakeConversation("dm-1"))
    msg = make_message("hello")

    await dispatcher.handle_text(text_event(conv, msg))
    await dispatcher.handle_text(text_event(conv, msg))
    await _settle()

    assert len(backend.calls) == 1


async def test_backend_failure_sends_apology(dispatcher, client, backend) -> None:
    backend.fail = True
    conv = client.add(FakeConversation("dm-1"))

    await dispatcher.handle_text(text_event(conv, make_message("hello")))
    await _settle()

    assert conv.sent == [TEXT_APOLOGY]


async def test_text_and_image_become_one_turn(dispatcher, client, backend) -> None:
    conv = client.add(FakeConversation("dm-1"))
    client.attachments["https://files.test/cat"] = Attachment("cat.png", "image/png", b"\x89PNG")
    image_msg = make_message(
        RemoteAttachment(url="https://files.test/cat", filename="cat.png", content_length=4),
        content_type=CONTENT_REMOTE_ATTACHMENT,
    )

    await dispatcher.handle_attachment(
        InboundEvent(kind=EventKind.ATTACHMENT, conversation=conv, message=image_msg)
    )
    await dispatcher.handle_text(text_event(conv, make_message("what is this?")))
    await _settle()

    assert len(backend.calls) == 1
    assert backend.calls[0]["message"] == (
        "what is this?\n\nUser shared an image\n\n[Image Analysis: a cat on a keyboard]"
    )


async def test_attachment_failure_sends_apology(dispatcher, client, backend) -> None:
    conv = client.add(FakeConversation("dm-1"))
    msg = make_message(
        RemoteAttachment(url="https://files.test/missing"),
        content_type=CONTENT_REMOTE_ATTACHMENT,
    )

    await dispatcher.handle_attachment(InboundEvent(kind=EventKind.ATTACHMENT, conversation=conv, message=msg))
    await _settle()

    assert conv.sent == [ATTACHMENT_APOLOGY]
    assert backend.calls == []


async def test_reaction_sent_when_enabled(dispatcher, client) -> None:
    dispatcher.policy = replace(dispatcher.policy, enable_reactions=True)
    conv = client.add(FakeConversation("dm-1"))
    msg = make_message("hello")

    await dispatcher.handle_text(text_event(conv, msg))
    await _settle()

    assert conv.reactions == [("👀", msg.id)]


# ── group greeting ──


async def test_first_group_message_triggers_greeting_only(dispatcher, client, backend, greeted) -> None:
    conv = client.add(FakeConversation("group-1", is_group=True, history=[make_message("hey", sender="alice")]))

    await dispatcher.handle_text(text_event(conv, make_message("hi all @jessexbt")))
    await _settle()

    assert len(backend.calls) == 1
    assert backend.calls[0]["message"] == GREETING_PROMPT
    assert backend.calls[0]["sender"] == BOT_ADDRESS
    assert conv.sent == ["backend says hi"]
    assert "group-1" in greeted.greeted


async def test_greeting_falls_back_when_backend_fails(dispatcher, client, backend, greeted) -> None:
    backend.fail = True
    conv = client.add(FakeConversation("group-1", is_group=True))

    await dispatcher.handle_text(text_event(conv, make_message("hi")))

    assert conv.sent == [FALLBACK_GREETING]
    assert "group-1" in greeted.greeted


async def test_no_greeting_when_bot_already_posted(dispatcher, client, backend, greeted) -> None:
    history = [make_message("old bot message", sender=BOT_INBOX)]
    conv = client.add(FakeConversation("group-1", is_group=True, history=history))

    await dispatcher.handle_text(text_event(conv, make_message("hi")))
    await _settle()

    assert conv.sent == []
    assert backend.calls == []
    assert "group-1" in greeted.greeted


async def test_history_failure_still_marks_group_greeted(dispatcher, client, greeted) -> None:
    conv = client.add(FakeConversation("group-1", is_group=True))
    conv.fail_history = True

    await dispatcher.handle_text(text_event(conv, make_message("hi")))

    assert conv.sent == []
    assert "group-1" in greeted.greeted


# ── group eligibility ──


async def test_group_message_without_mention_is_ignored(dispatcher, client, backend, greeted) -> None:
    greeted.greeted.add("group-1")
    conv = client.add(FakeConversation("group-1", is_group=True))

    await dispatcher.handle_text(text_event(conv, make_message("just chatting")))
    await _settle()

    assert backend.calls == []


async def test_group_mention_is_case_insensitive(dispatcher, client, backend, greeted) -> None:
    greeted.greeted.add("group-1")
    conv = client.add(FakeConversation("group-1", is_group=True))

    await dispatcher.handle_text(text_event(conv, make_message("hey @JesseXBTai.base.eth thoughts?")))
    await _settle()

    assert len(backend.calls) == 1


async def test_mentions_ignored_when_filter_disabled(dispatcher, client, backend, greeted) -> None:
    dispatcher.policy = replace(dispatcher.policy, mention_filter=None)
    greeted.greeted.add("group-1")
    conv = client.add(FakeConversation("group-1", is_group=True))

    await dispatcher.handle_text(text_event(conv, make_message("hey @jessexbt")))
    await _settle()

    assert backend.calls == []


async def test_group_text_replying_to_bot_is_eligible(dispatcher, client, backend, greeted) -> None:
    greeted.greeted.add("group-1")
    conv = client.add(FakeConversation("group-1", is_group=True))
    msg = make_message(ReplyContent(reference="bot-1", content="go on", reference_inbox_id=BOT_INBOX))

    await dispatcher.handle_text(text_event(conv, msg))
    await _settle()

    assert backend.calls[0]["message"] == "go on"


# ── replies ──


async def test_group_reply_to_bot_includes_quoted_context(dispatcher, client, backend, mappings) -> None:
    bot_msg = make_message("I am the earlier bot answer", sender=BOT_INBOX, msg_id="bot-1")
    conv = client.add(FakeConversation("group-1", is_group=True, history=[bot_msg]))

    await dispatcher.handle_reply(_reply_event(conv, make_reply("tell me more", "bot-1")))
    await dispatcher.drain()

    assert backend.calls[0]["message"] == (
        '[Immediate parent message]: "I am the earlier bot answer"\n\ntell me more'
    )
    assert conv.sent == ["backend says hi"]
    assert mappings.lookup("group-1") is not None


async def test_group_reply_to_someone_else_is_ignored(dispatcher, client, backend, mappings) -> None:
    human_msg = make_message("human words", sender="alice", msg_id="h-1")
    conv = client.add(FakeConversation("group-1", is_group=True, history=[human_msg]))

    await dispatcher.handle_reply(_reply_event(conv, make_reply("agreed", "h-1")))
    await dispatcher.drain()

    assert backend.calls == []
    assert mappings.lookup("group-1") is None


async def test_long_quote_is_truncated(dispatcher, client, backend) -> None:
    original = make_message("x" * 250, sender=BOT_INBOX, msg_id="bot-1")
    conv = client.add(FakeConversation("dm-1", history=[original]))

    await dispatcher.handle_reply(_reply_event(conv, make_reply("why?", "bot-1")))
    await dispatcher.drain()

    assert backend.calls[0]["message"] == f'[Immediate parent message]: "{"x" * 200}..."\n\nwhy?'


async def test_reply_without_found_quote_is_unchanged(dispatcher, client, backend) -> None:
    conv = client.add(FakeConversation("dm-1"))

    await dispatcher.handle_reply(_reply_event(conv, make_reply("why?", "gone")))
    await dispatcher.drain()

    assert backend.calls[0]["message"] == "why?"


async def test_reply_background_failure_sends_reply_apology(dispatcher, client, backend) -> None:
    backend.fail = True
    conv = client.add(FakeConversation("dm-1"))

    await dispatcher.handle_reply(_reply_event(conv, make_reply("why?", "gone")))
    await dispatcher.drain()

    assert conv.sent == [REPLY_APOLOGY]


async def test_stuck_history_triggers_recovery(dispatcher, client, restarts) -> None:
    client.db_path.write_bytes(b"store")
    bot_msg = make_message("bot", sender=BOT_INBOX, msg_id="bot-1")
    conv = client.add(FakeConversation("group-1", is_group=True, history=[bot_msg]))

    # first reply reads history twice (target lookup + context)
    await dispatcher.handle_reply(_reply_event(conv, make_reply("one", "bot-1")))
    await dispatcher.drain()

    with pytest.raises(StoreResetRequired):
        await dispatcher.handle_reply(_reply_event(conv, make_reply("two", "bot-1")))

    assert restarts == [True]
    assert not client.db_path.exists()


# ── conversation lifecycle ──


async def test_new_group_conversation_is_greeted(dispatcher, client, backend, greeted, mappings) -> None:
    conv = client.add(FakeConversation("group-1", is_group=True))

    await dispatcher.handle_conversation(InboundEvent(kind=EventKind.CONVERSATION, conversation=conv))

    assert conv.sent == ["backend says hi"]
    assert backend.calls[0]["sender"] == BOT_ADDRESS
    assert "group-1" in greeted.greeted
    assert mappings.lookup("group-1").wallet_address == BOT_ADDRESS


async def test_already_greeted_group_is_not_greeted_again(dispatcher, client, greeted) -> None:
    greeted.greeted.add("group-1")
    conv = client.add(FakeConversation("group-1", is_group=True))

    await dispatcher.handle_conversation(InboundEvent(kind=EventKind.CONVERSATION, conversation=conv))

    assert conv.sent == []


async def test_new_dm_conversation_sends_nothing(dispatcher, client) -> None:
    conv = client.add(FakeConversation("dm-1"))

    await dispatcher.handle_conversation(InboundEvent(kind=EventKind.CONVERSATION, conversation=conv))

    assert conv.sent == []


async def test_bot_added_to_group_greets_with_initiator_address(dispatcher, client, backend, greeted) -> None:
    conv = client.add(FakeConversation("group-1", is_group=True))
    update = GroupUpdate(initiated_by_inbox_id="admin-inbox", added_inbox_ids=[BOT_INBOX])
    msg = make_message(update, sender="admin-inbox", content_type=CONTENT_GROUP_UPDATED)

    await dispatcher.handle_group_update(
        InboundEvent(kind=EventKind.GROUP_UPDATE, conversation=conv, message=msg)
    )

    assert backend.calls[0]["sender"] == "0xadmin-inbox"
    assert conv.sent == ["backend says hi"]
    assert "group-1" in greeted.greeted


async def test_other_member_added_does_not_greet(dispatcher, client, backend) -> None:
    conv = client.add(FakeConversation("group-1", is_group=True))
    update = GroupUpdate(added_inbox_ids=["someone-else"], removed_inbox_ids=["old"])
    msg = make_message(update, content_type=CONTENT_GROUP_UPDATED)

    await dispatcher.handle_group_update(
        InboundEvent(kind=EventKind.GROUP_UPDATE, conversation=conv, message=msg)
    )

    assert backend.calls == []
    assert conv.sent == []

from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from relaybot.agent.coalescer import CoalescingScheduler
from relaybot.agent.dispatcher import DispatchPolicy, TurnDispatcher
from relaybot.agent.policy import MentionFilter
from relaybot.bus.events import (
    CONTENT_REPLY,
    CONTENT_TEXT,
    Attachment,
    EventKind,
    InboundEvent,
    InboundMessage,
    RemoteAttachment,
    ReplyContent,
)
from relaybot.channels.base import Conversation, MessagingClient
from relaybot.errors import AttachmentError, BackendError
from relaybot.health.staleness import StoreRecovery
from relaybot.providers.vision import ImageAnalysisResult
from relaybot.session.mappings import MappingStore
from relaybot.settings import RelaySettings

BOT_INBOX = "bot-inbox"
BOT_ADDRESS = "0xb0b0000000000000000000000000000000000000"
FAST_DELAY = 0.05

_ids = itertools.count(1)


def make_message(content, sender="user-inbox", content_type=CONTENT_TEXT, msg_id=None) -> InboundMessage:
    return InboundMessage(
        id=msg_id or f"msg-{next(_ids)}",
        sender_inbox_id=sender,
        content=content,
        content_type=content_type,
    )


def make_reply(text, reference, reference_inbox_id=None, sender="user-inbox") -> InboundMessage:
    return make_message(
        ReplyContent(reference=reference, content=text, reference_inbox_id=reference_inbox_id),
        sender=sender,
        content_type=CONTENT_REPLY,
    )


class FakeConversation(Conversation):
    def __init__(self, conversation_id: str = "conv-1", is_group: bool = False, history=None) -> None:
        self._id = conversation_id
        self._is_group = is_group
        self.history: list[InboundMessage] = list(history or [])
        self.sent: list[str] = []
        self.reactions: list[tuple[str, str]] = []
        self.fail_send = False
        self.fail_history = False

    @property
    def id(self) -> str:
        return self._id

    @property
    def is_group(self) -> bool:
        return self._is_group

    async def messages(self, limit: int = 50) -> list[InboundMessage]:
        if self.fail_history:
            raise RuntimeError("history unavailable")
        return list(self.history[-limit:])

    async def send(self, text: str) -> str:
        if self.fail_send:
            raise RuntimeError("send failed")
        self.sent.append(text)
        return f"sent-{len(self.sent)}"

    async def send_reaction(self, emoji: str, reference: str) -> None:
        self.reactions.append((emoji, reference))


class FakeClient(MessagingClient):
    def __init__(self, db_path: Path | None = None) -> None:
        super().__init__()
        self.conversations: dict[str, FakeConversation] = {}
        self.attachments: dict[str, Attachment] = {}
        self._db_path = db_path or Path("/nonexistent/xmtp.db3")
        self.started = False

    @property
    def inbox_id(self) -> str:
        return BOT_INBOX

    @property
    def address(self) -> str:
        return BOT_ADDRESS

    @property
    def db_path(self) -> Path:
        return self._db_path

    def add(self, conversation: FakeConversation) -> FakeConversation:
        self.conversations[conversation.id] = conversation
        return conversation

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation | None:
        return self.conversations.get(conversation_id)

    async def get_sender_address(self, message: InboundMessage) -> str:
        return f"0x{message.sender_inbox_id}"

    async def create_dm(self, *, address: str | None = None, inbox_id: str | None = None) -> Conversation:
        key = f"dm-{address or inbox_id}"
        return self.conversations.setdefault(key, FakeConversation(key))

    async def load_attachment(self, remote: RemoteAttachment) -> Attachment:
        if remote.url not in self.attachments:
            raise AttachmentError(f"cannot download {remote.url}")
        return self.attachments[remote.url]

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False


class FakeBackend:
    api_url = "http://backend.test"

    def __init__(self, response: str = "backend says hi") -> None:
        self.response = response
        self.fail = False
        self.healthy = True
        self.calls: list[dict] = []

    async def process_message(self, message, sender_address, conversation_id, agent_id=None) -> str:
        self.calls.append(
            {
                "message": message,
                "sender": sender_address,
                "conversation_id": conversation_id,
                "agent_id": agent_id,
            }
        )
        if self.fail:
            raise BackendError("backend down")
        return self.response

    async def health_check(self) -> bool:
        return self.healthy


class FakeVision:
    def __init__(self, result: ImageAnalysisResult | None = None) -> None:
        self.result = result or ImageAnalysisResult(success=True, analysis="a cat on a keyboard")
        self.seen: list[Attachment] = []

    async def analyze(self, attachment: Attachment) -> ImageAnalysisResult:
        self.seen.append(attachment)
        return self.result


class FakeGreeted:
    def __init__(self, greeted=()) -> None:
        self.greeted = set(greeted)

    async def has_greeted(self, conversation_id: str) -> bool:
        return conversation_id in self.greeted

    async def mark_as_greeted(self, conversation_id: str) -> None:
        self.greeted.add(conversation_id)


def text_event(conv: FakeConversation, msg: InboundMessage) -> InboundEvent:
    return InboundEvent(kind=EventKind.TEXT, conversation=conv, message=msg)


@pytest.fixture
def settings(tmp_path) -> RelaySettings:
    return RelaySettings(
        _env_file=None,
        wallet_key="0x" + "1" * 64,
        db_encryption_key="ab" * 32,
        agent_api_url="http://backend.test",
        state_dir=tmp_path / "state",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def client(tmp_path) -> FakeClient:
    return FakeClient(db_path=tmp_path / "xmtp.db3")


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def vision() -> FakeVision:
    return FakeVision()


@pytest.fixture
def greeted() -> FakeGreeted:
    return FakeGreeted()


@pytest.fixture
def mappings() -> MappingStore:
    return MappingStore()


@pytest.fixture
def restarts() -> list[bool]:
    return []


@pytest.fixture
def dispatcher(client, backend, vision, greeted, mappings, restarts) -> TurnDispatcher:
    return TurnDispatcher(
        client,
        backend=backend,
        vision=vision,
        greeted=greeted,
        mappings=mappings,
        coalescer=CoalescingScheduler(FAST_DELAY),
        recovery=StoreRecovery(client.db_path, on_restart=lambda: restarts.append(True)),
        policy=DispatchPolicy(
            default_agent_id="agent-1",
            mention_filter=MentionFilter(["@jessexbt", "@jessexbtai.base.eth"]),
        ),
    )

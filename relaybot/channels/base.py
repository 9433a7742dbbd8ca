"""Interface the relay expects from an XMTP client.

The protocol itself (identity, MLS, transport, local store) is provided by
a concrete client plugged in through ``RELAYBOT_CLIENT_FACTORY``.  The
client pushes events into the router by calling :meth:`MessagingClient.emit`.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from relaybot.bus.events import Attachment, InboundEvent, InboundMessage, RemoteAttachment
from relaybot.errors import ClientFactoryError

if TYPE_CHECKING:
    from relaybot.settings import RelaySettings

EventSink = Callable[[InboundEvent], Awaitable[None]]


class Conversation(ABC):
    """A DM or group conversation."""

    @property
    @abstractmethod
    def id(self) -> str: ...

    @property
    @abstractmethod
    def is_group(self) -> bool: ...

    @abstractmethod
    async def messages(self, limit: int = 50) -> list[InboundMessage]:
        """Most recent messages, newest last."""

    @abstractmethod
    async def send(self, text: str) -> str:
        """Send a text message; returns the new message id."""

    @abstractmethod
    async def send_reaction(self, emoji: str, reference: str) -> None:
        """React to message *reference* with a unicode emoji."""


class MessagingClient(ABC):
    def __init__(self) -> None:
        self._sink: EventSink | None = None

    @property
    @abstractmethod
    def inbox_id(self) -> str: ...

    @property
    @abstractmethod
    def address(self) -> str:
        """Wallet address of the bot."""

    @property
    @abstractmethod
    def db_path(self) -> Path:
        """Location of the client's local message store."""

    @abstractmethod
    async def get_conversation_by_id(self, conversation_id: str) -> Conversation | None:
        """Return the conversation or ``None`` when it is unknown."""

    @abstractmethod
    async def get_sender_address(self, message: InboundMessage) -> str:
        """Resolve a message sender's inbox id to a wallet address."""

    @abstractmethod
    async def create_dm(self, *, address: str | None = None, inbox_id: str | None = None) -> Conversation:
        """Find or create a DM with a wallet address or an inbox id."""

    @abstractmethod
    async def load_attachment(self, remote: RemoteAttachment) -> Attachment:
        """Download and decrypt a remote attachment.

        Raises :class:`relaybot.errors.AttachmentError` on failure.
        """

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin streaming events to the registered sink."""

    @abstractmethod
    async def stop(self) -> None: ...

    def set_event_sink(self, sink: EventSink) -> None:
        self._sink = sink

    async def emit(self, event: InboundEvent) -> None:
        if self._sink is None:
            logger.warning(f"Dropping {event.kind.value} event: no sink registered")
            return
        await self._sink(event)


ClientFactory = Callable[["RelaySettings"], MessagingClient]


def load_client_factory(spec: str) -> ClientFactory:
    """Import ``"package.module:callable"`` and return the callable."""
    if not spec or ":" not in spec:
        raise ClientFactoryError(
            f"invalid client factory {spec!r}; expected 'package.module:callable'"
        )
    module_name, _, attr = spec.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ClientFactoryError(f"cannot import {module_name}: {exc}") from exc

    factory: Any = getattr(module, attr, None)
    if not callable(factory):
        raise ClientFactoryError(f"{spec} is not callable")
    return factory

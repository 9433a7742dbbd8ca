"""Deliver backend-initiated replies into XMTP conversations."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from relaybot.channels.base import Conversation, MessagingClient
from relaybot.session.mappings import MappingStore
from relaybot.utils.helpers import preview, short_id

CLIENT_UNAVAILABLE = "XMTP client not available"
CONVERSATION_NOT_FOUND = "Conversation not found"


@dataclass(frozen=True, slots=True)
class ReplyResult:
    success: bool
    conversation_id: str | None = None
    error: str | None = None


class ReplyService:
    """Resolve a conversation by direct id, then by thread mapping, and send."""

    def __init__(self, mappings: MappingStore, client: MessagingClient | None = None) -> None:
        self.mappings = mappings
        self.client = client

    def set_client(self, client: MessagingClient) -> None:
        self.client = client

    @property
    def has_client(self) -> bool:
        return self.client is not None

    async def _find(self, client: MessagingClient, conversation_id: str) -> Conversation | None:
        try:
            return await client.get_conversation_by_id(conversation_id)
        except Exception as exc:
            logger.error(f"Conversation lookup failed for {short_id(conversation_id)}: {exc}")
            return None

    async def send_reply(
        self,
        message: str,
        *,
        thread_id: str | None = None,
        conversation_id: str | None = None,
    ) -> ReplyResult:
        identifier = conversation_id or thread_id
        logger.info(f"Sending reply for {short_id(identifier)}")

        client = self.client
        if client is None:
            logger.error(CLIENT_UNAVAILABLE)
            return ReplyResult(success=False, error=CLIENT_UNAVAILABLE)

        conversation: Conversation | None = None
        if conversation_id:
            conversation = await self._find(client, conversation_id)

        if conversation is None and thread_id:
            mapping = self.mappings.lookup(thread_id)
            if mapping is not None:
                conversation = await self._find(client, mapping.conversation_id)
                if conversation is not None:
                    self.mappings.touch(thread_id)

        if conversation is None:
            logger.error(f"No conversation found for {short_id(identifier)}")
            return ReplyResult(success=False, error=CONVERSATION_NOT_FOUND)

        try:
            await conversation.send(message)
        except Exception as exc:
            logger.error(f"Error sending reply to {short_id(conversation.id)}: {exc}")
            return ReplyResult(success=False, error=str(exc))

        logger.info(f"Reply sent to {short_id(conversation.id)}")
        return ReplyResult(success=True, conversation_id=conversation.id)

    async def send_message(
        self,
        message: str,
        *,
        address: str | None = None,
        inbox_id: str | None = None,
    ) -> ReplyResult:
        """Open (or reuse) a DM with *address* or *inbox_id* and send *message*."""
        if self.client is None:
            return ReplyResult(success=False, error=CLIENT_UNAVAILABLE)

        target = address or inbox_id
        logger.info(f"Sending direct message to {short_id(target)}: {preview(message)!r}")
        try:
            if address:
                dm = await self.client.create_dm(address=address)
            else:
                dm = await self.client.create_dm(inbox_id=inbox_id)
        except Exception as exc:
            kind = "address" if address else "inboxId"
            logger.error(f"Failed to create DM with {kind} {short_id(target)}: {exc}")
            return ReplyResult(success=False, error=f"Failed to create DM with {kind}: {exc}")

        try:
            await dm.send(message)
        except Exception as exc:
            logger.error(f"Failed to send message to {short_id(dm.id)}: {exc}")
            return ReplyResult(success=False, error=f"Failed to send message: {exc}")

        logger.info(f"Direct message sent to {short_id(dm.id)} ({len(message)} chars)")
        return ReplyResult(success=True, conversation_id=dm.id)

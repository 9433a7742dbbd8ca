"""Turn dispatcher: the per-event policy pipeline.

For every inbound message the dispatcher runs, in order: dedup, the group
greeting check, group eligibility (reply-to-bot or mention), then hands the
content to the coalescer.  When a batch flushes, the combined turn is sent
to the backend and the answer relayed back into the conversation.  Replies
to the bot skip the coalescer and are answered from a background task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from relaybot.agent.coalescer import (
    CoalescingScheduler,
    FlushCallback,
    FragmentKind,
    MessageFragment,
    combine_fragments,
)
from relaybot.agent.policy import (
    ATTACHMENT_APOLOGY,
    BATCH_APOLOGY,
    FALLBACK_GREETING,
    GREETING_HISTORY_LIMIT,
    GREETING_PROMPT,
    REPLY_APOLOGY,
    REPLY_CONTEXT_HISTORY_LIMIT,
    REPLY_TARGET_HISTORY_LIMIT,
    TEXT_APOLOGY,
    MentionFilter,
    format_reply_context,
)
from relaybot.bus.events import (
    EventKind,
    GroupUpdate,
    InboundEvent,
    InboundMessage,
    RemoteAttachment,
    ReplyContent,
)
from relaybot.core.dedup import DedupLedger
from relaybot.errors import StoreResetRequired
from relaybot.health.staleness import StalenessDetector, StoreRecovery
from relaybot.providers.vision import format_for_backend
from relaybot.utils.helpers import preview, short_id

if TYPE_CHECKING:
    from relaybot.bus.router import EventRouter
    from relaybot.channels.base import Conversation, MessagingClient
    from relaybot.providers.backend import BackendClient
    from relaybot.providers.vision import VisionAnalyzer
    from relaybot.session.mappings import MappingStore
    from relaybot.settings import RelaySettings
    from relaybot.storage.greeted import GreetedGroupsStore


@dataclass(frozen=True, slots=True)
class DispatchPolicy:
    default_agent_id: str
    mention_filter: MentionFilter | None = None  # None: replies to the bot only
    enable_reactions: bool = False
    reaction_emoji: str = "👀"

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> DispatchPolicy:
        return cls(
            default_agent_id=settings.default_agent_id,
            mention_filter=(
                MentionFilter(settings.agent_mentions) if settings.uses_mention_filter else None
            ),
            enable_reactions=settings.enable_reactions,
            reaction_emoji=settings.reaction_emoji,
        )


def _quoted_text(message: InboundMessage | None) -> str | None:
    if message is None or not message.has_content:
        return None
    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, ReplyContent) and isinstance(content.content, str):
        return content.content
    return None


class TurnDispatcher:
    def __init__(
        self,
        client: MessagingClient,
        *,
        backend: BackendClient,
        vision: VisionAnalyzer,
        greeted: GreetedGroupsStore,
        mappings: MappingStore,
        coalescer: CoalescingScheduler,
        recovery: StoreRecovery,
        policy: DispatchPolicy,
        dedup: DedupLedger | None = None,
        staleness: StalenessDetector | None = None,
    ) -> None:
        self.client = client
        self.backend = backend
        self.vision = vision
        self.greeted = greeted
        self.mappings = mappings
        self.coalescer = coalescer
        self.recovery = recovery
        self.policy = policy
        self.dedup = dedup or DedupLedger()
        self.staleness = staleness or StalenessDetector()
        self._background: set[asyncio.Task[None]] = set()

    def register(self, router: EventRouter) -> None:
        router.on(EventKind.TEXT, self.handle_text)
        router.on(EventKind.REPLY, self.handle_reply)
        router.on(EventKind.ATTACHMENT, self.handle_attachment)
        router.on(EventKind.CONVERSATION, self.handle_conversation)
        router.on(EventKind.GROUP_UPDATE, self.handle_group_update)
        router.on(EventKind.UNKNOWN, self.handle_unknown)
        router.on(EventKind.UNHANDLED_ERROR, self.handle_error)
        router.on(EventKind.START, self.handle_start)
        router.on(EventKind.STOP, self.handle_stop)

    @property
    def background_count(self) -> int:
        return len(self._background)

    # ── text ──

    async def handle_text(self, event: InboundEvent) -> None:
        msg, conv = event.message, event.conversation
        if msg is None or conv is None:
            return
        if not self.dedup.check_and_mark(msg.id):
            logger.debug(f"Skipping already processed message {msg.id}")
            return

        try:
            sender = await self.client.get_sender_address(msg)

            if conv.is_group:
                if not await self.greeted.has_greeted(conv.id):
                    await self._greet_on_first_message(conv)
                    return
                if not self._is_eligible(msg):
                    logger.debug(
                        f"Group message from {short_id(sender)} without reply or mention, ignoring"
                    )
                    return
                logger.info(f"Group message from {short_id(sender)} addressed to bot, processing")

            logger.info(
                f"Text from {short_id(sender)} in {short_id(conv.id)} "
                f"(group={conv.is_group}): {preview(msg.text)!r}"
            )
            await self._react(conv, msg)
            self.coalescer.add(
                conv.id,
                sender,
                MessageFragment(content=msg.text, kind=FragmentKind.TEXT, id=msg.id),
                self._flush_callback(conv, sender, TEXT_APOLOGY),
            )
        except StoreResetRequired:
            raise
        except Exception as exc:
            logger.opt(exception=exc).error(f"Error in text handler for message {msg.id}: {exc}")
            await self._safe_send(conv, TEXT_APOLOGY)

    def _is_eligible(self, msg: InboundMessage) -> bool:
        content = msg.content
        if isinstance(content, ReplyContent) and content.reference_inbox_id == self.client.inbox_id:
            return True
        mention_filter = self.policy.mention_filter
        return mention_filter is not None and mention_filter.matches(msg.text)

    # ── reply ──

    async def handle_reply(self, event: InboundEvent) -> None:
        msg, conv = event.message, event.conversation
        if msg is None or conv is None or not isinstance(msg.content, ReplyContent):
            return
        if not self.dedup.check_and_mark(msg.id):
            logger.debug(f"Skipping already processed reply {msg.id}")
            return

        reply: ReplyContent = msg.content
        try:
            sender = await self.client.get_sender_address(msg)
            logger.info(
                f"Reply from {short_id(sender)} in {short_id(conv.id)} "
                f"to message {short_id(reply.reference)}"
            )

            if conv.is_group and not await self._is_reply_to_bot(conv, reply):
                logger.info(f"Reply in {short_id(conv.id)} is not to the bot, ignoring")
                return

            quoted: str | None = None
            try:
                history = await conv.messages(limit=REPLY_CONTEXT_HISTORY_LIMIT)
                self._check_stale(conv.id, history)
                original = next((m for m in history if m.id == reply.reference), None)
                quoted = _quoted_text(original)
            except StoreResetRequired:
                raise
            except Exception as exc:
                logger.warning(f"Could not fetch original message for context: {exc}")

            text = format_reply_context(quoted, reply.content if isinstance(reply.content, str) else "")
            logger.info(
                f"Processing reply from {short_id(sender)} "
                f"(context={'yes' if quoted else 'no'}): {preview(text)!r}"
            )

            await self._react(conv, msg)
            self.mappings.upsert(conv.id, conv.id, sender, agent_id=self.policy.default_agent_id)
            self._spawn(self._answer_reply(conv, sender, text))
            logger.info("Reply queued for processing")
        except StoreResetRequired:
            raise
        except Exception as exc:
            logger.opt(exception=exc).error(f"Error in reply handler for message {msg.id}: {exc}")

    async def _is_reply_to_bot(self, conv: Conversation, reply: ReplyContent) -> bool:
        target_sender: str | None = None
        try:
            history = await conv.messages(limit=REPLY_TARGET_HISTORY_LIMIT)
            self._check_stale(conv.id, history)
            referenced = next((m for m in history if m.id == reply.reference), None)
            if referenced is None:
                logger.warning(
                    f"Referenced message {short_id(reply.reference)} not found in last "
                    f"{len(history)} messages"
                )
            else:
                target_sender = referenced.sender_inbox_id
        except StoreResetRequired:
            raise
        except Exception as exc:
            logger.error(f"Error fetching referenced message: {exc}")
        return target_sender == self.client.inbox_id

    async def _answer_reply(self, conv: Conversation, sender: str, text: str) -> None:
        try:
            response = await self.backend.process_message(
                text, sender, conv.id, self.policy.default_agent_id
            )
            await conv.send(response)
            logger.info(f"Reply response sent to {short_id(sender)}: {preview(response)!r}")
        except Exception as exc:
            logger.error(f"Error processing reply in background for {short_id(conv.id)}: {exc}")
            await self._safe_send(conv, REPLY_APOLOGY)

    # ── attachment ──

    async def handle_attachment(self, event: InboundEvent) -> None:
        msg, conv = event.message, event.conversation
        if msg is None or conv is None or not isinstance(msg.content, RemoteAttachment):
            return
        if not self.dedup.check_and_mark(msg.id):
            logger.debug(f"Skipping already processed attachment {msg.id}")
            return

        remote: RemoteAttachment = msg.content
        try:
            logger.info(
                f"Attachment received: {remote.filename} ({remote.content_length} bytes)"
            )
            sender = await self.client.get_sender_address(msg)
            await self._react(conv, msg)

            attachment = await self.client.load_attachment(remote)
            logger.info(
                f"Attachment loaded: {attachment.filename} "
                f"({attachment.mime_type}, {len(attachment.data)} bytes)"
            )
            result = await self.vision.analyze(attachment)
            text = format_for_backend(result)

            self.coalescer.add(
                conv.id,
                sender,
                MessageFragment(content=text, kind=FragmentKind.IMAGE, id=msg.id),
                self._flush_callback(conv, sender, BATCH_APOLOGY),
            )
        except Exception as exc:
            logger.opt(exception=exc).error(
                f"Error in attachment handler for message {msg.id}: {type(exc).__name__}: {exc}"
            )
            await self._safe_send(conv, ATTACHMENT_APOLOGY)

    # ── batch flush ──

    def _flush_callback(self, conv: Conversation, sender: str, apology: str) -> FlushCallback:
        async def flush(fragments: list[MessageFragment]) -> None:
            text = combine_fragments(fragments)
            texts = sum(1 for f in fragments if f.kind is FragmentKind.TEXT)
            logger.info(
                f"Processing batch for {short_id(conv.id)}: {texts} text, "
                f"{len(fragments) - texts} image, {len(text)} chars"
            )
            self.mappings.upsert(conv.id, conv.id, sender, agent_id=self.policy.default_agent_id)
            try:
                response = await self.backend.process_message(
                    text, sender, conv.id, self.policy.default_agent_id
                )
                await conv.send(response)
                logger.info(f"Response sent to {short_id(sender)}: {preview(response)!r}")
            except Exception as exc:
                logger.error(f"Error processing batch for {short_id(conv.id)} from {short_id(sender)}: {exc}")
                await self._safe_send(conv, apology)

        return flush

    # ── greetings ──

    async def _greet_on_first_message(self, conv: Conversation) -> None:
        """Greet a group the first time anyone talks in it, unless the bot already posted."""
        logger.info(f"Checking whether group {short_id(conv.id)} needs a greeting")
        try:
            history = await conv.messages(limit=GREETING_HISTORY_LIMIT)
            self._check_stale(conv.id, history)
            if any(m.sender_inbox_id == self.client.inbox_id for m in history):
                logger.info("Bot already posted in this group, skipping greeting")
            else:
                await self._send_greeting(conv, self.client.address or "unknown")
        except StoreResetRequired:
            raise
        except Exception as exc:
            logger.error(f"Error checking message history for {short_id(conv.id)}: {exc}")
        await self.greeted.mark_as_greeted(conv.id)

    async def _send_greeting(self, conv: Conversation, sender_address: str) -> None:
        try:
            greeting = await self.backend.process_message(
                GREETING_PROMPT, sender_address, conv.id, self.policy.default_agent_id
            )
            await conv.send(greeting)
            logger.info(f"Greeting sent to group {short_id(conv.id)}")
        except Exception as exc:
            logger.error(f"Error generating greeting, using fallback: {exc}")
            await conv.send(FALLBACK_GREETING)

    async def _greet_new_group(self, conv: Conversation, sender_address: str) -> None:
        if await self.greeted.has_greeted(conv.id):
            logger.info(f"Group {short_id(conv.id)} already greeted, skipping greeting")
            return
        self.mappings.upsert(conv.id, conv.id, sender_address, agent_id=self.policy.default_agent_id)
        await self._send_greeting(conv, sender_address)
        await self.greeted.mark_as_greeted(conv.id)

    async def handle_conversation(self, event: InboundEvent) -> None:
        conv = event.conversation
        if conv is None:
            return
        try:
            if not conv.is_group:
                logger.info(f"New DM conversation started: {short_id(conv.id)}")
                return
            logger.info(f"New group conversation: {short_id(conv.id)}")
            await self._greet_new_group(conv, self.client.address or "unknown")
        except Exception as exc:
            logger.error(f"Error handling new conversation {short_id(conv.id)}: {exc}")

    async def handle_group_update(self, event: InboundEvent) -> None:
        msg, conv = event.message, event.conversation
        if msg is None or conv is None or not isinstance(msg.content, GroupUpdate):
            return
        update: GroupUpdate = msg.content
        try:
            logger.info(
                f"Group update in {short_id(conv.id)}: +{len(update.added_inbox_ids)} "
                f"-{len(update.removed_inbox_ids)} metadata={len(update.metadata_field_changes)}"
            )
            if self.client.inbox_id in update.added_inbox_ids:
                logger.info(
                    f"Bot added to group {short_id(conv.id)} by {short_id(update.initiated_by_inbox_id)}"
                )
                if not await self.greeted.has_greeted(conv.id):
                    sender = await self.client.get_sender_address(msg)
                    await self._greet_new_group(conv, sender)
                else:
                    logger.info(f"Group {short_id(conv.id)} already greeted, skipping greeting")

            if update.removed_inbox_ids:
                logger.info(
                    f"Members removed from group {short_id(conv.id)}: {len(update.removed_inbox_ids)}"
                )
            if update.metadata_field_changes:
                logger.info(
                    f"Group metadata updated in {short_id(conv.id)}: {update.metadata_field_changes}"
                )
        except Exception as exc:
            logger.error(f"Error handling group update {msg.id}: {exc}")

    # ── diagnostics ──

    async def handle_unknown(self, event: InboundEvent) -> None:
        msg = event.message
        if msg is None:
            return
        logger.warning(
            f"Unknown message type received: id={msg.id} type={msg.content_type} "
            f"content={preview(repr(msg.content), 200)}"
        )
        content = msg.content
        looks_like_attachment = isinstance(content, RemoteAttachment) or (
            isinstance(content, dict)
            and any(key in content for key in ("url", "filename", "contentDigest"))
        )
        if looks_like_attachment:
            logger.warning("This looks like an attachment but the attachment event did not fire")

    async def handle_error(self, event: InboundEvent) -> None:
        if event.error is not None:
            logger.opt(exception=event.error).error(f"Unhandled client error: {event.error}")
        else:
            logger.error("Unhandled client error (no details)")

    async def handle_start(self, event: InboundEvent) -> None:
        logger.info("XMTP client started")
        logger.info(f"Agent address: {self.client.address}")
        logger.info(f"Inbox id: {self.client.inbox_id}")
        logger.info(f"Backend: {self.backend.api_url}")

    async def handle_stop(self, event: InboundEvent) -> None:
        logger.info("XMTP client stopped")

    # ── helpers ──

    def _check_stale(self, conversation_id: str, history: list[InboundMessage]) -> None:
        if self.staleness.observe(conversation_id, history):
            logger.error(f"Message store reset required for {short_id(conversation_id)}")
            self.recovery.recover()
            raise StoreResetRequired(conversation_id)

    async def _react(self, conv: Conversation, msg: InboundMessage) -> None:
        if not self.policy.enable_reactions:
            return
        try:
            await conv.send_reaction(self.policy.reaction_emoji, msg.id)
        except Exception as exc:
            logger.warning(f"Failed to send reaction: {exc}")

    async def _safe_send(self, conv: Conversation, text: str) -> None:
        try:
            await conv.send(text)
        except Exception as exc:
            logger.error(f"Failed to send error message to {short_id(conv.id)}: {exc}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background reply tasks to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

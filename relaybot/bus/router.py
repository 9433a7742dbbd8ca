"""Route client events to handlers through a middleware chain.

Message events (text, reply, attachment) pass through every registered
middleware before reaching their handler; a middleware that does not call
``call_next`` drops the event.  Lifecycle events (conversation, group
update, unknown, errors, start/stop) go straight to their handlers.

Exceptions escaping a handler are handed to the error hooks and never
propagate back into the messaging client.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from loguru import logger

from relaybot.bus.events import (
    CONTENT_REMOTE_ATTACHMENT,
    CONTENT_REPLY,
    CONTENT_TEXT,
    EventKind,
    InboundEvent,
)
from relaybot.errors import StoreResetRequired
from relaybot.utils.helpers import preview, short_id

Handler = Callable[[InboundEvent], Awaitable[None]]
CallNext = Callable[[], Awaitable[None]]
Middleware = Callable[[InboundEvent, CallNext], Awaitable[None]]
ErrorHook = Callable[[BaseException, InboundEvent], Awaitable[None]]

MESSAGE_EVENTS = frozenset({EventKind.TEXT, EventKind.REPLY, EventKind.ATTACHMENT})


class EventRouter:
    def __init__(self) -> None:
        self._middlewares: list[Middleware] = []
        self._handlers: dict[EventKind, list[Handler]] = {}
        self._error_hooks: list[ErrorHook] = []

    def use(self, middleware: Middleware) -> None:
        self._middlewares.append(middleware)

    def on(self, kind: EventKind, handler: Handler) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    def on_error(self, hook: ErrorHook) -> None:
        self._error_hooks.append(hook)

    async def dispatch(self, event: InboundEvent) -> None:
        handlers = self._handlers.get(event.kind, [])
        if not handlers:
            logger.debug(f"No handler for {event.kind.value} event")
            return

        async def run_handlers() -> None:
            for handler in handlers:
                await handler(event)

        try:
            if event.kind in MESSAGE_EVENTS:
                await self._run_chain(event, 0, run_handlers)
            else:
                await run_handlers()
        except StoreResetRequired as exc:
            logger.warning(f"Handler aborted for store reset: {exc}")
        except Exception as exc:
            for hook in self._error_hooks:
                try:
                    await hook(exc, event)
                except Exception as hook_exc:
                    logger.error(f"Error hook failed: {hook_exc}")
            if not self._error_hooks:
                logger.exception(f"Unhandled error in {event.kind.value} handler: {exc}")

    async def _run_chain(self, event: InboundEvent, index: int, final: CallNext) -> None:
        if index >= len(self._middlewares):
            await final()
            return
        middleware = self._middlewares[index]

        async def call_next() -> None:
            await self._run_chain(event, index + 1, final)

        await middleware(event, call_next)


# ── built-in middlewares ──


async def logging_middleware(event: InboundEvent, call_next: CallNext) -> None:
    """Log each message and how long its handling took."""
    msg = event.message
    message_id = msg.id if msg else "-"
    logger.info(
        f"Message received: id={message_id} "
        f"sender={short_id(msg.sender_inbox_id if msg else None)} "
        f"conversation={short_id(event.conversation_id)} "
        f"type={msg.content_type if msg else '-'}"
    )
    start = time.perf_counter()
    try:
        await call_next()
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.error(f"Message {message_id} failed after {duration_ms:.0f}ms: {exc}")
        raise
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(f"Message {message_id} processed in {duration_ms:.0f}ms")


def make_message_filter(self_inbox_id: str) -> Middleware:
    """Drop empty messages, our own messages, and unsupported content types."""

    allowed = {CONTENT_TEXT, CONTENT_REPLY, CONTENT_REMOTE_ATTACHMENT}

    async def message_filter(event: InboundEvent, call_next: CallNext) -> None:
        msg = event.message
        if msg is None or not msg.has_content:
            logger.debug("Skipping message without content")
            return
        if msg.sender_inbox_id == self_inbox_id:
            logger.debug("Skipping message from self")
            return
        if msg.content_type not in allowed:
            logger.debug(f"Skipping unsupported content type {msg.content_type}")
            return

        if msg.content_type == CONTENT_TEXT:
            logger.info(f"Processing message {msg.id}: {preview(msg.text)!r}")
        else:
            logger.info(f"Processing {msg.content_type} message {msg.id}")
        await call_next()

    return message_filter


async def log_handler_error(exc: BaseException, event: InboundEvent) -> None:
    """Error hook: record the failure; nothing is sent back to the user."""
    msg = event.message
    logger.opt(exception=exc).error(
        f"Error handling {event.kind.value} event: {exc} "
        f"(message={msg.id if msg else '-'}, sender={msg.sender_inbox_id if msg else '-'})"
    )

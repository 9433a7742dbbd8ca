"""Debounce near-simultaneous messages into one turn.

Users often send a text and an image a moment apart.  Each fragment is
buffered per (conversation, sender); every new fragment restarts a short
quiet-period timer.  When the timer fires the batch is removed and handed
to the flush callback of the most recent ``add`` as one ordered list.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Sequence

from loguru import logger

from relaybot.utils.helpers import short_id

DEFAULT_BATCH_DELAY_SECONDS = 1.0
FRAGMENT_SEPARATOR = "\n\n"


class FragmentKind(str, Enum):
    TEXT = "text"
    IMAGE = "image-derived-text"


@dataclass(frozen=True, slots=True)
class MessageFragment:
    content: str
    kind: FragmentKind = FragmentKind.TEXT
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    observed_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


FlushCallback = Callable[[list[MessageFragment]], Awaitable[None]]


def batch_key(conversation_id: str, sender_address: str) -> str:
    return f"{conversation_id}-{sender_address}"


def combine_fragments(fragments: Sequence[MessageFragment]) -> str:
    """Text fragments first, then image-derived fragments, each group in arrival order."""
    texts = [f.content for f in fragments if f.kind is FragmentKind.TEXT]
    images = [f.content for f in fragments if f.kind is FragmentKind.IMAGE]
    combined = FRAGMENT_SEPARATOR.join(texts)
    if images:
        image_text = FRAGMENT_SEPARATOR.join(images)
        combined = f"{combined}{FRAGMENT_SEPARATOR}{image_text}" if combined else image_text
    return combined


class CoalescingScheduler:
    def __init__(self, delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS) -> None:
        self.delay_seconds = delay_seconds
        self._batches: dict[str, list[MessageFragment]] = {}
        self._callbacks: dict[str, FlushCallback] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._flushing: set[asyncio.Task[None]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._batches)

    def pending_keys(self) -> list[str]:
        return list(self._batches)

    def add(
        self,
        conversation_id: str,
        sender_address: str,
        fragment: MessageFragment,
        on_flush: FlushCallback,
    ) -> int:
        """Buffer *fragment* and (re)arm the quiet-period timer.

        Must be called from a running event loop.  Returns the batch size.
        """
        key = batch_key(conversation_id, sender_address)

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        batch = self._batches.setdefault(key, [])
        batch.append(fragment)
        self._callbacks[key] = on_flush
        self._timers[key] = asyncio.create_task(self._fire(key), name=f"coalesce:{key}")

        logger.info(
            f"Fragment added to batch {short_id(conversation_id)}/{short_id(sender_address)}: "
            f"kind={fragment.kind.value}, size={len(batch)}"
        )
        return len(batch)

    async def _fire(self, key: str) -> None:
        await asyncio.sleep(self.delay_seconds)

        # Detach before flushing so fragments arriving mid-flush open a new batch.
        self._timers.pop(key, None)
        fragments = self._batches.pop(key, [])
        on_flush = self._callbacks.pop(key, None)
        if not fragments or on_flush is None:
            return

        logger.info(f"Flushing batch {key}: {len(fragments)} fragment(s)")
        task = asyncio.current_task()
        if task is not None:
            self._flushing.add(task)
        try:
            await on_flush(fragments)
        except Exception as exc:
            logger.opt(exception=exc).error(f"Flush failed for batch {key}: {exc}")
        finally:
            self._flushing.discard(task)

    async def shutdown(self) -> int:
        """Cancel every pending timer and drop the buffered fragments.

        Flushes already in progress are awaited, not cancelled.
        """
        timers = list(self._timers.values())
        dropped = len(self._batches)
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()
        self._batches.clear()
        self._callbacks.clear()
        if self._flushing:
            logger.info(f"Waiting for {len(self._flushing)} in-flight flush(es)")
            await asyncio.gather(*list(self._flushing), return_exceptions=True)
        if dropped:
            logger.warning(f"Coalescer shut down with {dropped} pending batch(es) dropped")
        return dropped

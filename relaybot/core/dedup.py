"""Bounded ledger of processed message ids.

The messaging client can deliver the same message more than once (stream
reconnects, history sync).  The ledger remembers ids in insertion order and,
once it grows past ``max_entries``, drops the oldest ids down to
``keep_entries``.
"""

from __future__ import annotations

from collections import OrderedDict

from loguru import logger

MAX_ENTRIES = 1000
KEEP_ENTRIES = 500


class DedupLedger:
    def __init__(self, max_entries: int = MAX_ENTRIES, keep_entries: int = KEEP_ENTRIES) -> None:
        if keep_entries > max_entries:
            raise ValueError("keep_entries must not exceed max_entries")
        self._max = max_entries
        self._keep = keep_entries
        self._seen: OrderedDict[str, None] = OrderedDict()

    def seen(self, message_id: str) -> bool:
        """Return True if *message_id* was already marked. Does not mutate."""
        return message_id in self._seen

    def mark_seen(self, message_id: str) -> None:
        if message_id in self._seen:
            return
        self._seen[message_id] = None
        if len(self._seen) > self._max:
            dropped = len(self._seen) - self._keep
            while len(self._seen) > self._keep:
                self._seen.popitem(last=False)
            logger.debug(f"Dedup ledger pruned {dropped} old id(s)")

    def check_and_mark(self, message_id: str) -> bool:
        """Mark *message_id* and return True if it had not been seen before."""
        if message_id in self._seen:
            return False
        self.mark_seen(message_id)
        return True

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

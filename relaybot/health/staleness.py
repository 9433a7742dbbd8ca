"""Detect a stuck local message store.

Under some failure modes the messaging client's local database keeps
returning the same cached history forever.  History is only re-read when
new inbound activity arrives, so seeing the exact same set of message ids
``REPEAT_THRESHOLD`` times in a row is treated as a stuck store.

The detector only signals.  :class:`StoreRecovery` performs the recovery:
delete the persisted store file and ask the process owner to restart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from relaybot.utils.helpers import short_id

REPEAT_THRESHOLD = 3


@dataclass
class StalenessRecord:
    fingerprint: str
    repeat_count: int = 1
    last_message_ids: list[str] = field(default_factory=list)


def fingerprint(message_ids: Iterable[str]) -> tuple[str, list[str]]:
    ids = sorted(message_ids)
    return "|".join(ids), ids


class StalenessDetector:
    def __init__(self, threshold: int = REPEAT_THRESHOLD) -> None:
        self._threshold = threshold
        self._records: dict[str, StalenessRecord] = {}

    def observe(self, conversation_id: str, messages: Iterable[Any]) -> bool:
        """Record one history read; return True when the store looks stuck.

        *messages* may be message objects (anything with an ``id``) or
        plain id strings.
        """
        digest, ids = fingerprint(m if isinstance(m, str) else m.id for m in messages)
        record = self._records.get(conversation_id)

        if record is None:
            self._records[conversation_id] = StalenessRecord(digest, 1, ids)
            return False

        if record.fingerprint != digest:
            logger.debug(
                f"History for {short_id(conversation_id)} changed "
                f"({len(record.last_message_ids)} -> {len(ids)} messages)"
            )
            record.fingerprint = digest
            record.repeat_count = 1
            record.last_message_ids = ids
            return False

        record.repeat_count += 1
        logger.warning(
            f"Identical history for {short_id(conversation_id)}: "
            f"repeat {record.repeat_count}/{self._threshold}, {len(ids)} messages"
        )
        if record.repeat_count >= self._threshold:
            logger.error(
                f"Message store appears stuck for {short_id(conversation_id)} "
                f"(first ids: {ids[:5]})"
            )
            return True
        return False

    def clear(self, conversation_id: str) -> None:
        self._records.pop(conversation_id, None)

    def stats(self) -> dict[str, Any]:
        return {
            "tracked_conversations": len(self._records),
            "conversations": [
                {
                    "id": short_id(cid),
                    "repeat_count": rec.repeat_count,
                    "message_count": len(rec.last_message_ids),
                    "is_stuck": rec.repeat_count >= self._threshold,
                }
                for cid, rec in self._records.items()
            ],
        }


class StoreRecovery:
    """Delete the stuck store file and hand control back to the supervisor."""

    def __init__(self, db_path: Path | str, on_restart: Callable[[], None] | None = None) -> None:
        self.db_path = Path(db_path)
        self._on_restart = on_restart
        self._needs_restart = False

    @property
    def needs_restart(self) -> bool:
        return self._needs_restart

    def reset_database(self) -> bool:
        """Remove the store file. Returns False when it is missing or cannot be removed."""
        logger.warning(f"Resetting message store at {self.db_path}")
        if not self.db_path.exists():
            logger.warning(f"Message store file not found: {self.db_path}")
            return False
        try:
            self.db_path.unlink()
        except OSError as exc:
            logger.error(f"Failed to delete message store {self.db_path}: {exc}")
            return False

        logger.info(f"Message store deleted: {self.db_path}")
        self._needs_restart = True
        return True

    def recover(self) -> bool:
        """Reset the store and request a restart, whether or not the delete worked."""
        deleted = self.reset_database()
        logger.info("Requesting restart to resync the message store")
        if self._on_restart is not None:
            self._on_restart()
        return deleted

"""Conversation mapping store.

Maps an external thread id (what the backend knows) to the native XMTP
conversation id and participant address, so replies that arrive later
through the HTTP boundary can be routed back.  Mappings live in memory;
when constructed with a snapshot path the store can also be saved to and
restored from a JSON file written atomically.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from relaybot.utils.atomic_io import get_atomic_writer
from relaybot.utils.helpers import short_id

UNKNOWN_AGENT = "unknown"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class ConversationMapping:
    thread_id: str
    conversation_id: str
    wallet_address: str
    last_activity: datetime = field(default_factory=_utcnow)
    agent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_activity"] = self.last_activity.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationMapping":
        return cls(
            thread_id=data["thread_id"],
            conversation_id=data["conversation_id"],
            wallet_address=data["wallet_address"],
            last_activity=datetime.fromisoformat(data["last_activity"]),
            agent_id=data.get("agent_id"),
        )


@dataclass(frozen=True, slots=True)
class MappingStats:
    total_mappings: int
    oldest: datetime | None
    newest: datetime | None
    per_agent_counts: dict[str, int]


class MappingStore:
    """In-memory thread -> conversation mapping with TTL eviction."""

    def __init__(
        self,
        snapshot_path: Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._mappings: dict[str, ConversationMapping] = {}
        self._snapshot_path = snapshot_path
        self._clock = clock

    def upsert(
        self,
        thread_id: str,
        conversation_id: str,
        wallet_address: str,
        agent_id: str | None = None,
    ) -> ConversationMapping:
        """Create or refresh a mapping. Never fails."""
        mapping = ConversationMapping(
            thread_id=thread_id,
            conversation_id=conversation_id,
            wallet_address=wallet_address,
            last_activity=self._clock(),
            agent_id=agent_id,
        )
        self._mappings[thread_id] = mapping
        logger.debug(
            f"Mapping stored: thread={short_id(thread_id)} -> "
            f"conversation={short_id(conversation_id)} ({short_id(wallet_address)})"
        )
        return mapping

    def lookup(self, thread_id: str) -> ConversationMapping | None:
        return self._mappings.get(thread_id)

    def touch(self, thread_id: str) -> bool:
        """Refresh ``last_activity``; returns False when the thread is unknown."""
        mapping = self._mappings.get(thread_id)
        if mapping is None:
            return False
        mapping.last_activity = self._clock()
        return True

    def evict_older_than(self, max_age_hours: float) -> int:
        """Drop mappings idle for longer than *max_age_hours*; returns the count removed."""
        cutoff = self._clock() - timedelta(hours=max_age_hours)
        stale = [tid for tid, m in self._mappings.items() if m.last_activity < cutoff]
        for tid in stale:
            del self._mappings[tid]
        if stale:
            logger.info(f"Evicted {len(stale)} mapping(s) idle > {max_age_hours}h")
        return len(stale)

    def stats(self) -> MappingStats:
        if not self._mappings:
            return MappingStats(total_mappings=0, oldest=None, newest=None, per_agent_counts={})
        stamps = [m.last_activity for m in self._mappings.values()]
        counts = Counter(m.agent_id or UNKNOWN_AGENT for m in self._mappings.values())
        return MappingStats(
            total_mappings=len(self._mappings),
            oldest=min(stamps),
            newest=max(stamps),
            per_agent_counts=dict(counts),
        )

    def __len__(self) -> int:
        return len(self._mappings)

    # ── snapshot persistence ──

    async def save(self) -> bool:
        """Write all mappings to the snapshot file. No-op without a path."""
        if self._snapshot_path is None:
            return False
        payload = {
            "saved_at": self._clock().isoformat(),
            "mappings": [m.to_dict() for m in self._mappings.values()],
        }
        ok = await get_atomic_writer().write_json(self._snapshot_path, payload)
        if ok:
            logger.debug(f"Mapping snapshot saved ({len(self._mappings)} entries)")
        return ok

    def load(self) -> int:
        """Restore mappings from the snapshot file; returns how many were loaded."""
        path = self._snapshot_path
        if path is None or not path.exists():
            return 0
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(f"Ignoring unreadable mapping snapshot {path}: {exc}")
            return 0

        loaded = 0
        for raw in data.get("mappings", []):
            try:
                mapping = ConversationMapping.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed mapping entry: {exc}")
                continue
            self._mappings[mapping.thread_id] = mapping
            loaded += 1
        logger.info(f"Loaded {loaded} mapping(s) from {path}")
        return loaded

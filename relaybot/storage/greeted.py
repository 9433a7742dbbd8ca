"""Which groups the bot has already greeted.

Backed by the ``greeted_groups`` table with an in-process cache in front.
Storage failures never break message handling: reads degrade to "not
greeted" and writes are logged.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaybot.storage.models import GreetedGroup
from relaybot.utils.helpers import short_id


class GreetedGroupRepo:
    def __init__(self, s: AsyncSession) -> None:
        self._s = s

    async def get(self, conversation_id: str) -> GreetedGroup | None:
        return await self._s.get(GreetedGroup, conversation_id)

    async def upsert(self, conversation_id: str) -> GreetedGroup:
        row = await self.get(conversation_id)
        if row is None:
            row = GreetedGroup(conversation_id=conversation_id)
            self._s.add(row)
        else:
            row.greeted_at = datetime.now(tz=UTC)
        await self._s.flush()
        return row

    async def delete_older_than(self, cutoff: datetime) -> list[str]:
        ids = list(
            await self._s.scalars(
                select(GreetedGroup.conversation_id).where(GreetedGroup.greeted_at < cutoff)
            )
        )
        if ids:
            await self._s.execute(
                delete(GreetedGroup).where(GreetedGroup.conversation_id.in_(ids))
            )
        return ids


class GreetedGroupsStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._cache: set[str] = set()

    async def has_greeted(self, conversation_id: str) -> bool:
        if conversation_id in self._cache:
            return True
        try:
            async with self._session_factory() as session:
                row = await GreetedGroupRepo(session).get(conversation_id)
        except SQLAlchemyError as exc:
            logger.error(f"Greeted lookup failed for {short_id(conversation_id)}: {exc}")
            return False
        if row is not None:
            self._cache.add(conversation_id)
            return True
        return False

    async def mark_as_greeted(self, conversation_id: str) -> None:
        self._cache.add(conversation_id)
        try:
            async with self._session_factory() as session:
                await GreetedGroupRepo(session).upsert(conversation_id)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(f"Failed to persist greeted group {short_id(conversation_id)}: {exc}")
            return
        logger.info(f"Group marked as greeted: {short_id(conversation_id)}")

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Forget groups greeted more than *older_than_days* ago; returns the count removed."""
        cutoff = datetime.now(tz=UTC) - timedelta(days=older_than_days)
        try:
            async with self._session_factory() as session:
                removed = await GreetedGroupRepo(session).delete_older_than(cutoff)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(f"Greeted groups cleanup failed: {exc}")
            return 0
        self._cache.difference_update(removed)
        if removed:
            logger.info(f"Cleaned up {len(removed)} greeted group(s) older than {older_than_days} days")
        return len(removed)

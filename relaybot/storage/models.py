"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class Base(AsyncAttrs, DeclarativeBase):
    pass


class GreetedGroup(Base):
    """A group conversation the bot has already introduced itself in."""

    __tablename__ = "greeted_groups"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    greeted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

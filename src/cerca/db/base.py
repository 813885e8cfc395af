"""Declarative base and shared column types."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, DateTime, String
from sqlalchemy.dialects import sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT autoincrement is only a rowid alias on SQLite when declared INTEGER.
BigID = BigInteger().with_variant(sqlite.INTEGER(), "sqlite")
JSONDoc = JSON().with_variant(JSONB(), "postgresql")

MODERATION_STATES = ("pendent", "publicat", "rebutjat")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class ModeratedMixin:
    """The moderation quadruple carried by every entity under contribution."""

    moderation_state: Mapped[str] = mapped_column(String(16), nullable=False, default="pendent", index=True)
    moderation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    moderated_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    moderated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

"""Wiki change, mark and public-count persistence."""

from __future__ import annotations

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.base import utcnow
from cerca.db.models import TranscripcioRawChange, WikiChange, WikiMark, WikiPublicCount
from cerca.repository import upsert_stmt


# ---------------------------------------------------------------------------
# Changes
# ---------------------------------------------------------------------------


async def create_wiki_change(db: AsyncSession, change: WikiChange) -> int:
    db.add(change)
    await db.flush()
    return change.id


async def get_wiki_change(db: AsyncSession, change_id: int) -> WikiChange | None:
    return await db.get(WikiChange, change_id)


async def list_wiki_changes(db: AsyncSession, object_type: str, object_id: int) -> list[WikiChange]:
    """All changes of one object, newest first."""
    result = await db.execute(
        select(WikiChange)
        .where(WikiChange.object_type == object_type, WikiChange.object_id == object_id)
        .order_by(WikiChange.id.desc())
    )
    return list(result.scalars())


async def list_pending_wiki_changes(db: AsyncSession, limit: int = 100, offset: int = 0) -> list[WikiChange]:
    result = await db.execute(
        select(WikiChange)
        .where(WikiChange.moderation_state == "pendent")
        .order_by(WikiChange.id)
        .limit(min(limit, 500))
        .offset(offset)
    )
    return list(result.scalars())


async def count_pending_wiki_changes(
    db: AsyncSession, object_type: str, object_id: int, author_id: int | None = None
) -> int:
    query = select(func.count(WikiChange.id)).where(
        WikiChange.object_type == object_type,
        WikiChange.object_id == object_id,
        WikiChange.moderation_state == "pendent",
    )
    if author_id is not None:
        query = query.where(WikiChange.changed_by == author_id)
    result = await db.execute(query)
    return int(result.scalar_one())


async def latest_published_change_id(db: AsyncSession, object_type: str, object_id: int) -> int | None:
    result = await db.execute(
        select(func.max(WikiChange.id)).where(
            WikiChange.object_type == object_type,
            WikiChange.object_id == object_id,
            WikiChange.moderation_state == "publicat",
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Raw transcription changes
# ---------------------------------------------------------------------------


async def create_raw_change(db: AsyncSession, change: TranscripcioRawChange) -> int:
    db.add(change)
    await db.flush()
    return change.id


async def get_raw_change(db: AsyncSession, change_id: int) -> TranscripcioRawChange | None:
    return await db.get(TranscripcioRawChange, change_id)


async def list_raw_changes(db: AsyncSession, transcripcio_id: int) -> list[TranscripcioRawChange]:
    """All changes of one raw record, newest first."""
    result = await db.execute(
        select(TranscripcioRawChange)
        .where(TranscripcioRawChange.transcripcio_id == transcripcio_id)
        .order_by(TranscripcioRawChange.id.desc())
    )
    return list(result.scalars())


async def count_pending_raw_changes(db: AsyncSession, transcripcio_id: int, author_id: int | None = None) -> int:
    query = select(func.count(TranscripcioRawChange.id)).where(
        TranscripcioRawChange.transcripcio_id == transcripcio_id,
        TranscripcioRawChange.moderation_state == "pendent",
    )
    if author_id is not None:
        query = query.where(TranscripcioRawChange.changed_by == author_id)
    result = await db.execute(query)
    return int(result.scalar_one())


async def list_pending_raw_changes(db: AsyncSession, limit: int = 100) -> list[TranscripcioRawChange]:
    result = await db.execute(
        select(TranscripcioRawChange)
        .where(TranscripcioRawChange.moderation_state == "pendent")
        .order_by(TranscripcioRawChange.id)
        .limit(min(limit, 500))
    )
    return list(result.scalars())


# ---------------------------------------------------------------------------
# Marks & public counts
# ---------------------------------------------------------------------------


async def get_wiki_mark(
    db: AsyncSession, object_type: str, object_id: int, user_id: int, *, for_update: bool = False
) -> WikiMark | None:
    stmt = select(WikiMark).where(
        WikiMark.object_type == object_type,
        WikiMark.object_id == object_id,
        WikiMark.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def upsert_wiki_mark(
    db: AsyncSession, object_type: str, object_id: int, user_id: int, tipus: str, is_public: bool
) -> WikiMark:
    stmt = upsert_stmt(db, WikiMark).values(
        object_type=object_type, object_id=object_id, user_id=user_id, tipus=tipus, is_public=is_public
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[WikiMark.object_type, WikiMark.object_id, WikiMark.user_id],
        set_={"tipus": tipus, "is_public": is_public, "updated_at": utcnow()},
    )
    await db.execute(stmt)
    result = await db.execute(
        select(WikiMark)
        .where(WikiMark.object_type == object_type, WikiMark.object_id == object_id, WikiMark.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def delete_wiki_mark(db: AsyncSession, mark: WikiMark) -> None:
    await db.delete(mark)
    await db.flush()


async def inc_wiki_public_count(db: AsyncSession, object_type: str, object_id: int, tipus: str, delta: int) -> None:
    """Apply a delta to the public counter, never letting it drop below zero."""
    if delta == 0:
        return
    stmt = upsert_stmt(db, WikiPublicCount).values(
        object_type=object_type, object_id=object_id, tipus=tipus, n=max(0, delta)
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[WikiPublicCount.object_type, WikiPublicCount.object_id, WikiPublicCount.tipus],
        set_={"n": case((WikiPublicCount.n + delta < 0, 0), else_=WikiPublicCount.n + delta)},
    )
    await db.execute(stmt)


async def get_wiki_public_counts(db: AsyncSession, object_type: str, object_id: int) -> dict[str, int]:
    result = await db.execute(
        select(WikiPublicCount.tipus, WikiPublicCount.n).where(
            WikiPublicCount.object_type == object_type,
            WikiPublicCount.object_id == object_id,
        )
    )
    return {tipus: n for tipus, n in result.all()}

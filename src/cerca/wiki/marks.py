"""Personal wiki marks and the public counters derived from them."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.errors import ValidationError
from cerca.repository import wiki as wiki_repo
from cerca.wiki.guardrails import check_mark_rate

logger = logging.getLogger(__name__)

MARK_TYPES = ("consanguini", "politic", "interes")


def count_deltas(
    old_tipus: str | None, old_public: bool, new_tipus: str | None, new_public: bool
) -> dict[str, int]:
    """Counter deltas for moving a mark from one (tipus, public) state to another.

    ``None`` as a tipus means "no mark". Unchanged public marks produce no delta.
    """
    deltas: dict[str, int] = {}
    had = old_tipus is not None and old_public
    has = new_tipus is not None and new_public
    if had and (not has or old_tipus != new_tipus):
        deltas[old_tipus] = deltas.get(old_tipus, 0) - 1  # type: ignore[index]
    if has and (not had or old_tipus != new_tipus):
        deltas[new_tipus] = deltas.get(new_tipus, 0) + 1  # type: ignore[index]
    return deltas


async def _apply_deltas(db: AsyncSession, object_type: str, object_id: int, deltas: dict[str, int]) -> None:
    if not deltas:
        return
    try:
        async with db.begin_nested():
            for tipus, delta in deltas.items():
                await wiki_repo.inc_wiki_public_count(db, object_type, object_id, tipus, delta)
    except SQLAlchemyError:
        logger.exception("Failed to update public mark counts for %s %s: %s", object_type, object_id, deltas)


async def upsert_mark(
    db: AsyncSession,
    user_id: int,
    object_type: str,
    object_id: int,
    tipus: str,
    is_public: bool,
    *,
    caller_key: str,
) -> None:
    tipus = (tipus or "").strip().lower()
    if tipus not in MARK_TYPES:
        raise ValidationError("wiki.mark.invalid")
    check_mark_rate(caller_key)

    existing = await wiki_repo.get_wiki_mark(db, object_type, object_id, user_id, for_update=True)
    old_tipus = existing.tipus if existing else None
    old_public = bool(existing.is_public) if existing else False
    await wiki_repo.upsert_wiki_mark(db, object_type, object_id, user_id, tipus, is_public)
    await _apply_deltas(db, object_type, object_id, count_deltas(old_tipus, old_public, tipus, is_public))


async def unmark(db: AsyncSession, user_id: int, object_type: str, object_id: int, *, caller_key: str) -> bool:
    """Remove the caller's mark. Returns False when there was none."""
    check_mark_rate(caller_key)
    existing = await wiki_repo.get_wiki_mark(db, object_type, object_id, user_id, for_update=True)
    if existing is None:
        return False
    deltas = count_deltas(existing.tipus, bool(existing.is_public), None, False)
    await wiki_repo.delete_wiki_mark(db, existing)
    await _apply_deltas(db, object_type, object_id, deltas)
    return True


async def mark_stats(db: AsyncSession, user_id: int | None, object_type: str, object_id: int) -> dict[str, Any]:
    counts = await wiki_repo.get_wiki_public_counts(db, object_type, object_id)
    stats: dict[str, Any] = {"counts": {tipus: counts.get(tipus, 0) for tipus in MARK_TYPES}, "own": None}
    if user_id:
        mark = await wiki_repo.get_wiki_mark(db, object_type, object_id, user_id)
        if mark is not None:
            stats["own"] = {"tipus": mark.tipus, "is_public": mark.is_public}
    return stats

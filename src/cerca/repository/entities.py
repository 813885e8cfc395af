"""Generic reads and writes over entities carrying the moderation quadruple."""

from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.base import Base, utcnow

MAX_PER_PAGE = 100

EntityT = TypeVar("EntityT", bound=Base)


async def get_entity(db: AsyncSession, model: type[EntityT], entity_id: int) -> EntityT | None:
    return await db.get(model, entity_id)


async def list_entities(
    db: AsyncSession,
    model: type[EntityT],
    *,
    status: str | None = "publicat",
    where: list[ColumnElement[bool]] | None = None,
    order_by: Any = None,  # noqa: ANN401
    page: int = 1,
    per_page: int = 25,
) -> tuple[list[EntityT], int]:
    """Filtered, bounded page of rows plus the total row count.

    ``status=None`` disables the moderation filter; callers only pass it in
    privileged contexts.
    """
    per_page = max(1, min(per_page, MAX_PER_PAGE))
    page = max(1, page)
    query = select(model)
    if status:
        query = query.where(model.moderation_state == status)  # type: ignore[attr-defined]
    for clause in where or []:
        query = query.where(clause)

    total = await db.execute(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(order_by if order_by is not None else model.id)  # type: ignore[attr-defined]
        .limit(per_page)
        .offset((page - 1) * per_page)
    )
    return list(result.scalars()), int(total.scalar_one())


async def create_entity(db: AsyncSession, entity: EntityT) -> EntityT:
    db.add(entity)
    await db.flush()
    return entity


async def delete_entity(db: AsyncSession, entity: Base) -> None:
    await db.delete(entity)
    await db.flush()


async def claim_pending(
    db: AsyncSession,
    model: type[Any],
    row_id: int,
    state: str,
    moderator_id: int | None,
    **values: Any,  # noqa: ANN401
) -> bool:
    """Move a ``pendent`` row to ``state`` with one conditional UPDATE.

    Returns False when the row is no longer pending, which is what a second
    moderator racing on the same item sees. Loaded instances are refreshed
    with the new values.
    """
    result = await db.execute(
        update(model)
        .where(model.id == row_id, model.moderation_state == "pendent")
        .values(moderation_state=state, moderated_by=moderator_id, moderated_at=utcnow(), **values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1

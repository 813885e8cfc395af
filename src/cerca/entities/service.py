"""Generic entity operations: scoped listing, visibility, create, edit and delete."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.activity import rules as activity_rules
from cerca.activity.service import register_user_activity
from cerca.context import RequestContext
from cerca.db.base import MODERATION_STATES, Base
from cerca.entities.registry import LLIBRE_ARXIUS_KEY, EntityAdapter
from cerca.errors import AuthorizationDenied, Conflict, NotFound, ValidationError
from cerca.permissions import keys
from cerca.permissions.dependencies import ensure_permission, has_permission
from cerca.permissions.evaluator import get_policy_evaluator
from cerca.repository import entities as entity_repo
from cerca.repository import territory
from cerca.wiki.service import propose_update

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateOutcome:
    """Either the entity was edited in place or a wiki change was proposed."""

    entity_id: int
    change_id: int | None = None

    @property
    def proposed(self) -> bool:
        return self.change_id is not None


async def list_for(
    db: AsyncSession,
    ctx: RequestContext,
    adapter: EntityAdapter,
    *,
    q: str | None = None,
    status: str | None = None,
    filters: Mapping[str, str] | None = None,
    page: int = 1,
    per_page: int = 25,
) -> tuple[list[Base], int]:
    """Published rows are open to everyone; other states are limited to the caller's edit scope."""
    status = status or "publicat"
    if status not in MODERATION_STATES:
        raise ValidationError("error.validation", field="status")

    where: list[ColumnElement[bool]] = []
    if status != "publicat":
        mask = await get_policy_evaluator().build_list_scope_filter(db, ctx.user_id, adapter.key("edit"))
        if mask.no_access:
            return [], 0
        clause = adapter.scope(mask)
        if clause is not None:
            where.append(clause)

    if q and q.strip() and adapter.search:
        pattern = f"%{q.strip()}%"
        columns = [getattr(adapter.model, name) for name in adapter.search]
        where.append(or_(*(column.ilike(pattern) for column in columns)))
    for name, raw in (filters or {}).items():
        if raw and name in adapter.filters:
            where.append(adapter.filters[name](raw))

    return await entity_repo.list_entities(
        db, adapter.model, status=status, where=where, page=page, per_page=per_page
    )


async def is_moderator_for(db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base) -> bool:
    return await has_permission(db, ctx, keys.MODERACIO_MODERATE, adapter.target_of(entity))


async def load_visible(db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, object_id: int) -> Base:
    """Fetch an entity, hiding unpublished ones from everyone but their author and moderators."""
    entity = await entity_repo.get_entity(db, adapter.model, object_id)
    if entity is None:
        raise NotFound()
    if entity.moderation_state == "publicat":  # type: ignore[attr-defined]
        return entity
    if ctx.user_id and entity.created_by == ctx.user_id:  # type: ignore[attr-defined]
        return entity
    if await is_moderator_for(db, ctx, adapter, entity):
        return entity
    raise NotFound()


async def entity_values(db: AsyncSession, adapter: EntityAdapter, entity: Base) -> dict[str, Any]:
    """Snapshot plus the moderation columns, for detail responses."""
    values = await adapter.snapshot(db, entity)
    values["moderation_state"] = entity.moderation_state  # type: ignore[attr-defined]
    values["moderation_reason"] = entity.moderation_reason  # type: ignore[attr-defined]
    values["created_by"] = entity.created_by  # type: ignore[attr-defined]
    return values


async def _flush_or_conflict(db: AsyncSession) -> None:
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("error.conflict") from exc


def _invalidate_targets(adapter: EntityAdapter) -> None:
    if adapter.invalidates_targets:
        get_policy_evaluator().invalidate_targets()


async def create_entity(
    db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, payload: Mapping[str, Any]
) -> Base:
    """New entities start ``pendent`` and register a pending creation activity."""
    values = adapter.coerce(payload)
    adapter.validate(values)
    await ensure_permission(db, ctx, adapter.key("create"), adapter.target(values))

    entity = adapter.model(
        **{name: value for name, value in values.items() if name in adapter.fields},
        moderation_state="pendent",
        created_by=ctx.user_id,
    )
    db.add(entity)
    await _flush_or_conflict(db)
    if adapter.links_arxius and values.get(LLIBRE_ARXIUS_KEY):
        await territory.set_llibre_arxius(db, entity.id, values[LLIBRE_ARXIUS_KEY])  # type: ignore[attr-defined]

    await register_user_activity(
        db,
        ctx.user_id,  # type: ignore[arg-type]
        adapter.create_rule,
        activity_rules.ACTION_CREATE,
        adapter.object_type,
        entity.id,  # type: ignore[attr-defined]
        status=activity_rules.PENDENT,
    )
    logger.info("Created %s %s (pendent) by user %s", adapter.object_type, entity.id, ctx.user_id)  # type: ignore[attr-defined]
    return entity


async def update_entity(
    db: AsyncSession,
    ctx: RequestContext,
    adapter: EntityAdapter,
    entity: Base,
    payload: Mapping[str, Any],
    *,
    caller_key: str,
) -> UpdateOutcome:
    """Edit an entity.

    Published wiki entities are never written directly: the edit becomes a
    pending change. Unpublished entities are edited in place by their author
    or a moderator; a non-moderator edit sends the entity back to ``pendent``.
    """
    entity_id: int = entity.id  # type: ignore[attr-defined]
    target = adapter.target_of(entity)
    await ensure_permission(db, ctx, adapter.key("edit"), target)

    if entity.moderation_state == "publicat" and adapter.is_wiki:  # type: ignore[attr-defined]
        change_id = await propose_update(db, ctx, adapter, entity, payload, caller_key=caller_key)
        return UpdateOutcome(entity_id=entity_id, change_id=change_id)

    moderator = await is_moderator_for(db, ctx, adapter, entity)
    if entity.moderation_state != "publicat" and entity.created_by != ctx.user_id and not moderator:  # type: ignore[attr-defined]
        raise AuthorizationDenied()

    values = adapter.coerce(payload)
    merged = {**await adapter.snapshot(db, entity), **values}
    adapter.validate(merged, entity_id)
    await adapter.apply(db, entity, values)
    if not moderator:
        entity.moderation_state = "pendent"  # type: ignore[attr-defined]
        entity.moderation_reason = None  # type: ignore[attr-defined]
    await _flush_or_conflict(db)
    _invalidate_targets(adapter)
    return UpdateOutcome(entity_id=entity_id)


async def delete_entity(db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base) -> None:
    await ensure_permission(db, ctx, adapter.key("delete"), adapter.target_of(entity))
    try:
        await entity_repo.delete_entity(db, entity)
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("error.in_use") from exc
    _invalidate_targets(adapter)
    logger.info("Deleted %s %s by user %s", adapter.object_type, entity.id, ctx.user_id)  # type: ignore[attr-defined]


async def edit_form(db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base) -> dict[str, Any]:
    """Current values for an edit form. Requires the edit key on the entity's target."""
    await ensure_permission(db, ctx, adapter.key("edit"), adapter.target_of(entity))
    return {
        "object_type": adapter.object_type,
        "fields": list(adapter.fields),
        "required": list(adapter.required),
        "values": await entity_values(db, adapter, entity),
        # Published wiki entities are edited through proposals.
        "proposal": adapter.is_wiki and entity.moderation_state == "publicat",  # type: ignore[attr-defined]
    }

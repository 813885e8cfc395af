"""Moderation coordinator: the pending queue and approve/reject transitions.

Every transition runs in the caller's transaction. The entity (or change)
state, the author's pending activities and the moderator's own activity are
flushed together; the router commits once and only then announces the
transition on Redis.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cerca.activity import rules as activity_rules
from cerca.activity.service import register_user_activity, settle_pending
from cerca.context import RequestContext
from cerca.db.base import Base
from cerca.db.models import TranscripcioRaw
from cerca.entities.registry import ADAPTERS, EntityAdapter, get_adapter
from cerca.entities.service import entity_values, list_for
from cerca.errors import NotFound, ValidationError
from cerca.permissions import keys
from cerca.permissions.dependencies import ensure_permission, has_permission
from cerca.permissions.evaluator import get_policy_evaluator
from cerca.repository import entities as entity_repo
from cerca.repository import wiki as wiki_repo
from cerca.wiki import raw_history
from cerca.wiki import service as wiki_service

logger = logging.getLogger(__name__)

QUEUE_PER_TYPE = 50


@dataclass(frozen=True)
class ModerationResult:
    object_type: str
    object_id: int
    moderation_state: str
    change_id: int | None = None

    def as_event(self, moderator_id: int | None) -> dict[str, Any]:
        return {**asdict(self), "moderated_by": moderator_id}


async def _ensure_moderator(db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base) -> None:
    target = adapter.target_of(entity)
    await ensure_permission(db, ctx, keys.MODERACIO_MODERATE, target)
    await ensure_permission(db, ctx, adapter.key("edit"), target)


async def _can_moderate(db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base) -> bool:
    target = adapter.target_of(entity)
    return await has_permission(db, ctx, keys.MODERACIO_MODERATE, target) and await has_permission(
        db, ctx, adapter.key("edit"), target
    )


async def _record_moderator_action(
    db: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    object_id: int,
    *,
    approve: bool,
    change_id: int | None = None,
) -> None:
    await register_user_activity(
        db,
        ctx.user_id,  # type: ignore[arg-type]
        activity_rules.MODERACIO_APPROVE if approve else activity_rules.MODERACIO_REJECT,
        activity_rules.ACTION_APPROVE if approve else activity_rules.ACTION_REJECT,
        object_type,
        object_id,
        status=activity_rules.VALIDAT,
        moderator_id=ctx.user_id,
        details={"change_id": change_id} if change_id else None,
    )


def _invalidate_targets(adapter: EntityAdapter) -> None:
    if adapter.invalidates_targets:
        get_policy_evaluator().invalidate_targets()


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


async def pending_queue(db: AsyncSession, ctx: RequestContext) -> dict[str, list[dict[str, Any]]]:
    """Pending entities and changes the caller may act on, oldest changes first."""
    entities: list[dict[str, Any]] = []
    for adapter in ADAPTERS.values():
        rows, _ = await list_for(db, ctx, adapter, status="pendent", per_page=QUEUE_PER_TYPE)
        for row in rows:
            if await _can_moderate(db, ctx, adapter, row):
                entities.append({"object_type": adapter.object_type, "values": await entity_values(db, adapter, row)})

    changes: list[dict[str, Any]] = []
    for change in await wiki_repo.list_pending_wiki_changes(db):
        adapter = ADAPTERS.get(change.object_type)
        entity = await entity_repo.get_entity(db, adapter.model, change.object_id) if adapter else None
        if entity is None or not await _can_moderate(db, ctx, adapter, entity):  # type: ignore[arg-type]
            continue
        row = wiki_service.history_row(change)
        changes.append({**row, "object_type": change.object_type, "object_id": change.object_id})

    raw_adapter = get_adapter(raw_history.OBJECT_TYPE)
    raw_changes: list[dict[str, Any]] = []
    for raw_change in await wiki_repo.list_pending_raw_changes(db):
        raw = await db.get(TranscripcioRaw, raw_change.transcripcio_id)
        if raw is None or not await _can_moderate(db, ctx, raw_adapter, raw):
            continue
        raw_changes.append(
            {
                "id": raw_change.id,
                "object_type": raw_history.OBJECT_TYPE,
                "object_id": raw.id,
                "change_type": raw_change.change_type,
                "field_key": raw_change.field_key,
                "old_value": raw_change.old_value,
                "new_value": raw_change.new_value,
                "moderation_state": raw_change.moderation_state,
                "changed_by": raw_change.changed_by,
                "changed_at": raw_change.changed_at,
            }
        )
    return {"entities": entities, "changes": changes, "raw_changes": raw_changes}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


async def moderate_entity(
    db: AsyncSession,
    ctx: RequestContext,
    object_type: str,
    object_id: int,
    *,
    approve: bool,
    reason: str | None = None,
) -> ModerationResult:
    """Publish or reject a ``pendent`` entity and settle its creation activity."""
    adapter = get_adapter(object_type)
    entity = await entity_repo.get_entity(db, adapter.model, object_id)
    if entity is None:
        raise NotFound()
    await _ensure_moderator(db, ctx, adapter, entity)
    state = "publicat" if approve else "rebutjat"
    reason = None if approve else ((reason or "").strip()[:500] or None)
    claimed = await entity_repo.claim_pending(
        db, adapter.model, object_id, state, ctx.user_id, moderation_reason=reason
    )
    if not claimed:
        raise ValidationError("moderation.invalid_state")

    await settle_pending(
        db, entity.created_by, object_type, object_id, ctx.user_id, approve=approve  # type: ignore[attr-defined, arg-type]
    )
    await _record_moderator_action(db, ctx, object_type, object_id, approve=approve)
    _invalidate_targets(adapter)
    logger.info("%s %s %s by moderator %s", object_type, object_id, state, ctx.user_id)
    return ModerationResult(object_type=object_type, object_id=object_id, moderation_state=state)


# ---------------------------------------------------------------------------
# Wiki changes
# ---------------------------------------------------------------------------


async def moderate_change(
    db: AsyncSession,
    ctx: RequestContext,
    change_id: int,
    *,
    approve: bool,
    reason: str | None = None,
) -> ModerationResult:
    """Apply or reject a pending wiki change together with its author's activity."""
    change = await wiki_repo.get_wiki_change(db, change_id)
    if change is None:
        raise NotFound()
    adapter = get_adapter(change.object_type)
    entity = await entity_repo.get_entity(db, adapter.model, change.object_id)
    if entity is None:
        raise NotFound()
    await _ensure_moderator(db, ctx, adapter, entity)

    if approve:
        await wiki_service.apply_change(db, adapter, change, ctx.user_id)  # type: ignore[arg-type]
    else:
        await wiki_service.reject_change(db, change, ctx.user_id, reason)  # type: ignore[arg-type]
    await settle_pending(
        db,
        change.changed_by,
        change.object_type,
        change.object_id,
        ctx.user_id,  # type: ignore[arg-type]
        approve=approve,
        change_id=change.id,
    )
    await _record_moderator_action(db, ctx, change.object_type, change.object_id, approve=approve, change_id=change.id)
    if approve:
        _invalidate_targets(adapter)
    return ModerationResult(
        object_type=change.object_type,
        object_id=change.object_id,
        moderation_state=change.moderation_state,
        change_id=change.id,
    )


async def moderate_raw_change(
    db: AsyncSession, ctx: RequestContext, change_id: int, *, approve: bool
) -> ModerationResult:
    change = await wiki_repo.get_raw_change(db, change_id)
    if change is None:
        raise NotFound()
    raw = await db.get(TranscripcioRaw, change.transcripcio_id)
    if raw is None:
        raise NotFound()
    await _ensure_moderator(db, ctx, get_adapter(raw_history.OBJECT_TYPE), raw)

    if approve:
        await raw_history.apply_raw_change(db, change, ctx.user_id)  # type: ignore[arg-type]
    else:
        await raw_history.reject_raw_change(db, change, ctx.user_id)  # type: ignore[arg-type]
    await settle_pending(
        db,
        change.changed_by,
        raw_history.OBJECT_TYPE,
        raw.id,
        ctx.user_id,  # type: ignore[arg-type]
        approve=approve,
        change_id=change.id,
    )
    await _record_moderator_action(db, ctx, raw_history.OBJECT_TYPE, raw.id, approve=approve, change_id=change.id)
    return ModerationResult(
        object_type=raw_history.OBJECT_TYPE,
        object_id=raw.id,
        moderation_state=change.moderation_state,
        change_id=change.id,
    )

"""Wiki change pipeline: proposals, history, versions, compare, revert and moderation transitions.

Every edit to a published entity is stored as a ``WikiChange`` whose metadata
carries the full ``before`` and ``after`` snapshots. The live row is only
written when a moderator approves the change.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cerca.activity import rules as activity_rules
from cerca.activity.service import register_user_activity
from cerca.context import RequestContext
from cerca.db.base import Base, utcnow
from cerca.db.models import WikiChange
from cerca.entities.registry import EntityAdapter
from cerca.errors import NotFound, ValidationError
from cerca.permissions import keys
from cerca.permissions.dependencies import ensure_permission, has_permission
from cerca.repository import entities as entity_repo
from cerca.repository import wiki as wiki_repo
from cerca.wiki.guardrails import run_change_guardrails
from cerca.wiki.snapshot import ChangeMetadata, DiffRow, changed_labels, decode_metadata, diff_snapshots

logger = logging.getLogger(__name__)

CHANGE_FORM = "form"
CHANGE_REVERT = "revert"
TOKEN_CURRENT = "current"
TOKEN_PUBLISHED = "published"


async def _is_moderator(db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base) -> bool:
    return await has_permission(db, ctx, keys.MODERACIO_MODERATE, adapter.target_of(entity))


def _visible(change: WikiChange, ctx: RequestContext, moderator: bool) -> bool:
    return moderator or change.moderation_state == "publicat" or (
        ctx.user_id is not None and change.changed_by == ctx.user_id
    )


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


async def _create_change(
    db: AsyncSession,
    ctx: RequestContext,
    adapter: EntityAdapter,
    object_id: int,
    metadata: ChangeMetadata,
    *,
    change_type: str,
    caller_key: str,
) -> int:
    labels = changed_labels(metadata.before, metadata.after)
    if not labels:
        raise ValidationError("wiki.change.empty")
    encoded = metadata.encode()
    await run_change_guardrails(db, caller_key, adapter.object_type, object_id, ctx.user_id, encoded)  # type: ignore[arg-type]

    change_id = await wiki_repo.create_wiki_change(
        db,
        WikiChange(
            object_type=adapter.object_type,
            object_id=object_id,
            change_type=change_type,
            field_key=",".join(labels)[:128],
            change_metadata=encoded,
            moderation_state="pendent",
            changed_by=ctx.user_id,
            changed_at=utcnow(),
        ),
    )
    await register_user_activity(
        db,
        ctx.user_id,  # type: ignore[arg-type]
        adapter.update_rule,
        activity_rules.ACTION_UPDATE,
        adapter.object_type,
        object_id,
        status=activity_rules.PENDENT,
        details={"change_id": change_id},
    )
    return change_id


async def propose_update(
    db: AsyncSession,
    ctx: RequestContext,
    adapter: EntityAdapter,
    entity: Base,
    payload: Mapping[str, Any],
    *,
    caller_key: str,
) -> int:
    """Store a pending change from the live state to the edited state. The entity is not touched."""
    before = await adapter.snapshot(db, entity)
    after = {**before, **adapter.coerce(payload)}
    adapter.validate(after, entity.id)  # type: ignore[attr-defined]
    change_id = await _create_change(
        db,
        ctx,
        adapter,
        entity.id,  # type: ignore[attr-defined]
        ChangeMetadata(before=before, after=after),
        change_type=CHANGE_FORM,
        caller_key=caller_key,
    )
    logger.info("Proposed change %s on %s %s by user %s", change_id, adapter.object_type, entity.id, ctx.user_id)  # type: ignore[attr-defined]
    return change_id


# ---------------------------------------------------------------------------
# History, versions, compare
# ---------------------------------------------------------------------------


def history_row(change: WikiChange) -> dict[str, Any]:
    meta = decode_metadata(change.change_metadata)
    return {
        "id": change.id,
        "change_type": change.change_type,
        "moderation_state": change.moderation_state,
        "moderation_reason": change.moderation_reason,
        "changed_by": change.changed_by,
        "changed_at": change.changed_at,
        "moderated_by": change.moderated_by,
        "moderated_at": change.moderated_at,
        "source_change_id": meta.source_change_id,
        "reason": meta.reason,
        "fields": changed_labels(meta.before, meta.after),
    }


async def list_history(
    db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base
) -> list[dict[str, Any]]:
    """Newest first. Non-moderators only see published changes and their own."""
    moderator = await _is_moderator(db, ctx, adapter, entity)
    changes = await wiki_repo.list_wiki_changes(db, adapter.object_type, entity.id)  # type: ignore[attr-defined]
    return [history_row(c) for c in changes if _visible(c, ctx, moderator)]


async def _load_change(
    db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base, change_id: int
) -> WikiChange:
    change = await wiki_repo.get_wiki_change(db, change_id)
    if change is None or change.object_type != adapter.object_type or change.object_id != entity.id:  # type: ignore[attr-defined]
        raise ValidationError("wiki.change.invalid")
    if not _visible(change, ctx, await _is_moderator(db, ctx, adapter, entity)):
        raise NotFound()
    return change


async def resolve_version(
    db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base, token: str
) -> dict[str, Any]:
    """Resolve ``current``, ``published`` or a change id to a snapshot."""
    token = (token or TOKEN_CURRENT).strip().lower()
    if token == TOKEN_CURRENT:
        return await adapter.snapshot(db, entity)
    if token == TOKEN_PUBLISHED:
        latest = await wiki_repo.latest_published_change_id(db, adapter.object_type, entity.id)  # type: ignore[attr-defined]
        if latest is not None:
            change = await wiki_repo.get_wiki_change(db, latest)
            snapshot = decode_metadata(change.change_metadata).pick() if change else None
            if snapshot is not None:
                return snapshot
        if entity.moderation_state == "publicat":  # type: ignore[attr-defined]
            return await adapter.snapshot(db, entity)
        raise NotFound("wiki.version.invalid")
    if not token.isdigit():
        raise ValidationError("wiki.version.invalid")
    change = await _load_change(db, ctx, adapter, entity, int(token))
    snapshot = decode_metadata(change.change_metadata).pick()
    if snapshot is None:
        raise ValidationError("wiki.change.invalid")
    return snapshot


async def compare_versions(
    db: AsyncSession, ctx: RequestContext, adapter: EntityAdapter, entity: Base, left: str, right: str
) -> list[DiffRow]:
    before = await resolve_version(db, ctx, adapter, entity, left)
    after = await resolve_version(db, ctx, adapter, entity, right)
    return diff_snapshots(before, after)


async def revert(
    db: AsyncSession,
    ctx: RequestContext,
    adapter: EntityAdapter,
    entity: Base,
    source_change_id: int,
    reason: str | None,
    *,
    caller_key: str,
) -> int:
    """Propose going back to the ``after`` state of an earlier change."""
    target = adapter.target_of(entity)
    if not await has_permission(db, ctx, keys.WIKI_REVERT, target):
        await ensure_permission(db, ctx, adapter.key("edit"), target)
    source = await _load_change(db, ctx, adapter, entity, source_change_id)
    restored = decode_metadata(source.change_metadata).pick()
    if restored is None:
        raise ValidationError("wiki.change.invalid")
    before = await adapter.snapshot(db, entity)
    metadata = ChangeMetadata(
        before=before,
        after=restored,
        source_change_id=source.id,
        reason=(reason or "").strip() or None,
    )
    return await _create_change(
        db, ctx, adapter, entity.id, metadata, change_type=CHANGE_REVERT, caller_key=caller_key  # type: ignore[attr-defined]
    )


# ---------------------------------------------------------------------------
# Moderation transitions
# ---------------------------------------------------------------------------


async def apply_change(db: AsyncSession, adapter: EntityAdapter, change: WikiChange, moderator_id: int) -> Base:
    """Write the change's ``after`` snapshot over the live entity and publish both.

    Runs inside the caller's transaction; nothing is committed here.
    """
    if change.moderation_state != "pendent":
        raise ValidationError("moderation.invalid_state")
    after = decode_metadata(change.change_metadata).after
    if after is None:
        raise ValidationError("wiki.change.invalid")
    entity = await entity_repo.get_entity(db, adapter.model, change.object_id)
    if entity is None:
        raise NotFound()

    newer = [
        c.id
        for c in await wiki_repo.list_wiki_changes(db, change.object_type, change.object_id)
        if c.id > change.id and c.moderation_state in ("pendent", "publicat")
    ]
    if newer:
        logger.warning(
            "Out-of-order approval of change %s on %s %s; newer changes: %s",
            change.id,
            change.object_type,
            change.object_id,
            newer,
        )

    if not await entity_repo.claim_pending(db, WikiChange, change.id, "publicat", moderator_id):
        raise ValidationError("moderation.invalid_state")
    await adapter.apply(db, entity, after)
    entity.moderation_state = "publicat"  # type: ignore[attr-defined]
    entity.moderation_reason = None  # type: ignore[attr-defined]
    entity.moderated_by = moderator_id  # type: ignore[attr-defined]
    entity.moderated_at = utcnow()  # type: ignore[attr-defined]
    await db.flush()
    return entity


async def reject_change(db: AsyncSession, change: WikiChange, moderator_id: int, reason: str | None) -> None:
    """Mark the change rejected. The live entity is left untouched."""
    reason = (reason or "").strip()[:500] or None
    claimed = await entity_repo.claim_pending(
        db, WikiChange, change.id, "rebutjat", moderator_id, moderation_reason=reason
    )
    if not claimed:
        raise ValidationError("moderation.invalid_state")

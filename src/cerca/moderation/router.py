"""Moderation routes: the pending queue and approve/reject transitions."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.dependencies import get_user_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.middleware.csrf import verify_csrf
from cerca.moderation import service
from cerca.moderation.schemas import ModerationQueue, ModerationRequest, ModerationResponse
from cerca.permissions import keys
from cerca.permissions.dependencies import require_permission_key
from cerca.redis_client import publish_event

router = APIRouter(tags=["Moderation"])

MODERATION_CHANNEL = "pubsub:moderation"

Action = Literal["aprovar", "rebutjar"]


async def _finish(db: AsyncSession, ctx: RequestContext, result: service.ModerationResult) -> ModerationResponse:
    await db.commit()
    await publish_event(MODERATION_CHANNEL, result.as_event(ctx.user_id))
    return ModerationResponse(
        object_type=result.object_type,
        object_id=result.object_id,
        moderation_state=result.moderation_state,
        change_id=result.change_id,
    )


@router.get("/moderacio", response_model=ModerationQueue)
async def moderation_queue(
    ctx: RequestContext = Depends(require_permission_key(keys.MODERACIO_VIEW)),
    db: AsyncSession = Depends(get_session),
) -> ModerationQueue:
    return ModerationQueue(**await service.pending_queue(db, ctx))


# Change routes come first so "canvis" is never taken for an object type.


@router.post(
    "/moderacio/canvis/{change_id}/{action}",
    response_model=ModerationResponse,
    dependencies=[Depends(verify_csrf)],
)
async def moderate_change(
    change_id: int,
    action: Action,
    body: ModerationRequest | None = None,
    ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> ModerationResponse:
    result = await service.moderate_change(
        db, ctx, change_id, approve=action == "aprovar", reason=body.reason if body else None
    )
    return await _finish(db, ctx, result)


@router.post(
    "/moderacio/registres/canvis/{change_id}/{action}",
    response_model=ModerationResponse,
    dependencies=[Depends(verify_csrf)],
)
async def moderate_raw_change(
    change_id: int,
    action: Action,
    ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> ModerationResponse:
    result = await service.moderate_raw_change(db, ctx, change_id, approve=action == "aprovar")
    return await _finish(db, ctx, result)


@router.post(
    "/moderacio/{object_type}/{object_id}/{action}",
    response_model=ModerationResponse,
    dependencies=[Depends(verify_csrf)],
)
async def moderate_entity(
    object_type: str,
    object_id: int,
    action: Action,
    body: ModerationRequest | None = None,
    ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> ModerationResponse:
    result = await service.moderate_entity(
        db, ctx, object_type, object_id, approve=action == "aprovar", reason=body.reason if body else None
    )
    return await _finish(db, ctx, result)

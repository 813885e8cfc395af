"""Surname merge suggestions, redirect administration and JSON endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.dependencies import get_user_context
from cerca.cognoms import service
from cerca.cognoms.schemas import (
    HeatmapResponse,
    MergeAdminOverview,
    MergeAdminRequest,
    MergeAdminResponse,
    MergeSuggestRequest,
    MergeSuggestResponse,
    RedirectDeleteRequest,
    RedirectResponse,
    SearchResult,
    SuggestionResponse,
)
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.errors import ValidationError
from cerca.middleware.csrf import verify_csrf
from cerca.permissions import keys
from cerca.permissions.dependencies import require_permission_key
from cerca.repository import cognoms as cognom_repo

router = APIRouter(tags=["Cognoms"])

_require_view = require_permission_key(f"{keys.COGNOMS}.view")
_require_merge_admin = require_permission_key(keys.ADMIN_COGNOMS_MERGE)


@router.get("/cognoms/merge", response_model=list[SuggestionResponse])
async def my_suggestions(
    ctx: RequestContext = Depends(_require_view),
    db: AsyncSession = Depends(get_session),
) -> list[SuggestionResponse]:
    suggestions = await cognom_repo.list_suggestions(db, created_by=ctx.user_id)
    return [SuggestionResponse.model_validate(s, from_attributes=True) for s in suggestions]


@router.post("/cognoms/merge", response_model=MergeSuggestResponse, dependencies=[Depends(verify_csrf)])
async def suggest_merge(
    body: MergeSuggestRequest,
    ctx: RequestContext = Depends(_require_view),
    db: AsyncSession = Depends(get_session),
) -> MergeSuggestResponse:
    reason = service.merge_reason(body.reason_preset, body.reason_detail)
    created = await service.suggest_merge(db, ctx, body.canonical_id, body.alias_ids, reason)
    await db.commit()
    return MergeSuggestResponse(created=created)


@router.get("/admin/cognoms/merge", response_model=MergeAdminOverview)
async def merge_overview(
    _ctx: RequestContext = Depends(_require_merge_admin),
    db: AsyncSession = Depends(get_session),
) -> MergeAdminOverview:
    redirects = await cognom_repo.list_cognom_redirects(db)
    suggestions = await cognom_repo.list_suggestions(db, state="pendent")
    return MergeAdminOverview(
        redirects=[RedirectResponse.model_validate(r, from_attributes=True) for r in redirects],
        suggestions=[SuggestionResponse.model_validate(s, from_attributes=True) for s in suggestions],
    )


@router.post("/admin/cognoms/merge", response_model=MergeAdminResponse, dependencies=[Depends(verify_csrf)])
async def merge_admin(
    body: MergeAdminRequest,
    ctx: RequestContext = Depends(_require_merge_admin),
    db: AsyncSession = Depends(get_session),
) -> MergeAdminResponse:
    if body.suggestion_id:
        if body.action is None:
            raise ValidationError("error.validation", field="action")
        accept = body.action == "accept"
        await service.moderate_suggestion(db, ctx.user_id, body.suggestion_id, accept=accept)  # type: ignore[arg-type]
        await db.commit()
        return MergeAdminResponse(
            suggestion_id=body.suggestion_id, moderation_state="publicat" if accept else "rebutjat"
        )
    if not body.canonical_id:
        raise ValidationError("cognoms.merge.invalid")
    reason = service.merge_reason(body.reason_preset, body.reason_detail)
    count = await service.materialize_many(db, ctx.user_id, body.canonical_id, body.alias_ids, reason)  # type: ignore[arg-type]
    await db.commit()
    return MergeAdminResponse(redirects=count)


@router.post("/admin/cognoms/merge/delete", dependencies=[Depends(verify_csrf)])
async def delete_redirect(
    body: RedirectDeleteRequest,
    _ctx: RequestContext = Depends(_require_merge_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    await service.delete_redirect(db, body.from_id)
    await db.commit()
    return {"from_id": body.from_id}


@router.get("/api/cognoms/search", response_model=list[SearchResult])
async def search(
    q: str = Query("", max_length=100),
    _ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> list[SearchResult]:
    return [SearchResult(**item) for item in await service.search(db, q)]


@router.get("/api/cognoms/{cognom_id}/heatmap", response_model=HeatmapResponse)
async def heatmap(
    cognom_id: int,
    y0: int | None = Query(None, ge=0),
    y1: int | None = Query(None, ge=0),
    _ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> HeatmapResponse:
    return HeatmapResponse(**await service.heatmap(db, cognom_id, y0, y1))

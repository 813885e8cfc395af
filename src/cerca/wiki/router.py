"""Wiki routes: history, versions, compare, revert and marks for every wiki entity type."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import RedirectResponse

from cerca.auth.dependencies import get_request_context, get_user_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.entities.dependencies import canonical_id, canonical_redirect, get_caller_key
from cerca.entities.registry import EntityAdapter, wiki_adapters
from cerca.entities.service import load_visible
from cerca.middleware.csrf import verify_csrf
from cerca.wiki import marks
from cerca.wiki import service as wiki_service
from cerca.wiki.schemas import (
    ChangeProposed,
    CompareResponse,
    DiffRowResponse,
    FieldView,
    HistoryEntry,
    MarkRequest,
    MarkStats,
    RevertRequest,
    VersionResponse,
)
from cerca.wiki.snapshot import view_fields


def _add_routes(router: APIRouter, adapter: EntityAdapter) -> None:
    base = f"{adapter.path}/{{object_id}}"
    tag = adapter.object_type

    @router.get(f"{base}/historial", response_model=list[HistoryEntry], name=f"{tag}_history")
    async def history(
        object_id: int,
        request: Request,
        ctx: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_session),
    ) -> list[HistoryEntry] | RedirectResponse:
        redirect = await canonical_redirect(db, adapter, object_id, request)
        if redirect is not None:
            return redirect
        entity = await load_visible(db, ctx, adapter, object_id)
        return [HistoryEntry(**row) for row in await wiki_service.list_history(db, ctx, adapter, entity)]

    @router.get(f"{base}/historial/view", response_model=VersionResponse, name=f"{tag}_history_view")
    async def view_version(
        object_id: int,
        request: Request,
        token: str = Query("current", max_length=32),
        ctx: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_session),
    ) -> VersionResponse | RedirectResponse:
        redirect = await canonical_redirect(db, adapter, object_id, request)
        if redirect is not None:
            return redirect
        entity = await load_visible(db, ctx, adapter, object_id)
        snapshot = await wiki_service.resolve_version(db, ctx, adapter, entity, token)
        return VersionResponse(token=token, fields=[FieldView(**f) for f in view_fields(snapshot)])

    @router.get(f"{base}/historial/compare", response_model=CompareResponse, name=f"{tag}_history_compare")
    async def compare(
        object_id: int,
        request: Request,
        left: str = Query("published", max_length=32),
        right: str = Query("current", max_length=32),
        ctx: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_session),
    ) -> CompareResponse | RedirectResponse:
        redirect = await canonical_redirect(db, adapter, object_id, request)
        if redirect is not None:
            return redirect
        entity = await load_visible(db, ctx, adapter, object_id)
        rows = await wiki_service.compare_versions(db, ctx, adapter, entity, left, right)
        return CompareResponse(left=left, right=right, rows=[DiffRowResponse(**r.as_dict()) for r in rows])

    @router.post(
        f"{base}/historial/revert",
        response_model=ChangeProposed,
        status_code=201,
        name=f"{tag}_history_revert",
        dependencies=[Depends(verify_csrf)],
    )
    async def revert(
        object_id: int,
        body: RevertRequest,
        ctx: RequestContext = Depends(get_user_context),
        caller_key: str = Depends(get_caller_key),
        db: AsyncSession = Depends(get_session),
    ) -> ChangeProposed:
        entity = await load_visible(db, ctx, adapter, await canonical_id(db, adapter, object_id))
        change_id = await wiki_service.revert(
            db, ctx, adapter, entity, body.source_change_id, body.reason, caller_key=caller_key
        )
        await db.commit()
        return ChangeProposed(change_id=change_id)

    @router.post(f"{base}/marca", response_model=MarkStats, name=f"{tag}_mark", dependencies=[Depends(verify_csrf)])
    async def mark(
        object_id: int,
        body: MarkRequest,
        ctx: RequestContext = Depends(get_user_context),
        caller_key: str = Depends(get_caller_key),
        db: AsyncSession = Depends(get_session),
    ) -> MarkStats:
        entity = await load_visible(db, ctx, adapter, await canonical_id(db, adapter, object_id))
        await marks.upsert_mark(
            db,
            ctx.user_id,  # type: ignore[arg-type]
            adapter.object_type,
            entity.id,  # type: ignore[attr-defined]
            body.tipus,
            body.is_public,
            caller_key=caller_key,
        )
        await db.commit()
        return MarkStats(**await marks.mark_stats(db, ctx.user_id, adapter.object_type, entity.id))  # type: ignore[attr-defined]

    @router.post(
        f"{base}/desmarca", response_model=MarkStats, name=f"{tag}_unmark", dependencies=[Depends(verify_csrf)]
    )
    async def unmark(
        object_id: int,
        ctx: RequestContext = Depends(get_user_context),
        caller_key: str = Depends(get_caller_key),
        db: AsyncSession = Depends(get_session),
    ) -> MarkStats:
        entity = await load_visible(db, ctx, adapter, await canonical_id(db, adapter, object_id))
        await marks.unmark(db, ctx.user_id, adapter.object_type, entity.id, caller_key=caller_key)  # type: ignore[arg-type, attr-defined]
        await db.commit()
        return MarkStats(**await marks.mark_stats(db, ctx.user_id, adapter.object_type, entity.id))  # type: ignore[attr-defined]

    @router.get(f"{base}/estadistiques", response_model=MarkStats, name=f"{tag}_stats")
    async def stats(
        object_id: int,
        request: Request,
        ctx: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_session),
    ) -> MarkStats | RedirectResponse:
        redirect = await canonical_redirect(db, adapter, object_id, request)
        if redirect is not None:
            return redirect
        entity = await load_visible(db, ctx, adapter, object_id)
        return MarkStats(**await marks.mark_stats(db, ctx.user_id, adapter.object_type, entity.id))  # type: ignore[attr-defined]


def build_router() -> APIRouter:
    router = APIRouter(tags=["Wiki"])
    for adapter in wiki_adapters():
        _add_routes(router, adapter)
    return router


router = build_router()

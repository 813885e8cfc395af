"""Generic list/detail/create/update/delete routes for every registered entity type."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import RedirectResponse

from cerca.auth.dependencies import get_request_context, get_user_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.entities import service
from cerca.entities.dependencies import canonical_id, canonical_redirect, get_caller_key
from cerca.entities.registry import ADAPTERS, EntityAdapter
from cerca.entities.schemas import DeleteResponse, EntityPage, FormResponse, UpdateResponse
from cerca.middleware.csrf import verify_csrf


def _add_routes(router: APIRouter, adapter: EntityAdapter) -> None:
    path = adapter.path
    tag = adapter.object_type

    @router.get(path, response_model=EntityPage, name=f"{tag}_list")
    async def list_entities(
        request: Request,
        q: str | None = Query(None, max_length=200),
        status: str | None = Query(None),
        page: int = Query(1, ge=1),
        per_page: int = Query(25, ge=1, le=100),
        ctx: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_session),
    ) -> EntityPage:
        filters = {name: request.query_params[name] for name in adapter.filters if name in request.query_params}
        rows, total = await service.list_for(
            db, ctx, adapter, q=q, status=status, filters=filters, page=page, per_page=per_page
        )
        items = [await service.entity_values(db, adapter, row) for row in rows]
        return EntityPage(items=items, total=total, page=page, per_page=per_page)

    # Registered before the detail route so "new" is not parsed as an id.
    @router.get(f"{path}/new", response_model=FormResponse, name=f"{tag}_new")
    async def new_form(_ctx: RequestContext = Depends(get_user_context)) -> FormResponse:
        return FormResponse(
            object_type=adapter.object_type, fields=list(adapter.fields), required=list(adapter.required)
        )

    @router.get(f"{path}/{{object_id}}", response_model=None, name=f"{tag}_detail")
    async def detail(
        object_id: int,
        request: Request,
        ctx: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_session),
    ) -> dict[str, Any] | RedirectResponse:
        redirect = await canonical_redirect(db, adapter, object_id, request)
        if redirect is not None:
            return redirect
        entity = await service.load_visible(db, ctx, adapter, object_id)
        return await service.entity_values(db, adapter, entity)

    @router.get(f"{path}/{{object_id}}/edit", response_model=FormResponse, name=f"{tag}_edit")
    async def edit_form(
        object_id: int,
        request: Request,
        ctx: RequestContext = Depends(get_user_context),
        db: AsyncSession = Depends(get_session),
    ) -> FormResponse | RedirectResponse:
        redirect = await canonical_redirect(db, adapter, object_id, request)
        if redirect is not None:
            return redirect
        entity = await service.load_visible(db, ctx, adapter, object_id)
        return FormResponse(**await service.edit_form(db, ctx, adapter, entity))

    @router.post(path, status_code=201, name=f"{tag}_create", dependencies=[Depends(verify_csrf)])
    async def create(
        payload: dict[str, Any] = Body(...),
        ctx: RequestContext = Depends(get_user_context),
        db: AsyncSession = Depends(get_session),
    ) -> dict[str, Any]:
        entity = await service.create_entity(db, ctx, adapter, payload)
        await db.commit()
        return await service.entity_values(db, adapter, entity)

    @router.post(
        f"{path}/{{object_id}}",
        response_model=UpdateResponse,
        name=f"{tag}_update",
        dependencies=[Depends(verify_csrf)],
    )
    async def update(
        object_id: int,
        payload: dict[str, Any] = Body(...),
        ctx: RequestContext = Depends(get_user_context),
        caller_key: str = Depends(get_caller_key),
        db: AsyncSession = Depends(get_session),
    ) -> UpdateResponse:
        entity = await service.load_visible(db, ctx, adapter, await canonical_id(db, adapter, object_id))
        outcome = await service.update_entity(db, ctx, adapter, entity, payload, caller_key=caller_key)
        await db.commit()
        return UpdateResponse(
            id=outcome.entity_id,
            proposed=outcome.proposed,
            change_id=outcome.change_id,
            moderation_state="pendent" if outcome.proposed else entity.moderation_state,  # type: ignore[attr-defined]
        )

    @router.post(
        f"{path}/{{object_id}}/delete",
        response_model=DeleteResponse,
        name=f"{tag}_delete",
        dependencies=[Depends(verify_csrf)],
    )
    async def delete(
        object_id: int,
        ctx: RequestContext = Depends(get_user_context),
        db: AsyncSession = Depends(get_session),
    ) -> DeleteResponse:
        entity = await service.load_visible(db, ctx, adapter, object_id)
        await service.delete_entity(db, ctx, adapter, entity)
        await db.commit()
        return DeleteResponse(id=object_id)


def build_router() -> APIRouter:
    router = APIRouter(tags=["Entities"])
    for adapter in ADAPTERS.values():
        if adapter.generic_routes:
            _add_routes(router, adapter)
    return router


router = build_router()

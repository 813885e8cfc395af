"""Raw transcription records: list, create, field edits and their history."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.dependencies import get_request_context, get_user_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.db.models import TranscripcioRaw
from cerca.entities.dependencies import get_caller_key
from cerca.entities.registry import get_adapter
from cerca.entities.schemas import EntityPage
from cerca.entities.service import entity_values, list_for, load_visible
from cerca.middleware.csrf import verify_csrf
from cerca.wiki import raw_history
from cerca.wiki.schemas import (
    ChangeProposed,
    CompareResponse,
    DiffRowResponse,
    FieldView,
    HistoryEntry,
    RawEditResponse,
    RawFieldEditRequest,
    RawRecordResponse,
    RevertRequest,
    VersionResponse,
)
from cerca.wiki.snapshot import view_fields

router = APIRouter(tags=["Registres"])

BASE = "/documentals/registres"


async def _load(db: AsyncSession, ctx: RequestContext, raw_id: int) -> TranscripcioRaw:
    return await load_visible(db, ctx, get_adapter(raw_history.OBJECT_TYPE), raw_id)  # type: ignore[return-value]


async def _record(db: AsyncSession, raw: TranscripcioRaw) -> RawRecordResponse:
    snapshot = await raw_history.raw_snapshot(db, raw)
    return RawRecordResponse(
        id=raw.id,
        moderation_state=raw.moderation_state,
        created_by=raw.created_by,
        raw=snapshot["raw"],
        persones=snapshot["persones"],
        atributs=snapshot["atributs"],
    )


@router.get(BASE, response_model=EntityPage)
async def list_registres(
    request: Request,
    q: str | None = Query(None, max_length=200),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(25, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_session),
) -> EntityPage:
    adapter = get_adapter(raw_history.OBJECT_TYPE)
    filters = {name: request.query_params[name] for name in adapter.filters if name in request.query_params}
    rows, total = await list_for(db, ctx, adapter, q=q, status=status, filters=filters, page=page, per_page=per_page)
    items = [await entity_values(db, adapter, row) for row in rows]
    return EntityPage(items=items, total=total, page=page, per_page=per_page)


@router.post(BASE, response_model=RawRecordResponse, status_code=201, dependencies=[Depends(verify_csrf)])
async def create_registre(
    payload: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> RawRecordResponse:
    raw = await raw_history.create_raw(db, ctx, payload)
    await db.commit()
    return await _record(db, raw)


@router.get(f"{BASE}/{{raw_id}}", response_model=RawRecordResponse)
async def get_registre(
    raw_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_session),
) -> RawRecordResponse:
    return await _record(db, await _load(db, ctx, raw_id))


@router.post(f"{BASE}/{{raw_id}}", response_model=RawEditResponse, dependencies=[Depends(verify_csrf)])
async def edit_registre(
    raw_id: int,
    body: RawFieldEditRequest,
    ctx: RequestContext = Depends(get_user_context),
    caller_key: str = Depends(get_caller_key),
    db: AsyncSession = Depends(get_session),
) -> RawEditResponse:
    raw = await _load(db, ctx, raw_id)
    outcome = await raw_history.edit_raw_field(db, ctx, raw, body.model_dump(), caller_key=caller_key)
    await db.commit()
    return RawEditResponse(change_id=outcome.change_id, applied=outcome.applied)


@router.get(f"{BASE}/{{raw_id}}/historial", response_model=list[HistoryEntry])
async def registre_history(
    raw_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_session),
) -> list[HistoryEntry]:
    raw = await _load(db, ctx, raw_id)
    return [HistoryEntry(**row) for row in await raw_history.list_raw_history(db, ctx, raw)]


@router.get(f"{BASE}/{{raw_id}}/historial/view", response_model=VersionResponse)
async def registre_version(
    raw_id: int,
    token: str = Query("current", max_length=32),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_session),
) -> VersionResponse:
    raw = await _load(db, ctx, raw_id)
    snapshot = await raw_history.resolve_raw_version(db, ctx, raw, token)
    return VersionResponse(token=token, fields=[FieldView(**f) for f in view_fields(snapshot)])


@router.get(f"{BASE}/{{raw_id}}/historial/compare", response_model=CompareResponse)
async def registre_compare(
    raw_id: int,
    left: str = Query("published", max_length=32),
    right: str = Query("current", max_length=32),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_session),
) -> CompareResponse:
    raw = await _load(db, ctx, raw_id)
    rows = await raw_history.compare_raw_versions(db, ctx, raw, left, right)
    return CompareResponse(left=left, right=right, rows=[DiffRowResponse(**r.as_dict()) for r in rows])


@router.post(
    f"{BASE}/{{raw_id}}/historial/revert",
    response_model=ChangeProposed,
    status_code=201,
    dependencies=[Depends(verify_csrf)],
)
async def registre_revert(
    raw_id: int,
    body: RevertRequest,
    ctx: RequestContext = Depends(get_user_context),
    caller_key: str = Depends(get_caller_key),
    db: AsyncSession = Depends(get_session),
) -> ChangeProposed:
    raw = await _load(db, ctx, raw_id)
    change_id = await raw_history.revert_raw(db, ctx, raw, body.source_change_id, body.reason, caller_key=caller_key)
    await db.commit()
    return ChangeProposed(change_id=change_id)

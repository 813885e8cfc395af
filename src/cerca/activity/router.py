"""Points rules administration and the caller's points read model."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.activity.schemas import (
    ActivityItem,
    MyPointsResponse,
    PointsRuleResponse,
    PointsRuleSaveRequest,
    RecalcResponse,
)
from cerca.activity.service import recalc_user_points, save_points_rule
from cerca.auth.dependencies import get_user_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.middleware.csrf import verify_csrf
from cerca.permissions import keys
from cerca.permissions.dependencies import require_permission_key
from cerca.repository import points as points_repo

router = APIRouter(tags=["Points"])


@router.get("/admin/punts/regles", response_model=list[PointsRuleResponse])
async def list_rules(
    _ctx: RequestContext = Depends(require_permission_key(keys.ADMIN_PUNTS_VIEW)),
    db: AsyncSession = Depends(get_session),
) -> list[PointsRuleResponse]:
    return [PointsRuleResponse.model_validate(r, from_attributes=True) for r in await points_repo.list_points_rules(db)]


@router.post("/admin/punts/regles", response_model=PointsRuleResponse, dependencies=[Depends(verify_csrf)])
async def save_rule(
    body: PointsRuleSaveRequest,
    _ctx: RequestContext = Depends(require_permission_key(keys.ADMIN_PUNTS_EDIT)),
    db: AsyncSession = Depends(get_session),
) -> PointsRuleResponse:
    rule = await save_points_rule(
        db,
        body.id,
        code=body.code,
        name=body.name,
        description=body.description,
        points=body.points,
        active=body.active,
    )
    await db.commit()
    return PointsRuleResponse.model_validate(rule, from_attributes=True)


@router.post("/admin/punts/regles/recalc", response_model=RecalcResponse, dependencies=[Depends(verify_csrf)])
async def recalc(
    _ctx: RequestContext = Depends(require_permission_key(keys.ADMIN_PUNTS_EDIT)),
    db: AsyncSession = Depends(get_session),
) -> RecalcResponse:
    users = await recalc_user_points(db)
    await db.commit()
    return RecalcResponse(users=users)


@router.get("/api/perfil/punts", response_model=MyPointsResponse)
async def my_points(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> MyPointsResponse:
    total = await points_repo.get_user_points(db, ctx.user_id)  # type: ignore[arg-type]
    activities = await points_repo.list_activities_for_user(
        db, ctx.user_id, limit=per_page, offset=(page - 1) * per_page  # type: ignore[arg-type]
    )
    return MyPointsResponse(
        total=total,
        activity=[ActivityItem.model_validate(a, from_attributes=True) for a in activities],
        page=page,
        per_page=per_page,
    )

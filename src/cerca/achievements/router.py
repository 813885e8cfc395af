"""Achievement administration, recompute and the caller's awards."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.achievements.cache import get_achievement_cache
from cerca.achievements.schemas import (
    AchievementResponse,
    AchievementSaveRequest,
    RecomputeRequest,
    RecomputeResponse,
    UserAwardResponse,
)
from cerca.achievements.service import admin_recompute, list_user_awards, save_achievement
from cerca.auth.dependencies import get_user_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.middleware.csrf import verify_csrf
from cerca.permissions import keys
from cerca.permissions.dependencies import require_permission_key
from cerca.repository import achievements as achievement_repo

router = APIRouter(tags=["Achievements"])


@router.get("/admin/achievements", response_model=list[AchievementResponse])
async def list_achievements(
    _ctx: RequestContext = Depends(require_permission_key(keys.ADMIN_ACHIEVEMENTS_VIEW)),
    db: AsyncSession = Depends(get_session),
) -> list[AchievementResponse]:
    return [
        AchievementResponse.model_validate(a, from_attributes=True)
        for a in await achievement_repo.list_achievements(db)
    ]


@router.post("/admin/achievements", response_model=AchievementResponse, dependencies=[Depends(verify_csrf)])
async def save_achievement_endpoint(
    body: AchievementSaveRequest,
    _ctx: RequestContext = Depends(require_permission_key(keys.ADMIN_ACHIEVEMENTS_EDIT)),
    db: AsyncSession = Depends(get_session),
) -> AchievementResponse:
    achievement = await save_achievement(db, body.id, body.model_dump(exclude={"id"}))
    await db.commit()
    get_achievement_cache().invalidate()
    return AchievementResponse.model_validate(achievement, from_attributes=True)


@router.post(
    "/admin/achievements/recompute", response_model=RecomputeResponse, dependencies=[Depends(verify_csrf)]
)
async def recompute(
    body: RecomputeRequest,
    _ctx: RequestContext = Depends(require_permission_key(keys.ADMIN_ACHIEVEMENTS_EDIT)),
    db: AsyncSession = Depends(get_session),
) -> RecomputeResponse:
    result = await admin_recompute(
        db, achievement_id=body.achievement_id, user_id=body.user_id, dry_run=body.dry_run
    )
    return RecomputeResponse(
        awarded=result.awarded, users=result.users, dry_run=result.dry_run, codes=result.codes
    )


@router.get("/api/perfil/achievements", response_model=list[UserAwardResponse])
async def my_achievements(
    ctx: RequestContext = Depends(get_user_context),
    db: AsyncSession = Depends(get_session),
) -> list[UserAwardResponse]:
    return [UserAwardResponse(**item) for item in await list_user_awards(db, ctx.user_id)]  # type: ignore[arg-type]

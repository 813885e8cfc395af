"""Permission guards for routes and services."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.dependencies import get_user_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.errors import AuthorizationDenied, NotFound
from cerca.permissions.evaluator import get_policy_evaluator
from cerca.permissions.targets import PermissionTarget


async def has_permission(
    db: AsyncSession, ctx: RequestContext, key: str, target: PermissionTarget | None = None
) -> bool:
    return await get_policy_evaluator().has_permission(db, ctx.user_id, key, target)


async def ensure_permission(
    db: AsyncSession,
    ctx: RequestContext,
    key: str,
    target: PermissionTarget | None = None,
    *,
    hide_existence: bool = False,
) -> None:
    """Raise AuthorizationDenied (or NotFound for view-only endpoints) on denial."""
    if await has_permission(db, ctx, key, target):
        return
    if hide_existence:
        raise NotFound()
    raise AuthorizationDenied()


def require_permission_key(key: str) -> Callable[..., Awaitable[RequestContext]]:
    """Dependency factory short-circuiting the request unless ``key`` is granted globally."""

    async def _dependency(
        ctx: RequestContext = Depends(get_user_context),
        db: AsyncSession = Depends(get_session),
    ) -> RequestContext:
        await ensure_permission(db, ctx, key)
        return ctx

    return _dependency

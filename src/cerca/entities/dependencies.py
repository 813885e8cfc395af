"""Request helpers shared by the entity, wiki and raw record routers."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import RedirectResponse

from cerca.auth.dependencies import get_request_context
from cerca.cognoms.service import resolve_canonical
from cerca.context import RequestContext
from cerca.entities.registry import EntityAdapter
from cerca.wiki.guardrails import caller_key_for


async def get_caller_key(request: Request, ctx: RequestContext = Depends(get_request_context)) -> str:
    return caller_key_for(ctx.user_id, request.client.host if request.client else None)


async def canonical_id(db: AsyncSession, adapter: EntityAdapter, object_id: int) -> int:
    """Surname ids are followed to their canonical id; other types pass through."""
    if adapter.object_type != "cognom":
        return object_id
    canonical, _ = await resolve_canonical(db, object_id)
    return canonical


async def canonical_redirect(
    db: AsyncSession, adapter: EntityAdapter, object_id: int, request: Request
) -> RedirectResponse | None:
    """A 303 to the same route on the canonical surname id, or None when already canonical."""
    canonical = await canonical_id(db, adapter, object_id)
    if canonical == object_id:
        return None
    old_prefix = f"{adapter.path}/{object_id}"
    path = request.url.path
    if path.startswith(old_prefix):
        path = f"{adapter.path}/{canonical}{path[len(old_prefix):]}"
    url = request.url.replace(path=path)
    return RedirectResponse(url=str(url), status_code=303)

"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.jwt import verify_token
from cerca.config import get_settings
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.db.models import User
from cerca.errors import AuthenticationRequired
from cerca.messages import pick_lang
from cerca.repository.users import get_user_by_id

_bearer = HTTPBearer(auto_error=False)


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User | None:
    """Return the authenticated user, or None for anonymous requests.

    A token that is present but invalid is rejected rather than treated as anonymous.
    """
    if credentials is None:
        return None
    try:
        payload = verify_token(credentials.credentials, expected_type="access")
    except jwt.InvalidTokenError as e:
        raise AuthenticationRequired("auth.required") from e

    user = await get_user_by_id(db, int(payload["sub"]))
    if user is None or not user.is_active:
        raise AuthenticationRequired("auth.required")
    return user


async def get_current_user(user: User | None = Depends(get_optional_user)) -> User:
    if user is None:
        raise AuthenticationRequired("auth.required")
    return user


async def get_request_context(
    request: Request,
    user: User | None = Depends(get_optional_user),
) -> RequestContext:
    """Build the immutable per-request context (user and language)."""
    lang = pick_lang(
        user.preferred_lang if user else None,
        request.headers.get("Accept-Language"),
        get_settings().default_lang,
    )
    request.state.lang = lang
    if user is None:
        return RequestContext(lang=lang)
    return RequestContext(user_id=user.id, username=user.username, lang=lang)


async def get_user_context(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    """Context for routes that require an authenticated user."""
    if not ctx.is_authenticated:
        raise AuthenticationRequired("auth.required")
    return ctx

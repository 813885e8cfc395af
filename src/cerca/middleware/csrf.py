"""Double-submit CSRF protection.

The middleware mints a random token into a cookie on the first response of a
session. POST handlers depend on :func:`verify_csrf`, which requires the same
value back in the ``X-CSRF-Token`` header or a ``csrf_token`` form field.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from cerca.config import get_settings
from cerca.errors import CsrfError

CSRF_HEADER = "X-CSRF-Token"
CSRF_FIELD = "csrf_token"


def new_csrf_token() -> str:
    return secrets.token_urlsafe(32)


class CSRFCookieMiddleware(BaseHTTPMiddleware):
    """Set the CSRF cookie when the client does not carry one yet."""

    def __init__(self, app: Any, cookie_name: str = "cg_csrf") -> None:  # noqa: ANN401
        super().__init__(app)
        self.cookie_name = cookie_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        existing = request.cookies.get(self.cookie_name)
        token = existing or new_csrf_token()
        request.state.csrf_token = token
        response = await call_next(request)
        if not existing:
            response.set_cookie(
                self.cookie_name,
                token,
                httponly=False,
                samesite="lax",
                secure=request.url.scheme == "https",
                path="/",
            )
        return response


async def verify_csrf(request: Request) -> None:
    """FastAPI dependency for every POST route."""
    expected = request.cookies.get(get_settings().csrf_cookie_name, "")
    supplied = request.headers.get(CSRF_HEADER, "")
    if not supplied:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            value = form.get(CSRF_FIELD)
            supplied = value if isinstance(value, str) else ""
    if not expected or not supplied or not hmac.compare_digest(expected, supplied):
        raise CsrfError()

"""Middleware registration."""

from fastapi import FastAPI

from cerca.config import Settings
from cerca.middleware.cors import setup_cors
from cerca.middleware.csrf import CSRFCookieMiddleware
from cerca.middleware.error_handler import setup_error_handlers
from cerca.middleware.logging import setup_logging
from cerca.middleware.request_id import RequestContextMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    FastAPI/Starlette executes middleware in reverse-add order (last added = outermost).
    CORS must be outermost so it wraps error responses from inner middleware.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(CSRFCookieMiddleware, cookie_name=settings.csrf_cookie_name)
    app.add_middleware(RequestContextMiddleware, header_name=settings.request_id_header)
    setup_cors(app, settings)

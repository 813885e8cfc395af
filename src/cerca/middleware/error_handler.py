"""Global error handler: consistent JSON error responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cerca.config import get_settings
from cerca.errors import CercaError
from cerca.messages import pick_lang, translate

logger = structlog.get_logger()


def _request_lang(request: Request) -> str:
    lang = getattr(request.state, "lang", None)
    if lang:
        return lang
    return pick_lang(None, request.headers.get("Accept-Language"), get_settings().default_lang)


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(CercaError)
    async def domain_exception_handler(request: Request, exc: CercaError) -> JSONResponse:
        """Translate domain errors into their HTTP status with a localized message."""
        if exc.status_code >= 500:
            logger.error("domain_error", path=request.url.path, key=exc.message_key, exc_info=exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.message_key,
                "message": translate(_request_lang(request), exc.message_key, **exc.params),
            },
            headers=exc.headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions, always return JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

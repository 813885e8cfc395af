"""CORS for the wiki front-end."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cerca.config import Settings
from cerca.middleware.csrf import CSRF_HEADER


def setup_cors(app: FastAPI, settings: Settings) -> None:
    """Allow the configured origins to send the CSRF and language headers.

    Browsers refuse credentialed requests against a ``*`` origin, so cookies
    are only allowed when every origin is listed explicitly.
    """
    origins = list(settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept-Language", CSRF_HEADER, settings.request_id_header],
        expose_headers=[settings.request_id_header, "Retry-After"],
    )

"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cerca.achievements.router import router as achievements_router
from cerca.activity.router import router as activity_router
from cerca.auth.router import router as auth_router
from cerca.cognoms.router import router as cognoms_router
from cerca.config import get_settings
from cerca.database import close_db, get_engine, init_db
from cerca.db.base import Base
from cerca.entities.router import router as entities_router
from cerca.health.router import router as health_router
from cerca.middleware import setup_middleware
from cerca.moderation.router import router as moderation_router
from cerca.permissions.router import router as permissions_router
from cerca.redis_client import close_redis, init_redis
from cerca.wiki.raw_router import router as raw_router
from cerca.wiki.router import router as wiki_router


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    if settings.create_schema:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Cerca Genealogica API",
        description="Community genealogical wiki: moderation, policies, points and surname canonicalization",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(permissions_router)
    app.include_router(activity_router)
    app.include_router(achievements_router)
    # Fixed /cognoms/... paths must be matched before /cognoms/{object_id}.
    app.include_router(cognoms_router)
    app.include_router(moderation_router)
    app.include_router(raw_router)
    app.include_router(wiki_router)
    app.include_router(entities_router)

    return app


app = create_app()

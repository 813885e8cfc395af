"""Authentication router: registration, activation and login."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.jwt import create_access_token
from cerca.auth.schemas import (
    ActivateRequest,
    LoginRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
)
from cerca.auth.service import activate_user, authenticate_user, register_user
from cerca.config import get_settings
from cerca.database import get_session
from cerca.middleware.csrf import verify_csrf

logger = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["Authentication"], dependencies=[Depends(verify_csrf)])


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_session)) -> RegisterResponse:
    """Create an inactive account.

    Outside production the activation token is echoed back so that local
    setups without a mail relay can complete the flow.
    """
    user, raw_token = await register_user(
        db,
        username=body.username,
        email=body.email,
        password=body.password,
        nom=body.nom,
        cognoms=body.cognoms,
        preferred_lang=body.preferred_lang,
    )
    await db.commit()
    expose = get_settings().environment != "production"
    return RegisterResponse(user_id=user.id, activation_token=raw_token if expose else "")


@router.post("/activate")
async def activate(body: ActivateRequest, db: AsyncSession = Depends(get_session)) -> dict[str, int | bool]:
    user = await activate_user(db, body.token)
    await db.commit()
    return {"user_id": user.id, "active": True}


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_session)) -> TokenResponse:
    user = await authenticate_user(db, body.login.strip(), body.password)
    await db.commit()
    logger.info("user_login", user_id=user.id)
    return TokenResponse(access_token=create_access_token(user.id, user.username), user_id=user.id)

"""
Authentication business logic: registration, activation and login.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.password import hash_password, validate_password_strength, verify_password
from cerca.config import get_settings
from cerca.db.base import as_utc, utcnow
from cerca.db.models import User
from cerca.errors import AuthenticationRequired, Conflict, ValidationError
from cerca.repository import users as user_repo

logger = structlog.get_logger()


def _hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


async def register_user(
    db: AsyncSession,
    *,
    username: str,
    email: str,
    password: str,
    nom: str | None = None,
    cognoms: str | None = None,
    preferred_lang: str | None = None,
) -> tuple[User, str]:
    """
    Create an inactive user and return it with a raw activation token.

    Raises:
        ValidationError: weak password or empty handle.
        Conflict: username or email already registered.
    """
    settings = get_settings()
    username = username.strip()
    email = email.strip().lower()
    if not username or "@" not in email:
        raise ValidationError("error.validation")
    validate_password_strength(password, settings.password_min_length)

    if await user_repo.get_user_by_username(db, username) or await user_repo.get_user_by_email(db, email):
        raise Conflict("auth.duplicate")

    raw_token = secrets.token_urlsafe(32)
    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        nom=nom,
        cognoms=cognoms,
        preferred_lang=preferred_lang,
        is_active=False,
        activation_token_hash=_hash_token(raw_token),
        activation_expires_at=utcnow() + timedelta(hours=settings.activation_token_ttl_hours),
    )
    db.add(user)
    await db.flush()
    logger.info("user_registered", user_id=user.id)
    return user, raw_token


async def activate_user(db: AsyncSession, raw_token: str) -> User:
    """Activate the account owning the token. Tokens are single-use."""
    user = await user_repo.get_user_by_activation_hash(db, _hash_token(raw_token))
    if user is None:
        raise ValidationError("auth.invalid_token")
    expires = as_utc(user.activation_expires_at)
    if expires is not None and expires < utcnow():
        raise ValidationError("auth.invalid_token")
    user.is_active = True
    user.activation_token_hash = None
    user.activation_expires_at = None
    await db.flush()
    logger.info("user_activated", user_id=user.id)
    return user


async def authenticate_user(db: AsyncSession, login: str, password: str) -> User:
    """Check credentials by username or email. Inactive accounts cannot log in."""
    user = await user_repo.get_user_by_username(db, login)
    if user is None and "@" in login:
        user = await user_repo.get_user_by_email(db, login)
    if user is None or not verify_password(password, user.password_hash):
        raise AuthenticationRequired("auth.invalid_credentials")
    if not user.is_active:
        raise AuthenticationRequired("auth.inactive")
    user.last_login = utcnow()
    await db.flush()
    return user

"""User and group queries."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.models import Group, User, UserGroup


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    """Fetch a user by ID."""
    return await db.get(User, user_id)


async def get_user_by_username(db: AsyncSession, username: str) -> User | None:
    """Fetch a user by login handle (case-insensitive)."""
    result = await db.execute(select(User).where(func.lower(User.username) == username.lower()))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Fetch a user by email (case-insensitive)."""
    result = await db.execute(select(User).where(func.lower(User.email) == email.lower()))
    return result.scalar_one_or_none()


async def get_user_by_activation_hash(db: AsyncSession, token_hash: str) -> User | None:
    result = await db.execute(select(User).where(User.activation_token_hash == token_hash))
    return result.scalar_one_or_none()


async def list_user_ids(db: AsyncSession, limit: int, offset: int) -> list[int]:
    """Page through user ids in ascending order."""
    result = await db.execute(select(User.id).order_by(User.id).limit(limit).offset(offset))
    return list(result.scalars())


async def get_group(db: AsyncSession, group_id: int) -> Group | None:
    return await db.get(Group, group_id)


async def list_groups(db: AsyncSession) -> list[Group]:
    result = await db.execute(select(Group).order_by(Group.nom))
    return list(result.scalars())


async def create_group(db: AsyncSession, nom: str, descripcio: str | None = None) -> Group:
    group = Group(nom=nom.strip(), descripcio=descripcio)
    db.add(group)
    await db.flush()
    return group


async def add_user_to_group(db: AsyncSession, user_id: int, group_id: int) -> bool:
    """Add a membership. Returns False when it already existed."""
    if await db.get(UserGroup, (user_id, group_id)) is not None:
        return False
    db.add(UserGroup(user_id=user_id, group_id=group_id))
    await db.flush()
    return True


async def list_group_ids_for_user(db: AsyncSession, user_id: int) -> list[int]:
    result = await db.execute(select(UserGroup.group_id).where(UserGroup.user_id == user_id))
    return list(result.scalars())

"""Achievement definitions and awards."""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.base import utcnow
from cerca.db.models import Achievement, UserAchievement


async def get_achievement(db: AsyncSession, achievement_id: int) -> Achievement | None:
    return await db.get(Achievement, achievement_id)


async def get_achievement_by_code(db: AsyncSession, code: str) -> Achievement | None:
    result = await db.execute(select(Achievement).where(Achievement.code == code))
    return result.scalar_one_or_none()


async def list_achievements(db: AsyncSession) -> list[Achievement]:
    result = await db.execute(select(Achievement).order_by(Achievement.code))
    return list(result.scalars())


async def list_enabled_achievements(db: AsyncSession) -> list[Achievement]:
    result = await db.execute(
        select(Achievement).where(Achievement.enabled.is_(True)).order_by(Achievement.id)
    )
    return list(result.scalars())


async def count_user_awards(db: AsyncSession, user_id: int, achievement_id: int) -> int:
    result = await db.execute(
        select(func.count(UserAchievement.id)).where(
            UserAchievement.user_id == user_id,
            UserAchievement.achievement_id == achievement_id,
        )
    )
    return int(result.scalar_one())


async def list_user_achievements(db: AsyncSession, user_id: int) -> list[tuple[UserAchievement, Achievement]]:
    result = await db.execute(
        select(UserAchievement, Achievement)
        .join(Achievement, Achievement.id == UserAchievement.achievement_id)
        .where(UserAchievement.user_id == user_id)
        .order_by(UserAchievement.awarded_at.desc(), UserAchievement.id.desc())
    )
    return [(ua, a) for ua, a in result.all()]


async def insert_user_achievement(
    db: AsyncSession, user_id: int, achievement_id: int, instance: int, metadata: dict[str, Any]
) -> UserAchievement:
    """Insert an award row. Raises IntegrityError when the (user, achievement, instance) key exists."""
    award = UserAchievement(
        user_id=user_id,
        achievement_id=achievement_id,
        instance=instance,
        awarded_at=utcnow(),
        award_metadata=metadata,
    )
    db.add(award)
    await db.flush()
    return award

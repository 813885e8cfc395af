"""Points rules, per-user totals and activity rows."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.base import utcnow
from cerca.db.models import PointsRule, UserActivity, UserPoints
from cerca.repository import upsert_stmt


async def get_points_rule(db: AsyncSession, rule_id: int) -> PointsRule | None:
    return await db.get(PointsRule, rule_id)


async def get_points_rule_by_code(db: AsyncSession, code: str) -> PointsRule | None:
    result = await db.execute(select(PointsRule).where(PointsRule.code == code))
    return result.scalar_one_or_none()


async def get_active_points_rule_by_code(db: AsyncSession, code: str) -> PointsRule | None:
    result = await db.execute(
        select(PointsRule).where(PointsRule.code == code, PointsRule.active.is_(True))
    )
    return result.scalar_one_or_none()


async def list_points_rules(db: AsyncSession) -> list[PointsRule]:
    result = await db.execute(select(PointsRule).order_by(PointsRule.code))
    return list(result.scalars())


async def get_user_points(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(select(UserPoints.total).where(UserPoints.user_id == user_id))
    return result.scalar_one_or_none() or 0


async def add_points_to_user(db: AsyncSession, user_id: int, delta: int) -> None:
    """Add ``delta`` to a user's running total in one statement, creating the row on first credit."""
    now = utcnow()
    stmt = upsert_stmt(db, UserPoints).values(user_id=user_id, total=delta, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserPoints.user_id],
        set_={"total": UserPoints.total + delta, "updated_at": now},
    )
    await db.execute(stmt)


async def recalc_user_points(db: AsyncSession) -> int:
    """Rebuild every total from validated activities on active rules. Returns users touched."""
    totals = await db.execute(
        select(UserActivity.user_id, func.coalesce(func.sum(UserActivity.points), 0))
        .join(PointsRule, PointsRule.id == UserActivity.rule_id)
        .where(UserActivity.status == "validat", PointsRule.active.is_(True))
        .group_by(UserActivity.user_id)
    )
    rows = totals.all()
    await db.execute(delete(UserPoints))
    now = utcnow()
    for user_id, total in rows:
        db.add(UserPoints(user_id=user_id, total=int(total), updated_at=now))
    await db.flush()
    return len(rows)


async def insert_activity(db: AsyncSession, activity: UserActivity) -> UserActivity:
    db.add(activity)
    await db.flush()
    return activity


async def get_activity(db: AsyncSession, activity_id: int) -> UserActivity | None:
    return await db.get(UserActivity, activity_id)


async def transition_activity(db: AsyncSession, activity_id: int, status: str, moderator_id: int | None) -> bool:
    """Set the status unless the row already has it. Only the caller that wins the UPDATE gets True."""
    result = await db.execute(
        update(UserActivity)
        .where(UserActivity.id == activity_id, UserActivity.status != status)
        .values(status=status, moderated_by=moderator_id)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def list_activities_for_user(
    db: AsyncSession,
    user_id: int,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[UserActivity]:
    result = await db.execute(
        select(UserActivity)
        .where(UserActivity.user_id == user_id)
        .order_by(UserActivity.created_at.desc(), UserActivity.id.desc())
        .limit(min(limit, 200))
        .offset(offset)
    )
    return list(result.scalars())


async def list_pending_activities_for_object(
    db: AsyncSession, user_id: int, object_type: str, object_id: int
) -> list[UserActivity]:
    result = await db.execute(
        select(UserActivity)
        .where(
            UserActivity.user_id == user_id,
            UserActivity.object_type == object_type,
            UserActivity.object_id == object_id,
            UserActivity.status == "pendent",
        )
        .order_by(UserActivity.id)
    )
    return list(result.scalars())


async def count_activities_since(
    db: AsyncSession, user_id: int, since: datetime, status: str | None = None
) -> int:
    query = select(func.count(UserActivity.id)).where(
        UserActivity.user_id == user_id, UserActivity.created_at >= since
    )
    if status:
        query = query.where(UserActivity.status == status)
    result = await db.execute(query)
    return int(result.scalar_one())


async def list_activity_facts(db: AsyncSession, user_id: int) -> list[tuple[UserActivity, str | None]]:
    """Every activity of a user with the code of its rule, oldest first."""
    result = await db.execute(
        select(UserActivity, PointsRule.code)
        .outerjoin(PointsRule, PointsRule.id == UserActivity.rule_id)
        .where(UserActivity.user_id == user_id)
        .order_by(UserActivity.created_at, UserActivity.id)
    )
    return [(activity, code) for activity, code in result.all()]

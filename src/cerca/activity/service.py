"""Activity registration, validation and point crediting.

An activity row and the point credit it causes are written in the same
transaction, but the credit runs inside a savepoint: if it fails the activity
is kept and the error is logged. ``recalc_user_points`` repairs any drift.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.achievements.service import Trigger, evaluate_for_user
from cerca.activity.rules import ANULAT, PENDENT, VALIDAT
from cerca.db.base import utcnow
from cerca.db.models import PointsRule, UserActivity
from cerca.errors import Conflict, NotFound, ValidationError
from cerca.repository import points as points_repo

logger = logging.getLogger(__name__)

BURST_WINDOW = timedelta(minutes=5)
BURST_LIMIT = 30
CANCELLED_WINDOW = timedelta(hours=24)
CANCELLED_LIMIT = 10


async def _credit_points(db: AsyncSession, activity: UserActivity) -> None:
    try:
        async with db.begin_nested():
            await points_repo.add_points_to_user(db, activity.user_id, activity.points)
    except SQLAlchemyError:
        logger.error(
            "Failed to credit %d points to user %s for activity %s",
            activity.points,
            activity.user_id,
            activity.id,
            exc_info=True,
        )


async def _check_abuse(db: AsyncSession, user_id: int) -> None:
    now = utcnow()
    recent = await points_repo.count_activities_since(db, user_id, now - BURST_WINDOW)
    if recent >= BURST_LIMIT:
        logger.warning("Activity burst: user %s registered %d activities in 5 minutes", user_id, recent)
    cancelled = await points_repo.count_activities_since(db, user_id, now - CANCELLED_WINDOW, status=ANULAT)
    if cancelled >= CANCELLED_LIMIT:
        logger.warning("Many cancelled activities: user %s has %d in 24 hours", user_id, cancelled)


async def _evaluate_achievements(db: AsyncSession, activity: UserActivity, rule_code: str | None) -> None:
    trigger = Trigger(
        created_at=activity.created_at,
        activity_id=activity.id,
        rule_code=rule_code,
        action=activity.action,
        object_type=activity.object_type,
        object_id=activity.object_id,
        status=activity.status,
    )
    await evaluate_for_user(db, activity.user_id, trigger)


async def register_user_activity(
    db: AsyncSession,
    user_id: int,
    rule_code: str | None,
    action: str,
    object_type: str,
    object_id: int | None = None,
    *,
    status: str | None = None,
    moderator_id: int | None = None,
    details: dict[str, Any] | str | None = None,
) -> int:
    """Record an activity and, when it is validated, credit the rule's points.

    An unknown or inactive rule code records the activity with 0 points.
    Returns the new activity id.
    """
    status = status or VALIDAT
    if status not in (PENDENT, VALIDAT, ANULAT):
        raise ValidationError("error.validation", field="status")
    rule = await points_repo.get_active_points_rule_by_code(db, rule_code) if rule_code else None
    if isinstance(details, dict):
        details = json.dumps(details, ensure_ascii=False, sort_keys=True)

    activity = await points_repo.insert_activity(
        db,
        UserActivity(
            user_id=user_id,
            rule_id=rule.id if rule else None,
            action=action,
            object_type=object_type,
            object_id=object_id,
            points=rule.points if rule else 0,
            status=status,
            moderated_by=moderator_id,
            details=details or None,
            created_at=utcnow(),
        ),
    )
    if status == VALIDAT and activity.points:
        await _credit_points(db, activity)
    await _check_abuse(db, user_id)
    if status == VALIDAT:
        await _evaluate_achievements(db, activity, rule_code)
    return activity.id


async def validate_activity(db: AsyncSession, activity_id: int, moderator_id: int | None) -> bool:
    """pendent → validat with point credit. Already validated activities are left alone."""
    activity = await points_repo.get_activity(db, activity_id)
    if activity is None:
        raise NotFound()
    if not await points_repo.transition_activity(db, activity_id, VALIDAT, moderator_id):
        return False
    if activity.points:
        await _credit_points(db, activity)
    rule = await points_repo.get_points_rule(db, activity.rule_id) if activity.rule_id else None
    await _evaluate_achievements(db, activity, rule.code if rule else None)
    return True


async def cancel_activity(db: AsyncSession, activity_id: int, moderator_id: int | None) -> bool:
    """Move an activity to anulat. Points are never credited for it."""
    activity = await points_repo.get_activity(db, activity_id)
    if activity is None:
        raise NotFound()
    return await points_repo.transition_activity(db, activity_id, ANULAT, moderator_id)


def _details(activity: UserActivity) -> dict[str, Any]:
    if not activity.details:
        return {}
    try:
        data = json.loads(activity.details)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


async def pending_activities_for(
    db: AsyncSession, user_id: int, object_type: str, object_id: int, change_id: int | None = None
) -> list[UserActivity]:
    """Pending activities of an author on one object.

    With ``change_id`` only the activity linked to that wiki change is
    returned; without it, only activities not linked to any change.
    """
    activities = await points_repo.list_pending_activities_for_object(db, user_id, object_type, object_id)
    return [a for a in activities if _details(a).get("change_id") == change_id]


async def settle_pending(
    db: AsyncSession,
    user_id: int | None,
    object_type: str,
    object_id: int,
    moderator_id: int,
    *,
    approve: bool,
    change_id: int | None = None,
) -> int:
    """Validate or cancel the author's pending activities for a moderated item."""
    if not user_id:
        return 0
    settled = 0
    for activity in await pending_activities_for(db, user_id, object_type, object_id, change_id):
        if approve:
            settled += await validate_activity(db, activity.id, moderator_id)
        else:
            settled += await cancel_activity(db, activity.id, moderator_id)
    return settled


# ---------------------------------------------------------------------------
# Points rules administration
# ---------------------------------------------------------------------------


async def save_points_rule(
    db: AsyncSession,
    rule_id: int | None,
    *,
    code: str | None,
    name: str,
    description: str | None,
    points: int,
    active: bool,
) -> PointsRule:
    """Create or edit a points rule. The code of an existing rule never changes."""
    name = (name or "").strip()
    code = (code or "").strip()
    if not name or (not rule_id and not code):
        raise ValidationError("points.rule.invalid")
    if rule_id:
        rule = await points_repo.get_points_rule(db, rule_id)
        if rule is None:
            raise NotFound()
    else:
        rule = PointsRule(code=code)
        db.add(rule)
    rule.name = name
    rule.description = description
    rule.points = points
    rule.active = active
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("error.conflict") from exc
    return rule


async def recalc_user_points(db: AsyncSession) -> int:
    users = await points_repo.recalc_user_points(db)
    logger.info("Recalculated points totals for %d users", users)
    return users

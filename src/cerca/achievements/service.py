"""Per-user achievement evaluation, awards and admin recompute."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.achievements.cache import CachedAchievement, get_achievement_cache
from cerca.achievements.rules import RuleError, evaluate_rule, parse_rule
from cerca.config import get_settings
from cerca.db.base import utcnow
from cerca.db.models import Achievement
from cerca.errors import Conflict, NotFound, ValidationError
from cerca.redis_client import queue_event
from cerca.repository import achievements as achievement_repo
from cerca.repository import points as points_repo
from cerca.repository import users as user_repo

logger = logging.getLogger(__name__)

AWARD_CHANNEL = "pubsub:achievement_awarded"
RARITIES = ("common", "rare", "epic", "legendary")
VISIBILITIES = ("visible", "hidden", "seasonal")


@dataclass(frozen=True)
class Trigger:
    """What caused an evaluation. ``created_at`` anchors windowed rules."""

    created_at: datetime | None = None
    activity_id: int | None = None
    rule_code: str | None = None
    action: str | None = None
    object_type: str | None = None
    object_id: int | None = None
    status: str | None = None

    def as_metadata(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("activity_id", self.activity_id),
                ("rule_code", self.rule_code),
                ("action", self.action),
                ("object_type", self.object_type),
                ("object_id", self.object_id),
                ("status", self.status),
            )
            if value
        }


@dataclass
class RecomputeResult:
    awarded: int = 0
    users: int = 0
    dry_run: bool = False
    codes: dict[str, int] = field(default_factory=dict)


def _timezone() -> ZoneInfo:
    name = get_settings().achievements_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown achievements timezone %r, using UTC", name)
        return ZoneInfo("UTC")


async def _award(
    db: AsyncSession, user_id: int, achievement: CachedAchievement, instance: int, metadata: dict[str, Any]
) -> bool:
    """Insert the award inside a savepoint. A duplicate key means another request already awarded it."""
    try:
        async with db.begin_nested():
            await achievement_repo.insert_user_achievement(db, user_id, achievement.id, instance, metadata)
    except IntegrityError:
        return False
    queue_event(
        db,
        AWARD_CHANNEL,
        {"user_id": user_id, "achievement_id": achievement.id, "code": achievement.code, "name": achievement.name},
    )
    return True


async def evaluate_for_user(
    db: AsyncSession,
    user_id: int,
    trigger: Trigger | None = None,
    *,
    candidates: list[CachedAchievement] | None = None,
    dry_run: bool = False,
) -> list[str]:
    """Evaluate candidate achievements for one user. Returns the codes awarded.

    Without explicit candidates, the cached enabled achievements relevant to
    the trigger's rule code are used. In dry-run mode nothing is written.
    """
    if user_id <= 0:
        raise ValidationError("error.validation", field="user_id")
    trigger = trigger or Trigger()
    if candidates is None:
        candidates = await get_achievement_cache().candidates(db, trigger.rule_code)
    if not candidates:
        return []

    facts = await points_repo.list_activity_facts(db, user_id)
    reference = trigger.created_at or utcnow()
    tz = _timezone()
    awarded: list[str] = []
    for achievement in candidates:
        held = await achievement_repo.count_user_awards(db, user_id, achievement.id)
        if held and not achievement.repeatable:
            continue
        satisfied, meta = evaluate_rule(achievement.rule, facts, trigger=reference, tz=tz)
        if not satisfied:
            continue
        meta.update(
            rule_type=achievement.rule.type,
            achievement_code=achievement.code,
            evaluated_at=utcnow().isoformat(),
            **trigger.as_metadata(),
        )
        instance = held if achievement.repeatable else 0
        if not dry_run and not await _award(db, user_id, achievement, instance, meta):
            continue
        awarded.append(achievement.code)
    return awarded


async def list_user_awards(db: AsyncSession, user_id: int) -> list[dict[str, Any]]:
    return [
        {
            "achievement_id": achievement.id,
            "code": achievement.code,
            "name": achievement.name,
            "description": achievement.description,
            "rarity": achievement.rarity,
            "icon": achievement.icon,
            "instance": award.instance,
            "awarded_at": award.awarded_at,
        }
        for award, achievement in await achievement_repo.list_user_achievements(db, user_id)
    ]


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def normalize_rule(rule_json: str | dict[str, Any]) -> str:
    """Validate a rule document and return it as stored text."""
    try:
        parse_rule(rule_json)
    except RuleError as exc:
        raise ValidationError("achievements.rule.invalid", reason=str(exc)) from exc
    if isinstance(rule_json, str):
        return rule_json.strip()
    return json.dumps(rule_json, ensure_ascii=False, sort_keys=True)


async def save_achievement(db: AsyncSession, achievement_id: int | None, data: dict[str, Any]) -> Achievement:
    """Create or edit an achievement. The code cannot change once created."""
    name = (data.get("name") or "").strip()
    code = (data.get("code") or "").strip()
    if not name or (not achievement_id and not code):
        raise ValidationError("error.required", field="name" if not name else "code")
    rarity = data.get("rarity") or "common"
    visibility = data.get("visibility") or "visible"
    if rarity not in RARITIES or visibility not in VISIBILITIES:
        raise ValidationError("error.validation")
    rule_json = normalize_rule(data.get("rule_json") or "")

    if achievement_id:
        achievement = await achievement_repo.get_achievement(db, achievement_id)
        if achievement is None:
            raise NotFound()
    else:
        achievement = Achievement(code=code)
        db.add(achievement)
    achievement.name = name
    achievement.description = data.get("description")
    achievement.rarity = rarity
    achievement.visibility = visibility
    achievement.domain = data.get("domain") or "general"
    achievement.enabled = bool(data.get("enabled", True))
    achievement.repeatable = bool(data.get("repeatable", False))
    achievement.icon = data.get("icon")
    achievement.rule_json = rule_json
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("error.conflict") from exc
    return achievement


async def admin_recompute(
    db: AsyncSession,
    *,
    achievement_id: int | None = None,
    user_id: int | None = None,
    dry_run: bool = False,
) -> RecomputeResult:
    """Re-evaluate achievements for one user or for every user in batches.

    Each user's awards are committed on their own, so an interrupted run keeps
    the work done so far.
    """
    candidates: list[CachedAchievement] | None = None
    if achievement_id:
        achievement = await achievement_repo.get_achievement(db, achievement_id)
        if achievement is None:
            raise NotFound()
        if not achievement.enabled:
            raise ValidationError("achievements.disabled")
        try:
            rule = parse_rule(achievement.rule_json)
        except RuleError as exc:
            raise ValidationError("achievements.rule.invalid", reason=str(exc)) from exc
        candidates = [
            CachedAchievement(
                id=achievement.id,
                code=achievement.code,
                name=achievement.name,
                repeatable=achievement.repeatable,
                rule=rule,
            )
        ]

    result = RecomputeResult(dry_run=dry_run)

    async def _run(uid: int) -> None:
        codes = await evaluate_for_user(db, uid, candidates=candidates, dry_run=dry_run)
        if not dry_run:
            await db.commit()
        result.users += 1
        result.awarded += len(codes)
        for code in codes:
            result.codes[code] = result.codes.get(code, 0) + 1

    if user_id:
        if await user_repo.get_user_by_id(db, user_id) is None:
            raise ValidationError("error.validation", field="user_id")
        await _run(user_id)
    else:
        batch = get_settings().recompute_batch_size
        offset = 0
        while True:
            user_ids = await user_repo.list_user_ids(db, limit=batch, offset=offset)
            for uid in user_ids:
                await _run(uid)
            if len(user_ids) < batch:
                break
            offset += batch

    logger.info(
        "Achievement recompute finished: awarded=%d users=%d dry_run=%s",
        result.awarded,
        result.users,
        dry_run,
    )
    return result

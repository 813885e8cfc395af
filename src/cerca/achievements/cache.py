"""App-scoped cache of enabled achievements with parsed rules.

Achievements are indexed by the rule codes their filters mention, so an
activity with a known rule code only evaluates the relevant achievements plus
those whose filters name no rule code.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from cerca.achievements.rules import AchievementRule, RuleError, parse_rule
from cerca.repository import achievements as achievement_repo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedAchievement:
    id: int
    code: str
    name: str
    repeatable: bool
    rule: AchievementRule


@dataclass(frozen=True)
class _Snapshot:
    version: int
    all: tuple[CachedAchievement, ...]
    by_rule_code: dict[str, tuple[CachedAchievement, ...]]
    unindexed: tuple[CachedAchievement, ...]


class AchievementCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._version = 0
        self._snapshot: _Snapshot | None = None

    def invalidate(self) -> None:
        with self._lock:
            self._version += 1
            self._snapshot = None

    async def _load(self, db: AsyncSession) -> _Snapshot:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        version = self._version
        items: list[CachedAchievement] = []
        for achievement in await achievement_repo.list_enabled_achievements(db):
            try:
                rule = parse_rule(achievement.rule_json)
            except RuleError as exc:
                logger.warning("Skipping achievement %s with invalid rule: %s", achievement.code, exc)
                continue
            items.append(
                CachedAchievement(
                    id=achievement.id,
                    code=achievement.code,
                    name=achievement.name,
                    repeatable=achievement.repeatable,
                    rule=rule,
                )
            )
        index: dict[str, list[CachedAchievement]] = {}
        unindexed: list[CachedAchievement] = []
        for item in items:
            if not item.rule.rule_codes:
                unindexed.append(item)
            for code in item.rule.rule_codes:
                index.setdefault(code, []).append(item)
        snapshot = _Snapshot(
            version=version,
            all=tuple(items),
            by_rule_code={code: tuple(group) for code, group in index.items()},
            unindexed=tuple(unindexed),
        )
        with self._lock:
            # An invalidate() that raced with the load wins.
            if self._version == version:
                self._snapshot = snapshot
        return snapshot

    async def candidates(self, db: AsyncSession, rule_code: str | None = None) -> list[CachedAchievement]:
        snapshot = await self._load(db)
        if not rule_code:
            return list(snapshot.all)
        relevant = {a.id: a for a in snapshot.by_rule_code.get(rule_code, ())}
        relevant.update({a.id: a for a in snapshot.unindexed})
        return sorted(relevant.values(), key=lambda a: a.id)


_cache: AchievementCache | None = None


def get_achievement_cache() -> AchievementCache:
    global _cache  # noqa: PLW0603
    if _cache is None:
        _cache = AchievementCache()
    return _cache


def reset_achievement_cache() -> None:
    global _cache  # noqa: PLW0603
    _cache = None

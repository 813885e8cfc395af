"""Achievement rule documents: parsing and evaluation over activity history.

A rule is a JSON object such as::

    {"type": "count", "filters": {"action": ["indexar"], "status": ["validat"]}, "threshold": 10}

Supported types are ``count``, ``streak``, ``threshold`` and the extended
``burst_count``, ``count_distinct`` and ``ratio_approved``. ``sum_points`` and
``streak_days`` are accepted as aliases.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import Any

from cerca.db.base import as_utc
from cerca.db.models import UserActivity

RULE_TYPES = ("count", "streak", "threshold", "burst_count", "count_distinct", "ratio_approved")
_TYPE_ALIASES = {"sum_points": "threshold", "streak_days": "streak"}
WINDOWS = {"24h": timedelta(hours=24), "48h": timedelta(hours=48), "7d": timedelta(days=7)}

ActivityFact = tuple[UserActivity, str | None]


class RuleError(ValueError):
    """The rule document cannot be parsed."""


def _string_set(filters: Mapping[str, Any], *names: str) -> frozenset[str]:
    values: set[str] = set()
    for name in names:
        raw = filters.get(name)
        if raw is None:
            continue
        items = raw if isinstance(raw, list) else [raw]
        for item in items:
            if not isinstance(item, str):
                msg = f"filter {name!r} must hold strings"
                raise RuleError(msg)
            if item.strip():
                values.add(item.strip())
    return frozenset(values)


@dataclass(frozen=True)
class RuleFilters:
    actions: frozenset[str] = frozenset()
    object_types: frozenset[str] = frozenset()
    rule_codes: frozenset[str] = frozenset()
    statuses: frozenset[str] = frozenset({"validat"})
    event_codes: frozenset[str] = frozenset()

    @classmethod
    def parse(cls, raw: Any) -> RuleFilters:  # noqa: ANN401
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            msg = "filters must be an object"
            raise RuleError(msg)
        statuses = _string_set(raw, "status", "statuses")
        return cls(
            actions=_string_set(raw, "action", "actions"),
            object_types=_string_set(raw, "object_type", "object_types"),
            rule_codes=_string_set(raw, "rule_code", "rule_codes"),
            statuses=statuses or frozenset({"validat"}),
            event_codes=_string_set(raw, "event_code", "event_codes"),
        )

    def matches(self, activity: UserActivity, rule_code: str | None, *, any_status: bool = False) -> bool:
        if self.actions and activity.action not in self.actions:
            return False
        if self.object_types and activity.object_type not in self.object_types:
            return False
        if self.rule_codes and rule_code not in self.rule_codes:
            return False
        if not any_status and activity.status not in self.statuses:
            return False
        if self.event_codes and _event_code(activity) not in self.event_codes:
            return False
        return True


def _event_code(activity: UserActivity) -> str | None:
    if not activity.details:
        return None
    try:
        details = json.loads(activity.details)
    except json.JSONDecodeError:
        return None
    code = details.get("event_code") if isinstance(details, dict) else None
    return code if isinstance(code, str) else None


@dataclass(frozen=True)
class AchievementRule:
    type: str
    threshold: float
    filters: RuleFilters = field(default_factory=RuleFilters)
    window: str | None = None
    min_ratio: float | None = None

    @property
    def rule_codes(self) -> frozenset[str]:
        return self.filters.rule_codes


def _number(value: Any, name: str) -> float:  # noqa: ANN401
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        msg = f"{name} must be a number"
        raise RuleError(msg)
    try:
        return float(value)
    except ValueError as exc:
        msg = f"{name} must be a number"
        raise RuleError(msg) from exc


def parse_rule(raw: str | Mapping[str, Any] | None) -> AchievementRule:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        msg = "empty rule"
        raise RuleError(msg)
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"invalid JSON: {exc.msg}"
            raise RuleError(msg) from exc
    else:
        data = raw
    if not isinstance(data, Mapping):
        msg = "rule must be an object"
        raise RuleError(msg)

    rule_type = str(data.get("type", "")).strip().lower()
    rule_type = _TYPE_ALIASES.get(rule_type, rule_type)
    if rule_type not in RULE_TYPES:
        msg = f"unknown rule type {data.get('type')!r}"
        raise RuleError(msg)

    raw_threshold = data.get("threshold")
    if raw_threshold is None and rule_type == "streak":
        raw_threshold = data.get("min_days")
    if raw_threshold is None and rule_type == "ratio_approved":
        raw_threshold = 1
    if raw_threshold is None:
        msg = "threshold is required"
        raise RuleError(msg)
    threshold = _number(raw_threshold, "threshold")
    if threshold <= 0:
        msg = "threshold must be positive"
        raise RuleError(msg)

    window = None
    if rule_type == "burst_count":
        window = str(data.get("window", "24h"))
        if window not in WINDOWS:
            msg = f"window must be one of {', '.join(WINDOWS)}"
            raise RuleError(msg)

    min_ratio = None
    if rule_type == "ratio_approved":
        min_ratio = _number(data.get("min_ratio"), "min_ratio")
        if not 0 < min_ratio <= 1:
            msg = "min_ratio must be in (0, 1]"
            raise RuleError(msg)

    return AchievementRule(
        type=rule_type,
        threshold=threshold,
        filters=RuleFilters.parse(data.get("filters")),
        window=window,
        min_ratio=min_ratio,
    )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def max_consecutive_days(days: Iterable[date]) -> int:
    best = run = 0
    previous: date | None = None
    for day in sorted(set(days)):
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        best = max(best, run)
        previous = day
    return best


def evaluate_rule(
    rule: AchievementRule,
    facts: Sequence[ActivityFact],
    *,
    trigger: datetime,
    tz: tzinfo,
) -> tuple[bool, dict[str, Any]]:
    """Decide whether the history satisfies the rule; the mapping carries the measured value."""
    meta: dict[str, Any] = {"threshold": rule.threshold}
    if rule.type == "ratio_approved":
        decided = [
            a for a, code in facts
            if a.status in ("validat", "anulat") and rule.filters.matches(a, code, any_status=True)
        ]
        approved = sum(1 for a in decided if a.status == "validat")
        ratio = approved / len(decided) if decided else 0.0
        meta.update(decided=len(decided), ratio=round(ratio, 4))
        return len(decided) >= rule.threshold and ratio >= (rule.min_ratio or 1.0), meta

    matching = [a for a, code in facts if rule.filters.matches(a, code)]
    if rule.type == "count":
        value: float = len(matching)
    elif rule.type == "threshold":
        value = sum(a.points for a in matching)
    elif rule.type == "count_distinct":
        value = len({a.object_id for a in matching if a.object_id is not None})
    elif rule.type == "streak":
        days = (as_utc(a.created_at).astimezone(tz).date() for a in matching)  # type: ignore[union-attr]
        value = max_consecutive_days(days)
    else:
        end = as_utc(trigger)
        start = end - WINDOWS[rule.window or "24h"]  # type: ignore[operator]
        value = sum(1 for a in matching if start < as_utc(a.created_at) <= end)  # type: ignore[operator]
    meta["value"] = value
    return value >= rule.threshold, meta

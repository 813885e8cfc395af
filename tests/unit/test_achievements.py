"""Achievement rule parsing, evaluation and idempotent awards."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from cerca.achievements.rules import RuleError, evaluate_rule, max_consecutive_days, parse_rule
from cerca import redis_client
from cerca.achievements.cache import get_achievement_cache
from cerca.achievements.service import _award, admin_recompute, evaluate_for_user, normalize_rule, save_achievement
from cerca.activity.service import register_user_activity
from cerca.db.base import utcnow
from cerca.db.models import Achievement, UserActivity
from cerca.errors import ValidationError
from cerca.repository import achievements as achievement_repo

COUNT_RULE = '{"type":"count","filters":{"action":["indexar"],"status":["validat"]},"threshold":10}'
UTC = ZoneInfo("UTC")
NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def _activity(action="indexar", status="validat", points=0, object_id=None, created_at=NOW):
    return UserActivity(
        user_id=1,
        action=action,
        object_type="llibre",
        object_id=object_id,
        points=points,
        status=status,
        created_at=created_at,
    )


class TestParseRule:
    def test_count_rule(self):
        rule = parse_rule(COUNT_RULE)
        assert rule.type == "count"
        assert rule.threshold == 10
        assert rule.filters.actions == frozenset({"indexar"})

    def test_default_status_filter_is_validat(self):
        assert parse_rule({"type": "count", "threshold": 1}).filters.statuses == frozenset({"validat"})

    @pytest.mark.parametrize(("alias", "canonical"), [("sum_points", "threshold"), ("streak_days", "streak")])
    def test_aliases(self, alias, canonical):
        assert parse_rule({"type": alias, "threshold": 3}).type == canonical

    def test_streak_min_days(self):
        assert parse_rule({"type": "streak", "min_days": 5}).threshold == 5

    def test_burst_window_default(self):
        assert parse_rule({"type": "burst_count", "threshold": 5}).window == "24h"

    def test_ratio_needs_min_ratio(self):
        with pytest.raises(RuleError):
            parse_rule({"type": "ratio_approved", "threshold": 5})
        assert parse_rule({"type": "ratio_approved", "threshold": 5, "min_ratio": 0.8}).min_ratio == 0.8

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "{bad",
            "[]",
            '{"type": "lottery", "threshold": 1}',
            '{"type": "count"}',
            '{"type": "count", "threshold": 0}',
            '{"type": "count", "threshold": true}',
            '{"type": "burst_count", "threshold": 1, "window": "1y"}',
            '{"type": "count", "threshold": 1, "filters": {"action": [3]}}',
        ],
    )
    def test_invalid(self, raw):
        with pytest.raises(RuleError):
            parse_rule(raw)

    def test_normalize_rule_raises_validation_error(self):
        with pytest.raises(ValidationError):
            normalize_rule('{"type": "count"}')


class TestEvaluateRule:
    def test_count_ignores_cancelled(self):
        rule = parse_rule(COUNT_RULE)
        facts = [(_activity(), None) for _ in range(9)] + [(_activity(status="anulat"), None) for _ in range(2)]
        satisfied, meta = evaluate_rule(rule, facts, trigger=NOW, tz=UTC)
        assert not satisfied
        assert meta["value"] == 9

    def test_threshold_sums_points(self):
        rule = parse_rule({"type": "sum_points", "threshold": 10})
        facts = [(_activity(points=4), None), (_activity(points=6), None)]
        assert evaluate_rule(rule, facts, trigger=NOW, tz=UTC)[0]

    def test_count_distinct_objects(self):
        rule = parse_rule({"type": "count_distinct", "threshold": 2})
        facts = [(_activity(object_id=1), None), (_activity(object_id=1), None)]
        assert not evaluate_rule(rule, facts, trigger=NOW, tz=UTC)[0]
        facts.append((_activity(object_id=2), None))
        assert evaluate_rule(rule, facts, trigger=NOW, tz=UTC)[0]

    def test_rule_code_filter(self):
        rule = parse_rule({"type": "count", "threshold": 1, "filters": {"rule_code": "persona_create"}})
        assert not evaluate_rule(rule, [(_activity(), "cognom_create")], trigger=NOW, tz=UTC)[0]
        assert evaluate_rule(rule, [(_activity(), "persona_create")], trigger=NOW, tz=UTC)[0]

    def test_streak(self):
        rule = parse_rule({"type": "streak", "threshold": 3})
        days = [NOW - timedelta(days=n) for n in (0, 1, 2)]
        satisfied, meta = evaluate_rule(rule, [(_activity(created_at=d), None) for d in days], trigger=NOW, tz=UTC)
        assert satisfied
        assert meta["value"] == 3

    def test_burst_window(self):
        rule = parse_rule({"type": "burst_count", "threshold": 2, "window": "24h"})
        facts = [(_activity(created_at=NOW - timedelta(hours=30)), None), (_activity(created_at=NOW), None)]
        assert not evaluate_rule(rule, facts, trigger=NOW, tz=UTC)[0]
        facts.append((_activity(created_at=NOW - timedelta(hours=2)), None))
        assert evaluate_rule(rule, facts, trigger=NOW, tz=UTC)[0]

    def test_ratio_approved(self):
        rule = parse_rule({"type": "ratio_approved", "threshold": 4, "min_ratio": 0.75})
        facts = [(_activity(), None)] * 3 + [(_activity(status="anulat"), None), (_activity(status="pendent"), None)]
        satisfied, meta = evaluate_rule(rule, facts, trigger=NOW, tz=UTC)
        assert satisfied
        assert meta["decided"] == 4
        assert meta["ratio"] == 0.75

    def test_max_consecutive_days(self):
        day = NOW.date()
        assert max_consecutive_days([]) == 0
        assert max_consecutive_days([day, day, day + timedelta(days=1), day + timedelta(days=3)]) == 2


@pytest_asyncio.fixture
async def count_achievement(db_session):
    achievement = Achievement(code="indexador", name="Indexador", rule_json=COUNT_RULE, enabled=True)
    db_session.add(achievement)
    await db_session.flush()
    return achievement


class TestEvaluateForUser:
    """Awards are inserted once per non-repeatable achievement."""

    @pytest.mark.asyncio
    async def test_award_after_tenth_validated_activity(self, db_session, make_user, count_achievement):
        db = db_session
        user = await make_user(db)
        for status in ["validat"] * 9 + ["anulat"] * 2:
            db.add(UserActivity(user_id=user.id, action="indexar", object_type="llibre", status=status, created_at=utcnow()))
        await db.flush()

        assert await evaluate_for_user(db, user.id) == []

        await register_user_activity(db, user.id, None, "indexar", "llibre", 1)

        assert await achievement_repo.count_user_awards(db, user.id, count_achievement.id) == 1
        assert await evaluate_for_user(db, user.id) == []
        assert await achievement_repo.count_user_awards(db, user.id, count_achievement.id) == 1

    @pytest.mark.asyncio
    async def test_repeatable_achievement_gets_new_instances(self, db_session, make_user):
        db = db_session
        achievement = Achievement(
            code="editor", name="Editor", rule_json='{"type":"count","threshold":1}', enabled=True, repeatable=True
        )
        db.add(achievement)
        user = await make_user(db)

        await register_user_activity(db, user.id, None, "editar", "persona", 1)
        await register_user_activity(db, user.id, None, "editar", "persona", 2)

        assert await achievement_repo.count_user_awards(db, user.id, achievement.id) == 2

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db_session, make_user, count_achievement):
        db = db_session
        user = await make_user(db)
        for _ in range(10):
            db.add(UserActivity(user_id=user.id, action="indexar", object_type="llibre", status="validat", created_at=utcnow()))
        await db.flush()

        assert await evaluate_for_user(db, user.id, dry_run=True) == ["indexador"]
        assert await achievement_repo.count_user_awards(db, user.id, count_achievement.id) == 0

    @pytest.mark.asyncio
    async def test_disabled_achievement_is_skipped(self, db_session, make_user, count_achievement):
        db = db_session
        count_achievement.enabled = False
        user = await make_user(db)
        for _ in range(10):
            db.add(UserActivity(user_id=user.id, action="indexar", object_type="llibre", status="validat", created_at=utcnow()))
        await db.flush()

        assert await evaluate_for_user(db, user.id) == []

    @pytest.mark.asyncio
    async def test_invalid_user_id(self, db_session):
        with pytest.raises(ValidationError):
            await evaluate_for_user(db_session, 0)


class TestAdminRecompute:
    @pytest.mark.asyncio
    async def test_recompute_single_user(self, db_session, make_user, count_achievement):
        db = db_session
        user = await make_user(db)
        for _ in range(10):
            db.add(UserActivity(user_id=user.id, action="indexar", object_type="llibre", status="validat", created_at=utcnow()))
        await db.commit()

        result = await admin_recompute(db, achievement_id=count_achievement.id, user_id=user.id)

        assert result.users == 1
        assert result.awarded == 1
        assert result.codes == {"indexador": 1}
        again = await admin_recompute(db, achievement_id=count_achievement.id, user_id=user.id)
        assert again.awarded == 0

    @pytest.mark.asyncio
    async def test_recompute_rejects_disabled(self, db_session, count_achievement):
        count_achievement.enabled = False
        await db_session.flush()
        with pytest.raises(ValidationError):
            await admin_recompute(db_session, achievement_id=count_achievement.id)


class TestConcurrentAward:
    @pytest.mark.asyncio
    async def test_award_inserted_by_another_session_is_not_duplicated(self, session_factory, make_user, monkeypatch):
        sent: list[str] = []

        async def _record(channel, payload):
            sent.append(payload["code"])

        monkeypatch.setattr(redis_client, "publish_event", _record)
        async with session_factory() as db:
            user = await make_user(db)
            achievement = Achievement(code="indexador", name="Indexador", rule_json=COUNT_RULE, enabled=True)
            db.add(achievement)
            await db.commit()

        async with session_factory() as db:
            cached = next(a for a in await get_achievement_cache().candidates(db) if a.id == achievement.id)
        # A concurrent request commits the same non-repeatable award first.
        async with session_factory() as other:
            await achievement_repo.insert_user_achievement(other, user.id, achievement.id, 0, {})
            await other.commit()

        async with session_factory() as db:
            assert not await _award(db, user.id, cached, 0, {"source": "test"})
            await db.commit()
            assert await redis_client.publish_committed(db) == 0

        async with session_factory() as db:
            assert await achievement_repo.count_user_awards(db, user.id, achievement.id) == 1
        assert sent == []

    @pytest.mark.asyncio
    async def test_award_event_goes_out_after_commit(self, session_factory, make_user, monkeypatch):
        sent: list[str] = []

        async def _record(channel, payload):
            sent.append(payload["code"])

        monkeypatch.setattr(redis_client, "publish_event", _record)
        async with session_factory() as db:
            user = await make_user(db)
            achievement = Achievement(code="indexador", name="Indexador", rule_json=COUNT_RULE, enabled=True)
            db.add(achievement)
            await db.commit()

        async with session_factory() as db:
            cached = next(a for a in await get_achievement_cache().candidates(db) if a.id == achievement.id)
            assert await _award(db, user.id, cached, 0, {})
            assert sent == []
            await db.commit()
            assert await redis_client.publish_committed(db) == 1
        assert sent == ["indexador"]


class TestSaveAchievement:
    RULE = '{"type":"count","threshold":1}'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("visibility", ["visible", "hidden", "seasonal"])
    async def test_known_visibilities(self, db_session, visibility):
        achievement = await save_achievement(
            db_session, None, {"code": f"c-{visibility}", "name": "Temporada", "rule_json": self.RULE, "visibility": visibility}
        )
        assert achievement.visibility == visibility

    @pytest.mark.asyncio
    async def test_unknown_visibility_is_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await save_achievement(
                db_session, None, {"code": "secret", "name": "Secret", "rule_json": self.RULE, "visibility": "secret"}
            )

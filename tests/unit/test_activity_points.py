"""Activity registration and point crediting."""

from __future__ import annotations

import json

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.dialects import postgresql

from cerca.activity.rules import ANULAT, PENDENT, VALIDAT
from cerca.activity.service import (
    cancel_activity,
    recalc_user_points,
    register_user_activity,
    save_points_rule,
    settle_pending,
    validate_activity,
)
from cerca.db.models import PointsRule, UserActivity, UserPoints
from cerca.errors import Conflict, ValidationError
from cerca.repository import points as points_repo
from cerca.repository import upsert_stmt


@pytest_asyncio.fixture
async def persona_rule(db_session):
    rule = PointsRule(code="persona_create", name="Crear persona", points=5, active=True)
    db_session.add(rule)
    await db_session.flush()
    return rule


class TestRegisterActivity:
    """Validated activities credit their rule's points in the same transaction."""

    @pytest.mark.asyncio
    async def test_validated_activity_credits_points(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)

        activity_id = await register_user_activity(db, user.id, "persona_create", "crear", "persona", 99)

        assert activity_id > 0
        assert await points_repo.get_user_points(db, user.id) == 5
        activity = await points_repo.get_activity(db, activity_id)
        assert activity.status == VALIDAT
        assert activity.points == 5

    @pytest.mark.asyncio
    async def test_inactive_rule_records_zero_points(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)
        await register_user_activity(db, user.id, "persona_create", "crear", "persona", 99)
        persona_rule.active = False
        await db.flush()

        activity_id = await register_user_activity(db, user.id, "persona_create", "crear", "persona", 100)

        activity = await points_repo.get_activity(db, activity_id)
        assert activity.points == 0
        assert activity.rule_id is None
        assert await points_repo.get_user_points(db, user.id) == 5

    @pytest.mark.asyncio
    async def test_unknown_rule_records_zero_points(self, db_session, make_user):
        db = db_session
        user = await make_user(db)
        activity_id = await register_user_activity(db, user.id, "no_such_rule", "crear", "persona", 1)
        assert (await points_repo.get_activity(db, activity_id)).points == 0
        assert await points_repo.get_user_points(db, user.id) == 0

    @pytest.mark.asyncio
    async def test_pending_activity_credits_nothing(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)
        await register_user_activity(db, user.id, "persona_create", "crear", "persona", 1, status=PENDENT)
        assert await points_repo.get_user_points(db, user.id) == 0

    @pytest.mark.asyncio
    async def test_details_are_stored_as_json(self, db_session, make_user):
        db = db_session
        user = await make_user(db)
        activity_id = await register_user_activity(
            db, user.id, None, "editar", "persona", 1, status=PENDENT, details={"change_id": 4}
        )
        activity = await points_repo.get_activity(db, activity_id)
        assert json.loads(activity.details) == {"change_id": 4}

    @pytest.mark.asyncio
    async def test_invalid_status(self, db_session, make_user):
        user = await make_user(db_session)
        with pytest.raises(ValidationError):
            await register_user_activity(db_session, user.id, None, "crear", "persona", 1, status="esborrat")


class TestValidateAndCancel:
    @pytest.mark.asyncio
    async def test_validate_credits_once(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)
        moderator = await make_user(db)
        activity_id = await register_user_activity(
            db, user.id, "persona_create", "crear", "persona", 1, status=PENDENT
        )

        assert await validate_activity(db, activity_id, moderator.id)
        assert not await validate_activity(db, activity_id, moderator.id)
        assert await points_repo.get_user_points(db, user.id) == 5
        assert (await points_repo.get_activity(db, activity_id)).moderated_by == moderator.id

    @pytest.mark.asyncio
    async def test_cancel_never_credits(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)
        activity_id = await register_user_activity(
            db, user.id, "persona_create", "crear", "persona", 1, status=PENDENT
        )

        assert await cancel_activity(db, activity_id, None)
        assert not await cancel_activity(db, activity_id, None)
        assert (await points_repo.get_activity(db, activity_id)).status == ANULAT
        assert await points_repo.get_user_points(db, user.id) == 0

    @pytest.mark.asyncio
    async def test_validation_won_elsewhere_credits_nothing(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)
        activity_id = await register_user_activity(
            db, user.id, "persona_create", "crear", "persona", 1, status=PENDENT
        )
        activity = await points_repo.get_activity(db, activity_id)
        # A concurrent moderator already validated and credited it; this session still sees pendent.
        await db.execute(
            update(UserActivity.__table__)
            .where(UserActivity.__table__.c.id == activity_id)
            .values(status=VALIDAT)
        )
        assert activity.status == PENDENT

        assert not await validate_activity(db, activity_id, None)
        assert await points_repo.get_user_points(db, user.id) == 0

    @pytest.mark.asyncio
    async def test_settle_pending_matches_change_link(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)
        moderator = await make_user(db)
        creation = await register_user_activity(db, user.id, "persona_create", "crear", "persona", 7, status=PENDENT)
        edit = await register_user_activity(
            db, user.id, None, "editar", "persona", 7, status=PENDENT, details={"change_id": 3}
        )

        settled = await settle_pending(db, user.id, "persona", 7, moderator.id, approve=True, change_id=3)

        assert settled == 1
        assert (await points_repo.get_activity(db, edit)).status == VALIDAT
        assert (await points_repo.get_activity(db, creation)).status == PENDENT


class TestPointsAdministration:
    @pytest.mark.asyncio
    async def test_recalc_rebuilds_totals(self, db_session, make_user, persona_rule):
        db = db_session
        user = await make_user(db)
        await register_user_activity(db, user.id, "persona_create", "crear", "persona", 1)
        await register_user_activity(db, user.id, "persona_create", "crear", "persona", 2)
        await points_repo.add_points_to_user(db, user.id, 1000)

        assert await recalc_user_points(db) == 1
        assert await points_repo.get_user_points(db, user.id) == 10

    @pytest.mark.asyncio
    async def test_rule_code_is_unique(self, db_session, persona_rule):
        with pytest.raises(Conflict):
            await save_points_rule(db_session, None, code="persona_create", name="Dup", description=None, points=1, active=True)

    @pytest.mark.asyncio
    async def test_edit_keeps_code(self, db_session, persona_rule):
        rule = await save_points_rule(
            db_session, persona_rule.id, code="other", name="Crear", description="x", points=7, active=False
        )
        assert rule.code == "persona_create"
        assert rule.points == 7
        assert rule.active is False


class TestPointsTotals:
    @pytest.mark.asyncio
    async def test_credits_accumulate_across_sessions(self, session_factory, make_user):
        async with session_factory() as db:
            user = await make_user(db)
            await db.commit()
        for delta in (5, 3, -2):
            async with session_factory() as db:
                await points_repo.add_points_to_user(db, user.id, delta)
                await db.commit()

        async with session_factory() as db:
            assert await points_repo.get_user_points(db, user.id) == 6

    def test_postgres_statement_is_a_single_upsert(self):
        class _Engine:
            dialect = postgresql.dialect()

        class _Session:
            def get_bind(self):
                return _Engine()

        stmt = upsert_stmt(_Session(), UserPoints).values(user_id=1, total=5)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserPoints.user_id], set_={"total": UserPoints.total + 5}
        )
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (user_id) DO UPDATE" in sql

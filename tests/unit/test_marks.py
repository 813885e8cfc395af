"""Personal marks and public counters."""

from __future__ import annotations

import pytest

from cerca.errors import ValidationError
from cerca.repository import wiki as wiki_repo
from cerca.wiki.marks import count_deltas, mark_stats, unmark, upsert_mark


class TestCountDeltas:
    """Pure delta computation between two mark states."""

    def test_new_public_mark(self):
        assert count_deltas(None, False, "interes", True) == {"interes": 1}

    def test_new_private_mark(self):
        assert count_deltas(None, False, "interes", False) == {}

    def test_change_tipus(self):
        assert count_deltas("interes", True, "politic", True) == {"interes": -1, "politic": 1}

    def test_public_to_private(self):
        assert count_deltas("consanguini", True, "consanguini", False) == {"consanguini": -1}

    def test_private_to_public(self):
        assert count_deltas("consanguini", False, "consanguini", True) == {"consanguini": 1}

    def test_unchanged(self):
        assert count_deltas("politic", True, "politic", True) == {}

    def test_remove_public_mark(self):
        assert count_deltas("politic", True, None, False) == {"politic": -1}


class TestMarkStorage:
    @pytest.mark.asyncio
    async def test_mark_then_switch_then_unmark(self, db_session, make_user):
        db = db_session
        user = await make_user(db)
        other = await make_user(db)

        await upsert_mark(db, user.id, "persona", 1, "interes", True, caller_key=f"u:{user.id}")
        await upsert_mark(db, other.id, "persona", 1, "interes", True, caller_key=f"u:{other.id}")
        stats = await mark_stats(db, user.id, "persona", 1)
        assert stats["counts"] == {"consanguini": 0, "politic": 0, "interes": 2}
        assert stats["own"] == {"tipus": "interes", "is_public": True}

        await upsert_mark(db, user.id, "persona", 1, "politic", True, caller_key=f"u:{user.id}")
        stats = await mark_stats(db, user.id, "persona", 1)
        assert stats["counts"] == {"consanguini": 0, "politic": 1, "interes": 1}

        assert await unmark(db, user.id, "persona", 1, caller_key=f"u:{user.id}")
        stats = await mark_stats(db, user.id, "persona", 1)
        assert stats["counts"] == {"consanguini": 0, "politic": 0, "interes": 1}
        assert stats["own"] is None

    @pytest.mark.asyncio
    async def test_private_mark_is_not_counted(self, db_session, make_user):
        db = db_session
        user = await make_user(db)
        await upsert_mark(db, user.id, "cognom", 3, "Consanguini", False, caller_key=f"u:{user.id}")

        stats = await mark_stats(db, user.id, "cognom", 3)
        assert stats["counts"]["consanguini"] == 0
        assert stats["own"] == {"tipus": "consanguini", "is_public": False}

    @pytest.mark.asyncio
    async def test_unmark_without_mark(self, db_session, make_user):
        user = await make_user(db_session)
        assert not await unmark(db_session, user.id, "persona", 9, caller_key=f"u:{user.id}")

    @pytest.mark.asyncio
    async def test_invalid_tipus(self, db_session, make_user):
        user = await make_user(db_session)
        with pytest.raises(ValidationError):
            await upsert_mark(db_session, user.id, "persona", 1, "amic", True, caller_key=f"u:{user.id}")

    @pytest.mark.asyncio
    async def test_anonymous_stats_have_no_own_mark(self, db_session):
        stats = await mark_stats(db_session, None, "persona", 1)
        assert stats == {"counts": {"consanguini": 0, "politic": 0, "interes": 0}, "own": None}


class TestCounterStatements:
    @pytest.mark.asyncio
    async def test_counter_never_drops_below_zero(self, db_session):
        db = db_session
        await wiki_repo.inc_wiki_public_count(db, "persona", 3, "interes", 2)
        await wiki_repo.inc_wiki_public_count(db, "persona", 3, "interes", -5)
        assert await wiki_repo.get_wiki_public_counts(db, "persona", 3) == {"interes": 0}

        await wiki_repo.inc_wiki_public_count(db, "persona", 3, "politic", -1)
        assert await wiki_repo.get_wiki_public_counts(db, "persona", 3) == {"interes": 0, "politic": 0}

    @pytest.mark.asyncio
    async def test_mark_written_by_another_session_is_updated_in_place(self, session_factory, make_user):
        async with session_factory() as db:
            user = await make_user(db)
            await wiki_repo.upsert_wiki_mark(db, "persona", 4, user.id, "interes", True)
            await db.commit()

        async with session_factory() as db:
            mark = await wiki_repo.upsert_wiki_mark(db, "persona", 4, user.id, "politic", False)
            await db.commit()

        assert mark.tipus == "politic"
        assert mark.is_public is False
        async with session_factory() as db:
            stored = await wiki_repo.get_wiki_mark(db, "persona", 4, user.id)
            assert (stored.id, stored.tipus) == (mark.id, "politic")

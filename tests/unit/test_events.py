"""Pub/sub events held back until their database transaction commits."""

from __future__ import annotations

import pytest

from cerca import redis_client
from cerca.redis_client import publish_committed, queue_event


@pytest.fixture
def published(monkeypatch):
    sent: list[tuple[str, dict]] = []

    async def _record(channel, payload):
        sent.append((channel, payload))

    monkeypatch.setattr(redis_client, "publish_event", _record)
    return sent


class TestTransactionalEvents:
    @pytest.mark.asyncio
    async def test_committed_event_is_published(self, db_session, published):
        db = db_session
        await db.begin()
        queue_event(db, "pubsub:test", {"n": 1})

        assert await publish_committed(db) == 0
        await db.commit()

        assert await publish_committed(db) == 1
        assert published == [("pubsub:test", {"n": 1})]
        assert await publish_committed(db) == 0

    @pytest.mark.asyncio
    async def test_rolled_back_event_is_dropped(self, db_session, published):
        db = db_session
        await db.begin()
        queue_event(db, "pubsub:test", {"n": 1})
        await db.rollback()

        await db.begin()
        await db.commit()
        assert await publish_committed(db) == 0
        assert published == []

    @pytest.mark.asyncio
    async def test_savepoint_rollback_drops_only_its_events(self, db_session, published):
        db = db_session
        await db.begin()
        queue_event(db, "pubsub:test", {"n": "outer"})
        with pytest.raises(RuntimeError):
            async with db.begin_nested():
                queue_event(db, "pubsub:test", {"n": "inner"})
                raise RuntimeError("abort savepoint")
        async with db.begin_nested():
            queue_event(db, "pubsub:test", {"n": "kept"})
        await db.commit()

        await publish_committed(db)
        assert [payload["n"] for _, payload in published] == ["outer", "kept"]

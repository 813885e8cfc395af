"""Redis connection pool used for pub/sub notifications."""

from __future__ import annotations

import json
import logging

import redis.asyncio as redis
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

logger = logging.getLogger(__name__)

_pool: redis.Redis | None = None


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool. An empty URL leaves Redis disabled."""
    global _pool  # noqa: PLW0603
    if not url:
        _pool = None
        return
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool


def get_redis_or_none() -> redis.Redis | None:
    """Get the Redis client, or None when pub/sub is not configured."""
    return _pool


async def publish_event(channel: str, payload: dict) -> None:
    """Publish a JSON event; failures are logged and never propagate."""
    client = get_redis_or_none()
    if client is None:
        return
    try:
        await client.publish(channel, json.dumps(payload, default=str))
    except Exception:
        logger.warning("Failed to publish %s event", channel, exc_info=True)


# ---------------------------------------------------------------------------
# Events tied to the database transaction
# ---------------------------------------------------------------------------

_PENDING_KEY = "cerca.pending_events"
_COMMITTED_KEY = "cerca.committed_events"


def queue_event(db: AsyncSession, channel: str, payload: dict) -> None:
    """Hold an event until the outermost transaction of ``db`` commits.

    Events queued inside a savepoint that rolls back, or inside a transaction
    that rolls back, are dropped. Committed events go out through
    :func:`publish_committed`.
    """
    sync = db.sync_session
    transaction = sync.get_nested_transaction() or sync.get_transaction()
    sync.info.setdefault(_PENDING_KEY, []).append((transaction, channel, payload))


def _inside(transaction: SessionTransaction | None, boundary: SessionTransaction) -> bool:
    while transaction is not None:
        if transaction is boundary:
            return True
        transaction = transaction.parent
    return False


@event.listens_for(Session, "after_commit")
def _move_committed_events(session: Session) -> None:
    if session.in_nested_transaction():
        return
    pending = session.info.pop(_PENDING_KEY, [])
    if pending:
        session.info.setdefault(_COMMITTED_KEY, []).extend((channel, payload) for _, channel, payload in pending)


@event.listens_for(Session, "after_soft_rollback")
def _drop_rolled_back_events(session: Session, previous_transaction: SessionTransaction) -> None:
    pending = session.info.get(_PENDING_KEY)
    if pending:
        session.info[_PENDING_KEY] = [item for item in pending if not _inside(item[0], previous_transaction)]


async def publish_committed(db: AsyncSession) -> int:
    """Publish the events whose transaction has committed. Returns how many were sent."""
    events = db.sync_session.info.pop(_COMMITTED_KEY, [])
    for channel, payload in events:
        await publish_event(channel, payload)
    return len(events)

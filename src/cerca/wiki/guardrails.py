"""Checks run before a wiki proposal or mark is persisted."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from cerca.config import get_settings
from cerca.errors import MetadataTooLarge, PendingObjectLimit, PendingUserLimit, RateLimited
from cerca.ratelimit import get_rate_limiter
from cerca.repository import wiki as wiki_repo

CHANGE_ROUTE = "/wiki/change"
MARK_ROUTE = "/wiki/mark"


def check_change_rate(caller_key: str) -> None:
    settings = get_settings()
    allowed, retry_after = get_rate_limiter().allow(
        CHANGE_ROUTE, caller_key, settings.wiki_change_rate, settings.wiki_change_burst
    )
    if not allowed:
        raise RateLimited(retry_after=retry_after)


def check_mark_rate(caller_key: str) -> None:
    settings = get_settings()
    allowed, retry_after = get_rate_limiter().allow(
        MARK_ROUTE, caller_key, settings.wiki_mark_rate, settings.wiki_mark_burst
    )
    if not allowed:
        raise RateLimited(retry_after=retry_after)


def check_metadata_size(metadata: str) -> None:
    """The cap is inclusive: a document of exactly the maximum size is accepted."""
    limit = get_settings().wiki_meta_max_bytes
    size = len(metadata.encode("utf-8"))
    if size > limit:
        raise MetadataTooLarge(size=size, limit=limit)


def _check_pending_counts(per_object: int, per_user: int) -> None:
    settings = get_settings()
    if per_object >= settings.wiki_pending_per_object:
        raise PendingObjectLimit(limit=settings.wiki_pending_per_object)
    if per_user >= settings.wiki_pending_per_user:
        raise PendingUserLimit(limit=settings.wiki_pending_per_user)


async def check_pending_limits(db: AsyncSession, object_type: str, object_id: int, author_id: int) -> None:
    per_object = await wiki_repo.count_pending_wiki_changes(db, object_type, object_id)
    per_user = await wiki_repo.count_pending_wiki_changes(db, object_type, object_id, author_id)
    _check_pending_counts(per_object, per_user)


async def check_raw_pending_limits(db: AsyncSession, transcripcio_id: int, author_id: int) -> None:
    per_object = await wiki_repo.count_pending_raw_changes(db, transcripcio_id)
    per_user = await wiki_repo.count_pending_raw_changes(db, transcripcio_id, author_id)
    _check_pending_counts(per_object, per_user)


async def run_change_guardrails(
    db: AsyncSession, caller_key: str, object_type: str, object_id: int, author_id: int, metadata: str
) -> None:
    """Rate, size, then pending quotas. Nothing is written when any check fails."""
    check_change_rate(caller_key)
    check_metadata_size(metadata)
    await check_pending_limits(db, object_type, object_id, author_id)


def caller_key_for(user_id: int | None, client_ip: str | None) -> str:
    """Token-bucket key: the user id, or the client address for anonymous callers."""
    if user_id:
        return f"u:{user_id}"
    return f"ip:{client_ip or 'unknown'}"

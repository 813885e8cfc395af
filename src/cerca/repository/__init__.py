"""Repository gateway: typed async queries and writes over the relational store.

Functions flush but never commit; callers own the transaction boundary.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_stmt(db: AsyncSession, model: type[Any]) -> Any:  # noqa: ANN401
    """``INSERT`` with ``on_conflict_do_update`` for the engine behind ``db``.

    PostgreSQL in production, SQLite in the test suite; both speak ON CONFLICT.
    """
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)

"""Raw transcription child rows: people and attributes."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.models import TranscripcioAtributRaw, TranscripcioPersonaRaw


async def list_persones(db: AsyncSession, transcripcio_id: int) -> list[TranscripcioPersonaRaw]:
    result = await db.execute(
        select(TranscripcioPersonaRaw)
        .where(TranscripcioPersonaRaw.transcripcio_id == transcripcio_id)
        .order_by(TranscripcioPersonaRaw.id)
    )
    return list(result.scalars())


async def list_atributs(db: AsyncSession, transcripcio_id: int) -> list[TranscripcioAtributRaw]:
    result = await db.execute(
        select(TranscripcioAtributRaw)
        .where(TranscripcioAtributRaw.transcripcio_id == transcripcio_id)
        .order_by(TranscripcioAtributRaw.id)
    )
    return list(result.scalars())


async def add_rows(db: AsyncSession, rows: list[TranscripcioPersonaRaw | TranscripcioAtributRaw]) -> None:
    db.add_all(rows)
    await db.flush()


async def delete_rows(db: AsyncSession, rows: list[TranscripcioPersonaRaw | TranscripcioAtributRaw]) -> None:
    for row in rows:
        await db.delete(row)
    await db.flush()

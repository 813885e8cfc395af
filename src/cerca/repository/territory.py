"""Territorial and documentary lookups used by target resolution."""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.models import Arquebisbat, Arxiu, ArxiuLlibre, Llibre, Municipi, NivellAdministratiu


async def get_municipi(db: AsyncSession, municipi_id: int) -> Municipi | None:
    return await db.get(Municipi, municipi_id)


async def get_nivell(db: AsyncSession, nivell_id: int) -> NivellAdministratiu | None:
    return await db.get(NivellAdministratiu, nivell_id)


async def get_arxiu(db: AsyncSession, arxiu_id: int) -> Arxiu | None:
    return await db.get(Arxiu, arxiu_id)


async def get_llibre(db: AsyncSession, llibre_id: int) -> Llibre | None:
    return await db.get(Llibre, llibre_id)


async def get_arquebisbat(db: AsyncSession, arquebisbat_id: int) -> Arquebisbat | None:
    return await db.get(Arquebisbat, arquebisbat_id)


async def list_arxiu_ids_for_llibre(db: AsyncSession, llibre_id: int) -> list[int]:
    result = await db.execute(
        select(ArxiuLlibre.arxiu_id).where(ArxiuLlibre.llibre_id == llibre_id).order_by(ArxiuLlibre.arxiu_id)
    )
    return list(result.scalars())


async def set_llibre_arxius(db: AsyncSession, llibre_id: int, arxiu_ids: list[int]) -> None:
    """Replace the archive links of a book."""
    await db.execute(delete(ArxiuLlibre).where(ArxiuLlibre.llibre_id == llibre_id))
    for arxiu_id in dict.fromkeys(arxiu_ids):
        db.add(ArxiuLlibre(arxiu_id=arxiu_id, llibre_id=llibre_id))
    await db.flush()


async def list_arquebisbat_ancestors(db: AsyncSession, arquebisbat_id: int, max_depth: int = 20) -> list[int]:
    """Return the entity id followed by its ancestors, stopping on cycles or self-parents."""
    chain: list[int] = []
    current: int | None = arquebisbat_id
    while current and current not in chain and len(chain) < max_depth:
        entity = await db.get(Arquebisbat, current)
        if entity is None:
            break
        chain.append(entity.id)
        current = entity.parent_id
    return chain

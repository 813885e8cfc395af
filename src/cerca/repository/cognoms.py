"""Surname, redirect and merge-suggestion persistence."""

from __future__ import annotations

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.models import Cognom, CognomRedirect, CognomRedirectSuggestion, CognomVariant, Municipi, Persona


async def get_cognom(db: AsyncSession, cognom_id: int) -> Cognom | None:
    return await db.get(Cognom, cognom_id)


async def get_cognom_redirect(db: AsyncSession, from_id: int) -> CognomRedirect | None:
    return await db.get(CognomRedirect, from_id)


async def list_cognom_redirects(db: AsyncSession) -> list[CognomRedirect]:
    result = await db.execute(select(CognomRedirect).order_by(CognomRedirect.from_id))
    return list(result.scalars())


async def list_redirect_aliases(db: AsyncSession, to_id: int) -> list[int]:
    result = await db.execute(select(CognomRedirect.from_id).where(CognomRedirect.to_id == to_id))
    return list(result.scalars())


async def set_cognom_redirect(
    db: AsyncSession, from_id: int, to_id: int, reason: str | None, created_by: int | None
) -> CognomRedirect:
    """Insert or overwrite the single outgoing redirect of ``from_id``."""
    redirect = await db.get(CognomRedirect, from_id)
    if redirect is None:
        redirect = CognomRedirect(from_id=from_id, to_id=to_id, reason=reason, created_by=created_by)
        db.add(redirect)
    else:
        redirect.to_id = to_id
        redirect.reason = reason
        redirect.created_by = created_by
    await db.flush()
    return redirect


async def delete_cognom_redirect(db: AsyncSession, from_id: int) -> bool:
    result = await db.execute(delete(CognomRedirect).where(CognomRedirect.from_id == from_id))
    return bool(result.rowcount)


async def get_suggestion(db: AsyncSession, suggestion_id: int) -> CognomRedirectSuggestion | None:
    return await db.get(CognomRedirectSuggestion, suggestion_id)


async def has_pending_suggestion(db: AsyncSession, from_id: int, to_id: int) -> bool:
    result = await db.execute(
        select(func.count(CognomRedirectSuggestion.id)).where(
            CognomRedirectSuggestion.from_id == from_id,
            CognomRedirectSuggestion.to_id == to_id,
            CognomRedirectSuggestion.moderation_state == "pendent",
        )
    )
    return int(result.scalar_one()) > 0


async def create_suggestion(db: AsyncSession, suggestion: CognomRedirectSuggestion) -> int:
    db.add(suggestion)
    await db.flush()
    return suggestion.id


async def list_suggestions(
    db: AsyncSession, *, state: str | None = None, created_by: int | None = None, limit: int = 200
) -> list[CognomRedirectSuggestion]:
    query = select(CognomRedirectSuggestion)
    if state:
        query = query.where(CognomRedirectSuggestion.moderation_state == state)
    if created_by is not None:
        query = query.where(CognomRedirectSuggestion.created_by == created_by)
    result = await db.execute(query.order_by(CognomRedirectSuggestion.id.desc()).limit(min(limit, 500)))
    return list(result.scalars())


async def search_cognoms(db: AsyncSession, prefix: str, limit: int = 20) -> list[tuple[int, str]]:
    """Published surnames whose form or a variant starts with ``prefix``."""
    pattern = f"{prefix.lower()}%"
    variant_ids = select(CognomVariant.cognom_id).where(func.lower(CognomVariant.variant).like(pattern))
    result = await db.execute(
        select(Cognom.id, Cognom.forma)
        .where(
            Cognom.moderation_state == "publicat",
            or_(func.lower(Cognom.forma).like(pattern), Cognom.id.in_(variant_ids)),
        )
        .order_by(Cognom.forma)
        .limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]


async def list_variant_forms(db: AsyncSession, cognom_ids: list[int]) -> list[str]:
    if not cognom_ids:
        return []
    result = await db.execute(select(CognomVariant.variant).where(CognomVariant.cognom_id.in_(cognom_ids)))
    return list(result.scalars())


async def list_cognom_forms(db: AsyncSession, cognom_ids: list[int]) -> list[str]:
    if not cognom_ids:
        return []
    result = await db.execute(select(Cognom.forma).where(Cognom.id.in_(cognom_ids)))
    return list(result.scalars())


async def heatmap_counts(
    db: AsyncSession, forms: list[str], year_from: int | None, year_to: int | None
) -> list[tuple[int, str, float | None, float | None, int]]:
    """Published people carrying any of ``forms`` as first or second surname, per municipality."""
    lowered = sorted({f.strip().lower() for f in forms if f and f.strip()})
    if not lowered:
        return []
    query = (
        select(Municipi.id, Municipi.nom, Municipi.latitud, Municipi.longitud, func.count(Persona.id))
        .join(Municipi, Municipi.id == Persona.municipi_id)
        .where(
            Persona.moderation_state == "publicat",
            or_(func.lower(Persona.cognom1).in_(lowered), func.lower(Persona.cognom2).in_(lowered)),
        )
    )
    if year_from:
        query = query.where(Persona.any_naixement >= year_from)
    if year_to:
        query = query.where(Persona.any_naixement <= year_to)
    result = await db.execute(
        query.group_by(Municipi.id, Municipi.nom, Municipi.latitud, Municipi.longitud).order_by(Municipi.nom)
    )
    return [(row[0], row[1], row[2], row[3], int(row[4])) for row in result.all()]

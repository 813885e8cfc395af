"""Surname canonicalization: redirects, merge suggestions, search and heatmap."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.activity import rules as activity_rules
from cerca.activity.service import register_user_activity, settle_pending
from cerca.context import RequestContext
from cerca.db.models import CognomRedirect, CognomRedirectSuggestion
from cerca.errors import Conflict, NotFound, ValidationError
from cerca.repository import cognoms as cognom_repo
from cerca.repository import entities as entity_repo

logger = logging.getLogger(__name__)

MAX_REDIRECT_STEPS = 20
SEARCH_LIMIT = 20
MERGE_OBJECT_TYPE = "cognom_merge"

_ID_SEPARATORS = re.compile(r"[,;\s]+")


async def resolve_canonical(db: AsyncSession, cognom_id: int) -> tuple[int, bool]:
    """Follow redirects from ``cognom_id``. Returns ``(canonical_id, redirected)``."""
    current = cognom_id
    visited = {current}
    for _ in range(MAX_REDIRECT_STEPS):
        redirect = await cognom_repo.get_cognom_redirect(db, current)
        if redirect is None or redirect.to_id in visited:
            break
        current = redirect.to_id
        visited.add(current)
    return current, current != cognom_id


def parse_id_list(raw: str | Iterable[Any] | None) -> list[int]:
    """Split on commas, semicolons and whitespace; drop non-positive and repeated ids, keep order."""
    if raw is None:
        return []
    items = _ID_SEPARATORS.split(raw) if isinstance(raw, str) else [str(item) for item in raw]
    ids: list[int] = []
    for item in items:
        item = item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            continue
        if number > 0 and number not in ids:
            ids.append(number)
    return ids


def merge_reason(preset: str | None, detail: str | None) -> str | None:
    preset = (preset or "").strip()
    detail = (detail or "").strip()
    if preset and detail:
        return f"{preset} - {detail}"[:500]
    return (preset or detail)[:500] or None


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


async def suggest_merge(
    db: AsyncSession, ctx: RequestContext, to_id: int, alias_ids: list[int], reason: str | None
) -> int:
    """Create pending merge suggestions onto the canonical of ``to_id``. Returns how many were created."""
    if to_id <= 0 or not alias_ids:
        raise ValidationError("cognoms.merge.invalid")
    canonical, _ = await resolve_canonical(db, to_id)
    if await cognom_repo.get_cognom(db, canonical) is None:
        raise NotFound()

    created = 0
    for from_id in alias_ids:
        if from_id <= 0 or from_id == canonical:
            continue
        if await cognom_repo.get_cognom(db, from_id) is None:
            continue
        if await cognom_repo.get_cognom_redirect(db, from_id) is not None:
            continue
        own_canonical, _ = await resolve_canonical(db, from_id)
        if own_canonical != from_id:
            continue
        if await cognom_repo.has_pending_suggestion(db, from_id, canonical):
            continue
        suggestion_id = await cognom_repo.create_suggestion(
            db,
            CognomRedirectSuggestion(
                from_id=from_id,
                to_id=canonical,
                reason=reason,
                moderation_state="pendent",
                created_by=ctx.user_id,
            ),
        )
        await register_user_activity(
            db,
            ctx.user_id,  # type: ignore[arg-type]
            activity_rules.COGNOM_MERGE_SUGGEST,
            activity_rules.ACTION_CREATE,
            MERGE_OBJECT_TYPE,
            suggestion_id,
            status=activity_rules.PENDENT,
            details={"from": from_id, "to": canonical, "reason": reason},
        )
        created += 1
    return created


# ---------------------------------------------------------------------------
# Redirects
# ---------------------------------------------------------------------------


async def materialize_merge(
    db: AsyncSession, admin_id: int, from_id: int, to_id: int, reason: str | None
) -> CognomRedirect:
    """Point ``from_id`` at ``to_id``. Rejects self-redirects and redirects that would close a cycle."""
    if from_id <= 0 or to_id <= 0 or from_id == to_id:
        raise ValidationError("cognoms.merge.invalid")
    if await cognom_repo.get_cognom(db, from_id) is None or await cognom_repo.get_cognom(db, to_id) is None:
        raise NotFound()
    if await _reaches(db, to_id, from_id):
        raise Conflict("cognoms.redirect.cycle")
    try:
        redirect = await cognom_repo.set_cognom_redirect(db, from_id, to_id, reason, admin_id)
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("error.conflict") from exc
    logger.info("Surname %s now redirects to %s (by user %s)", from_id, to_id, admin_id)
    return redirect


async def _reaches(db: AsyncSession, start: int, target: int) -> bool:
    """Follow the chain from ``start`` to its end, however long, looking for ``target``."""
    current = start
    visited = {current}
    while current != target:
        redirect = await cognom_repo.get_cognom_redirect(db, current)
        if redirect is None or redirect.to_id in visited:
            return False
        current = redirect.to_id
        visited.add(current)
    return True


async def materialize_many(
    db: AsyncSession, admin_id: int, to_id: int, alias_ids: list[int], reason: str | None
) -> int:
    if not alias_ids:
        raise ValidationError("cognoms.merge.invalid")
    count = 0
    for from_id in alias_ids:
        await materialize_merge(db, admin_id, from_id, to_id, reason)
        count += 1
    return count


async def delete_redirect(db: AsyncSession, from_id: int) -> None:
    if not await cognom_repo.delete_cognom_redirect(db, from_id):
        raise NotFound()


async def moderate_suggestion(db: AsyncSession, admin_id: int, suggestion_id: int, *, accept: bool) -> None:
    """Accepting materializes the redirect; both outcomes settle the author's activity."""
    suggestion = await cognom_repo.get_suggestion(db, suggestion_id)
    if suggestion is None:
        raise NotFound()
    if suggestion.moderation_state != "pendent":
        raise ValidationError("moderation.invalid_state")
    state = "publicat" if accept else "rebutjat"
    if not await entity_repo.claim_pending(db, CognomRedirectSuggestion, suggestion.id, state, admin_id):
        raise ValidationError("moderation.invalid_state")
    if accept:
        await materialize_merge(db, admin_id, suggestion.from_id, suggestion.to_id, suggestion.reason)

    await settle_pending(
        db, suggestion.created_by, MERGE_OBJECT_TYPE, suggestion.id, admin_id, approve=accept
    )


# ---------------------------------------------------------------------------
# JSON read models
# ---------------------------------------------------------------------------


async def search(db: AsyncSession, q: str) -> list[dict[str, Any]]:
    """Prefix search over forms and variants, returning canonical ids only."""
    q = (q or "").strip()
    if not q:
        return []
    results: list[dict[str, Any]] = []
    seen: set[int] = set()
    for cognom_id, forma in await cognom_repo.search_cognoms(db, q, limit=SEARCH_LIMIT):
        canonical, redirected = await resolve_canonical(db, cognom_id)
        if canonical in seen:
            continue
        seen.add(canonical)
        if redirected:
            target = await cognom_repo.get_cognom(db, canonical)
            forma = target.forma if target else forma
        results.append({"id": canonical, "forma": forma})
        if len(results) >= SEARCH_LIMIT:
            break
    return results


async def _alias_tree(db: AsyncSession, canonical: int) -> list[int]:
    """The canonical id plus every surname redirecting to it, directly or through a chain."""
    ids = [canonical]
    frontier = [canonical]
    for _ in range(MAX_REDIRECT_STEPS):
        if not frontier:
            break
        found: list[int] = []
        for to_id in frontier:
            found.extend(a for a in await cognom_repo.list_redirect_aliases(db, to_id) if a not in ids)
        ids.extend(found)
        frontier = found
    return ids


async def heatmap(db: AsyncSession, cognom_id: int, y0: int | None, y1: int | None) -> dict[str, Any]:
    if y0 and y1 and y0 > y1:
        raise ValidationError("error.year_range", field="y0")
    canonical, _ = await resolve_canonical(db, cognom_id)
    if await cognom_repo.get_cognom(db, canonical) is None:
        raise NotFound()
    ids = await _alias_tree(db, canonical)
    forms = await cognom_repo.list_cognom_forms(db, ids) + await cognom_repo.list_variant_forms(db, ids)
    points = [
        {"municipi_id": mid, "name": nom, "lat": lat, "lon": lon, "w": count}
        for mid, nom, lat, lon, count in await cognom_repo.heatmap_counts(db, forms, y0, y1)
    ]
    return {"cognom_id": canonical, "y0": y0, "y1": y1, "points": points}

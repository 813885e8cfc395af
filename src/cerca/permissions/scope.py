"""Compile a :class:`ListScopeFilter` into SQL conditions for list queries."""

from __future__ import annotations

from sqlalchemy import ColumnElement, false, or_, select

from cerca.db.models import Arxiu, ArxiuLlibre, Llibre, Municipi, NivellAdministratiu
from cerca.permissions.evaluator import ListScopeFilter


def _municipi_conditions(mask: ListScopeFilter) -> list[ColumnElement[bool]]:
    t = mask.targets
    conditions: list[ColumnElement[bool]] = []
    if t.municipi_ids:
        conditions.append(Municipi.id.in_(t.municipi_ids))
    if t.provincia_ids:
        conditions.append(Municipi.nivell_3_id.in_(t.provincia_ids))
    if t.comarca_ids:
        conditions.append(Municipi.nivell_4_id.in_(t.comarca_ids))
    level_columns = (
        Municipi.nivell_1_id,
        Municipi.nivell_2_id,
        Municipi.nivell_3_id,
        Municipi.nivell_4_id,
        Municipi.nivell_5_id,
        Municipi.nivell_6_id,
        Municipi.nivell_7_id,
    )
    if t.nivell_ids:
        conditions.extend(column.in_(t.nivell_ids) for column in level_columns)
    if t.pais_ids:
        nivells_in_pais = select(NivellAdministratiu.id).where(NivellAdministratiu.pais_id.in_(t.pais_ids))
        conditions.extend(column.in_(nivells_in_pais) for column in level_columns)
    return conditions


def municipi_scope_clause(mask: ListScopeFilter) -> ColumnElement[bool] | None:
    """None means unrestricted; ``false()`` means no rows."""
    if mask.has_global:
        return None
    conditions = _municipi_conditions(mask)
    return or_(*conditions) if conditions else false()


def _scoped_municipi_ids(mask: ListScopeFilter):  # noqa: ANN202
    conditions = _municipi_conditions(mask)
    if not conditions:
        return None
    return select(Municipi.id).where(or_(*conditions))


def arxiu_scope_clause(mask: ListScopeFilter) -> ColumnElement[bool] | None:
    if mask.has_global:
        return None
    t = mask.targets
    conditions: list[ColumnElement[bool]] = []
    if t.arxiu_ids:
        conditions.append(Arxiu.id.in_(t.arxiu_ids))
    if t.ecles_ids:
        conditions.append(Arxiu.entitat_eclesiastica_id.in_(t.ecles_ids))
    municipis = _scoped_municipi_ids(mask)
    if municipis is not None:
        conditions.append(Arxiu.municipi_id.in_(municipis))
    return or_(*conditions) if conditions else false()


def llibre_scope_clause(mask: ListScopeFilter) -> ColumnElement[bool] | None:
    if mask.has_global:
        return None
    t = mask.targets
    conditions: list[ColumnElement[bool]] = []
    if t.llibre_ids:
        conditions.append(Llibre.id.in_(t.llibre_ids))
    if t.ecles_ids:
        conditions.append(Llibre.arquebisbat_id.in_(t.ecles_ids))
    municipis = _scoped_municipi_ids(mask)
    if municipis is not None:
        conditions.append(Llibre.municipi_id.in_(municipis))
    if t.arxiu_ids or t.ecles_ids or municipis is not None:
        linked = (
            select(ArxiuLlibre.llibre_id)
            .join(Arxiu, Arxiu.id == ArxiuLlibre.arxiu_id)
            .where(arxiu_scope_clause(mask))
        )
        conditions.append(Llibre.id.in_(linked))
    return or_(*conditions) if conditions else false()


def municipi_column_scope_clause(column, mask: ListScopeFilter) -> ColumnElement[bool] | None:  # noqa: ANN001
    """Scope clause for entities anchored only by a ``municipi_id`` column."""
    if mask.has_global:
        return None
    municipis = _scoped_municipi_ids(mask)
    return column.in_(municipis) if municipis is not None else false()


def global_only_clause(mask: ListScopeFilter) -> ColumnElement[bool] | None:
    """Entities with no territorial anchor are visible only under a global grant."""
    return None if mask.has_global else false()

"""Per-entity adapters: fields, coercion, permission targets and list scoping.

Every contributed entity type is described by one :class:`EntityAdapter`.
The generic routes, the wiki pipeline and the moderation coordinator only
talk to entities through these adapters.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Boolean, ColumnElement, Float, Integer, String, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.base import Base
from cerca.db.models import (
    WIKI_OBJECT_TYPES,
    Arquebisbat,
    Arxiu,
    ArxiuLlibre,
    Cognom,
    EventHistoric,
    Llibre,
    LlibrePagina,
    Municipi,
    NivellAdministratiu,
    NomHistoric,
    Pais,
    Persona,
    TranscripcioRaw,
)
from cerca.errors import ValidationError
from cerca.permissions import keys
from cerca.permissions.evaluator import ListScopeFilter
from cerca.permissions.scope import (
    arxiu_scope_clause,
    global_only_clause,
    llibre_scope_clause,
    municipi_column_scope_clause,
    municipi_scope_clause,
)
from cerca.permissions.targets import PermissionTarget
from cerca.repository import territory

MIN_YEAR = 1
MAX_YEAR = 2100
SEXES = ("H", "D")
LLIBRE_ARXIUS_KEY = "arxiu_ids"

Values = Mapping[str, Any]
FilterFn = Callable[[str], ColumnElement[bool]]


def _int_param(raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError("error.validation", field="filter") from exc


def _eq(column: Any) -> FilterFn:  # noqa: ANN401
    if isinstance(column.type, Integer):
        return lambda raw: column == _int_param(raw)
    return lambda raw: column == raw


def _positive(value: Any) -> int | None:  # noqa: ANN401
    return value if isinstance(value, int) and value > 0 else None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityAdapter:
    object_type: str
    model: type[Base]
    path: str
    permission_prefix: str
    fields: tuple[str, ...]
    required: tuple[str, ...] = ()
    search: tuple[str, ...] = ()
    filters: Mapping[str, FilterFn] = field(default_factory=dict)
    target_fn: Callable[[Values, int | None], PermissionTarget] = lambda _v, _i: PermissionTarget()
    scope_fn: Callable[[ListScopeFilter], ColumnElement[bool] | None] = global_only_clause
    validate_fn: Callable[[Values, int | None], None] | None = None
    links_arxius: bool = False
    generic_routes: bool = True
    invalidates_targets: bool = False
    create_rule: str | None = None

    @property
    def is_wiki(self) -> bool:
        return self.object_type in WIKI_OBJECT_TYPES

    @property
    def update_rule(self) -> str:
        return f"{self.object_type}_update"

    def key(self, action: str) -> str:
        return f"{self.permission_prefix}.{action}"

    # --- values -----------------------------------------------------------

    def coerce(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Convert the known fields of ``payload`` to column types. Unknown keys are ignored."""
        values: dict[str, Any] = {}
        for name in self.fields:
            if name in payload:
                values[name] = _coerce_column(self.model, name, payload[name])
        if self.links_arxius and LLIBRE_ARXIUS_KEY in payload:
            values[LLIBRE_ARXIUS_KEY] = _coerce_id_list(payload[LLIBRE_ARXIUS_KEY])
        return values

    def validate(self, values: Values, entity_id: int | None = None) -> None:
        for name in self.required:
            if values.get(name) in (None, ""):
                raise ValidationError("error.required", field=name)
        for name in self.fields:
            if name.startswith("any_") and values.get(name) is not None:
                if not MIN_YEAR <= values[name] <= MAX_YEAR:
                    raise ValidationError("error.year_range", field=name)
        start, end = values.get("any_inici"), values.get("any_fi")
        if start is not None and end is not None and start > end:
            raise ValidationError("error.year_range", field="any_fi")
        if self.validate_fn is not None:
            self.validate_fn(values, entity_id)

    def target(self, values: Values, entity_id: int | None = None) -> PermissionTarget:
        return self.target_fn(values, entity_id)

    def target_of(self, entity: Base) -> PermissionTarget:
        values = {name: getattr(entity, name) for name in self.fields}
        return self.target_fn(values, entity.id)  # type: ignore[attr-defined]

    def scope(self, mask: ListScopeFilter) -> ColumnElement[bool] | None:
        return self.scope_fn(mask)

    # --- snapshots --------------------------------------------------------

    async def snapshot(self, db: AsyncSession, entity: Base) -> dict[str, Any]:
        snap: dict[str, Any] = {"id": entity.id}  # type: ignore[attr-defined]
        for name in self.fields:
            snap[name] = getattr(entity, name)
        if self.links_arxius:
            snap[LLIBRE_ARXIUS_KEY] = await territory.list_arxiu_ids_for_llibre(db, entity.id)  # type: ignore[attr-defined]
        return snap

    async def apply(self, db: AsyncSession, entity: Base, snapshot: Mapping[str, Any]) -> None:
        """Write a (possibly partial) snapshot over the live entity."""
        values = self.coerce(snapshot)
        for name in self.fields:
            if name in values:
                setattr(entity, name, values[name])
        await db.flush()
        if self.links_arxius and LLIBRE_ARXIUS_KEY in values:
            await territory.set_llibre_arxius(db, entity.id, values[LLIBRE_ARXIUS_KEY])  # type: ignore[attr-defined]


def _coerce_id_list(value: Any) -> list[int]:  # noqa: ANN401
    if value in (None, ""):
        return []
    items = value if isinstance(value, list | tuple) else str(value).replace(";", ",").split(",")
    ids: list[int] = []
    for item in items:
        if isinstance(item, str) and not item.strip():
            continue
        try:
            number = int(item)
        except (TypeError, ValueError) as exc:
            raise ValidationError("error.validation", field=LLIBRE_ARXIUS_KEY) from exc
        if number > 0 and number not in ids:
            ids.append(number)
    return ids


def _coerce_column(model: type[Base], name: str, value: Any) -> Any:  # noqa: ANN401
    column = model.__table__.c[name]
    if isinstance(value, str):
        value = value.strip()
    if value is None or value == "":
        if not column.nullable and not isinstance(column.type, Boolean):
            raise ValidationError("error.required", field=name)
        return False if isinstance(column.type, Boolean) else None

    if isinstance(column.type, Boolean):
        if isinstance(value, bool):
            return value
        return str(value).lower() in ("1", "true", "on", "yes")
    if isinstance(column.type, Integer):
        if isinstance(value, bool):
            raise ValidationError("error.validation", field=name)
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError("error.validation", field=name) from exc
        # Optional references use NULL, never 0.
        if name.endswith("_id") and number <= 0:
            if not column.nullable:
                raise ValidationError("error.required", field=name)
            return None
        return number
    if isinstance(column.type, Float):
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError("error.validation", field=name) from exc

    text = str(value)
    length = column.type.length if isinstance(column.type, String) else None
    if length and len(text) > length:
        raise ValidationError("error.too_long", field=name)
    return text


# ---------------------------------------------------------------------------
# Targets & validation per type
# ---------------------------------------------------------------------------


def _municipi_target(values: Values, entity_id: int | None) -> PermissionTarget:
    if entity_id:
        return PermissionTarget(municipi_id=entity_id)
    return PermissionTarget(
        provincia_id=_positive(values.get("nivell_3_id")),
        comarca_id=_positive(values.get("nivell_4_id")),
    )


def _arxiu_target(values: Values, entity_id: int | None) -> PermissionTarget:
    return PermissionTarget(
        arxiu_id=entity_id,
        municipi_id=_positive(values.get("municipi_id")),
        ecles_id=_positive(values.get("entitat_eclesiastica_id")),
    )


def _llibre_target(values: Values, entity_id: int | None) -> PermissionTarget:
    return PermissionTarget(
        llibre_id=entity_id,
        municipi_id=_positive(values.get("municipi_id")),
        ecles_id=_positive(values.get("arquebisbat_id")),
        arxiu_ids=tuple(values.get(LLIBRE_ARXIUS_KEY) or ()),
    )


def _municipi_anchor(values: Values, _entity_id: int | None) -> PermissionTarget:
    return PermissionTarget(municipi_id=_positive(values.get("municipi_id")))


def _pais_target(values: Values, entity_id: int | None) -> PermissionTarget:
    return PermissionTarget(pais_id=entity_id)


def _nivell_target(values: Values, _entity_id: int | None) -> PermissionTarget:
    return PermissionTarget(pais_id=_positive(values.get("pais_id")))


def _arquebisbat_target(values: Values, entity_id: int | None) -> PermissionTarget:
    return PermissionTarget(
        ecles_id=entity_id or _positive(values.get("parent_id")),
        pais_id=_positive(values.get("pais_id")),
    )


_NOM_HISTORIC_ANCHORS = {"municipi": "municipi_id", "arxiu": "arxiu_id", "arquebisbat": "ecles_id"}


def _nom_historic_target(values: Values, _entity_id: int | None) -> PermissionTarget:
    anchor = _NOM_HISTORIC_ANCHORS.get(str(values.get("entitat_tipus") or ""))
    entitat_id = _positive(values.get("entitat_id"))
    if anchor is None or entitat_id is None:
        return PermissionTarget()
    return PermissionTarget(**{anchor: entitat_id})


def _llibre_anchor(values: Values, _entity_id: int | None) -> PermissionTarget:
    return PermissionTarget(llibre_id=_positive(values.get("llibre_id")))


def _validate_pais(values: Values, _entity_id: int | None) -> None:
    code = values.get("codi_iso2")
    if code is not None and (len(code) != 2 or not code.isalpha()):
        raise ValidationError("error.iso_code", field="codi_iso2")
    iso3 = values.get("codi_iso3")
    if iso3 is not None and (len(iso3) != 3 or not iso3.isalpha()):
        raise ValidationError("error.iso_code", field="codi_iso3")


def _validate_parent(values: Values, entity_id: int | None) -> None:
    """Zero parent ids are coerced to NULL first, so only a real self-reference matches."""
    parent = values.get("parent_id")
    if parent is not None and entity_id is not None and parent == entity_id:
        raise ValidationError("error.self_parent", field="parent_id")


def _validate_nivell(values: Values, entity_id: int | None) -> None:
    _validate_parent(values, entity_id)
    nivel = values.get("nivel")
    if nivel is not None and not 1 <= nivel <= 7:
        raise ValidationError("error.validation", field="nivel")


def _validate_persona(values: Values, _entity_id: int | None) -> None:
    sexe = values.get("sexe")
    if sexe is not None and sexe.upper() not in SEXES:
        raise ValidationError("error.validation", field="sexe")
    born, died = values.get("any_naixement"), values.get("any_defuncio")
    if born is not None and died is not None and born > died:
        raise ValidationError("error.year_range", field="any_defuncio")


def _validate_nom_historic(values: Values, _entity_id: int | None) -> None:
    if values.get("entitat_tipus") not in (None, *_NOM_HISTORIC_ANCHORS):
        raise ValidationError("error.validation", field="entitat_tipus")


_LEVEL_COLUMNS = (
    Municipi.nivell_1_id,
    Municipi.nivell_2_id,
    Municipi.nivell_3_id,
    Municipi.nivell_4_id,
    Municipi.nivell_5_id,
    Municipi.nivell_6_id,
    Municipi.nivell_7_id,
)


def _municipi_level_filter(raw: str) -> ColumnElement[bool]:
    nivell_id = _int_param(raw)
    return or_(*(column == nivell_id for column in _LEVEL_COLUMNS))


def _municipi_pais_filter(raw: str) -> ColumnElement[bool]:
    nivells = select(NivellAdministratiu.id).where(NivellAdministratiu.pais_id == _int_param(raw))
    return or_(*(column.in_(nivells) for column in _LEVEL_COLUMNS))


def _llibre_arxiu_filter(raw: str) -> ColumnElement[bool]:
    linked = select(ArxiuLlibre.llibre_id).where(ArxiuLlibre.arxiu_id == _int_param(raw))
    return Llibre.id.in_(linked)


def _pais_scope(mask: ListScopeFilter) -> ColumnElement[bool] | None:
    if mask.has_global:
        return None
    return Pais.id.in_(mask.targets.pais_ids)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ADAPTERS: dict[str, EntityAdapter] = {
    adapter.object_type: adapter
    for adapter in (
        EntityAdapter(
            object_type="municipi",
            model=Municipi,
            path="/territori/municipis",
            permission_prefix=keys.MUNICIPIS,
            fields=(
                "nom",
                "tipus",
                "codi_postal",
                "nivell_1_id",
                "nivell_2_id",
                "nivell_3_id",
                "nivell_4_id",
                "nivell_5_id",
                "nivell_6_id",
                "nivell_7_id",
                "latitud",
                "longitud",
            ),
            required=("nom",),
            search=("nom",),
            filters={
                "tipus": _eq(Municipi.tipus),
                "nivell_id": _municipi_level_filter,
                "pais_id": _municipi_pais_filter,
            },
            target_fn=_municipi_target,
            scope_fn=municipi_scope_clause,
            invalidates_targets=True,
            create_rule="municipi_create",
        ),
        EntityAdapter(
            object_type="arxiu",
            model=Arxiu,
            path="/documentals/arxius",
            permission_prefix=keys.ARXIUS,
            fields=("nom", "tipus", "acces", "municipi_id", "entitat_eclesiastica_id", "adreca", "web", "notes"),
            required=("nom",),
            search=("nom",),
            filters={
                "municipi_id": _eq(Arxiu.municipi_id),
                "entitat_id": _eq(Arxiu.entitat_eclesiastica_id),
                "tipus": _eq(Arxiu.tipus),
                "acces": _eq(Arxiu.acces),
            },
            target_fn=_arxiu_target,
            scope_fn=arxiu_scope_clause,
            invalidates_targets=True,
            create_rule="arxiu_create",
        ),
        EntityAdapter(
            object_type="llibre",
            model=Llibre,
            path="/documentals/llibres",
            permission_prefix=keys.LLIBRES,
            fields=(
                "titol",
                "tipus_llibre",
                "cronologia",
                "any_inici",
                "any_fi",
                "municipi_id",
                "arquebisbat_id",
                "codi_digital",
                "pagines",
                "notes",
            ),
            required=("titol",),
            search=("titol", "codi_digital"),
            filters={
                "municipi_id": _eq(Llibre.municipi_id),
                "arquebisbat_id": _eq(Llibre.arquebisbat_id),
                "arquevisbat_id": _eq(Llibre.arquebisbat_id),
                "arxiu_id": _llibre_arxiu_filter,
                "tipus": _eq(Llibre.tipus_llibre),
            },
            target_fn=_llibre_target,
            scope_fn=llibre_scope_clause,
            links_arxius=True,
            invalidates_targets=True,
            create_rule="llibre_create",
        ),
        EntityAdapter(
            object_type="persona",
            model=Persona,
            path="/persones",
            permission_prefix=keys.PERSONES,
            fields=("nom", "cognom1", "cognom2", "sexe", "any_naixement", "any_defuncio", "municipi_id", "ofici", "notes"),
            required=("nom",),
            search=("nom", "cognom1", "cognom2"),
            filters={"municipi_id": _eq(Persona.municipi_id)},
            target_fn=_municipi_anchor,
            scope_fn=lambda mask: municipi_column_scope_clause(Persona.municipi_id, mask),
            validate_fn=_validate_persona,
            create_rule="persona_create",
        ),
        EntityAdapter(
            object_type="cognom",
            model=Cognom,
            path="/cognoms",
            permission_prefix=keys.COGNOMS,
            fields=("forma", "origen", "notes"),
            required=("forma",),
            search=("forma",),
            create_rule="cognom_create",
        ),
        EntityAdapter(
            object_type="event_historic",
            model=EventHistoric,
            path="/events",
            permission_prefix=keys.EVENTS,
            fields=("titol", "tipus", "any_inici", "any_fi", "descripcio", "municipi_id"),
            required=("titol",),
            search=("titol",),
            filters={"municipi_id": _eq(EventHistoric.municipi_id), "tipus": _eq(EventHistoric.tipus)},
            target_fn=_municipi_anchor,
            scope_fn=lambda mask: municipi_column_scope_clause(EventHistoric.municipi_id, mask),
            create_rule="event_historic_create",
        ),
        EntityAdapter(
            object_type="pais",
            model=Pais,
            path="/territori/paisos",
            permission_prefix=keys.PAISOS,
            fields=("codi_iso2", "codi_iso3", "nom"),
            required=("codi_iso2", "nom"),
            search=("nom", "codi_iso2"),
            target_fn=_pais_target,
            scope_fn=_pais_scope,
            validate_fn=_validate_pais,
        ),
        EntityAdapter(
            object_type="nivell",
            model=NivellAdministratiu,
            path="/territori/nivells",
            permission_prefix=keys.NIVELLS,
            fields=("pais_id", "nivel", "nom_nivell", "tipus_nivell", "parent_id"),
            required=("nom_nivell",),
            search=("nom_nivell",),
            filters={
                "pais_id": _eq(NivellAdministratiu.pais_id),
                "tipus": _eq(NivellAdministratiu.tipus_nivell),
            },
            target_fn=_nivell_target,
            validate_fn=_validate_nivell,
            invalidates_targets=True,
        ),
        EntityAdapter(
            object_type="arquebisbat",
            model=Arquebisbat,
            path="/territori/eclesiastic",
            permission_prefix=keys.ECLESIASTIC,
            fields=("nom", "tipus_entitat", "pais_id", "nivell", "parent_id", "any_inici", "any_fi"),
            required=("nom",),
            search=("nom",),
            filters={"pais_id": _eq(Arquebisbat.pais_id), "tipus": _eq(Arquebisbat.tipus_entitat)},
            target_fn=_arquebisbat_target,
            validate_fn=_validate_parent,
            invalidates_targets=True,
        ),
        EntityAdapter(
            object_type="nom_historic",
            model=NomHistoric,
            path="/territori/noms-historics",
            permission_prefix=keys.NOMS_HISTORICS,
            fields=("entitat_tipus", "entitat_id", "nom", "any_inici", "any_fi", "font"),
            required=("entitat_tipus", "entitat_id", "nom"),
            search=("nom",),
            filters={"entitat_id": _eq(NomHistoric.entitat_id), "tipus": _eq(NomHistoric.entitat_tipus)},
            target_fn=_nom_historic_target,
            validate_fn=_validate_nom_historic,
        ),
        EntityAdapter(
            object_type="llibre_pagina",
            model=LlibrePagina,
            path="/documentals/pagines",
            permission_prefix=keys.LLIBRES,
            fields=("llibre_id", "num_pagina", "estat", "indexada", "notes"),
            required=("llibre_id", "num_pagina"),
            filters={"llibre_id": _eq(LlibrePagina.llibre_id)},
            target_fn=_llibre_anchor,
            create_rule="llibre_pagina_index",
        ),
        EntityAdapter(
            object_type="registre",
            model=TranscripcioRaw,
            path="/documentals/registres",
            permission_prefix=keys.REGISTRES,
            fields=(
                "llibre_id",
                "pagina_id",
                "num_pagina_text",
                "tipus_acte",
                "any_doc",
                "data_acte_text",
                "notes_marginals",
            ),
            required=("llibre_id",),
            search=("num_pagina_text", "data_acte_text"),
            filters={"llibre_id": _eq(TranscripcioRaw.llibre_id), "tipus": _eq(TranscripcioRaw.tipus_acte)},
            target_fn=_llibre_anchor,
            generic_routes=False,
        ),
    )
}


def get_adapter(object_type: str) -> EntityAdapter:
    try:
        return ADAPTERS[object_type]
    except KeyError:
        raise ValidationError("error.object_type", object_type=object_type) from None


def wiki_adapters() -> list[EntityAdapter]:
    return [ADAPTERS[t] for t in WIKI_OBJECT_TYPES]

"""History of raw transcription records.

Raw records are edited one field at a time. Each edit is stored as a
``TranscripcioRawChange`` holding a change-info descriptor and the old and new
values. Proposals from non-authors also carry full ``before``/``after``
snapshots; direct edits do not, and their snapshots are rebuilt by replaying
old values backwards from the current state.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cerca.activity import rules as activity_rules
from cerca.activity.service import register_user_activity
from cerca.context import RequestContext
from cerca.db.base import utcnow
from cerca.db.models import TranscripcioAtributRaw, TranscripcioPersonaRaw, TranscripcioRaw, TranscripcioRawChange
from cerca.entities.registry import get_adapter
from cerca.errors import AuthorizationDenied, NotFound, ValidationError
from cerca.permissions import keys
from cerca.permissions.dependencies import ensure_permission, has_permission
from cerca.repository import entities as entity_repo
from cerca.repository import transcripcions as raw_repo
from cerca.repository import wiki as wiki_repo
from cerca.wiki.guardrails import check_change_rate, check_metadata_size, check_raw_pending_limits
from cerca.wiki.snapshot import ChangeMetadata, DiffRow, canonical_dumps, changed_labels, decode_metadata, diff_snapshots

logger = logging.getLogger(__name__)

OBJECT_TYPE = "registre"
CHANGE_FIELD = "field"
CHANGE_REVERT = "revert"

TARGETS = ("raw", "attr", "person")
PERSON_FIELDS = ("nom", "cognom1", "cognom2", "sexe", "notes")
ATTR_FIELDS = ("clau", "tipus_valor", "valor_text")

_TRAILING_DIGITS = re.compile(r"(\d+)$")


def _adapter():  # noqa: ANN202
    return get_adapter(OBJECT_TYPE)


def _clean(value: Any) -> str | None:  # noqa: ANN401
    if value is None:
        return None
    return str(value).strip() or None


# ---------------------------------------------------------------------------
# Change-info descriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeInfo:
    """Which part of a raw snapshot one edit touches."""

    target: str
    raw_field: str | None = None
    attr_key: str | None = None
    attr_type: str | None = None
    role: str | None = None
    person_field: str | None = None
    person_key: str | None = None

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> ChangeInfo:
        """Strict parse for incoming edits."""
        info = cls(**{name: _clean(data.get(name)) for name in _INFO_KEYS})  # type: ignore[arg-type]
        if info.target == "raw" and info.raw_field in _adapter().fields:
            return info
        if info.target == "attr" and info.attr_key:
            return info
        if info.target == "person" and info.role and info.person_field in PERSON_FIELDS:
            return info
        raise ValidationError("wiki.change.invalid")

    def as_dict(self) -> dict[str, str]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @property
    def field_key(self) -> str:
        if self.target == "raw":
            return f"raw.{self.raw_field}"
        if self.target == "attr":
            return f"attr.{self.attr_key}"
        return f"person.{self.person_key or self.role}.{self.person_field}"


_INFO_KEYS = ("target", "raw_field", "attr_key", "attr_type", "role", "person_field", "person_key")


def _info_from(value: Any) -> ChangeInfo | None:  # noqa: ANN401
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if not isinstance(value, Mapping) or value.get("target") not in TARGETS:
        return None
    try:
        return ChangeInfo.parse(value)
    except ValidationError:
        return None


def decode_change_info(raw: str | None) -> ChangeInfo | None:
    """Lenient parse of stored metadata: the descriptor may sit under ``change`` or at the top level."""
    if not raw or not raw.strip():
        return None
    try:
        doc = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(doc, Mapping):
        return None
    if "change" in doc:
        info = _info_from(doc["change"])
        if info is not None:
            return info
    return _info_from(doc)


def _decode_snapshots(raw: str | None) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    try:
        meta = decode_metadata(raw)
    except ValidationError:
        logger.warning("Ignoring unreadable raw change metadata")
        return None, None
    return meta.before, meta.after


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def _person_dict(person: TranscripcioPersonaRaw) -> dict[str, Any]:
    return {"id": person.id, "rol": person.rol, **{name: getattr(person, name) for name in PERSON_FIELDS}}


def _attr_dict(attr: TranscripcioAtributRaw) -> dict[str, Any]:
    return {"id": attr.id, **{name: getattr(attr, name) for name in ATTR_FIELDS}}


async def raw_snapshot(db: AsyncSession, raw: TranscripcioRaw) -> dict[str, Any]:
    return {
        "raw": await _adapter().snapshot(db, raw),
        "persones": [_person_dict(p) for p in await raw_repo.list_persones(db, raw.id)],
        "atributs": [_attr_dict(a) for a in await raw_repo.list_atributs(db, raw.id)],
    }


def _person_index(person_key: str | None) -> int:
    match = _TRAILING_DIGITS.search(person_key or "")
    if match and int(match.group(1)) > 0:
        return int(match.group(1))
    return 1


def _find_person(persones: list[dict[str, Any]], role: str | None, person_key: str | None) -> dict[str, Any] | None:
    """The n-th person with ``role`` by id, where n is the trailing number of ``person_key`` (default 1)."""
    if not role:
        return None
    matching = sorted(
        (p for p in persones if p.get("rol") == role),
        key=lambda p: (p.get("id") is None, p.get("id") or 0),
    )
    index = _person_index(person_key) - 1
    return matching[index] if index < len(matching) else None


def _find_attr(atributs: list[dict[str, Any]], key: str | None) -> dict[str, Any] | None:
    return next((a for a in atributs if a.get("clau") == key), None)


def current_value(snapshot: Mapping[str, Any], info: ChangeInfo) -> str:
    if info.target == "raw":
        value = (snapshot.get("raw") or {}).get(info.raw_field)
    elif info.target == "attr":
        attr = _find_attr(snapshot.get("atributs") or [], info.attr_key)
        value = attr.get("valor_text") if attr else None
    else:
        person = _find_person(snapshot.get("persones") or [], info.role, info.person_key)
        value = person.get(info.person_field) if person else None  # type: ignore[arg-type]
    return "" if value is None else str(value)


def apply_change_value(snapshot: dict[str, Any], info: ChangeInfo | None, value: str | None) -> dict[str, Any]:
    """Set the field described by ``info`` to ``value`` in place. An empty value clears it."""
    if info is None:
        return snapshot
    value = (value or "").strip()
    if info.target == "raw":
        raw = snapshot.setdefault("raw", {})
        if not value:
            raw[info.raw_field] = None
        else:
            raw.update(_adapter().coerce({info.raw_field: value}))  # type: ignore[dict-item]
    elif info.target == "attr":
        atributs = snapshot.setdefault("atributs", [])
        attr = _find_attr(atributs, info.attr_key)
        if attr is None:
            if not value:
                return snapshot
            attr = {"id": None, "clau": info.attr_key, "tipus_valor": info.attr_type, "valor_text": None}
            atributs.append(attr)
        if not attr.get("tipus_valor"):
            attr["tipus_valor"] = info.attr_type
        attr["valor_text"] = value or None
    elif info.target == "person":
        persones = snapshot.setdefault("persones", [])
        person = _find_person(persones, info.role, info.person_key)
        if person is None:
            if not info.role:
                return snapshot
            person = {"id": None, "rol": info.role, **dict.fromkeys(PERSON_FIELDS)}
            persones.append(person)
        person[info.person_field] = value or None  # type: ignore[index]
    return snapshot


@dataclass
class ChangeSnapshots:
    before: dict[str, Any] | None
    after: dict[str, Any] | None

    def pick(self) -> dict[str, Any] | None:
        return self.after if self.after is not None else self.before


def fill_missing_snapshots(
    changes: list[TranscripcioRawChange], current: dict[str, Any]
) -> dict[int, ChangeSnapshots]:
    """Snapshots for every change, newest first in ``changes``.

    Walking back from ``current``, a published change moves the state to its
    ``before``; pending and rejected changes never touched the live record and
    leave the state alone.
    """
    state = copy.deepcopy(current)
    out: dict[int, ChangeSnapshots] = {}
    for change in changes:
        published = change.moderation_state == "publicat"
        before, after = _decode_snapshots(change.change_metadata)
        info = decode_change_info(change.change_metadata)
        if before is None and after is None:
            if info is None:
                continue
            after = apply_change_value(copy.deepcopy(state), info, change.new_value)
            before = apply_change_value(copy.deepcopy(state), info, change.old_value)
        elif before is None and info is not None:
            before = apply_change_value(copy.deepcopy(after), info, change.old_value)
        out[change.id] = ChangeSnapshots(before=before, after=after)
        if published:
            state = copy.deepcopy(before if before is not None else after)
    return out


async def apply_raw_snapshot(db: AsyncSession, raw: TranscripcioRaw, snapshot: Mapping[str, Any]) -> None:
    """Write a snapshot over the live record, syncing its people and attribute rows."""
    await _adapter().apply(db, raw, snapshot.get("raw") or {})

    people = {p.id: p for p in await raw_repo.list_persones(db, raw.id)}
    kept: set[int] = set()
    added: list[TranscripcioPersonaRaw | TranscripcioAtributRaw] = []
    for item in snapshot.get("persones") or []:
        row = people.get(item.get("id"))
        if row is None:
            added.append(
                TranscripcioPersonaRaw(
                    transcripcio_id=raw.id,
                    rol=item.get("rol") or "",
                    **{name: item.get(name) for name in PERSON_FIELDS},
                )
            )
            continue
        kept.add(row.id)
        row.rol = item.get("rol") or row.rol
        for name in PERSON_FIELDS:
            setattr(row, name, item.get(name))
    stale: list[TranscripcioPersonaRaw | TranscripcioAtributRaw] = [p for pid, p in people.items() if pid not in kept]

    attrs = {a.id: a for a in await raw_repo.list_atributs(db, raw.id)}
    kept = set()
    for item in snapshot.get("atributs") or []:
        row = attrs.get(item.get("id"))
        if row is None:
            added.append(TranscripcioAtributRaw(transcripcio_id=raw.id, **{name: item.get(name) for name in ATTR_FIELDS}))
            continue
        kept.add(row.id)
        for name in ATTR_FIELDS:
            setattr(row, name, item.get(name))
    stale.extend(a for aid, a in attrs.items() if aid not in kept)

    await raw_repo.delete_rows(db, stale)
    await raw_repo.add_rows(db, added)


# ---------------------------------------------------------------------------
# Create and edit
# ---------------------------------------------------------------------------


async def create_raw(db: AsyncSession, ctx: RequestContext, payload: Mapping[str, Any]) -> TranscripcioRaw:
    """Create a pending raw record together with its people and attributes."""
    adapter = _adapter()
    values = adapter.coerce(payload)
    adapter.validate(values)
    await ensure_permission(db, ctx, adapter.key("create"), adapter.target(values))

    raw = TranscripcioRaw(**values, moderation_state="pendent", created_by=ctx.user_id)
    db.add(raw)
    await db.flush()
    rows: list[TranscripcioPersonaRaw | TranscripcioAtributRaw] = []
    for item in payload.get("persones") or []:
        if not isinstance(item, Mapping) or not str(item.get("rol") or "").strip():
            raise ValidationError("error.required", field="persones.rol")
        rows.append(
            TranscripcioPersonaRaw(
                transcripcio_id=raw.id,
                rol=str(item["rol"]).strip(),
                **{name: _clean(item.get(name)) for name in PERSON_FIELDS},
            )
        )
    for item in payload.get("atributs") or []:
        if not isinstance(item, Mapping) or not str(item.get("clau") or "").strip():
            raise ValidationError("error.required", field="atributs.clau")
        rows.append(
            TranscripcioAtributRaw(
                transcripcio_id=raw.id,
                clau=str(item["clau"]).strip(),
                tipus_valor=item.get("tipus_valor"),
                valor_text=None if item.get("valor_text") is None else str(item["valor_text"]),
            )
        )
    await raw_repo.add_rows(db, rows)
    await register_user_activity(
        db,
        ctx.user_id,  # type: ignore[arg-type]
        adapter.create_rule,
        activity_rules.ACTION_CREATE,
        OBJECT_TYPE,
        raw.id,
        status=activity_rules.PENDENT,
    )
    return raw


@dataclass(frozen=True)
class RawEditOutcome:
    change_id: int
    applied: bool


async def _is_moderator(db: AsyncSession, ctx: RequestContext, raw: TranscripcioRaw) -> bool:
    return await has_permission(db, ctx, keys.MODERACIO_MODERATE, _adapter().target_of(raw))


async def _propose(
    db: AsyncSession,
    ctx: RequestContext,
    raw: TranscripcioRaw,
    *,
    metadata: str,
    change_type: str,
    field_key: str | None,
    old_value: str | None,
    new_value: str | None,
    caller_key: str,
) -> int:
    check_change_rate(caller_key)
    check_metadata_size(metadata)
    await check_raw_pending_limits(db, raw.id, ctx.user_id)  # type: ignore[arg-type]
    change_id = await wiki_repo.create_raw_change(
        db,
        TranscripcioRawChange(
            transcripcio_id=raw.id,
            change_type=change_type,
            field_key=field_key,
            old_value=old_value,
            new_value=new_value,
            change_metadata=metadata,
            moderation_state="pendent",
            changed_by=ctx.user_id,
            changed_at=utcnow(),
        ),
    )
    await register_user_activity(
        db,
        ctx.user_id,  # type: ignore[arg-type]
        _adapter().update_rule,
        activity_rules.ACTION_UPDATE,
        OBJECT_TYPE,
        raw.id,
        status=activity_rules.PENDENT,
        details={"change_id": change_id},
    )
    return change_id


async def edit_raw_field(
    db: AsyncSession,
    ctx: RequestContext,
    raw: TranscripcioRaw,
    payload: Mapping[str, Any],
    *,
    caller_key: str,
) -> RawEditOutcome:
    """Edit one field of a raw record.

    The author of a still-pending record and moderators write directly; the
    change is logged as ``publicat`` without snapshots. Anyone else editing a
    published record gets a pending proposal with full snapshots.
    """
    change_data = payload.get("change", payload)
    if not isinstance(change_data, Mapping):
        raise ValidationError("wiki.change.invalid")
    info = ChangeInfo.parse(change_data)
    new_value = "" if payload.get("value") is None else str(payload["value"]).strip()

    adapter = _adapter()
    await ensure_permission(db, ctx, adapter.key("edit"), adapter.target_of(raw))
    moderator = await _is_moderator(db, ctx, raw)
    own_pending = raw.moderation_state != "publicat" and raw.created_by == ctx.user_id

    before = await raw_snapshot(db, raw)
    old_value = current_value(before, info)
    if old_value.strip() == new_value:
        raise ValidationError("wiki.change.empty")
    after = apply_change_value(copy.deepcopy(before), info, new_value)
    adapter.validate(after["raw"], raw.id)

    if moderator or own_pending:
        await apply_raw_snapshot(db, raw, after)
        now = utcnow()
        change_id = await wiki_repo.create_raw_change(
            db,
            TranscripcioRawChange(
                transcripcio_id=raw.id,
                change_type=CHANGE_FIELD,
                field_key=info.field_key,
                old_value=old_value,
                new_value=new_value,
                change_metadata=canonical_dumps({"change": info.as_dict()}),
                moderation_state="publicat",
                changed_by=ctx.user_id,
                changed_at=now,
                moderated_by=ctx.user_id if moderator else None,
                moderated_at=now if moderator else None,
            ),
        )
        return RawEditOutcome(change_id=change_id, applied=True)

    if raw.moderation_state != "publicat":
        raise AuthorizationDenied()

    metadata = ChangeMetadata(before=before, after=after, extra={"change": info.as_dict()}).encode()
    change_id = await _propose(
        db,
        ctx,
        raw,
        metadata=metadata,
        change_type=CHANGE_FIELD,
        field_key=info.field_key,
        old_value=old_value,
        new_value=new_value,
        caller_key=caller_key,
    )
    logger.info("Proposed raw change %s on registre %s by user %s", change_id, raw.id, ctx.user_id)
    return RawEditOutcome(change_id=change_id, applied=False)


# ---------------------------------------------------------------------------
# History, versions, compare, revert
# ---------------------------------------------------------------------------


def _visible(change: TranscripcioRawChange, ctx: RequestContext, moderator: bool) -> bool:
    return moderator or change.moderation_state == "publicat" or (
        ctx.user_id is not None and change.changed_by == ctx.user_id
    )


async def list_raw_history(db: AsyncSession, ctx: RequestContext, raw: TranscripcioRaw) -> list[dict[str, Any]]:
    moderator = await _is_moderator(db, ctx, raw)
    changes = await wiki_repo.list_raw_changes(db, raw.id)
    snapshots = fill_missing_snapshots(changes, await raw_snapshot(db, raw))
    rows = []
    for change in changes:
        if not _visible(change, ctx, moderator):
            continue
        snaps = snapshots.get(change.id)
        rows.append(
            {
                "id": change.id,
                "change_type": change.change_type,
                "field_key": change.field_key,
                "old_value": change.old_value,
                "new_value": change.new_value,
                "moderation_state": change.moderation_state,
                "changed_by": change.changed_by,
                "changed_at": change.changed_at,
                "moderated_by": change.moderated_by,
                "moderated_at": change.moderated_at,
                "has_snapshot": snaps is not None,
                "fields": changed_labels(snaps.before, snaps.after) if snaps else [],
            }
        )
    return rows


async def resolve_raw_version(
    db: AsyncSession, ctx: RequestContext, raw: TranscripcioRaw, token: str
) -> dict[str, Any]:
    token = (token or "current").strip().lower()
    current = await raw_snapshot(db, raw)
    if token == "current":
        return current
    changes = await wiki_repo.list_raw_changes(db, raw.id)
    snapshots = fill_missing_snapshots(changes, current)
    if token == "published":
        for change in changes:
            snaps = snapshots.get(change.id)
            if change.moderation_state == "publicat" and snaps is not None and snaps.pick() is not None:
                return snaps.pick()  # type: ignore[return-value]
        if raw.moderation_state == "publicat":
            return current
        raise NotFound("wiki.version.invalid")
    if not token.isdigit():
        raise ValidationError("wiki.version.invalid")
    change = next((c for c in changes if c.id == int(token)), None)
    if change is None:
        raise ValidationError("wiki.change.invalid")
    if not _visible(change, ctx, await _is_moderator(db, ctx, raw)):
        raise NotFound()
    snaps = snapshots.get(change.id)
    if snaps is None or snaps.pick() is None:
        raise ValidationError("wiki.change.invalid")
    return snaps.pick()  # type: ignore[return-value]


async def compare_raw_versions(
    db: AsyncSession, ctx: RequestContext, raw: TranscripcioRaw, left: str, right: str
) -> list[DiffRow]:
    return diff_snapshots(
        await resolve_raw_version(db, ctx, raw, left),
        await resolve_raw_version(db, ctx, raw, right),
    )


async def revert_raw(
    db: AsyncSession,
    ctx: RequestContext,
    raw: TranscripcioRaw,
    source_change_id: int,
    reason: str | None,
    *,
    caller_key: str,
) -> int:
    adapter = _adapter()
    target = adapter.target_of(raw)
    if not await has_permission(db, ctx, keys.WIKI_REVERT, target):
        await ensure_permission(db, ctx, adapter.key("edit"), target)
    restored = await resolve_raw_version(db, ctx, raw, str(source_change_id))
    before = await raw_snapshot(db, raw)
    if not changed_labels(before, restored):
        raise ValidationError("wiki.change.empty")
    metadata = ChangeMetadata(
        before=before,
        after=restored,
        source_change_id=source_change_id,
        reason=(reason or "").strip() or None,
    ).encode()
    return await _propose(
        db,
        ctx,
        raw,
        metadata=metadata,
        change_type=CHANGE_REVERT,
        field_key=None,
        old_value=None,
        new_value=None,
        caller_key=caller_key,
    )


# ---------------------------------------------------------------------------
# Moderation transitions
# ---------------------------------------------------------------------------


async def apply_raw_change(db: AsyncSession, change: TranscripcioRawChange, moderator_id: int) -> TranscripcioRaw:
    if change.moderation_state != "pendent":
        raise ValidationError("moderation.invalid_state")
    raw = await db.get(TranscripcioRaw, change.transcripcio_id)
    if raw is None:
        raise NotFound()
    _, after = _decode_snapshots(change.change_metadata)
    if after is None:
        info = decode_change_info(change.change_metadata)
        if info is None:
            raise ValidationError("wiki.change.invalid")
        after = apply_change_value(await raw_snapshot(db, raw), info, change.new_value)

    newer = [
        c.id
        for c in await wiki_repo.list_raw_changes(db, raw.id)
        if c.id > change.id and c.moderation_state in ("pendent", "publicat")
    ]
    if newer:
        logger.warning("Out-of-order approval of raw change %s on registre %s; newer: %s", change.id, raw.id, newer)

    if not await entity_repo.claim_pending(db, TranscripcioRawChange, change.id, "publicat", moderator_id):
        raise ValidationError("moderation.invalid_state")
    await apply_raw_snapshot(db, raw, after)
    raw.moderation_state = "publicat"
    raw.moderation_reason = None
    raw.moderated_by = moderator_id
    raw.moderated_at = utcnow()
    await db.flush()
    return raw


async def reject_raw_change(db: AsyncSession, change: TranscripcioRawChange, moderator_id: int) -> None:
    if not await entity_repo.claim_pending(db, TranscripcioRawChange, change.id, "rebutjat", moderator_id):
        raise ValidationError("moderation.invalid_state")

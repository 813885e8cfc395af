"""Policy document parsing.

A policy's ``permisos`` column holds a JSON document. Three shapes are accepted
and normalized into one :class:`PolicyDocument`:

* a key map: ``{"documentals.arxius.edit": "allow-scoped", "targets": {"municipi_id": [42]}}``
  where a key may also map to ``{"effect": ..., "targets": {...}}``;
* a statement list: ``{"Statement": [{"Effect": "Allow", "Action": [...], "Resource": ["municipi:42"]}]}``;
* an admin flag: ``{"admin": true}``.

Within one document a deny on a key wins over any allow for the same key.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

SCOPE_TYPES = (
    "pais",
    "provincia",
    "comarca",
    "municipi",
    "nivell",
    "entitat_eclesiastica",
    "arxiu",
    "llibre",
)

# Document spellings accepted for each scope type.
_SCOPE_ALIASES: dict[str, str] = {
    "ecles": "entitat_eclesiastica",
    "arquebisbat": "entitat_eclesiastica",
    "eclesiastic": "entitat_eclesiastica",
}

_GLOBAL_EFFECTS = {"allow-global", "allow_global", "global"}
_SCOPED_EFFECTS = {"allow-scoped", "allow_scoped", "scoped"}


class PolicyDocumentError(ValueError):
    """Raised when a permission document cannot be parsed."""


@dataclass(frozen=True)
class ScopeTargets:
    """Territorial anchors granted by a scoped permission."""

    pais_ids: frozenset[int] = frozenset()
    provincia_ids: frozenset[int] = frozenset()
    comarca_ids: frozenset[int] = frozenset()
    municipi_ids: frozenset[int] = frozenset()
    nivell_ids: frozenset[int] = frozenset()
    ecles_ids: frozenset[int] = frozenset()
    arxiu_ids: frozenset[int] = frozenset()
    llibre_ids: frozenset[int] = frozenset()

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in _FIELD_BY_SCOPE.values())

    def union(self, other: ScopeTargets) -> ScopeTargets:
        return ScopeTargets(
            **{name: getattr(self, name) | getattr(other, name) for name in _FIELD_BY_SCOPE.values()}
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ScopeTargets:
        """Build targets from ``{"municipi_id": [42], "arxiu_ids": 3, ...}``."""
        collected: dict[str, set[int]] = {name: set() for name in _FIELD_BY_SCOPE.values()}
        for raw_key, raw_value in data.items():
            scope = normalize_scope(_strip_id_suffix(str(raw_key)))
            if scope is None:
                msg = f"unknown target scope {raw_key!r}"
                raise PolicyDocumentError(msg)
            collected[_FIELD_BY_SCOPE[scope]].update(_parse_ids(raw_value, raw_key))
        return cls(**{name: frozenset(ids) for name, ids in collected.items()})

    @classmethod
    def single(cls, scope: str, target_id: int) -> ScopeTargets:
        return cls(**{_FIELD_BY_SCOPE[scope]: frozenset({target_id})})


_FIELD_BY_SCOPE: dict[str, str] = {
    "pais": "pais_ids",
    "provincia": "provincia_ids",
    "comarca": "comarca_ids",
    "municipi": "municipi_ids",
    "nivell": "nivell_ids",
    "entitat_eclesiastica": "ecles_ids",
    "arxiu": "arxiu_ids",
    "llibre": "llibre_ids",
}


@dataclass(frozen=True)
class Deny:
    pass


@dataclass(frozen=True)
class AllowGlobal:
    pass


@dataclass(frozen=True)
class AllowScoped:
    targets: ScopeTargets = field(default_factory=ScopeTargets)


Permission = Deny | AllowGlobal | AllowScoped


@dataclass(frozen=True)
class PolicyDocument:
    admin: bool = False
    grants: Mapping[str, Permission] = field(default_factory=dict)

    def get(self, key: str) -> Permission | None:
        return self.grants.get(key)


def normalize_scope(name: str) -> str | None:
    name = name.strip().lower()
    name = _SCOPE_ALIASES.get(name, name)
    return name if name in _FIELD_BY_SCOPE else None


def _strip_id_suffix(key: str) -> str:
    key = key.strip().lower()
    for suffix in ("_ids", "_id"):
        if key.endswith(suffix):
            return key[: -len(suffix)]
    return key


def _parse_ids(value: Any, key: object) -> set[int]:  # noqa: ANN401
    items = value if isinstance(value, list | tuple | set) else [value]
    ids: set[int] = set()
    for item in items:
        if isinstance(item, bool):
            msg = f"invalid id in {key!r}"
            raise PolicyDocumentError(msg)
        try:
            number = int(item)
        except (TypeError, ValueError) as exc:
            msg = f"invalid id in {key!r}"
            raise PolicyDocumentError(msg) from exc
        if number > 0:
            ids.add(number)
    return ids


def _string_list(value: Any, what: str) -> list[str]:  # noqa: ANN401
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, list):
        out = []
        for item in value:
            if not isinstance(item, str):
                msg = f"{what} entries must be strings"
                raise PolicyDocumentError(msg)
            if item.strip():
                out.append(item.strip())
        return out
    msg = f"{what} must be a string or a list of strings"
    raise PolicyDocumentError(msg)


def parse_resource(resource: str) -> ScopeTargets | None:
    """Parse ``global`` (returns None) or ``<scope>:<id>`` with an optional ``/*`` suffix."""
    if resource.lower() in ("global", "*"):
        return None
    scope_name, sep, rest = resource.partition(":")
    scope = normalize_scope(scope_name)
    if not sep or scope is None:
        msg = f"invalid resource {resource!r}"
        raise PolicyDocumentError(msg)
    rest = rest.removesuffix("/*")
    try:
        target_id = int(rest)
    except ValueError as exc:
        msg = f"invalid resource {resource!r}"
        raise PolicyDocumentError(msg) from exc
    if target_id <= 0:
        msg = f"invalid resource {resource!r}"
        raise PolicyDocumentError(msg)
    return ScopeTargets.single(scope, target_id)


class _Builder:
    """Accumulates permissions per key, keeping deny > global > scoped precedence."""

    def __init__(self) -> None:
        self.grants: dict[str, Permission] = {}

    def add(self, key: str, permission: Permission) -> None:
        current = self.grants.get(key)
        if isinstance(current, Deny) or isinstance(permission, Deny):
            self.grants[key] = Deny()
        elif isinstance(current, AllowGlobal) or isinstance(permission, AllowGlobal):
            self.grants[key] = AllowGlobal()
        elif isinstance(current, AllowScoped):
            self.grants[key] = AllowScoped(current.targets.union(permission.targets))  # type: ignore[union-attr]
        else:
            self.grants[key] = permission


def _permission_from_effect(effect: str, targets: ScopeTargets | None, key: str) -> Permission | None:
    effect = effect.strip().lower()
    if effect == "deny":
        return Deny()
    if effect in _GLOBAL_EFFECTS:
        return AllowGlobal()
    if effect in _SCOPED_EFFECTS:
        return AllowScoped(targets or ScopeTargets())
    if effect == "allow":
        return AllowScoped(targets) if targets is not None and not targets.is_empty() else AllowGlobal()
    if effect in ("", "none", "inherit"):
        return None
    msg = f"unknown effect {effect!r} for {key!r}"
    raise PolicyDocumentError(msg)


def _apply_statements(builder: _Builder, statements: Any) -> None:  # noqa: ANN401
    if not isinstance(statements, list):
        msg = "Statement must be a list"
        raise PolicyDocumentError(msg)
    for stmt in statements:
        if not isinstance(stmt, Mapping):
            msg = "each statement must be an object"
            raise PolicyDocumentError(msg)
        effect = str(stmt.get("Effect") or "Allow").strip().lower()
        if effect not in ("allow", "deny"):
            msg = f"unsupported statement effect {effect!r}"
            raise PolicyDocumentError(msg)
        actions = _string_list(stmt.get("Action"), "Action")
        resources = _string_list(stmt.get("Resource"), "Resource") or ["global"]
        for action in actions:
            if effect == "deny":
                builder.add(action, Deny())
                continue
            for resource in resources:
                targets = parse_resource(resource)
                builder.add(action, AllowGlobal() if targets is None else AllowScoped(targets))


def parse_policy_document(raw: str | Mapping[str, Any] | None) -> PolicyDocument:
    """Parse a permission document. Raises :class:`PolicyDocumentError` when malformed."""
    if raw is None:
        return PolicyDocument()
    if isinstance(raw, str):
        if not raw.strip():
            return PolicyDocument()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"invalid JSON: {exc.msg}"
            raise PolicyDocumentError(msg) from exc
    else:
        data = raw
    if not isinstance(data, Mapping):
        msg = "permission document must be a JSON object"
        raise PolicyDocumentError(msg)

    builder = _Builder()
    admin = False
    doc_targets_raw = data.get("targets")
    doc_targets: ScopeTargets | None = None
    if doc_targets_raw is not None:
        if not isinstance(doc_targets_raw, Mapping):
            msg = "targets must be an object"
            raise PolicyDocumentError(msg)
        doc_targets = ScopeTargets.from_mapping(doc_targets_raw)

    for key, value in data.items():
        if key in ("targets", "Version", "version"):
            continue
        if key in ("admin", "Admin"):
            admin = value is True
            continue
        if key == "Statement":
            _apply_statements(builder, value)
            continue
        if isinstance(value, bool):
            if value:
                builder.add(key, AllowGlobal())
            continue
        if isinstance(value, str):
            permission = _permission_from_effect(value, doc_targets, key)
        elif isinstance(value, Mapping):
            own = value.get("targets")
            if own is not None and not isinstance(own, Mapping):
                msg = f"targets of {key!r} must be an object"
                raise PolicyDocumentError(msg)
            targets = ScopeTargets.from_mapping(own) if own is not None else doc_targets
            permission = _permission_from_effect(str(value.get("effect", "")), targets, key)
        else:
            msg = f"unsupported value for {key!r}"
            raise PolicyDocumentError(msg)
        if permission is not None:
            builder.add(key, permission)

    return PolicyDocument(admin=admin, grants=dict(builder.grants))


def referenced_keys(document: PolicyDocument) -> Iterable[str]:
    return document.grants.keys()

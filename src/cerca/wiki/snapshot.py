"""Snapshot codec for wiki metadata, field flattening and diffs.

Metadata is stored as a canonical JSON document (sorted keys, compact
separators) so that encoding the decoded value yields the same bytes.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from cerca.errors import ValidationError

# Bookkeeping columns never shown in a diff.
SKIPPED_KEYS = frozenset(
    {"id", "created_by", "moderation_state", "moderated_by", "moderated_at", "moderation_reason"}
)

_NULL_WRAPPER_VALUES = ("String", "Int64", "Int32", "Float64", "Bool", "Time")


def canonical_dumps(value: Any) -> str:  # noqa: ANN401
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


@dataclass
class ChangeMetadata:
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    source_change_id: int | None = None
    reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        doc: dict[str, Any] = dict(self.extra)
        doc["before"] = self.before
        doc["after"] = self.after
        if self.source_change_id:
            doc["source_change_id"] = self.source_change_id
        if self.reason:
            doc["reason"] = self.reason
        return canonical_dumps(doc)

    def pick(self) -> dict[str, Any] | None:
        """The snapshot a version token resolves to: ``after``, falling back to ``before``."""
        return self.after if self.after is not None else self.before


def _snapshot_part(value: Any) -> dict[str, Any] | None:  # noqa: ANN401
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValidationError("wiki.change.invalid") from exc
    if not isinstance(value, dict):
        raise ValidationError("wiki.change.invalid")
    return value


def decode_metadata(raw: str | None) -> ChangeMetadata:
    """Parse a stored metadata document. ``before``/``after`` may be nested JSON strings."""
    if not raw or not raw.strip():
        return ChangeMetadata()
    try:
        doc = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("wiki.change.invalid") from exc
    if not isinstance(doc, dict):
        raise ValidationError("wiki.change.invalid")
    source = doc.pop("source_change_id", None)
    try:
        source_id = int(source) if source is not None else None
    except (TypeError, ValueError):
        source_id = None
    return ChangeMetadata(
        before=_snapshot_part(doc.pop("before", None)),
        after=_snapshot_part(doc.pop("after", None)),
        source_change_id=source_id,
        reason=doc.pop("reason", None),
        extra=doc,
    )


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


def stringify(value: Any) -> str:  # noqa: ANN401
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return f"{value:.4f}"
    return str(value)


def _unwrap_null(value: Mapping[str, Any]) -> tuple[bool, Any]:
    if "Valid" not in value:
        return False, None
    for key in _NULL_WRAPPER_VALUES:
        if key in value:
            return True, value[key] if value.get("Valid") else None
    return False, None


def flatten(value: Any, prefix: str = "", out: dict[str, str] | None = None) -> dict[str, str]:  # noqa: ANN401
    """Flatten nested dicts/lists into ``a.b`` / ``a[0]`` labels with string values."""
    if out is None:
        out = {}
    if isinstance(value, Mapping):
        wrapped, inner = _unwrap_null(value)
        if wrapped:
            out[prefix] = stringify(inner)
            return out
        for key in sorted(value):
            flatten(value[key], f"{prefix}.{key}" if prefix else str(key), out)
        return out
    if isinstance(value, list | tuple):
        if not value:
            out[prefix] = "[]"
            return out
        for index, item in enumerate(value):
            flatten(item, f"{prefix}[{index}]", out)
        return out
    out[prefix] = stringify(value)
    return out


def _top_key(label: str) -> str:
    return label.split(".", 1)[0].split("[", 1)[0]


def view_fields(snapshot: Mapping[str, Any] | None) -> list[dict[str, str]]:
    """Ordered ``{label, value}`` rows for rendering one version."""
    flat = flatten(snapshot or {})
    return [
        {"label": label, "value": flat[label]}
        for label in sorted(flat)
        if _top_key(label) not in SKIPPED_KEYS
    ]


@dataclass(frozen=True)
class DiffRow:
    label: str
    before: str
    after: str
    changed: bool

    def as_dict(self) -> dict[str, Any]:
        return {"label": self.label, "before": self.before, "after": self.after, "changed": self.changed}


def diff_snapshots(
    before: Mapping[str, Any] | None, after: Mapping[str, Any] | None, *, only_changed: bool = False
) -> list[DiffRow]:
    """Pair fields by label. Values compare exactly after trimming; fields empty on both sides are dropped."""
    left = flatten(before or {})
    right = flatten(after or {})
    rows: list[DiffRow] = []
    for label in sorted(set(left) | set(right)):
        if _top_key(label) in SKIPPED_KEYS:
            continue
        old = left.get(label, "").strip()
        new = right.get(label, "").strip()
        if not old and not new:
            continue
        changed = old != new
        if only_changed and not changed:
            continue
        rows.append(DiffRow(label=label, before=old, after=new, changed=changed))
    return rows


def changed_labels(before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> list[str]:
    return [row.label for row in diff_snapshots(before, after, only_changed=True)]

"""Schemas for wiki history, versions, marks and raw record edits."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class HistoryEntry(BaseModel):
    id: int
    change_type: str
    moderation_state: str
    changed_by: int | None = None
    changed_at: datetime
    moderated_by: int | None = None
    moderated_at: datetime | None = None
    moderation_reason: str | None = None
    source_change_id: int | None = None
    reason: str | None = None
    field_key: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    has_snapshot: bool = True
    fields: list[str] = []


class FieldView(BaseModel):
    label: str
    value: str


class VersionResponse(BaseModel):
    token: str
    fields: list[FieldView]


class DiffRowResponse(BaseModel):
    label: str
    before: str
    after: str
    changed: bool


class CompareResponse(BaseModel):
    left: str
    right: str
    rows: list[DiffRowResponse]


class RevertRequest(BaseModel):
    source_change_id: int = Field(..., gt=0)
    reason: str | None = Field(None, max_length=500)


class ChangeProposed(BaseModel):
    change_id: int
    moderation_state: str = "pendent"


class MarkRequest(BaseModel):
    tipus: str
    is_public: bool = True


class OwnMark(BaseModel):
    tipus: str
    is_public: bool


class MarkStats(BaseModel):
    counts: dict[str, int]
    own: OwnMark | None = None


class RawFieldEditRequest(BaseModel):
    """One field edit: the change-info descriptor plus the new value."""

    change: dict[str, Any]
    value: str | int | None = None


class RawEditResponse(BaseModel):
    change_id: int
    applied: bool


class RawRecordResponse(BaseModel):
    id: int
    moderation_state: str
    created_by: int | None = None
    raw: dict[str, Any]
    persones: list[dict[str, Any]]
    atributs: list[dict[str, Any]]

"""Moderation queue and transition schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from cerca.wiki.schemas import HistoryEntry


class PendingEntity(BaseModel):
    object_type: str
    values: dict[str, Any]


class PendingChange(HistoryEntry):
    object_type: str
    object_id: int


class PendingRawChange(BaseModel):
    id: int
    object_type: str
    object_id: int
    change_type: str
    field_key: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    moderation_state: str
    changed_by: int | None = None
    changed_at: datetime


class ModerationQueue(BaseModel):
    entities: list[PendingEntity]
    changes: list[PendingChange]
    raw_changes: list[PendingRawChange]


class ModerationRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class ModerationResponse(BaseModel):
    object_type: str
    object_id: int
    moderation_state: str
    change_id: int | None = None

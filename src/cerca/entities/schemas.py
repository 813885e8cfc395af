"""Response schemas for the generic entity routes."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class EntityPage(BaseModel):
    items: list[dict[str, Any]]
    total: int
    page: int
    per_page: int


class UpdateResponse(BaseModel):
    id: int
    proposed: bool
    change_id: int | None = None
    moderation_state: str


class DeleteResponse(BaseModel):
    id: int
    deleted: bool = True


class FormResponse(BaseModel):
    object_type: str
    fields: list[str]
    required: list[str]
    values: dict[str, Any] | None = None
    proposal: bool = False

"""Schemas for policy administration."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class PolicyResponse(BaseModel):
    id: int
    nom: str
    descripcio: str | None = None
    permisos: dict[str, Any]


class PolicySaveRequest(BaseModel):
    id: int | None = None
    nom: str = Field(..., min_length=1, max_length=100)
    descripcio: str | None = None
    permisos: dict[str, Any] | str = Field(default_factory=dict)


class UserAssignmentRequest(BaseModel):
    politica_id: int
    user_id: int
    action: Literal["add", "remove"] = "add"


class GroupAssignmentRequest(BaseModel):
    politica_id: int
    grup_id: int
    action: Literal["add", "remove"] = "add"


class AssignmentsResponse(BaseModel):
    users: list[dict[str, int]]
    groups: list[dict[str, int]]


class GroupCreateRequest(BaseModel):
    nom: str = Field(..., min_length=1, max_length=100)
    descripcio: str | None = None


class GroupMemberRequest(BaseModel):
    user_id: int


class GroupResponse(BaseModel):
    id: int
    nom: str
    descripcio: str | None = None


class ChangedResponse(BaseModel):
    changed: bool

"""Schemas for achievement administration and the caller's awards."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class AchievementResponse(BaseModel):
    id: int
    code: str
    name: str
    description: str | None = None
    rarity: str
    visibility: str
    domain: str
    enabled: bool
    repeatable: bool
    icon: str | None = None
    rule_json: str


class AchievementSaveRequest(BaseModel):
    id: int | None = None
    code: str | None = Field(None, max_length=64)
    name: str = Field("", max_length=200)
    description: str | None = None
    rarity: str = "common"
    visibility: str = "visible"
    domain: str = "general"
    enabled: bool = True
    repeatable: bool = False
    icon: str | None = None
    rule_json: str | dict[str, Any] = ""


class RecomputeRequest(BaseModel):
    achievement_id: int | None = None
    user_id: int | None = None
    dry_run: bool = False

    @field_validator("achievement_id", "user_id", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> Any:  # noqa: ANN401
        return None if v in ("", 0, "0") else v

    @field_validator("dry_run", mode="before")
    @classmethod
    def parse_checkbox(cls, v: Any) -> bool:  # noqa: ANN401
        if isinstance(v, str):
            return v.strip().lower() in ("1", "on", "true", "yes")
        return bool(v)


class RecomputeResponse(BaseModel):
    awarded: int
    users: int
    dry_run: bool
    codes: dict[str, int]


class UserAwardResponse(BaseModel):
    achievement_id: int
    code: str
    name: str
    description: str | None = None
    rarity: str
    icon: str | None = None
    instance: int
    awarded_at: datetime

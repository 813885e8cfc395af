"""Schemas for points rules and the caller's points."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class PointsRuleResponse(BaseModel):
    id: int
    code: str
    name: str
    description: str | None = None
    points: int
    active: bool


class PointsRuleSaveRequest(BaseModel):
    id: int | None = None
    code: str | None = Field(None, max_length=64)
    name: str = Field("", max_length=200)
    description: str | None = None
    points: int = 0
    active: bool = True


class RecalcResponse(BaseModel):
    users: int


class ActivityItem(BaseModel):
    id: int
    action: str
    object_type: str
    object_id: int | None = None
    points: int
    status: str
    created_at: datetime


class MyPointsResponse(BaseModel):
    total: int
    activity: list[ActivityItem]
    page: int
    per_page: int

"""Schemas for surname merges and the surname JSON endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from cerca.cognoms.service import parse_id_list


class _MergeReason(BaseModel):
    reason_preset: str | None = Field(None, max_length=200)
    reason_detail: str | None = Field(None, max_length=300)


class MergeSuggestRequest(_MergeReason):
    canonical_id: int
    alias_ids: list[int] = []

    @field_validator("alias_ids", mode="before")
    @classmethod
    def split_ids(cls, v: Any) -> list[int]:  # noqa: ANN401
        return parse_id_list(v)


class MergeSuggestResponse(BaseModel):
    created: int


class SuggestionResponse(BaseModel):
    id: int
    from_id: int
    to_id: int
    reason: str | None = None
    moderation_state: str
    created_by: int | None = None
    created_at: datetime
    moderated_by: int | None = None
    moderated_at: datetime | None = None


class RedirectResponse(BaseModel):
    from_id: int
    to_id: int
    reason: str | None = None
    created_by: int | None = None
    created_at: datetime


class MergeAdminOverview(BaseModel):
    redirects: list[RedirectResponse]
    suggestions: list[SuggestionResponse]


class MergeAdminRequest(_MergeReason):
    """Either materialize ``alias_ids`` onto ``canonical_id`` or moderate ``suggestion_id``."""

    canonical_id: int | None = None
    alias_ids: list[int] = []
    suggestion_id: int | None = None
    action: Literal["accept", "reject"] | None = None

    @field_validator("alias_ids", mode="before")
    @classmethod
    def split_ids(cls, v: Any) -> list[int]:  # noqa: ANN401
        return parse_id_list(v)


class MergeAdminResponse(BaseModel):
    redirects: int = 0
    suggestion_id: int | None = None
    moderation_state: str | None = None


class RedirectDeleteRequest(BaseModel):
    from_id: int = Field(..., gt=0)


class SearchResult(BaseModel):
    id: int
    forma: str


class HeatmapPoint(BaseModel):
    municipi_id: int
    name: str
    lat: float | None = None
    lon: float | None = None
    w: int


class HeatmapResponse(BaseModel):
    cognom_id: int
    y0: int | None = None
    y1: int | None = None
    points: list[HeatmapPoint]

"""Request/response schemas for authentication endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=128)
    nom: str | None = Field(None, max_length=100)
    cognoms: str | None = Field(None, max_length=200)
    preferred_lang: str | None = Field(None, max_length=8)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower().strip()


class RegisterResponse(BaseModel):
    user_id: int
    activation_token: str


class ActivateRequest(BaseModel):
    token: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int

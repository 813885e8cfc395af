"""Request-scoped context threaded explicitly into services."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RequestContext:
    user_id: int | None = None
    username: str | None = None
    lang: str = "ca"

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

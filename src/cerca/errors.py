"""Domain error taxonomy.

Services raise these; ``cerca.middleware.error_handler`` turns them into
JSON responses with a message key and localized text.
"""

from __future__ import annotations

from typing import Any


class CercaError(Exception):
    """Base class for every error surfaced to HTTP callers."""

    status_code = 500
    message_key = "error.internal"

    def __init__(self, message_key: str | None = None, **params: Any) -> None:  # noqa: ANN401
        self.message_key = message_key or self.message_key
        self.params = params
        super().__init__(self.message_key)

    @property
    def headers(self) -> dict[str, str] | None:
        return None


class ValidationError(CercaError):
    status_code = 400
    message_key = "error.validation"


class CsrfError(ValidationError):
    message_key = "csrf.invalid"


class Conflict(ValidationError):
    """Duplicate unique key or redirect cycle."""

    message_key = "error.conflict"


class AuthenticationRequired(CercaError):
    status_code = 401
    message_key = "auth.required"


class AuthorizationDenied(CercaError):
    status_code = 403
    message_key = "error.forbidden"


class NotFound(CercaError):
    status_code = 404
    message_key = "error.not_found"


class Guardrail(CercaError):
    """A wiki guardrail rejected the proposal before anything was persisted."""

    status_code = 400


class MetadataTooLarge(Guardrail):
    message_key = "wiki.guardrail.meta"


class PendingUserLimit(Guardrail):
    message_key = "wiki.guardrail.pending_user"


class PendingObjectLimit(Guardrail):
    message_key = "wiki.guardrail.pending_object"


class RateLimited(Guardrail):
    status_code = 429
    message_key = "wiki.guardrail.rate"

    def __init__(self, message_key: str | None = None, retry_after: float = 1.0, **params: Any) -> None:  # noqa: ANN401
        super().__init__(message_key, **params)
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(max(1, int(self.retry_after + 0.999)))}

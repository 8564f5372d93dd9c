"""Service-level errors.

Each error is an ``HTTPException`` so FastAPI can render it directly, and
carries a stable ``code`` that the dispatch callback and API clients can
branch on without parsing the detail text.
"""

from __future__ import annotations

from fastapi import HTTPException


class ServiceError(HTTPException):
    status_code_default = 400
    code = "error"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code_default, detail=detail)


class NotFoundError(ServiceError):
    status_code_default = 404
    code = "not_found"


class AuthorizationError(ServiceError):
    status_code_default = 403
    code = "forbidden"


class ConflictError(ServiceError):
    """Lost a race against a concurrent transition. Safe to retry."""

    status_code_default = 409
    code = "conflict"


class InvalidStateError(ServiceError):
    status_code_default = 409
    code = "invalid_state"


class AlreadyCompletedError(InvalidStateError):
    code = "already_completed"


class DuplicateRatingError(ServiceError):
    status_code_default = 409
    code = "duplicate_rating"


class InvalidScoreError(ServiceError):
    status_code_default = 400
    code = "invalid_score"


class SchemaError(ServiceError):
    """A queue message could not be parsed or is missing required fields."""

    status_code_default = 422
    code = "schema_invalid"


class QueueUnavailableError(ServiceError):
    """The broker stayed unreachable for the whole reconnect budget."""

    status_code_default = 503
    code = "queue_unavailable"

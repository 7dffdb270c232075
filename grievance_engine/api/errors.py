"""Mapping from engine errors to HTTP responses."""

from fastapi import HTTPException, status

from ..core.exceptions import (
    ConcurrencyError,
    GrievanceEngineError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)


def to_http_exception(exc: GrievanceEngineError) -> HTTPException:
    """Translate an engine error into the matching HTTP status."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, ConcurrencyError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, PersistenceError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))

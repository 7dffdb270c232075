"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    close_db,
    engine,
    get_session,
    get_session_factory,
    init_db,
    unit_of_work,
)
from .exceptions import (
    AgreementNotFoundError,
    ConcurrencyError,
    GrievanceEngineError,
    GrievanceNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    StepConflictError,
    ValidationError,
)
from .retry import NO_RETRY, RetryPolicy, run_with_retry

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "get_session",
    "get_session_factory",
    "unit_of_work",
    "init_db",
    "close_db",
    # Errors
    "GrievanceEngineError",
    "ValidationError",
    "InvalidTransitionError",
    "NotFoundError",
    "GrievanceNotFoundError",
    "AgreementNotFoundError",
    "ConcurrencyError",
    "StepConflictError",
    "PersistenceError",
    # Retry
    "RetryPolicy",
    "NO_RETRY",
    "run_with_retry",
]

"""Exception hierarchy shared by the grievance services.

Every error carries a ``retryable`` flag that the retry policy consults, so
validation problems are never retried while lost races and storage outages are.
"""


# =============================================================================
# EXCEPTIONS
# =============================================================================


class GrievanceEngineError(Exception):
    """Base exception for grievance engine operations."""

    retryable = False


class ValidationError(GrievanceEngineError):
    """Required transition data is missing or the request is malformed."""


class InvalidTransitionError(ValidationError):
    """The grievance is not in a state that allows the requested operation."""


class NotFoundError(GrievanceEngineError):
    """Resource does not exist or belongs to another organization."""


class GrievanceNotFoundError(NotFoundError):
    """Grievance does not exist in the calling organization."""


class AgreementNotFoundError(NotFoundError):
    """Agreement does not exist in the calling organization."""


class ConcurrencyError(GrievanceEngineError):
    """Optimistic locking conflict on a grievance."""

    retryable = True


class StepConflictError(ConcurrencyError):
    """The grievance is no longer on the step the caller expected.

    Retrying cannot help here: the caller must re-read the grievance.
    """

    retryable = False


class PersistenceError(GrievanceEngineError):
    """Storage is temporarily unavailable."""

    retryable = True

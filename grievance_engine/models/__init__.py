"""SQLAlchemy models for the grievance engine."""

from .base import Base, utcnow
from .models import (
    STAGE_ORDER,
    Agreement,
    AgreementStepTemplate,
    BargainingUnit,
    Grievance,
    GrievanceEvent,
    GrievanceEventType,
    GrievanceStage,
    GrievanceStatus,
    GrievanceStepInstance,
    GrievanceStepOutcome,
    GrievanceType,
    Organization,
    StepInstanceStatus,
)

__all__ = [
    "Base",
    "utcnow",
    # Enums
    "GrievanceType",
    "GrievanceStatus",
    "GrievanceStage",
    "StepInstanceStatus",
    "GrievanceEventType",
    "STAGE_ORDER",
    # Models
    "Organization",
    "BargainingUnit",
    "Agreement",
    "AgreementStepTemplate",
    "Grievance",
    "GrievanceStepInstance",
    "GrievanceStepOutcome",
    "GrievanceEvent",
]

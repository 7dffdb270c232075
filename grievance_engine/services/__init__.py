"""Business logic services for the grievance engine."""

from .deadlines import compute_due_date, elapsed_days
from .duration_analytics import (
    BargainingUnitStepReport,
    DateRange,
    DurationAnalyticsEngine,
    OverdueEntry,
    ResolutionBreakdown,
    ResolutionTimeSummary,
    StepDurationRecord,
    TemplateCoverageGap,
)
from .event_log import EventLog, EventLogFilters, EventPage, EventStats
from .progression_engine import (
    AdvanceResult,
    CreateGrievanceInput,
    StepDeadlineInfo,
    StepProgressionEngine,
    TransitionFormData,
    TransitionRequest,
    ValidationResult,
)
from .template_catalog import (
    StepTemplateInput,
    TemplateCatalog,
    infer_stage_from_description,
)

__all__ = [
    # Deadlines
    "compute_due_date",
    "elapsed_days",
    # Template catalog
    "TemplateCatalog",
    "StepTemplateInput",
    "infer_stage_from_description",
    # Event log
    "EventLog",
    "EventLogFilters",
    "EventPage",
    "EventStats",
    # Progression engine
    "StepProgressionEngine",
    "CreateGrievanceInput",
    "TransitionRequest",
    "TransitionFormData",
    "ValidationResult",
    "AdvanceResult",
    "StepDeadlineInfo",
    # Analytics
    "DurationAnalyticsEngine",
    "DateRange",
    "StepDurationRecord",
    "BargainingUnitStepReport",
    "OverdueEntry",
    "ResolutionBreakdown",
    "ResolutionTimeSummary",
    "TemplateCoverageGap",
]

"""
Reports API: step duration analytics for dashboards.

These endpoints power:
1. Step-by-step duration records (completed and in flight)
2. Per bargaining unit step statistics
3. The overdue "needs attention now" view
4. Resolution breakdown by type and step
5. Template coverage gaps and monthly volume
"""

from datetime import date, datetime, timezone
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.dependencies import OrgContextDep, SessionDep
from ..models import GrievanceStage, GrievanceStatus, GrievanceType
from ..schemas import EngineBaseModel
from ..services.duration_analytics import DateRange, DurationAnalyticsEngine

router = APIRouter(prefix="/reports", tags=["reports"])


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class StepDurationResponse(EngineBaseModel):
    grievance_id: UUID
    grievance_number: int
    bargaining_unit_id: UUID
    bargaining_unit_name: str
    agreement_id: UUID
    grievance_type: GrievanceType
    status: GrievanceStatus
    step_number: int
    step_name: str
    stage: GrievanceStage
    start_date: date
    end_date: date | None
    due_date: date
    duration_days: int
    expected_duration_days: int
    is_calendar_days: bool
    is_overdue: bool
    overdue_by_days: int


class StepStatsResponse(EngineBaseModel):
    step_number: int
    step_name: str
    label: str
    total_count: int
    average_duration: float
    expected_duration_days: int
    min_duration: int
    max_duration: int
    overdue_count: int
    overdue_percentage: float
    on_time_count: int
    on_time_percentage: float
    settled_count: int
    withdrawn_count: int
    resolved_count: int


class BargainingUnitReportResponse(EngineBaseModel):
    bargaining_unit_id: UUID | None
    bargaining_unit_name: str
    total_grievances: int
    steps: list[StepStatsResponse]


class OverdueEntryResponse(EngineBaseModel):
    grievance_id: UUID
    grievance_number: int
    step_number: int
    stage: GrievanceStage
    start_date: date
    due_date: date
    overdue_by_days: int
    expected_duration_days: int
    actual_duration_days: int


class StepResolutionResponse(EngineBaseModel):
    step_number: int | None
    count: int
    percentage: float


class ResolutionBreakdownResponse(EngineBaseModel):
    total_resolved: int
    settled_count: int
    settled_percentage: float
    withdrawn_count: int
    withdrawn_percentage: float
    resolved_arbitration_count: int
    resolved_arbitration_percentage: float
    settled_by_step: list[StepResolutionResponse]
    withdrawn_by_step: list[StepResolutionResponse]


class TemplateGapResponse(EngineBaseModel):
    agreement_id: UUID
    grievance_type: GrievanceType
    step_number: int
    grievance_count: int


class VolumePointResponse(EngineBaseModel):
    month: str
    count: int


class ResolutionTimeResponse(EngineBaseModel):
    resolved_count: int
    average_resolution_days: float
    fastest_resolution_days: int
    completed_steps: int
    steps_over_limit: int
    on_time_percentage: float


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_analytics_engine(
    session: SessionDep,
    current_user: OrgContextDep,
) -> DurationAnalyticsEngine:
    return DurationAnalyticsEngine(session, current_user.organization_id)


AnalyticsEngineDep = Annotated[DurationAnalyticsEngine, Depends(get_analytics_engine)]


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_date_range(
    start_date: datetime | None = Query(default=None, description="Created on or after"),
    end_date: datetime | None = Query(default=None, description="Created on or before"),
) -> DateRange | None:
    """Both ends must be given for the range to apply. Naive values are UTC."""
    if start_date is None and end_date is None:
        return None
    if start_date is None or end_date is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start_date and end_date must be given together",
        )
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end_date must not be before start_date",
        )
    return DateRange(start=start_date, end=end_date)


DateRangeDep = Annotated[DateRange | None, Depends(get_date_range)]


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.get("/step-durations", response_model=list[StepDurationResponse])
async def get_step_durations(
    engine: AnalyticsEngineDep,
    date_range: DateRangeDep,
    grievance_type: GrievanceType | None = Query(default=None),
):
    """Every measured step, including the current step of active grievances."""
    records = await engine.calculate_step_durations(date_range, grievance_type)
    return [StepDurationResponse.model_validate(r) for r in records]


@router.get("/bargaining-units", response_model=list[BargainingUnitReportResponse])
async def get_bargaining_unit_report(
    engine: AnalyticsEngineDep,
    date_range: DateRangeDep,
    grievance_type: GrievanceType | None = Query(default=None),
):
    reports = await engine.generate_bargaining_unit_step_report(date_range, grievance_type)
    return [BargainingUnitReportResponse.model_validate(r) for r in reports]


@router.get(
    "/overdue",
    response_model=dict[str, dict[str, list[OverdueEntryResponse]]],
    summary="In-flight steps past their time limit",
)
async def get_overdue_grievances(engine: AnalyticsEngineDep):
    """Grouped by bargaining unit, then by step; most overdue first."""
    overdue = await engine.get_overdue_grievances_by_step()
    return {
        unit: {
            step: [OverdueEntryResponse.model_validate(e) for e in entries]
            for step, entries in steps.items()
        }
        for unit, steps in overdue.items()
    }


@router.get("/resolutions", response_model=ResolutionBreakdownResponse)
async def get_resolution_breakdown(
    engine: AnalyticsEngineDep,
    date_range: DateRangeDep,
    grievance_type: GrievanceType | None = Query(default=None),
):
    breakdown = await engine.get_resolution_breakdown(date_range, grievance_type)
    return ResolutionBreakdownResponse.model_validate(breakdown)


@router.get("/template-gaps", response_model=list[TemplateGapResponse])
async def get_template_gaps(
    engine: AnalyticsEngineDep,
    date_range: DateRangeDep,
    grievance_type: GrievanceType | None = Query(default=None),
):
    """Steps grievances have reached that their agreement defines no template for."""
    gaps = await engine.get_template_coverage_gaps(date_range, grievance_type)
    return [TemplateGapResponse.model_validate(g) for g in gaps]


@router.get("/volume", response_model=list[VolumePointResponse])
async def get_volume_trends(
    engine: AnalyticsEngineDep,
    months: int = Query(default=12, ge=1, le=60),
):
    points = await engine.get_volume_trends(months)
    return [VolumePointResponse.model_validate(p) for p in points]


@router.get("/resolution-times", response_model=ResolutionTimeResponse)
async def get_resolution_times(
    engine: AnalyticsEngineDep,
    date_range: DateRangeDep,
    grievance_type: GrievanceType | None = Query(default=None),
):
    """Average and fastest resolution, and how many completed steps ran over."""
    summary = await engine.get_resolution_times(date_range, grievance_type)
    return ResolutionTimeResponse.model_validate(summary)

"""
Grievance API Routes: lifecycle and step progression.

These endpoints drive the grievance state machine:
1. POST /grievances - File a grievance on step 1
2. POST /grievances/{id}/advance - Complete the current step
3. PUT /grievances/{id}/status - Generic status/stage transition
4. POST /grievances/{id}/withdraw | /settle | /remaining-issues - Justified transitions
5. DELETE /grievances/{id} and POST /grievances/{id}/restore - Soft delete and undo
"""

from datetime import date, datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ..core.dependencies import OrgContextDep, SessionFactoryDep
from ..core.exceptions import GrievanceEngineError
from ..models import (
    Grievance,
    GrievanceStage,
    GrievanceStatus,
    GrievanceStepInstance,
    GrievanceType,
)
from ..schemas import EngineBaseModel
from ..services.progression_engine import (
    CreateGrievanceInput,
    StepProgressionEngine,
    TransitionFormData,
    TransitionRequest,
)
from .errors import to_http_exception

router = APIRouter(prefix="/grievances", tags=["grievances"])


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class CreateGrievanceRequest(BaseModel):
    """Request to file a new grievance."""
    bargaining_unit_id: UUID
    agreement_id: UUID
    grievance_type: GrievanceType
    initial_stage: GrievanceStage
    filed_at: datetime | None = None


class AdvanceStepRequest(BaseModel):
    """Request to complete the current step."""
    outcome: str = Field(..., description="What happened at the step being completed")
    expected_step_number: int | None = Field(
        default=None,
        ge=1,
        description="For safe retries: the step you believe is current",
    )


class UpdateStatusRequest(BaseModel):
    status: GrievanceStatus
    stage: GrievanceStage | None = None
    outcomes: str | None = None
    resolution_details: dict[str, Any] | None = None


class ValidateTransitionRequest(BaseModel):
    status: GrievanceStatus
    stage: GrievanceStage | None = None
    withdrawal_details: str | None = None
    settlement_details: str | None = None
    remaining_issues: str | None = None


class ResolutionRequest(BaseModel):
    """Justification text for a withdrawal or settlement."""
    details: str


class RemainingIssuesRequest(BaseModel):
    status: GrievanceStatus = GrievanceStatus.ACTIVE
    stage: GrievanceStage | None = None
    remaining_issues: str


class DeleteGrievanceRequest(BaseModel):
    reason: str


class GrievanceResponse(EngineBaseModel):
    id: UUID
    organization_id: UUID
    grievance_number: int
    bargaining_unit_id: UUID
    agreement_id: UUID
    grievance_type: GrievanceType
    status: GrievanceStatus
    current_stage: GrievanceStage
    current_step_number: int | None
    filed_at: datetime
    outcomes: str | None = None
    resolution_details: dict[str, Any] | None = None
    deletion_reason: str | None = None
    created_by: UUID
    last_updated_by: UUID | None = None
    created_at: datetime
    updated_at: datetime | None = None
    version: int


class StepInstanceResponse(EngineBaseModel):
    id: UUID
    step_number: int
    stage: GrievanceStage
    name: str
    due_date: date
    completed_date: datetime | None = None
    status: str


class StepOutcomeResponse(EngineBaseModel):
    id: UUID
    step_number: int
    stage: GrievanceStage
    outcome: str
    completed_date: datetime
    recorded_by: UUID


class AdvanceStepResponse(BaseModel):
    grievance_id: UUID
    previous_step_number: int
    new_step_number: int
    outcome: StepOutcomeResponse
    next_step: StepInstanceResponse | None = None


class ValidationResultResponse(BaseModel):
    is_valid: bool
    error: str | None = None
    requires_form: str | None = None


class StepDeadlineResponse(BaseModel):
    grievance_id: UUID
    step_number: int | None
    stage: GrievanceStage
    has_template: bool
    step_name: str | None = None
    time_limit_days: int | None = None
    is_calendar_days: bool | None = None
    started_on: date | None = None
    due_on: date | None = None
    elapsed_days: int | None = None
    days_remaining: int | None = None
    is_overdue: bool = False


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_progression_engine(
    current_user: OrgContextDep,
    session_factory: SessionFactoryDep,
) -> StepProgressionEngine:
    """Dependency to get a progression engine scoped to the caller's organization."""
    return StepProgressionEngine(session_factory, current_user.organization_id)


ProgressionEngineDep = Annotated[StepProgressionEngine, Depends(get_progression_engine)]


def build_grievance_response(grievance: Grievance) -> GrievanceResponse:
    return GrievanceResponse.model_validate(grievance)


def build_step_instance_response(
    instance: GrievanceStepInstance | None,
) -> StepInstanceResponse | None:
    return StepInstanceResponse.model_validate(instance) if instance else None


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post(
    "",
    response_model=GrievanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="File a new grievance",
)
async def create_grievance(
    request: CreateGrievanceRequest,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    """Create a grievance on step 1 with the chosen initial stage."""
    try:
        grievance = await engine.create_grievance(
            CreateGrievanceInput(
                bargaining_unit_id=request.bargaining_unit_id,
                agreement_id=request.agreement_id,
                grievance_type=request.grievance_type,
                initial_stage=request.initial_stage,
                filed_at=request.filed_at,
            ),
            actor_id=current_user.id,
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.get("/{grievance_id}", response_model=GrievanceResponse)
async def get_grievance(grievance_id: UUID, engine: ProgressionEngineDep):
    try:
        grievance = await engine.get_grievance(grievance_id)
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.post(
    "/{grievance_id}/advance",
    response_model=AdvanceStepResponse,
    summary="Complete the current step",
    description="""
    Records the outcome of the current step, schedules the next step when the
    agreement defines one, and moves the grievance to it.

    **Safe retries**: pass `expected_step_number` so a duplicate submission
    gets a 409 Conflict instead of skipping a step.
    """,
)
async def advance_step(
    grievance_id: UUID,
    request: AdvanceStepRequest,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    try:
        result = await engine.advance_to_next_step(
            grievance_id,
            request.outcome,
            actor_id=current_user.id,
            expected_step_number=request.expected_step_number,
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return AdvanceStepResponse(
        grievance_id=result.grievance.id,
        previous_step_number=result.previous_step_number,
        new_step_number=result.new_step_number,
        outcome=StepOutcomeResponse.model_validate(result.outcome),
        next_step=build_step_instance_response(result.next_step),
    )


@router.put("/{grievance_id}/status", response_model=GrievanceResponse)
async def update_status(
    grievance_id: UUID,
    request: UpdateStatusRequest,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    """Move a grievance to a new status and, while ACTIVE, a new stage."""
    try:
        grievance = await engine.update_status(
            grievance_id,
            request.status,
            actor_id=current_user.id,
            stage=request.stage,
            outcomes=request.outcomes,
            resolution_details=request.resolution_details,
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.post("/{grievance_id}/validate-transition", response_model=ValidationResultResponse)
async def validate_transition(
    grievance_id: UUID,
    request: ValidateTransitionRequest,
    engine: ProgressionEngineDep,
):
    """Check whether a transition has the justification it needs, without applying it."""
    try:
        result = await engine.validate_status_transition(
            grievance_id,
            TransitionRequest(status=request.status, stage=request.stage),
            TransitionFormData(
                withdrawal_details=request.withdrawal_details,
                settlement_details=request.settlement_details,
                remaining_issues=request.remaining_issues,
            ),
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return ValidationResultResponse(
        is_valid=result.is_valid,
        error=result.error,
        requires_form=result.requires_form,
    )


@router.post("/{grievance_id}/withdraw", response_model=GrievanceResponse)
async def withdraw_grievance(
    grievance_id: UUID,
    request: ResolutionRequest,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    try:
        grievance = await engine.process_withdrawal(
            grievance_id, request.details, actor_id=current_user.id
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.post("/{grievance_id}/settle", response_model=GrievanceResponse)
async def settle_grievance(
    grievance_id: UUID,
    request: ResolutionRequest,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    try:
        grievance = await engine.process_settlement(
            grievance_id, request.details, actor_id=current_user.id
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.post("/{grievance_id}/remaining-issues", response_model=GrievanceResponse)
async def process_remaining_issues(
    grievance_id: UUID,
    request: RemainingIssuesRequest,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    """Reopen a grievance because part of it is still unresolved."""
    try:
        grievance = await engine.process_remaining_issues(
            grievance_id,
            TransitionRequest(status=request.status, stage=request.stage),
            request.remaining_issues,
            actor_id=current_user.id,
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.delete("/{grievance_id}", response_model=GrievanceResponse)
async def delete_grievance(
    grievance_id: UUID,
    request: DeleteGrievanceRequest,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    try:
        grievance = await engine.delete_grievance(
            grievance_id, request.reason, actor_id=current_user.id
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.post("/{grievance_id}/restore", response_model=GrievanceResponse)
async def restore_grievance(
    grievance_id: UUID,
    current_user: OrgContextDep,
    engine: ProgressionEngineDep,
):
    try:
        grievance = await engine.restore_grievance(grievance_id, actor_id=current_user.id)
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_grievance_response(grievance)


@router.get("/{grievance_id}/outcomes", response_model=list[StepOutcomeResponse])
async def list_step_outcomes(grievance_id: UUID, engine: ProgressionEngineDep):
    try:
        outcomes = await engine.list_step_outcomes(grievance_id)
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return [StepOutcomeResponse.model_validate(o) for o in outcomes]


@router.get("/{grievance_id}/deadline", response_model=StepDeadlineResponse)
async def get_step_deadline(grievance_id: UUID, engine: ProgressionEngineDep):
    """Due date and overdue status of the current step."""
    try:
        info = await engine.get_current_step_deadline(grievance_id)
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return StepDeadlineResponse(**info.__dict__)

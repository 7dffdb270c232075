"""Step template API routes: an agreement's grievance procedure."""

from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..core.dependencies import OrgContextDep, SessionDep
from ..core.exceptions import GrievanceEngineError
from ..models import AgreementStepTemplate, GrievanceStage, GrievanceType
from ..schemas import EngineBaseModel
from ..services.template_catalog import StepTemplateInput, TemplateCatalog
from .errors import to_http_exception

router = APIRouter(prefix="/agreements/{agreement_id}/step-templates", tags=["step-templates"])


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class StepTemplateSchema(BaseModel):
    """One step as submitted; the server orders and renumbers the set."""
    step_number: int = Field(..., ge=1)
    stage: GrievanceStage | None = Field(
        default=None,
        description="Procedure stage. Inferred from the description when omitted, "
        "unless the server requires it.",
    )
    name: str | None = Field(default=None, max_length=255)
    description: str = ""
    time_limit: str = Field(default="", max_length=255)
    time_limit_days: int = Field(default=0, ge=0)
    is_calendar_days: bool = True
    required_participants: list[str] = Field(default_factory=list)
    required_documents: list[str] = Field(default_factory=list)
    notes: str | None = None

    def to_input(self) -> StepTemplateInput:
        return StepTemplateInput(
            step_number=self.step_number,
            stage=self.stage,
            name=self.name,
            description=self.description,
            time_limit=self.time_limit,
            time_limit_days=self.time_limit_days,
            is_calendar_days=self.is_calendar_days,
            required_participants=self.required_participants,
            required_documents=self.required_documents,
            notes=self.notes,
        )


class SaveTemplatesRequest(BaseModel):
    steps: list[StepTemplateSchema]


class LegacyImportRequest(BaseModel):
    filing_info: dict[str, Any] | str = Field(
        ...,
        description="Legacy grievance filing-info document (object or JSON text)",
    )


class StepTemplateResponse(EngineBaseModel):
    id: UUID
    agreement_id: UUID
    grievance_type: GrievanceType
    step_number: int
    stage: GrievanceStage
    name: str
    description: str
    time_limit: str
    time_limit_days: int
    is_calendar_days: bool
    required_participants: list[str]
    required_documents: list[str]
    notes: str | None = None
    created_at: datetime


class DeleteTemplatesResponse(BaseModel):
    deleted: int


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_template_catalog(
    session: SessionDep,
    current_user: OrgContextDep,
) -> TemplateCatalog:
    return TemplateCatalog(session, current_user.organization_id)


TemplateCatalogDep = Annotated[TemplateCatalog, Depends(get_template_catalog)]


def build_template_responses(
    templates: list[AgreementStepTemplate],
) -> list[StepTemplateResponse]:
    return [StepTemplateResponse.model_validate(t) for t in templates]


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.get("", response_model=list[StepTemplateResponse])
async def list_templates(
    agreement_id: UUID,
    catalog: TemplateCatalogDep,
    grievance_type: GrievanceType | None = Query(default=None),
):
    try:
        templates = await catalog.list_templates(agreement_id, grievance_type)
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_template_responses(templates)


@router.put(
    "/{grievance_type}",
    response_model=list[StepTemplateResponse],
    summary="Replace the procedure for one grievance type",
    description="""
    Replaces every step template of the agreement for this grievance type.

    Steps are ordered by stage (informal, formal, arbitration) and then by the
    submitted step numbers, and renumbered from 1.
    """,
)
async def save_templates(
    agreement_id: UUID,
    grievance_type: GrievanceType,
    request: SaveTemplatesRequest,
    catalog: TemplateCatalogDep,
):
    try:
        templates = await catalog.save_templates(
            agreement_id, grievance_type, [s.to_input() for s in request.steps]
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_template_responses(templates)


@router.delete("", response_model=DeleteTemplatesResponse)
async def delete_templates(
    agreement_id: UUID,
    catalog: TemplateCatalogDep,
    grievance_type: GrievanceType | None = Query(default=None),
):
    try:
        deleted = await catalog.delete_templates(agreement_id, grievance_type)
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return DeleteTemplatesResponse(deleted=deleted)


@router.post("/import-legacy", response_model=list[StepTemplateResponse])
async def import_legacy_templates(
    agreement_id: UUID,
    request: LegacyImportRequest,
    catalog: TemplateCatalogDep,
):
    """Migrate a legacy filing-info document into typed step templates."""
    try:
        imported = await catalog.import_legacy_filing_info(agreement_id, request.filing_info)
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    return build_template_responses(
        [template for templates in imported.values() for template in templates]
    )

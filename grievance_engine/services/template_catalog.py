"""
Template Catalog: per-agreement grievance step templates.

Templates are addressed by (agreement, grievance type, step number). A missing
template is a normal answer (``None``), not an error: many agreements define
fewer steps for some grievance types than for others.

Saving always replaces the whole set for an (agreement, type) pair inside the
caller's transaction: existing rows are deleted and the new set inserted, so a
reader never sees a half-written procedure.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.exceptions import AgreementNotFoundError, ValidationError
from ..models import (
    Agreement,
    AgreementStepTemplate,
    GrievanceStage,
    GrievanceType,
)


logger = logging.getLogger(__name__)


# =============================================================================
# INPUT DTOs
# =============================================================================


@dataclass
class StepTemplateInput:
    """One step as supplied by the caller, before ordering and renumbering."""

    step_number: int
    description: str = ""
    time_limit_days: int = 0
    is_calendar_days: bool = True
    stage: GrievanceStage | None = None
    name: str | None = None
    time_limit: str = ""
    required_participants: list[str] = field(default_factory=list)
    required_documents: list[str] = field(default_factory=list)
    notes: str | None = None


TemplateKey = tuple[UUID, GrievanceType, int]


# =============================================================================
# LEGACY STAGE INFERENCE
# =============================================================================


INFORMAL_KEYWORDS = ("informal", "discussion", "supervisor", "manager")
ARBITRATION_KEYWORDS = ("arbitration",)

LEGACY_FILING_KEYS = {
    "individualGrievance": GrievanceType.INDIVIDUAL,
    "groupGrievance": GrievanceType.GROUP,
    "policyGrievance": GrievanceType.POLICY,
}


def infer_stage_from_description(description: str) -> GrievanceStage:
    """Guess a step's stage from the wording of its description."""
    text = (description or "").lower()
    if any(keyword in text for keyword in INFORMAL_KEYWORDS):
        return GrievanceStage.INFORMAL
    if any(keyword in text for keyword in ARBITRATION_KEYWORDS):
        return GrievanceStage.ARBITRATION
    return GrievanceStage.FORMAL


def parse_legacy_steps(raw: Any) -> list[StepTemplateInput]:
    """Parse one grievance-type section of a legacy filing-info document."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Legacy grievance data is not valid JSON: {e}") from e
    if not isinstance(raw, dict) or not isinstance(raw.get("steps"), list):
        raise ValidationError("Legacy grievance data must contain a 'steps' list")

    steps = []
    for position, step in enumerate(raw["steps"], start=1):
        description = str(step.get("description") or "")
        try:
            time_limit_days = int(step.get("timeLimitDays") or 0)
            step_number = int(step.get("stepNumber") or position)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Legacy step {position} has a non-numeric field: {e}") from e
        steps.append(
            StepTemplateInput(
                step_number=step_number,
                description=description,
                time_limit=str(step.get("timeLimit") or ""),
                time_limit_days=time_limit_days,
                is_calendar_days=bool(step.get("isCalendarDays")),
                stage=infer_stage_from_description(description),
                required_participants=[str(p) for p in step.get("requiredParticipants") or []],
                required_documents=[str(d) for d in step.get("requiredDocuments") or []],
                notes=str(step["notes"]) if step.get("notes") else None,
            )
        )
    return steps


# =============================================================================
# TEMPLATE CATALOG
# =============================================================================


class TemplateCatalog:
    """Lookup and replacement of agreement step templates for one organization."""

    def __init__(
        self,
        session: AsyncSession,
        organization_id: UUID,
        require_stage: bool | None = None,
    ):
        self.session = session
        self.organization_id = organization_id
        if require_stage is None:
            require_stage = get_settings().require_template_stage
        self.require_stage = require_stage

    def _scoped(self, query):
        return query.join(
            Agreement, AgreementStepTemplate.agreement_id == Agreement.id
        ).where(Agreement.organization_id == self.organization_id)

    async def get_template(
        self,
        agreement_id: UUID,
        grievance_type: GrievanceType,
        step_number: int,
    ) -> AgreementStepTemplate | None:
        """Template for one step, or None when the agreement defines no such step."""
        result = await self.session.execute(
            self._scoped(select(AgreementStepTemplate)).where(
                AgreementStepTemplate.agreement_id == agreement_id,
                AgreementStepTemplate.grievance_type == grievance_type,
                AgreementStepTemplate.step_number == step_number,
            )
        )
        return result.scalar_one_or_none()

    async def get_templates_by_key(
        self, agreement_ids: set[UUID]
    ) -> dict[TemplateKey, AgreementStepTemplate]:
        """All templates of the given agreements keyed for bulk lookups."""
        if not agreement_ids:
            return {}
        result = await self.session.execute(
            self._scoped(select(AgreementStepTemplate)).where(
                AgreementStepTemplate.agreement_id.in_(agreement_ids)
            )
        )
        return {
            (t.agreement_id, t.grievance_type, t.step_number): t
            for t in result.scalars().all()
        }

    async def list_templates(
        self,
        agreement_id: UUID,
        grievance_type: GrievanceType | None = None,
    ) -> list[AgreementStepTemplate]:
        await self._get_agreement_or_raise(agreement_id)
        query = select(AgreementStepTemplate).where(
            AgreementStepTemplate.agreement_id == agreement_id
        )
        if grievance_type is not None:
            query = query.where(AgreementStepTemplate.grievance_type == grievance_type)
        query = query.order_by(
            AgreementStepTemplate.grievance_type,
            AgreementStepTemplate.step_number,
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def has_templates(self, agreement_id: UUID) -> bool:
        result = await self.session.execute(
            self._scoped(select(func.count(AgreementStepTemplate.id))).where(
                AgreementStepTemplate.agreement_id == agreement_id
            )
        )
        return (result.scalar() or 0) > 0

    async def save_templates(
        self,
        agreement_id: UUID,
        grievance_type: GrievanceType,
        steps: list[StepTemplateInput],
    ) -> list[AgreementStepTemplate]:
        """
        Replace the full template set for an agreement and grievance type.

        Flow:
        1. Verify the agreement belongs to this organization
        2. Resolve each step's stage (caller value, else keyword inference)
        3. Order by stage, then by the caller's step number
        4. Renumber 1..N and delete-then-insert in the current transaction
        """
        grievance_type = GrievanceType(grievance_type)
        await self._get_agreement_or_raise(agreement_id)

        resolved: list[tuple[GrievanceStage, StepTemplateInput]] = []
        for step in steps:
            if step.time_limit_days < 0:
                raise ValidationError(
                    f"Step {step.step_number}: time limit cannot be negative"
                )
            stage = step.stage
            if stage is None:
                if self.require_stage:
                    raise ValidationError(f"Step {step.step_number}: stage is required")
                stage = infer_stage_from_description(step.description)
                logger.warning(
                    f"Inferred stage {stage.value} for step {step.step_number} of "
                    f"agreement {agreement_id} ({grievance_type.value}) from its description"
                )
            resolved.append((GrievanceStage(stage), step))

        resolved.sort(key=lambda pair: (pair[0].order, pair[1].step_number))

        await self.session.execute(
            delete(AgreementStepTemplate).where(
                AgreementStepTemplate.agreement_id == agreement_id,
                AgreementStepTemplate.grievance_type == grievance_type,
            )
        )

        templates = [
            AgreementStepTemplate(
                agreement_id=agreement_id,
                grievance_type=grievance_type,
                step_number=number,
                stage=stage,
                name=step.name or f"Step {number}",
                description=step.description,
                time_limit=step.time_limit,
                time_limit_days=step.time_limit_days,
                is_calendar_days=step.is_calendar_days,
                required_participants=list(step.required_participants),
                required_documents=list(step.required_documents),
                notes=step.notes,
            )
            for number, (stage, step) in enumerate(resolved, start=1)
        ]
        self.session.add_all(templates)
        await self.session.flush()

        logger.info(
            f"Saved {len(templates)} step templates for agreement {agreement_id} "
            f"({grievance_type.value})"
        )
        return templates

    async def delete_templates(
        self,
        agreement_id: UUID,
        grievance_type: GrievanceType | None = None,
    ) -> int:
        await self._get_agreement_or_raise(agreement_id)
        stmt = delete(AgreementStepTemplate).where(
            AgreementStepTemplate.agreement_id == agreement_id
        )
        if grievance_type is not None:
            stmt = stmt.where(AgreementStepTemplate.grievance_type == grievance_type)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def import_legacy_filing_info(
        self,
        agreement_id: UUID,
        filing_info: dict[str, Any] | str,
    ) -> dict[GrievanceType, list[AgreementStepTemplate]]:
        """
        One-time migration of a legacy filing-info document into typed templates.

        Sections absent from the document leave that grievance type untouched.
        """
        if isinstance(filing_info, str):
            try:
                filing_info = json.loads(filing_info)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Filing info is not valid JSON: {e}") from e
        if not isinstance(filing_info, dict):
            raise ValidationError("Filing info must be an object")
        # Older documents nest everything under this key
        filing_info = filing_info.get("grievanceFilingInfo", filing_info)

        imported: dict[GrievanceType, list[AgreementStepTemplate]] = {}
        for key, grievance_type in LEGACY_FILING_KEYS.items():
            if key not in filing_info:
                continue
            steps = parse_legacy_steps(filing_info[key])
            imported[grievance_type] = await self.save_templates(
                agreement_id, grievance_type, steps
            )
        if not imported:
            raise ValidationError("Filing info contains no grievance step sections")
        return imported

    async def _get_agreement_or_raise(self, agreement_id: UUID) -> Agreement:
        result = await self.session.execute(
            select(Agreement).where(
                Agreement.id == agreement_id,
                Agreement.organization_id == self.organization_id,
            )
        )
        agreement = result.scalar_one_or_none()
        if not agreement:
            raise AgreementNotFoundError(f"Agreement {agreement_id} not found")
        return agreement

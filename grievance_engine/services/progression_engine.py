"""
Step Progression Engine: the grievance state machine.

A grievance is ACTIVE while it moves through its agreement's steps, and every
other status is terminal for step progression:
- The current step number only ever grows while the grievance is ACTIVE
- Leaving ACTIVE freezes the stage and step number where it was resolved
- Moving into a terminal status requires justification text
- DELETED can be undone; restoring returns the status it had before

Every mutating call is one unit of work: the grievance row, step outcome,
next step instance and event log entries are committed together or not at
all. The grievance row carries an optimistic lock, and lost races and storage
hiccups are retried under the configured RetryPolicy with a fresh transaction
per attempt.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.database import read_session, unit_of_work
from ..core.exceptions import (
    AgreementNotFoundError,
    GrievanceNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    StepConflictError,
    ValidationError,
)
from ..core.retry import RetryPolicy, run_with_retry
from ..models import (
    Agreement,
    BargainingUnit,
    Grievance,
    GrievanceEventType,
    GrievanceStage,
    GrievanceStatus,
    GrievanceStepInstance,
    GrievanceStepOutcome,
    GrievanceType,
    StepInstanceStatus,
    utcnow,
)
from .deadlines import compute_due_date, elapsed_days, to_utc_date
from .event_log import EventLog
from .template_catalog import TemplateCatalog


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class CreateGrievanceInput:
    """Input for filing a new grievance."""
    bargaining_unit_id: UUID
    agreement_id: UUID
    grievance_type: GrievanceType
    initial_stage: GrievanceStage
    filed_at: datetime | None = None


@dataclass
class TransitionRequest:
    """Target state of a status transition."""
    status: GrievanceStatus
    stage: GrievanceStage | None = None


@dataclass
class TransitionFormData:
    """Justification text collected alongside a transition."""
    withdrawal_details: str | None = None
    settlement_details: str | None = None
    remaining_issues: str | None = None


@dataclass
class ValidationResult:
    is_valid: bool
    error: str | None = None
    requires_form: str | None = None  # "withdrawal" | "settlement" | "remainingIssues"


@dataclass
class AdvanceResult:
    """Outcome of completing the current step."""
    grievance: Grievance
    previous_step_number: int
    new_step_number: int
    outcome: GrievanceStepOutcome
    next_step: GrievanceStepInstance | None


@dataclass
class StepDeadlineInfo:
    """Where the grievance's current step stands against its time limit."""
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


RESOLUTION_LABELS = {
    GrievanceStatus.WITHDRAWN: "Withdrawal",
    GrievanceStatus.SETTLED: "Settlement",
}


def _blank(text: str | None) -> bool:
    return text is None or not text.strip()


# =============================================================================
# STEP PROGRESSION ENGINE
# =============================================================================


class StepProgressionEngine:
    """
    State machine for the grievances of one organization.

    Guarantees:
    1. Every query is scoped to ``organization_id``; other tenants' grievances
       are indistinguishable from missing ones
    2. Each mutation is atomic (all-or-nothing)
    3. Each mutation appends its event log entries in the same transaction
    4. Validation failures happen before anything is written and are never retried
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        organization_id: UUID,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.organization_id = organization_id
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._clock = clock

    async def _run(
        self,
        description: str,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """Run ``work`` in its own transaction, retrying per the policy."""

        async def attempt() -> T:
            async with unit_of_work(self._session_factory) as session:
                return await work(session)

        return await run_with_retry(attempt, self._retry_policy, description)

    # =========================================================================
    # CREATE GRIEVANCE
    # =========================================================================

    async def create_grievance(
        self,
        input: CreateGrievanceInput,
        actor_id: UUID,
    ) -> Grievance:
        """
        File a new grievance on step 1.

        Flow:
        1. Verify bargaining unit and agreement belong to the organization
        2. Allocate the next grievance number for the organization
        3. Insert the grievance (ACTIVE, step 1, caller's initial stage)
        4. Schedule step 1 if the agreement has a template for it
        5. Log CREATED
        """
        if input.initial_stage is None:
            raise ValidationError("Initial stage is required")
        grievance_type = GrievanceType(input.grievance_type)
        initial_stage = GrievanceStage(input.initial_stage)

        async def work(session: AsyncSession) -> Grievance:
            unit = (
                await session.execute(
                    select(BargainingUnit).where(
                        BargainingUnit.id == input.bargaining_unit_id,
                        BargainingUnit.organization_id == self.organization_id,
                    )
                )
            ).scalar_one_or_none()
            if not unit:
                raise NotFoundError(f"Bargaining unit {input.bargaining_unit_id} not found")

            agreement = (
                await session.execute(
                    select(Agreement).where(
                        Agreement.id == input.agreement_id,
                        Agreement.organization_id == self.organization_id,
                    )
                )
            ).scalar_one_or_none()
            if not agreement:
                raise AgreementNotFoundError(f"Agreement {input.agreement_id} not found")
            if agreement.bargaining_unit_id != unit.id:
                raise ValidationError(
                    f"Agreement {agreement.id} does not cover bargaining unit {unit.id}"
                )

            now = self._clock()
            grievance = Grievance(
                organization_id=self.organization_id,
                bargaining_unit_id=unit.id,
                agreement_id=agreement.id,
                grievance_number=await self._get_next_grievance_number(session),
                grievance_type=grievance_type,
                status=GrievanceStatus.ACTIVE,
                current_stage=initial_stage,
                current_step_number=1,
                filed_at=input.filed_at or now,
                created_by=actor_id,
                created_at=now,
            )
            session.add(grievance)
            await session.flush()

            catalog = TemplateCatalog(session, self.organization_id)
            template = await catalog.get_template(agreement.id, grievance_type, 1)
            if template:
                session.add(
                    GrievanceStepInstance(
                        grievance_id=grievance.id,
                        step_number=1,
                        stage=template.stage,
                        name=template.name,
                        due_date=compute_due_date(
                            now, template.time_limit_days, template.is_calendar_days
                        ),
                        status=StepInstanceStatus.IN_PROGRESS,
                    )
                )

            await EventLog(session, self.organization_id).append(
                grievance,
                GrievanceEventType.CREATED,
                None,
                GrievanceStatus.ACTIVE.value,
                actor_id,
            )
            await session.flush()

            logger.info(
                f"Created grievance #{grievance.grievance_number} ({grievance.id}) "
                f"in org {self.organization_id}"
            )
            return grievance

        return await self._run("create grievance", work)

    # =========================================================================
    # ADVANCE TO NEXT STEP
    # =========================================================================

    async def advance_to_next_step(
        self,
        grievance_id: UUID,
        outcome_text: str,
        actor_id: UUID,
        expected_step_number: int | None = None,
    ) -> AdvanceResult:
        """
        Complete the current step and move to the next one.

        Flow:
        1. Reject empty outcome text before touching storage
        2. Lock the grievance; it must be ACTIVE (and on the expected step, if given)
        3. Record the outcome for the current step and close its step instance
        4. Schedule the next step if the agreement defines a template for it,
           starting from this step's completion
        5. Bump current_step_number and log STEP_COMPLETED

        Passing ``expected_step_number`` makes retries from the client safe: a
        second submission of the same completion fails with StepConflictError
        instead of skipping a step.
        """
        if _blank(outcome_text):
            raise ValidationError("Outcome text is required to complete a step")
        outcome_text = outcome_text.strip()

        async def work(session: AsyncSession) -> AdvanceResult:
            grievance = await self._get_grievance_or_raise(session, grievance_id, for_update=True)
            if not grievance.is_active:
                raise InvalidTransitionError(
                    f"Grievance {grievance_id} is {grievance.status.value}; "
                    "only ACTIVE grievances can advance"
                )

            current_step = grievance.current_step_number or 1
            if expected_step_number is not None and expected_step_number != current_step:
                raise StepConflictError(
                    f"Grievance {grievance_id} is on step {current_step}, "
                    f"not step {expected_step_number}"
                )

            now = self._clock()
            outcome = GrievanceStepOutcome(
                grievance_id=grievance.id,
                step_number=current_step,
                stage=grievance.current_stage,
                outcome=outcome_text,
                completed_date=now,
                recorded_by=actor_id,
            )
            session.add(outcome)

            current_instance = (
                await session.execute(
                    select(GrievanceStepInstance).where(
                        GrievanceStepInstance.grievance_id == grievance.id,
                        GrievanceStepInstance.step_number == current_step,
                    )
                )
            ).scalar_one_or_none()
            if current_instance:
                current_instance.status = StepInstanceStatus.COMPLETED
                current_instance.completed_date = now

            next_step_number = current_step + 1
            catalog = TemplateCatalog(session, self.organization_id)
            template = await catalog.get_template(
                grievance.agreement_id, grievance.grievance_type, next_step_number
            )
            next_instance = None
            if template:
                # The next step starts when this one completes
                next_instance = GrievanceStepInstance(
                    grievance_id=grievance.id,
                    step_number=next_step_number,
                    stage=template.stage,
                    name=template.name,
                    due_date=compute_due_date(
                        now, template.time_limit_days, template.is_calendar_days
                    ),
                    status=StepInstanceStatus.PENDING,
                )
                session.add(next_instance)
            else:
                logger.info(
                    f"No step template for step {next_step_number} of agreement "
                    f"{grievance.agreement_id} ({grievance.grievance_type.value}); "
                    "no deadline scheduled"
                )

            grievance.current_step_number = next_step_number
            grievance.last_updated_by = actor_id

            await EventLog(session, self.organization_id).append(
                grievance,
                GrievanceEventType.STEP_COMPLETED,
                str(current_step),
                json.dumps(
                    {
                        "previousStep": current_step,
                        "newStep": next_step_number,
                        "outcomes": outcome_text,
                    }
                ),
                actor_id,
            )
            await session.flush()

            logger.info(
                f"Grievance {grievance.id} advanced from step {current_step} "
                f"to step {next_step_number}"
            )
            return AdvanceResult(
                grievance=grievance,
                previous_step_number=current_step,
                new_step_number=next_step_number,
                outcome=outcome,
                next_step=next_instance,
            )

        return await self._run("advance grievance step", work)

    # =========================================================================
    # STATUS TRANSITIONS
    # =========================================================================

    async def validate_status_transition(
        self,
        grievance_id: UUID,
        new_state: TransitionRequest,
        form_data: TransitionFormData | None = None,
    ) -> ValidationResult:
        """
        Check that a transition carries the justification it needs.

        Only the form requirements are enforced here; any other transition is
        accepted.
        """
        async with read_session(self._session_factory) as session:
            await self._get_grievance_or_raise(session, grievance_id)

        form_data = form_data or TransitionFormData()
        status = GrievanceStatus(new_state.status)

        if status == GrievanceStatus.WITHDRAWN and _blank(form_data.withdrawal_details):
            return ValidationResult(
                is_valid=False,
                error="Withdrawal details are required when withdrawing a grievance",
                requires_form="withdrawal",
            )
        if status == GrievanceStatus.SETTLED and _blank(form_data.settlement_details):
            return ValidationResult(
                is_valid=False,
                error="Settlement details are required when settling a grievance",
                requires_form="settlement",
            )
        if (
            status == GrievanceStatus.ACTIVE
            and form_data.remaining_issues is not None
            and _blank(form_data.remaining_issues)
        ):
            return ValidationResult(
                is_valid=False,
                error="Remaining issues are required when moving back to active",
                requires_form="remainingIssues",
            )
        return ValidationResult(is_valid=True)

    async def update_status(
        self,
        grievance_id: UUID,
        status: GrievanceStatus,
        actor_id: UUID,
        stage: GrievanceStage | None = None,
        outcomes: str | None = None,
        resolution_details: dict[str, Any] | None = None,
    ) -> Grievance:
        """
        Generic transition primitive.

        Persists the new status (and stage, outcomes, resolution details where
        allowed) and logs STATUS_CHANGED from the previous status.
        """
        status = GrievanceStatus(status)

        async def work(session: AsyncSession) -> Grievance:
            grievance = await self._get_grievance_or_raise(session, grievance_id, for_update=True)
            await self._apply_status(
                session, grievance, status, actor_id, stage, outcomes, resolution_details
            )
            await session.flush()
            return grievance

        return await self._run("update grievance status", work)

    async def process_withdrawal(
        self,
        grievance_id: UUID,
        details: str,
        actor_id: UUID,
    ) -> Grievance:
        """Withdraw a grievance, freezing it where it stands."""
        return await self._process_resolution(
            grievance_id,
            GrievanceStatus.WITHDRAWN,
            GrievanceEventType.GRIEVANCE_WITHDRAWN,
            details,
            TransitionFormData(withdrawal_details=details),
            actor_id,
        )

    async def process_settlement(
        self,
        grievance_id: UUID,
        details: str,
        actor_id: UUID,
    ) -> Grievance:
        """Settle a grievance, freezing it where it stands."""
        return await self._process_resolution(
            grievance_id,
            GrievanceStatus.SETTLED,
            GrievanceEventType.GRIEVANCE_SETTLED,
            details,
            TransitionFormData(settlement_details=details),
            actor_id,
        )

    async def process_remaining_issues(
        self,
        grievance_id: UUID,
        new_state: TransitionRequest,
        remaining_issues: str,
        actor_id: UUID,
    ) -> Grievance:
        """Reopen (or restage) a grievance because issues remain unresolved."""
        if _blank(remaining_issues):
            raise ValidationError("Remaining issues are required")
        validation = await self.validate_status_transition(
            grievance_id, new_state, TransitionFormData(remaining_issues=remaining_issues)
        )
        if not validation.is_valid:
            raise ValidationError(validation.error or "Invalid status transition")

        return await self.update_status(
            grievance_id,
            new_state.status,
            actor_id,
            stage=new_state.stage,
            outcomes=remaining_issues.strip(),
        )

    async def delete_grievance(
        self,
        grievance_id: UUID,
        reason: str,
        actor_id: UUID,
    ) -> Grievance:
        """Soft-delete a grievance, remembering its status for restore."""
        if _blank(reason):
            raise ValidationError("A reason is required to delete a grievance")
        return await self.update_status(
            grievance_id, GrievanceStatus.DELETED, actor_id, outcomes=reason.strip()
        )

    async def restore_grievance(self, grievance_id: UUID, actor_id: UUID) -> Grievance:
        """Undo a delete, returning the grievance to its prior status."""

        async def work(session: AsyncSession) -> Grievance:
            grievance = await self._get_grievance_or_raise(session, grievance_id, for_update=True)
            if grievance.status != GrievanceStatus.DELETED:
                raise InvalidTransitionError(f"Grievance {grievance_id} is not deleted")

            restored = grievance.status_before_delete or GrievanceStatus.ACTIVE
            grievance.status = restored
            grievance.status_before_delete = None
            grievance.deletion_reason = None
            grievance.last_updated_by = actor_id
            grievance.updated_at = self._clock()

            await EventLog(session, self.organization_id).append(
                grievance,
                GrievanceEventType.STATUS_CHANGED,
                GrievanceStatus.DELETED.value,
                restored.value,
                actor_id,
            )
            await session.flush()
            logger.info(f"Restored grievance {grievance.id} to {restored.value}")
            return grievance

        return await self._run("restore grievance", work)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_grievance(self, grievance_id: UUID) -> Grievance:
        async with read_session(self._session_factory) as session:
            return await self._get_grievance_or_raise(session, grievance_id)

    async def list_step_outcomes(self, grievance_id: UUID) -> Sequence[GrievanceStepOutcome]:
        """Recorded step outcomes, oldest step first."""
        async with read_session(self._session_factory) as session:
            await self._get_grievance_or_raise(session, grievance_id)
            result = await session.execute(
                select(GrievanceStepOutcome)
                .where(GrievanceStepOutcome.grievance_id == grievance_id)
                .order_by(
                    GrievanceStepOutcome.step_number,
                    GrievanceStepOutcome.completed_date,
                )
            )
            return result.scalars().all()

    async def get_current_step_deadline(self, grievance_id: UUID) -> StepDeadlineInfo:
        """
        Deadline status of the step the grievance is currently on.

        The step starts when the previous step's latest outcome was recorded,
        or when the grievance was created if it is still on its first step.
        """
        async with read_session(self._session_factory) as session:
            grievance = await self._get_grievance_or_raise(session, grievance_id)
            step_number = grievance.current_step_number
            info = StepDeadlineInfo(
                grievance_id=grievance.id,
                step_number=step_number,
                stage=grievance.current_stage,
                has_template=False,
            )
            if step_number is None:
                return info

            catalog = TemplateCatalog(session, self.organization_id)
            template = await catalog.get_template(
                grievance.agreement_id, grievance.grievance_type, step_number
            )
            if not template:
                return info

            previous_completed = (
                await session.execute(
                    select(func.max(GrievanceStepOutcome.completed_date)).where(
                        GrievanceStepOutcome.grievance_id == grievance.id,
                        GrievanceStepOutcome.step_number == step_number - 1,
                    )
                )
            ).scalar_one_or_none()

        started = previous_completed or grievance.created_at
        due_on = compute_due_date(started, template.time_limit_days, template.is_calendar_days)
        info.has_template = True
        info.step_name = template.name
        info.time_limit_days = template.time_limit_days
        info.is_calendar_days = template.is_calendar_days
        info.started_on = to_utc_date(started)
        info.due_on = due_on

        if grievance.is_active:
            now = self._clock()
            info.elapsed_days = elapsed_days(started, now, template.is_calendar_days)
            info.days_remaining = elapsed_days(now, due_on, template.is_calendar_days)
            info.is_overdue = info.elapsed_days > template.time_limit_days
        return info

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    async def _process_resolution(
        self,
        grievance_id: UUID,
        status: GrievanceStatus,
        event_type: GrievanceEventType,
        details: str,
        form_data: TransitionFormData,
        actor_id: UUID,
    ) -> Grievance:
        """Shared flow of withdrawal and settlement."""
        if _blank(details):
            raise ValidationError(f"{RESOLUTION_LABELS[status]} details are required")
        validation = await self.validate_status_transition(
            grievance_id, TransitionRequest(status=status), form_data
        )
        if not validation.is_valid:
            raise ValidationError(validation.error or f"Invalid {status.value} transition")
        details = details.strip()

        async def work(session: AsyncSession) -> Grievance:
            grievance = await self._get_grievance_or_raise(session, grievance_id, for_update=True)
            resolution_details = {
                "resolutionType": status.value,
                "resolutionDate": self._clock().isoformat(),
                "resolvedBy": str(actor_id),
                "details": details,
                "outcomes": details,
            }
            previous_status = await self._apply_status(
                session, grievance, status, actor_id,
                outcomes=details, resolution_details=resolution_details,
            )
            await EventLog(session, self.organization_id).append(
                grievance, event_type, previous_status.value, details, actor_id
            )
            await session.flush()
            return grievance

        return await self._run(f"process {status.value.lower()}", work)

    async def _apply_status(
        self,
        session: AsyncSession,
        grievance: Grievance,
        status: GrievanceStatus,
        actor_id: UUID,
        stage: GrievanceStage | None = None,
        outcomes: str | None = None,
        resolution_details: dict[str, Any] | None = None,
    ) -> GrievanceStatus:
        """Mutate the loaded grievance and log STATUS_CHANGED; returns the old status."""
        previous_status = grievance.status

        if previous_status == GrievanceStatus.DELETED and status != GrievanceStatus.DELETED:
            raise InvalidTransitionError(
                f"Grievance {grievance.id} is deleted; restore it before changing its status"
            )

        if status.is_terminal and status != previous_status:
            justification = outcomes or (resolution_details or {}).get("details")
            if _blank(justification):
                raise ValidationError(
                    f"Moving a grievance to {status.value} requires justification text"
                )

        if status.is_terminal:
            if stage is not None and GrievanceStage(stage) != grievance.current_stage:
                logger.warning(
                    f"Ignoring stage {GrievanceStage(stage).value} for grievance {grievance.id}: "
                    f"stage is frozen once the grievance is {status.value}"
                )
        else:
            if stage is not None:
                grievance.current_stage = GrievanceStage(stage)
            if grievance.current_step_number is None:
                grievance.current_step_number = 1

        if status == GrievanceStatus.DELETED:
            if previous_status != GrievanceStatus.DELETED:
                grievance.status_before_delete = previous_status
            if outcomes is not None:
                grievance.deletion_reason = outcomes
        else:
            if outcomes is not None:
                grievance.outcomes = outcomes
            if resolution_details is not None:
                grievance.resolution_details = resolution_details

        grievance.status = status
        grievance.last_updated_by = actor_id
        grievance.updated_at = self._clock()

        await EventLog(session, self.organization_id).append(
            grievance,
            GrievanceEventType.STATUS_CHANGED,
            previous_status.value,
            status.value,
            actor_id,
        )
        logger.info(
            f"Grievance {grievance.id} status {previous_status.value} -> {status.value}"
        )
        return previous_status

    async def _get_next_grievance_number(self, session: AsyncSession) -> int:
        """Get the next grievance number for the organization."""
        result = await session.execute(
            select(func.coalesce(func.max(Grievance.grievance_number), 0) + 1).where(
                Grievance.organization_id == self.organization_id
            )
        )
        return result.scalar_one()

    async def _get_grievance_or_raise(
        self,
        session: AsyncSession,
        grievance_id: UUID,
        for_update: bool = False,
    ) -> Grievance:
        """Get a grievance of this organization or raise GrievanceNotFoundError."""
        query = select(Grievance).where(
            Grievance.id == grievance_id,
            Grievance.organization_id == self.organization_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        grievance = result.scalar_one_or_none()

        if not grievance:
            raise GrievanceNotFoundError(f"Grievance {grievance_id} not found")

        return grievance

"""SQLAlchemy ORM Models for the grievance engine."""

from datetime import date, datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UTCDateTime, UUIDMixin, utcnow


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# ENUMS
# =============================================================================


class GrievanceType(str, PyEnum):
    INDIVIDUAL = "INDIVIDUAL"
    GROUP = "GROUP"
    POLICY = "POLICY"


class GrievanceStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    SETTLED = "SETTLED"
    WITHDRAWN = "WITHDRAWN"
    RESOLVED_ARBITRATION = "RESOLVED_ARBITRATION"
    DELETED = "DELETED"

    @property
    def is_terminal(self) -> bool:
        return self is not GrievanceStatus.ACTIVE


class GrievanceStage(str, PyEnum):
    INFORMAL = "INFORMAL"
    FORMAL = "FORMAL"
    ARBITRATION = "ARBITRATION"

    @property
    def order(self) -> int:
        return STAGE_ORDER[self]


STAGE_ORDER = {
    GrievanceStage.INFORMAL: 0,
    GrievanceStage.FORMAL: 1,
    GrievanceStage.ARBITRATION: 2,
}


class StepInstanceStatus(str, PyEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class GrievanceEventType(str, PyEnum):
    CREATED = "CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    STEP_COMPLETED = "STEP_COMPLETED"
    CATEGORY_CHANGED = "CATEGORY_CHANGED"
    AGREEMENT_CHANGED = "AGREEMENT_CHANGED"
    EVIDENCE_ADDED = "EVIDENCE_ADDED"
    EVIDENCE_REMOVED = "EVIDENCE_REMOVED"
    COST_UPDATED = "COST_UPDATED"
    STATEMENT_UPDATED = "STATEMENT_UPDATED"
    ASSIGNEE_CHANGED = "ASSIGNEE_CHANGED"
    TIMELINE_ENTRY_ADDED = "TIMELINE_ENTRY_ADDED"
    GRIEVANCE_WITHDRAWN = "GRIEVANCE_WITHDRAWN"
    GRIEVANCE_SETTLED = "GRIEVANCE_SETTLED"


# Shared column types; one database enum per name
GRIEVANCE_TYPE_ENUM = _enum(GrievanceType, "grievance_type")
GRIEVANCE_STATUS_ENUM = _enum(GrievanceStatus, "grievance_status")
GRIEVANCE_STAGE_ENUM = _enum(GrievanceStage, "grievance_stage")


# =============================================================================
# ORGANIZATION & AGREEMENT CATALOG
# =============================================================================


class Organization(Base, UUIDMixin, TimestampMixin):
    """Tenant. Every other row hangs off exactly one organization."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)


class BargainingUnit(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "bargaining_units"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        Index("idx_bargaining_units_org", "organization_id"),
    )


class Agreement(Base, UUIDMixin, TimestampMixin):
    """Collective agreement. Owned by the agreement catalog; read-only here."""

    __tablename__ = "agreements"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    bargaining_unit_id: Mapped[UUID] = mapped_column(
        ForeignKey("bargaining_units.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    bargaining_unit: Mapped["BargainingUnit"] = relationship()

    __table_args__ = (
        Index("idx_agreements_org", "organization_id"),
    )


class AgreementStepTemplate(Base, UUIDMixin, TimestampMixin):
    """
    One procedural step of an agreement's grievance procedure.

    Templates for an (agreement, grievance type) pair are always saved as a
    full set, ordered by stage then step number and renumbered from 1.
    """

    __tablename__ = "agreement_step_templates"

    agreement_id: Mapped[UUID] = mapped_column(
        ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False
    )
    grievance_type: Mapped[GrievanceType] = mapped_column(
        GRIEVANCE_TYPE_ENUM, nullable=False
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[GrievanceStage] = mapped_column(
        GRIEVANCE_STAGE_ENUM, nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    time_limit: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    time_limit_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_calendar_days: Mapped[bool] = mapped_column(nullable=False, default=True)
    required_participants: Mapped[list] = mapped_column(nullable=False, default=list)
    required_documents: Mapped[list] = mapped_column(nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text)

    agreement: Mapped["Agreement"] = relationship()

    __table_args__ = (
        UniqueConstraint(
            "agreement_id", "grievance_type", "step_number",
            name="uq_step_template_agreement_type_step",
        ),
        CheckConstraint("time_limit_days >= 0", name="time_limit_non_negative"),
        CheckConstraint("step_number >= 1", name="step_number_positive"),
    )


# =============================================================================
# GRIEVANCE MODELS
# =============================================================================


class Grievance(Base, UUIDMixin, TimestampMixin):
    """
    A labor grievance and its position in the step procedure.

    ``version`` is the optimistic lock: every UPDATE is conditioned on the
    version the session read, so two concurrent transitions cannot both win.
    """

    __tablename__ = "grievances"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    bargaining_unit_id: Mapped[UUID] = mapped_column(
        ForeignKey("bargaining_units.id"), nullable=False
    )
    agreement_id: Mapped[UUID] = mapped_column(
        ForeignKey("agreements.id"), nullable=False
    )
    grievance_number: Mapped[int] = mapped_column(Integer, nullable=False)
    grievance_type: Mapped[GrievanceType] = mapped_column(
        GRIEVANCE_TYPE_ENUM, nullable=False
    )
    status: Mapped[GrievanceStatus] = mapped_column(
        GRIEVANCE_STATUS_ENUM,
        default=GrievanceStatus.ACTIVE,
        nullable=False,
    )
    current_stage: Mapped[GrievanceStage] = mapped_column(
        GRIEVANCE_STAGE_ENUM, nullable=False
    )
    current_step_number: Mapped[int | None] = mapped_column(Integer)
    filed_at: Mapped[datetime] = mapped_column(nullable=False)
    outcomes: Mapped[str | None] = mapped_column(Text)
    resolution_details: Mapped[dict | None] = mapped_column()
    deletion_reason: Mapped[str | None] = mapped_column(Text)
    # Status to return to when a DELETED grievance is restored
    status_before_delete: Mapped[GrievanceStatus | None] = mapped_column(
        GRIEVANCE_STATUS_ENUM
    )
    created_by: Mapped[UUID] = mapped_column(nullable=False)
    last_updated_by: Mapped[UUID | None] = mapped_column()
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    bargaining_unit: Mapped["BargainingUnit"] = relationship()
    agreement: Mapped["Agreement"] = relationship()

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("organization_id", "grievance_number", name="uq_grievance_org_number"),
        CheckConstraint(
            "current_step_number IS NULL OR current_step_number >= 1",
            name="current_step_positive",
        ),
        Index("idx_grievances_org_status", "organization_id", "status"),
        Index("idx_grievances_org_created", "organization_id", "created_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == GrievanceStatus.ACTIVE


class GrievanceStepInstance(Base, UUIDMixin):
    """A scheduled step with its computed due date."""

    __tablename__ = "grievance_step_instances"

    grievance_id: Mapped[UUID] = mapped_column(
        ForeignKey("grievances.id", ondelete="CASCADE"), nullable=False
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[GrievanceStage] = mapped_column(
        GRIEVANCE_STAGE_ENUM, nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)
    completed_date: Mapped[datetime | None] = mapped_column()
    status: Mapped[StepInstanceStatus] = mapped_column(
        _enum(StepInstanceStatus, "step_instance_status"),
        default=StepInstanceStatus.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("grievance_id", "step_number", name="uq_step_instance_grievance_step"),
    )


class GrievanceStepOutcome(Base, UUIDMixin):
    """
    Recorded result of a completed step.

    Not unique on (grievance_id, step_number): retried writes in older data
    left duplicates behind, and readers keep only the latest completed_date.
    """

    __tablename__ = "grievance_step_outcomes"

    grievance_id: Mapped[UUID] = mapped_column(
        ForeignKey("grievances.id", ondelete="CASCADE"), nullable=False
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[GrievanceStage] = mapped_column(
        GRIEVANCE_STAGE_ENUM, nullable=False
    )
    outcome: Mapped[str] = mapped_column(Text, nullable=False)
    completed_date: Mapped[datetime] = mapped_column(nullable=False)
    recorded_by: Mapped[UUID] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_step_outcomes_grievance_step", "grievance_id", "step_number"),
    )


class GrievanceEvent(Base, UUIDMixin):
    """Append-only audit trail of grievance mutations."""

    __tablename__ = "grievance_events"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    grievance_id: Mapped[UUID] = mapped_column(
        ForeignKey("grievances.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[GrievanceEventType] = mapped_column(
        _enum(GrievanceEventType, "grievance_event_type"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    previous_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_grievance_events_org_time", "organization_id", "created_at"),
        Index("idx_grievance_events_grievance", "grievance_id", "created_at"),
        Index("idx_grievance_events_type", "event_type", "created_at"),
    )


@event.listens_for(GrievanceEvent, "before_update")
@event.listens_for(GrievanceEvent, "before_delete")
def _reject_event_mutation(mapper, connection, target: GrievanceEvent) -> None:
    raise ValueError(f"Grievance events are append-only (event {target.id})")

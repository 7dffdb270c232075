"""
Duration Analytics Engine: actual vs. expected step durations.

This module rebuilds each grievance's step timeline from its recorded step
outcomes and compares every step with its agreement template.

Key responsibilities:
1. Measure completed steps (deduplicated outcomes) and steps still in flight
2. Aggregate durations per bargaining unit and step
3. List in-flight steps that are already past their time limit
4. Break down resolved grievances by resolution type and step
5. Report template coverage gaps so incomplete agreements can be fixed

Everything here is read-only. "Now" is read from the clock once per call.
Storage failures never propagate: each report logs the error and returns an
empty result so dashboards stay up.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    AgreementStepTemplate,
    BargainingUnit,
    Grievance,
    GrievanceStage,
    GrievanceStatus,
    GrievanceStepOutcome,
    GrievanceType,
    utcnow,
)
from .deadlines import compute_due_date, elapsed_days, to_utc_date
from .template_catalog import TemplateCatalog


logger = logging.getLogger(__name__)

UNKNOWN_UNIT = "Unknown"
COMPLETED_STATUSES = (GrievanceStatus.SETTLED, GrievanceStatus.RESOLVED_ARBITRATION)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class DateRange:
    """Inclusive range on grievance creation time."""
    start: datetime
    end: datetime


@dataclass
class StepDurationRecord:
    """One step of one grievance, measured against its template."""
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
    end_date: date | None  # None while the step is still in progress
    due_date: date
    duration_days: int
    expected_duration_days: int
    is_calendar_days: bool
    is_overdue: bool
    overdue_by_days: int

    @property
    def in_progress(self) -> bool:
        return self.end_date is None


@dataclass
class StepStats:
    """Aggregates for one step within one bargaining unit."""
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
    settled_count: int = 0
    withdrawn_count: int = 0

    @property
    def resolved_count(self) -> int:
        return self.settled_count + self.withdrawn_count


@dataclass
class BargainingUnitStepReport:
    bargaining_unit_id: UUID | None
    bargaining_unit_name: str
    total_grievances: int
    steps: list[StepStats] = field(default_factory=list)


@dataclass
class OverdueEntry:
    grievance_id: UUID
    grievance_number: int
    step_number: int
    stage: GrievanceStage
    start_date: date
    due_date: date
    overdue_by_days: int
    expected_duration_days: int
    actual_duration_days: int


@dataclass
class StepResolutionCount:
    step_number: int | None
    count: int
    percentage: float


@dataclass
class ResolutionBreakdown:
    total_resolved: int = 0
    settled_count: int = 0
    settled_percentage: float = 0.0
    withdrawn_count: int = 0
    withdrawn_percentage: float = 0.0
    resolved_arbitration_count: int = 0
    resolved_arbitration_percentage: float = 0.0
    settled_by_step: list[StepResolutionCount] = field(default_factory=list)
    withdrawn_by_step: list[StepResolutionCount] = field(default_factory=list)


@dataclass
class TemplateCoverageGap:
    """A step some grievances reached that their agreement has no template for."""
    agreement_id: UUID
    grievance_type: GrievanceType
    step_number: int
    grievance_count: int


@dataclass
class VolumePoint:
    month: str  # YYYY-MM
    count: int


@dataclass
class ResolutionTimeSummary:
    """How long completed grievances and their completed steps took."""
    resolved_count: int = 0
    average_resolution_days: float = 0.0
    fastest_resolution_days: int = 0
    completed_steps: int = 0
    steps_over_limit: int = 0
    on_time_percentage: float = 0.0


@dataclass
class _Timeline:
    """Intermediate result of one pass over the grievance history."""
    records: list[StepDurationRecord]
    gaps: list[TemplateCoverageGap]
    grievances: list[tuple[Grievance, str]]


# =============================================================================
# HELPERS
# =============================================================================


def percentage(part: int, whole: int) -> float:
    """Share of ``whole`` in percent, rounded half-up to one decimal."""
    if whole <= 0:
        return 0.0
    value = Decimal(part * 100) / Decimal(whole)
    return float(value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def step_label(step_number: int, step_name: str) -> str:
    if step_name == f"Step {step_number}":
        return step_name
    return f"Step {step_number}: {step_name}"


def latest_outcomes(
    outcomes: list[GrievanceStepOutcome],
) -> dict[tuple[UUID, int], GrievanceStepOutcome]:
    """Keep only the most recent outcome per (grievance, step)."""
    latest: dict[tuple[UUID, int], GrievanceStepOutcome] = {}
    for outcome in outcomes:
        key = (outcome.grievance_id, outcome.step_number)
        current = latest.get(key)
        if current is None or outcome.completed_date > current.completed_date:
            latest[key] = outcome
    return latest


# =============================================================================
# DURATION ANALYTICS ENGINE
# =============================================================================


class DurationAnalyticsEngine:
    """Read-only step duration reporting for one organization."""

    def __init__(
        self,
        session: AsyncSession,
        organization_id: UUID,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.organization_id = organization_id
        self._clock = clock

    # =========================================================================
    # STEP DURATIONS
    # =========================================================================

    async def calculate_step_durations(
        self,
        date_range: DateRange | None = None,
        grievance_type: GrievanceType | None = None,
    ) -> list[StepDurationRecord]:
        """
        Completed and in-flight step durations.

        Steps without a template are left out (and reported as coverage gaps).
        """
        try:
            timeline = await self._build_timeline(date_range, grievance_type)
        except SQLAlchemyError:
            logger.exception("Step duration calculation failed; returning no records")
            return []
        return timeline.records

    async def get_template_coverage_gaps(
        self,
        date_range: DateRange | None = None,
        grievance_type: GrievanceType | None = None,
    ) -> list[TemplateCoverageGap]:
        try:
            timeline = await self._build_timeline(date_range, grievance_type)
        except SQLAlchemyError:
            logger.exception("Template coverage check failed; returning no gaps")
            return []
        return timeline.gaps

    # =========================================================================
    # BARGAINING UNIT REPORT
    # =========================================================================

    async def generate_bargaining_unit_step_report(
        self,
        date_range: DateRange | None = None,
        grievance_type: GrievanceType | None = None,
    ) -> list[BargainingUnitStepReport]:
        """Per unit and step: volume, duration spread, timeliness and resolutions."""
        try:
            timeline = await self._build_timeline(date_range, grievance_type)
        except SQLAlchemyError:
            logger.exception("Bargaining unit step report failed; returning empty report")
            return []

        # unit name -> (step number, step name) -> records
        grouped: dict[str, dict[tuple[int, str], list[StepDurationRecord]]] = defaultdict(
            lambda: defaultdict(list)
        )
        unit_ids: dict[str, UUID] = {}
        for record in timeline.records:
            grouped[record.bargaining_unit_name][(record.step_number, record.step_name)].append(record)
            unit_ids.setdefault(record.bargaining_unit_name, record.bargaining_unit_id)

        # Grievances that ended at a step, counted from the grievances themselves
        resolved_at: dict[tuple[str, int], dict[GrievanceStatus, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        for grievance, unit_name in timeline.grievances:
            if grievance.status in (GrievanceStatus.SETTLED, GrievanceStatus.WITHDRAWN):
                if grievance.current_step_number is not None:
                    resolved_at[(unit_name, grievance.current_step_number)][grievance.status] += 1

        reports = []
        for unit_name in sorted(grouped):
            steps = grouped[unit_name]
            grievance_ids = {r.grievance_id for records in steps.values() for r in records}
            report = BargainingUnitStepReport(
                bargaining_unit_id=unit_ids.get(unit_name),
                bargaining_unit_name=unit_name,
                total_grievances=len(grievance_ids),
            )
            for step_number, step_name in sorted(steps):
                records = steps[(step_number, step_name)]
                durations = [r.duration_days for r in records]
                total = len(records)
                overdue = sum(1 for r in records if r.is_overdue)
                on_time = total - overdue
                ended = resolved_at.get((unit_name, step_number), {})
                average = Decimal(sum(durations)) / Decimal(total)
                report.steps.append(
                    StepStats(
                        step_number=step_number,
                        step_name=step_name,
                        label=step_label(step_number, step_name),
                        total_count=total,
                        average_duration=float(
                            average.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
                        ),
                        expected_duration_days=max(r.expected_duration_days for r in records),
                        min_duration=min(durations),
                        max_duration=max(durations),
                        overdue_count=overdue,
                        overdue_percentage=percentage(overdue, total),
                        on_time_count=on_time,
                        on_time_percentage=percentage(on_time, total),
                        settled_count=ended.get(GrievanceStatus.SETTLED, 0),
                        withdrawn_count=ended.get(GrievanceStatus.WITHDRAWN, 0),
                    )
                )
            reports.append(report)
        return reports

    # =========================================================================
    # OVERDUE GRIEVANCES
    # =========================================================================

    async def get_overdue_grievances_by_step(self) -> dict[str, dict[str, list[OverdueEntry]]]:
        """In-flight steps past their limit, by unit then step, worst first."""
        try:
            timeline = await self._build_timeline(None, None)
        except SQLAlchemyError:
            logger.exception("Overdue grievance lookup failed; returning no entries")
            return {}

        overdue: dict[str, dict[str, list[OverdueEntry]]] = {}
        records = sorted(
            (r for r in timeline.records if r.in_progress and r.is_overdue),
            key=lambda r: (r.bargaining_unit_name, r.step_number, -r.overdue_by_days, r.grievance_number),
        )
        for record in records:
            by_step = overdue.setdefault(record.bargaining_unit_name, {})
            by_step.setdefault(step_label(record.step_number, record.step_name), []).append(
                OverdueEntry(
                    grievance_id=record.grievance_id,
                    grievance_number=record.grievance_number,
                    step_number=record.step_number,
                    stage=record.stage,
                    start_date=record.start_date,
                    due_date=record.due_date,
                    overdue_by_days=record.overdue_by_days,
                    expected_duration_days=record.expected_duration_days,
                    actual_duration_days=record.duration_days,
                )
            )
        return overdue

    # =========================================================================
    # RESOLUTION BREAKDOWN
    # =========================================================================

    async def get_resolution_breakdown(
        self,
        date_range: DateRange | None = None,
        grievance_type: GrievanceType | None = None,
    ) -> ResolutionBreakdown:
        """
        How non-active grievances ended, and at which step.

        Every grievance that has left ACTIVE counts toward the total, DELETED
        ones included, so the three resolution percentages need not add up to 100.
        """
        try:
            result = await self.session.execute(
                select(Grievance.status, Grievance.current_step_number).where(
                    *self._grievance_filters(date_range, grievance_type),
                    Grievance.status != GrievanceStatus.ACTIVE,
                )
            )
            rows = result.all()
        except SQLAlchemyError:
            logger.exception("Resolution breakdown failed; returning empty breakdown")
            return ResolutionBreakdown()

        counts: dict[GrievanceStatus, int] = defaultdict(int)
        by_step: dict[GrievanceStatus, dict[int | None, int]] = defaultdict(lambda: defaultdict(int))
        for status, step_number in rows:
            status = GrievanceStatus(status)
            counts[status] += 1
            by_step[status][step_number] += 1

        total = len(rows)

        def step_breakdown(status: GrievanceStatus) -> list[StepResolutionCount]:
            steps = by_step.get(status, {})
            return [
                StepResolutionCount(
                    step_number=step_number,
                    count=count,
                    percentage=percentage(count, counts[status]),
                )
                for step_number, count in sorted(
                    steps.items(), key=lambda item: (item[0] is None, item[0] or 0)
                )
            ]

        return ResolutionBreakdown(
            total_resolved=total,
            settled_count=counts[GrievanceStatus.SETTLED],
            settled_percentage=percentage(counts[GrievanceStatus.SETTLED], total),
            withdrawn_count=counts[GrievanceStatus.WITHDRAWN],
            withdrawn_percentage=percentage(counts[GrievanceStatus.WITHDRAWN], total),
            resolved_arbitration_count=counts[GrievanceStatus.RESOLVED_ARBITRATION],
            resolved_arbitration_percentage=percentage(
                counts[GrievanceStatus.RESOLVED_ARBITRATION], total
            ),
            settled_by_step=step_breakdown(GrievanceStatus.SETTLED),
            withdrawn_by_step=step_breakdown(GrievanceStatus.WITHDRAWN),
        )

    # =========================================================================
    # VOLUME TRENDS
    # =========================================================================

    async def get_volume_trends(self, months: int = 12) -> list[VolumePoint]:
        """Grievances created per calendar month, oldest first, zero-filled."""
        now = self._clock().astimezone(timezone.utc)
        month_keys = []
        year, month = now.year, now.month
        for _ in range(max(months, 1)):
            month_keys.append(f"{year:04d}-{month:02d}")
            month -= 1
            if month == 0:
                year, month = year - 1, 12
        month_keys.reverse()
        first_year, first_month = (int(part) for part in month_keys[0].split("-"))
        window_start = datetime(first_year, first_month, 1, tzinfo=timezone.utc)

        try:
            result = await self.session.execute(
                select(Grievance.created_at).where(
                    *self._grievance_filters(None, None),
                    Grievance.created_at >= window_start,
                )
            )
            created = result.scalars().all()
        except SQLAlchemyError:
            logger.exception("Volume trend query failed; returning empty series")
            return []

        counts: dict[str, int] = dict.fromkeys(month_keys, 0)
        for created_at in created:
            key = to_utc_date(created_at).strftime("%Y-%m")
            if key in counts:
                counts[key] += 1
        return [VolumePoint(month=key, count=counts[key]) for key in month_keys]

    # =========================================================================
    # RESOLUTION TIMES
    # =========================================================================

    async def get_resolution_times(
        self,
        date_range: DateRange | None = None,
        grievance_type: GrievanceType | None = None,
    ) -> ResolutionTimeSummary:
        """
        Overall resolution speed.

        A grievance's resolution time runs in calendar days from creation to its
        last status change; only SETTLED and RESOLVED_ARBITRATION count. Step
        timeliness covers completed steps that have a template.
        """
        try:
            timeline = await self._build_timeline(date_range, grievance_type)
        except SQLAlchemyError:
            logger.exception("Resolution time analysis failed; returning empty summary")
            return ResolutionTimeSummary()

        resolution_days = [
            elapsed_days(g.created_at, g.updated_at or g.created_at, True)
            for g, _ in timeline.grievances
            if g.status in COMPLETED_STATUSES
        ]
        completed = [r for r in timeline.records if not r.in_progress]
        over_limit = sum(1 for r in completed if r.is_overdue)

        summary = ResolutionTimeSummary(
            resolved_count=len(resolution_days),
            completed_steps=len(completed),
            steps_over_limit=over_limit,
            on_time_percentage=percentage(len(completed) - over_limit, len(completed)),
        )
        if resolution_days:
            average = Decimal(sum(resolution_days)) / Decimal(len(resolution_days))
            summary.average_resolution_days = float(
                average.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
            )
            summary.fastest_resolution_days = min(resolution_days)
        return summary

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    def _grievance_filters(
        self,
        date_range: DateRange | None,
        grievance_type: GrievanceType | None,
    ) -> list[Any]:
        filters = [Grievance.organization_id == self.organization_id]
        if date_range is not None:
            filters.append(Grievance.created_at >= date_range.start)
            filters.append(Grievance.created_at <= date_range.end)
        if grievance_type is not None:
            filters.append(Grievance.grievance_type == GrievanceType(grievance_type))
        return filters

    async def _build_timeline(
        self,
        date_range: DateRange | None,
        grievance_type: GrievanceType | None,
    ) -> _Timeline:
        """
        One pass over the matching grievances.

        Flow:
        1. Load grievances (with unit names) and their step outcomes
        2. Deduplicate outcomes per (grievance, step), latest completion wins
        3. Measure each surviving outcome against its template
        4. Add an in-progress record for each ACTIVE grievance's current step
        5. Collect (agreement, type, step) combinations lacking a template
        """
        now = self._clock()
        filters = self._grievance_filters(date_range, grievance_type)

        grievance_rows = (
            await self.session.execute(
                select(Grievance, BargainingUnit.name)
                .outerjoin(BargainingUnit, Grievance.bargaining_unit_id == BargainingUnit.id)
                .where(*filters)
                .order_by(Grievance.grievance_number)
            )
        ).all()
        grievances = [(g, unit_name or UNKNOWN_UNIT) for g, unit_name in grievance_rows]
        by_id = {g.id: (g, unit_name) for g, unit_name in grievances}

        outcome_rows = (
            await self.session.execute(
                select(GrievanceStepOutcome)
                .join(Grievance, GrievanceStepOutcome.grievance_id == Grievance.id)
                .where(*filters)
            )
        ).scalars().all()
        latest = latest_outcomes(list(outcome_rows))

        catalog = TemplateCatalog(self.session, self.organization_id)
        templates = await catalog.get_templates_by_key({g.agreement_id for g, _ in grievances})

        records: list[StepDurationRecord] = []
        missing: dict[tuple[UUID, GrievanceType, int], set[UUID]] = defaultdict(set)

        def measure(
            grievance: Grievance,
            unit_name: str,
            step_number: int,
            stage: GrievanceStage,
            end: datetime | None,
        ) -> None:
            key = (grievance.agreement_id, grievance.grievance_type, step_number)
            template: AgreementStepTemplate | None = templates.get(key)
            if template is None:
                missing[key].add(grievance.id)
                return
            previous = latest.get((grievance.id, step_number - 1))
            start = previous.completed_date if previous else grievance.created_at
            duration = elapsed_days(start, end or now, template.is_calendar_days)
            records.append(
                StepDurationRecord(
                    grievance_id=grievance.id,
                    grievance_number=grievance.grievance_number,
                    bargaining_unit_id=grievance.bargaining_unit_id,
                    bargaining_unit_name=unit_name,
                    agreement_id=grievance.agreement_id,
                    grievance_type=grievance.grievance_type,
                    status=grievance.status,
                    step_number=step_number,
                    step_name=template.name,
                    stage=stage,
                    start_date=to_utc_date(start),
                    end_date=to_utc_date(end) if end else None,
                    due_date=compute_due_date(
                        start, template.time_limit_days, template.is_calendar_days
                    ),
                    duration_days=duration,
                    expected_duration_days=template.time_limit_days,
                    is_calendar_days=template.is_calendar_days,
                    is_overdue=duration > template.time_limit_days,
                    overdue_by_days=max(0, duration - template.time_limit_days),
                )
            )

        for (grievance_id, step_number), outcome in sorted(
            latest.items(), key=lambda item: (by_id[item[0][0]][0].grievance_number, item[0][1])
        ):
            grievance, unit_name = by_id[grievance_id]
            measure(grievance, unit_name, step_number, outcome.stage, outcome.completed_date)

        for grievance, unit_name in grievances:
            if grievance.status == GrievanceStatus.ACTIVE and grievance.current_step_number is not None:
                measure(
                    grievance, unit_name, grievance.current_step_number,
                    grievance.current_stage, None,
                )

        gaps = [
            TemplateCoverageGap(
                agreement_id=agreement_id,
                grievance_type=g_type,
                step_number=step_number,
                grievance_count=len(grievance_ids),
            )
            for (agreement_id, g_type, step_number), grievance_ids in sorted(
                missing.items(), key=lambda item: (str(item[0][0]), item[0][1].value, item[0][2])
            )
        ]
        for gap in gaps:
            logger.warning(
                f"No step template for step {gap.step_number} of agreement {gap.agreement_id} "
                f"({gap.grievance_type.value}); {gap.grievance_count} grievance(s) "
                "left out of duration analytics"
            )

        records.sort(key=lambda r: (r.bargaining_unit_name, r.grievance_number, r.step_number))
        return _Timeline(records=records, gaps=gaps, grievances=grievances)

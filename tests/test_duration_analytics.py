"""
Tests for the Duration Analytics Engine.

These tests verify:
1. Completed steps are measured against their template's time limit
2. In-flight steps past their limit show up as overdue
3. Steps without a template are skipped and reported as coverage gaps
4. Duplicate outcomes count once (latest completion wins)
5. Reports are deterministic and degrade to empty results on storage errors
"""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from grievance_engine.models import (
    GrievanceStage,
    GrievanceStatus,
    GrievanceStepOutcome,
    GrievanceType,
)
from grievance_engine.services.duration_analytics import (
    DateRange,
    DurationAnalyticsEngine,
    percentage,
)
from grievance_engine.services.template_catalog import StepTemplateInput


BUSINESS_10 = StepTemplateInput(
    step_number=1,
    stage=GrievanceStage.FORMAL,
    description="Step 1 meeting",
    time_limit_days=10,
    is_calendar_days=False,
)


@pytest.fixture
def analytics_for(session_factory, org_id, clock):
    """Run a report in a fresh read-only session."""

    async def run(method: str, *args, **kwargs):
        async with session_factory() as session:
            analytics = DurationAnalyticsEngine(session, org_id, clock=clock)
            return await getattr(analytics, method)(*args, **kwargs)

    return run


# =============================================================================
# TEST: STEP DURATIONS
# =============================================================================


class TestStepDurations:
    async def test_step_completed_on_due_date_is_on_time(
        self, engine, file_grievance, save_templates, agreement_id, clock, user_id, analytics_for
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        grievance = await file_grievance()
        clock.now = datetime(2024, 1, 15, 16, 0, tzinfo=timezone.utc)
        await engine.advance_to_next_step(grievance.id, "Denied", actor_id=user_id)

        records = await analytics_for("calculate_step_durations")

        assert len(records) == 1
        record = records[0]
        assert record.step_number == 1
        assert record.start_date == date(2024, 1, 1)
        assert record.end_date == date(2024, 1, 15)
        assert record.due_date == date(2024, 1, 15)
        assert record.duration_days == 10
        assert record.expected_duration_days == 10
        assert record.is_overdue is False
        assert record.overdue_by_days == 0
        assert record.bargaining_unit_name == "Transit Operators"

    async def test_step_in_flight_past_limit_is_overdue(
        self, file_grievance, save_templates, agreement_id, clock, analytics_for
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        grievance = await file_grievance()
        clock.advance(days=20)

        records = await analytics_for("calculate_step_durations")

        assert len(records) == 1
        record = records[0]
        assert record.grievance_id == grievance.id
        assert record.end_date is None
        assert record.in_progress is True
        assert record.duration_days == 14
        assert record.is_overdue is True
        assert record.overdue_by_days == 4

        overdue = await analytics_for("get_overdue_grievances_by_step")
        entries = overdue["Transit Operators"]["Step 1"]
        assert [e.grievance_id for e in entries] == [grievance.id]
        assert entries[0].overdue_by_days == 4
        assert entries[0].due_date == date(2024, 1, 15)

    async def test_missing_template_is_skipped(
        self, engine, file_grievance, save_templates, agreement_id, user_id, analytics_for
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        grievance = await file_grievance()
        # Step 2 has no template
        await engine.advance_to_next_step(grievance.id, "Denied", actor_id=user_id)

        records = await analytics_for("calculate_step_durations")
        gaps = await analytics_for("get_template_coverage_gaps")

        assert [r.step_number for r in records] == [1]
        assert len(gaps) == 1
        assert gaps[0].agreement_id == agreement_id
        assert gaps[0].grievance_type == GrievanceType.INDIVIDUAL
        assert gaps[0].step_number == 2
        assert gaps[0].grievance_count == 1

    async def test_latest_duplicate_outcome_wins(
        self, engine, file_grievance, save_templates, agreement_id, clock, user_id,
        session_factory, analytics_for,
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        grievance = await file_grievance()
        clock.now = datetime(2024, 1, 19, 12, 0, tzinfo=timezone.utc)
        await engine.advance_to_next_step(grievance.id, "Denied", actor_id=user_id)

        # An earlier duplicate left behind by a retried write
        async with session_factory() as session:
            session.add(
                GrievanceStepOutcome(
                    grievance_id=grievance.id,
                    step_number=1,
                    stage=GrievanceStage.FORMAL,
                    outcome="Denied",
                    completed_date=datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc),
                    recorded_by=user_id,
                )
            )
            await session.commit()

        records = await analytics_for("calculate_step_durations")

        assert len(records) == 1
        assert records[0].end_date == date(2024, 1, 19)
        assert records[0].duration_days == 14

    async def test_filters_by_type_and_date_range(
        self, file_grievance, save_templates, agreement_id, clock, analytics_for
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        await save_templates(agreement_id, [BUSINESS_10], grievance_type=GrievanceType.POLICY)
        await file_grievance()
        clock.advance(days=40)
        await file_grievance(grievance_type=GrievanceType.POLICY)

        policy = await analytics_for(
            "calculate_step_durations", grievance_type=GrievanceType.POLICY
        )
        january = await analytics_for(
            "calculate_step_durations",
            DateRange(
                start=datetime(2024, 1, 1, tzinfo=timezone.utc),
                end=datetime(2024, 1, 31, tzinfo=timezone.utc),
            ),
        )

        assert [r.grievance_type for r in policy] == [GrievanceType.POLICY]
        assert [r.grievance_number for r in january] == [1]

    async def test_deleted_grievances_keep_completed_steps(
        self, engine, file_grievance, save_templates, agreement_id, user_id, analytics_for
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        grievance = await file_grievance()
        await engine.advance_to_next_step(grievance.id, "Denied", actor_id=user_id)
        await engine.delete_grievance(grievance.id, "Duplicate", actor_id=user_id)

        records = await analytics_for("calculate_step_durations")

        assert [(r.step_number, r.status) for r in records] == [(1, GrievanceStatus.DELETED)]
        assert records[0].in_progress is False


# =============================================================================
# TEST: BARGAINING UNIT REPORT
# =============================================================================


class TestBargainingUnitReport:
    async def test_report_aggregates_per_step(
        self, engine, file_grievance, save_templates, agreement_id, clock, user_id, analytics_for
    ):
        await save_templates(
            agreement_id,
            [BUSINESS_10, StepTemplateInput(step_number=2, stage=GrievanceStage.FORMAL, time_limit_days=30)],
        )
        on_time = await file_grievance()
        late = await file_grievance()
        clock.now = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
        await engine.advance_to_next_step(on_time.id, "Denied", actor_id=user_id)
        await engine.process_settlement(on_time.id, "Settled at step 2", actor_id=user_id)
        clock.now = datetime(2024, 1, 22, 9, 0, tzinfo=timezone.utc)
        await engine.advance_to_next_step(late.id, "Denied", actor_id=user_id)

        reports = await analytics_for("generate_bargaining_unit_step_report")

        assert len(reports) == 1
        report = reports[0]
        assert report.bargaining_unit_name == "Transit Operators"
        assert report.total_grievances == 2

        step_one = report.steps[0]
        assert step_one.step_number == 1
        assert step_one.total_count == 2
        assert step_one.min_duration == 5
        assert step_one.max_duration == 15
        assert step_one.average_duration == 10.0
        assert step_one.expected_duration_days == 10
        assert step_one.overdue_count == 1
        assert step_one.overdue_percentage == 50.0
        assert step_one.on_time_percentage == 50.0

        # Only the late grievance is still in flight at step 2
        step_two = report.steps[1]
        assert step_two.step_number == 2
        assert step_two.expected_duration_days == 30
        assert step_two.total_count == 1
        assert step_two.settled_count == 1
        assert step_two.resolved_count == 1

    async def test_report_is_idempotent(
        self, engine, file_grievance, save_templates, agreement_id, clock, user_id, analytics_for
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        for _ in range(3):
            await file_grievance()
        clock.advance(days=12)

        first = await analytics_for("generate_bargaining_unit_step_report")
        second = await analytics_for("generate_bargaining_unit_step_report")

        assert first == second


# =============================================================================
# TEST: RESOLUTION BREAKDOWN
# =============================================================================


class TestResolutionBreakdown:
    async def test_breakdown_by_type_and_step(
        self, engine, file_grievance, user_id, analytics_for
    ):
        grievances = [await file_grievance() for _ in range(4)]
        await engine.advance_to_next_step(grievances[0].id, "Denied", actor_id=user_id)
        await engine.process_settlement(grievances[0].id, "Settled", actor_id=user_id)
        await engine.process_settlement(grievances[1].id, "Settled", actor_id=user_id)
        await engine.process_settlement(grievances[2].id, "Settled", actor_id=user_id)
        await engine.process_withdrawal(grievances[3].id, "Withdrawn", actor_id=user_id)

        breakdown = await analytics_for("get_resolution_breakdown")

        assert breakdown.total_resolved == 4
        assert breakdown.settled_count == 3
        assert breakdown.settled_percentage == 75.0
        assert breakdown.withdrawn_percentage == 25.0
        assert [(s.step_number, s.count) for s in breakdown.settled_by_step] == [(1, 2), (2, 1)]
        assert sum(s.percentage for s in breakdown.settled_by_step) == pytest.approx(100, abs=0.2)

    async def test_deleted_grievances_count_toward_total(
        self, engine, file_grievance, user_id, analytics_for
    ):
        settled = await file_grievance()
        deleted = await file_grievance()
        await file_grievance()
        await engine.process_settlement(settled.id, "Settled", actor_id=user_id)
        await engine.delete_grievance(deleted.id, "Filed in error", actor_id=user_id)

        breakdown = await analytics_for("get_resolution_breakdown")

        assert breakdown.total_resolved == 2
        assert breakdown.settled_count == 1
        assert breakdown.settled_percentage == 50.0
        assert breakdown.withdrawn_count == 0

    async def test_empty_breakdown(self, analytics_for):
        breakdown = await analytics_for("get_resolution_breakdown")

        assert breakdown.total_resolved == 0
        assert breakdown.settled_percentage == 0.0
        assert breakdown.settled_by_step == []


# =============================================================================
# TEST: VOLUME AND DEGRADATION
# =============================================================================


class TestVolumeTrends:
    async def test_monthly_counts_zero_filled(self, file_grievance, clock, analytics_for):
        await file_grievance()
        clock.now = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)
        await file_grievance()
        await file_grievance()

        trends = await analytics_for("get_volume_trends", months=3)

        assert [(p.month, p.count) for p in trends] == [
            ("2024-01", 1),
            ("2024-02", 0),
            ("2024-03", 2),
        ]


class TestResolutionTimes:
    async def test_average_fastest_and_over_limit(
        self, engine, file_grievance, save_templates, agreement_id, clock, user_id, analytics_for
    ):
        await save_templates(agreement_id, [BUSINESS_10])
        quick = await file_grievance()
        slow = await file_grievance()
        withdrawn = await file_grievance()
        clock.now = datetime(2024, 1, 4, 9, 0, tzinfo=timezone.utc)
        await engine.process_settlement(quick.id, "Settled early", actor_id=user_id)
        await engine.process_withdrawal(withdrawn.id, "Withdrawn", actor_id=user_id)
        clock.now = datetime(2024, 1, 22, 9, 0, tzinfo=timezone.utc)
        await engine.advance_to_next_step(slow.id, "Denied", actor_id=user_id)
        await engine.process_settlement(slow.id, "Settled at step 2", actor_id=user_id)

        summary = await analytics_for("get_resolution_times")

        # Withdrawals are not resolutions here
        assert summary.resolved_count == 2
        assert summary.average_resolution_days == 12.0
        assert summary.fastest_resolution_days == 3
        assert summary.completed_steps == 1
        assert summary.steps_over_limit == 1
        assert summary.on_time_percentage == 0.0

    async def test_nothing_resolved(self, file_grievance, analytics_for):
        await file_grievance()

        summary = await analytics_for("get_resolution_times")

        assert summary.resolved_count == 0
        assert summary.fastest_resolution_days == 0
        assert summary.on_time_percentage == 0.0


class TestDegradation:
    async def test_storage_failure_returns_empty(self, session, org_id, clock):
        analytics = DurationAnalyticsEngine(session, org_id, clock=clock)

        async def broken(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is down"))

        session.execute = broken

        assert await analytics.calculate_step_durations() == []
        assert await analytics.generate_bargaining_unit_step_report() == []
        assert await analytics.get_overdue_grievances_by_step() == {}
        assert (await analytics.get_resolution_breakdown()).total_resolved == 0
        assert await analytics.get_volume_trends() == []
        assert (await analytics.get_resolution_times()).resolved_count == 0


def test_percentage_rounds_half_up():
    assert percentage(1, 3) == 33.3
    assert percentage(2, 3) == 66.7
    assert percentage(1, 8) == 12.5
    assert percentage(1, 16) == 6.3
    assert percentage(0, 0) == 0.0

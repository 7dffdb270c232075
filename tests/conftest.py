"""Shared fixtures: a throwaway SQLite database per test and a controllable clock."""

import os

# Must be set before grievance_engine builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from grievance_engine.core.database import get_session, get_session_factory
from grievance_engine.core.retry import RetryPolicy
from grievance_engine.models import (
    Agreement,
    AgreementStepTemplate,
    BargainingUnit,
    Base,
    GrievanceStage,
    GrievanceType,
    Organization,
)
from grievance_engine.services.progression_engine import (
    CreateGrievanceInput,
    StepProgressionEngine,
)
from grievance_engine.services.template_catalog import StepTemplateInput, TemplateCatalog


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'grievances.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# =============================================================================
# ORGANIZATION CATALOG
# =============================================================================


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
async def org_id(session_factory) -> UUID:
    async with session_factory() as session:
        org = Organization(name="Local 1001")
        session.add(org)
        await session.commit()
        return org.id


@pytest.fixture
async def unit_id(session_factory, org_id) -> UUID:
    async with session_factory() as session:
        unit = BargainingUnit(organization_id=org_id, name="Transit Operators")
        session.add(unit)
        await session.commit()
        return unit.id


@pytest.fixture
async def agreement_id(session_factory, org_id, unit_id) -> UUID:
    async with session_factory() as session:
        agreement = Agreement(
            organization_id=org_id,
            bargaining_unit_id=unit_id,
            name="Transit Operators CBA 2023-2026",
        )
        session.add(agreement)
        await session.commit()
        return agreement.id


@pytest.fixture
async def other_org_id(session_factory) -> UUID:
    async with session_factory() as session:
        org = Organization(name="Local 2002")
        session.add(org)
        await session.commit()
        return org.id


# =============================================================================
# ENGINES
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    # Monday
    return FakeClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0)


@pytest.fixture
def engine(session_factory, org_id, retry_policy, clock) -> StepProgressionEngine:
    return StepProgressionEngine(
        session_factory, org_id, retry_policy=retry_policy, clock=clock
    )


@pytest.fixture
def save_templates(
    session_factory, org_id
) -> Callable[..., Awaitable[list[AgreementStepTemplate]]]:
    """Commit a template set for an agreement and grievance type."""

    async def save(
        agreement_id: UUID,
        steps: list[StepTemplateInput],
        grievance_type: GrievanceType = GrievanceType.INDIVIDUAL,
    ) -> list[AgreementStepTemplate]:
        async with session_factory() as session:
            templates = await TemplateCatalog(session, org_id).save_templates(
                agreement_id, grievance_type, steps
            )
            await session.commit()
            return templates

    return save


@pytest.fixture
def standard_steps() -> list[StepTemplateInput]:
    """A three-step procedure: informal meeting, formal step, arbitration referral."""
    return [
        StepTemplateInput(
            step_number=1,
            stage=GrievanceStage.INFORMAL,
            description="Discussion with immediate supervisor",
            time_limit="10 business days",
            time_limit_days=10,
            is_calendar_days=False,
        ),
        StepTemplateInput(
            step_number=2,
            stage=GrievanceStage.FORMAL,
            description="Written grievance to department head",
            time_limit="14 calendar days",
            time_limit_days=14,
            is_calendar_days=True,
        ),
        StepTemplateInput(
            step_number=3,
            stage=GrievanceStage.ARBITRATION,
            description="Referral to arbitration",
            time_limit="30 calendar days",
            time_limit_days=30,
            is_calendar_days=True,
        ),
    ]


@pytest.fixture
def file_grievance(
    engine, unit_id, agreement_id, user_id
) -> Callable[..., Awaitable]:
    """File an INDIVIDUAL grievance on the test agreement."""

    async def file(
        stage: GrievanceStage = GrievanceStage.INFORMAL,
        grievance_type: GrievanceType = GrievanceType.INDIVIDUAL,
    ):
        return await engine.create_grievance(
            CreateGrievanceInput(
                bargaining_unit_id=unit_id,
                agreement_id=agreement_id,
                grievance_type=grievance_type,
                initial_stage=stage,
            ),
            actor_id=user_id,
        )

    return file


# =============================================================================
# HTTP CLIENT
# =============================================================================


@pytest.fixture
async def client(session_factory, org_id, user_id):
    from grievance_engine.main import app

    async def override_get_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Organization-ID": str(org_id), "X-User-ID": str(user_id)},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()

"""Tests for the retry policy and the unit-of-work error translation."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from grievance_engine.core.database import read_session, translate_db_error, unit_of_work
from grievance_engine.core.exceptions import (
    ConcurrencyError,
    PersistenceError,
    StepConflictError,
    ValidationError,
)
from grievance_engine.core.retry import NO_RETRY, RetryPolicy, run_with_retry
from grievance_engine.models import Organization


def flaky(failures: list[Exception], result="done"):
    """Operation that raises the queued errors in order, then succeeds."""
    calls = []

    async def operation():
        calls.append(1)
        if failures:
            raise failures.pop(0)
        return result

    return operation, calls


FAST = RetryPolicy(max_attempts=3, base_delay_seconds=0)


# =============================================================================
# TEST: RUN WITH RETRY
# =============================================================================


class TestRunWithRetry:
    async def test_retries_concurrency_then_succeeds(self):
        operation, calls = flaky([ConcurrencyError("lost race"), PersistenceError("blip")])

        assert await run_with_retry(operation, FAST, "advance") == "done"
        assert len(calls) == 3

    @pytest.mark.parametrize(
        "error",
        [ValidationError("empty outcome"), StepConflictError("step moved"), KeyError("bug")],
    )
    async def test_non_retryable_errors_fail_fast(self, error):
        operation, calls = flaky([error])

        with pytest.raises(type(error)):
            await run_with_retry(operation, FAST, "advance")
        assert len(calls) == 1

    async def test_exhaustion_reraises_last_error(self):
        operation, calls = flaky([ConcurrencyError(str(n)) for n in range(5)])

        with pytest.raises(ConcurrencyError, match="2"):
            await run_with_retry(operation, FAST, "advance")
        assert len(calls) == 3

    async def test_no_retry_policy(self):
        operation, calls = flaky([PersistenceError("down")])

        with pytest.raises(PersistenceError):
            await run_with_retry(operation, NO_RETRY)
        assert len(calls) == 1

    async def test_custom_predicate(self):
        policy = RetryPolicy(max_attempts=2, base_delay_seconds=0, is_retryable=lambda e: isinstance(e, KeyError))
        operation, calls = flaky([KeyError("transient")])

        assert await run_with_retry(operation, policy) == "done"
        assert len(calls) == 2


class TestBackoff:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(base_delay_seconds=0.1, backoff_factor=2.0, max_delay_seconds=0.3)

        assert policy.delay_for(1) == pytest.approx(0.1)
        assert policy.delay_for(2) == pytest.approx(0.2)
        assert policy.delay_for(3) == pytest.approx(0.3)
        assert policy.delay_for(6) == pytest.approx(0.3)


# =============================================================================
# TEST: ERROR TRANSLATION
# =============================================================================


class TestTranslateDbError:
    def test_stale_data_is_concurrency(self):
        assert isinstance(translate_db_error(StaleDataError("version mismatch")), ConcurrencyError)

    def test_integrity_is_concurrency(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        assert isinstance(translate_db_error(error), ConcurrencyError)

    def test_operational_is_persistence(self):
        error = OperationalError("SELECT 1", {}, Exception("database is locked"))
        assert isinstance(translate_db_error(error), PersistenceError)

    async def test_unit_of_work_rolls_back_and_translates(self, session_factory, org_id):
        with pytest.raises(ConcurrencyError):
            async with unit_of_work(session_factory) as session:
                session.add(Organization(id=org_id, name="Duplicate"))
                await session.flush()

        async with session_factory() as session:
            org = await session.get(Organization, org_id)
        assert org.name == "Local 1001"

    async def test_read_session_translates(self, session_factory):
        with pytest.raises(PersistenceError):
            async with read_session(session_factory):
                raise OperationalError("SELECT 1", {}, Exception("database is down"))

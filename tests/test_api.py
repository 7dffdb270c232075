"""
Tests for the HTTP surface.

These tests verify request context handling, the error status mapping and a
full grievance flow through the routers.
"""

from uuid import uuid4

from sqlalchemy.exc import OperationalError

from grievance_engine.core.config import get_settings
from grievance_engine.core.database import get_session_factory
from grievance_engine.main import app

API = get_settings().api_prefix

STEPS = {
    "steps": [
        {
            "step_number": 1,
            "stage": "INFORMAL",
            "description": "Discussion with supervisor",
            "time_limit_days": 10,
            "is_calendar_days": False,
        },
        {
            "step_number": 2,
            "stage": "FORMAL",
            "name": "Department Head",
            "time_limit_days": 14,
        },
    ]
}


async def file_grievance(client, unit_id, agreement_id) -> dict:
    response = await client.post(
        f"{API}/grievances",
        json={
            "bargaining_unit_id": str(unit_id),
            "agreement_id": str(agreement_id),
            "grievance_type": "INDIVIDUAL",
            "initial_stage": "INFORMAL",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# TEST: REQUEST CONTEXT
# =============================================================================


class TestRequestContext:
    async def test_missing_org_header(self, client):
        response = await client.get(
            f"{API}/events", headers={"X-Organization-ID": ""}
        )
        assert response.status_code == 400

    async def test_unknown_org_forbidden(self, client):
        response = await client.get(
            f"{API}/events", headers={"X-Organization-ID": str(uuid4())}
        )
        assert response.status_code == 403

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# =============================================================================
# TEST: GRIEVANCE FLOW
# =============================================================================


class TestGrievanceFlow:
    async def test_templates_then_file_and_advance(self, client, unit_id, agreement_id):
        response = await client.put(
            f"{API}/agreements/{agreement_id}/step-templates/INDIVIDUAL", json=STEPS
        )
        assert response.status_code == 200, response.text
        assert [t["name"] for t in response.json()] == ["Step 1", "Department Head"]

        grievance = await file_grievance(client, unit_id, agreement_id)
        assert grievance["status"] == "ACTIVE"
        assert grievance["current_step_number"] == 1

        response = await client.post(
            f"{API}/grievances/{grievance['id']}/advance",
            json={"outcome": "Supervisor denied", "expected_step_number": 1},
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["new_step_number"] == 2
        assert body["next_step"]["name"] == "Department Head"

        # Replaying the same completion conflicts instead of skipping a step
        response = await client.post(
            f"{API}/grievances/{grievance['id']}/advance",
            json={"outcome": "Supervisor denied", "expected_step_number": 1},
        )
        assert response.status_code == 409

        response = await client.get(f"{API}/grievances/{grievance['id']}/outcomes")
        assert [o["step_number"] for o in response.json()] == [1]

        response = await client.get(f"{API}/grievances/{grievance['id']}/deadline")
        assert response.status_code == 200
        assert response.json()["step_name"] == "Department Head"

    async def test_empty_outcome_is_422(self, client, unit_id, agreement_id):
        grievance = await file_grievance(client, unit_id, agreement_id)

        response = await client.post(
            f"{API}/grievances/{grievance['id']}/advance", json={"outcome": "  "}
        )

        assert response.status_code == 422

    async def test_unknown_grievance_is_404(self, client):
        response = await client.get(f"{API}/grievances/{uuid4()}")
        assert response.status_code == 404

    async def test_storage_outage_on_read_is_503(self, client, session_factory):
        def broken_factory():
            session = session_factory()

            async def execute(*args, **kwargs):
                raise OperationalError("SELECT 1", {}, Exception("database is down"))

            session.execute = execute
            return session

        app.dependency_overrides[get_session_factory] = lambda: broken_factory

        response = await client.get(f"{API}/grievances/{uuid4()}")

        assert response.status_code == 503

    async def test_withdraw_and_validate(self, client, unit_id, agreement_id):
        grievance = await file_grievance(client, unit_id, agreement_id)

        response = await client.post(
            f"{API}/grievances/{grievance['id']}/validate-transition",
            json={"status": "WITHDRAWN"},
        )
        assert response.json() == {
            "is_valid": False,
            "error": "Withdrawal details are required when withdrawing a grievance",
            "requires_form": "withdrawal",
        }

        response = await client.post(
            f"{API}/grievances/{grievance['id']}/withdraw",
            json={"details": "Grievor transferred"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "WITHDRAWN"

        response = await client.get(
            f"{API}/events", params={"grievance_id": grievance["id"]}
        )
        types = {e["event_type"] for e in response.json()["items"]}
        assert types == {"CREATED", "STATUS_CHANGED", "GRIEVANCE_WITHDRAWN"}

    async def test_delete_and_restore(self, client, unit_id, agreement_id):
        grievance = await file_grievance(client, unit_id, agreement_id)

        response = await client.request(
            "DELETE", f"{API}/grievances/{grievance['id']}", json={"reason": "Duplicate"}
        )
        assert response.json()["status"] == "DELETED"

        response = await client.post(f"{API}/grievances/{grievance['id']}/restore")
        assert response.json()["status"] == "ACTIVE"


# =============================================================================
# TEST: EVENTS AND REPORTS
# =============================================================================


class TestEventsAndReports:
    async def test_external_event_types_only(self, client, unit_id, agreement_id):
        grievance = await file_grievance(client, unit_id, agreement_id)

        response = await client.post(
            f"{API}/grievances/{grievance['id']}/events",
            json={"event_type": "EVIDENCE_ADDED", "new_value": "termination-letter.pdf"},
        )
        assert response.status_code == 201
        assert response.json()["event_type"] == "EVIDENCE_ADDED"

        response = await client.post(
            f"{API}/grievances/{grievance['id']}/events",
            json={"event_type": "STATUS_CHANGED", "new_value": "SETTLED"},
        )
        assert response.status_code == 422

        response = await client.get(f"{API}/events/stats")
        assert response.json()["total_events"] == 2

    async def test_reports_respond(self, client, unit_id, agreement_id):
        await client.put(f"{API}/agreements/{agreement_id}/step-templates/INDIVIDUAL", json=STEPS)
        await file_grievance(client, unit_id, agreement_id)

        for path in ("step-durations", "bargaining-units", "overdue", "resolutions", "template-gaps", "volume"):
            response = await client.get(f"{API}/reports/{path}")
            assert response.status_code == 200, path

        response = await client.get(
            f"{API}/reports/step-durations", params={"start_date": "2024-01-01T00:00:00Z"}
        )
        assert response.status_code == 422

    async def test_mixed_offset_date_range(self, client, unit_id, agreement_id):
        await file_grievance(client, unit_id, agreement_id)

        response = await client.get(
            f"{API}/reports/step-durations",
            params={"start_date": "2024-01-01T00:00:00Z", "end_date": "2099-02-01T00:00:00"},
        )
        assert response.status_code == 200

        response = await client.get(
            f"{API}/reports/resolutions",
            params={"start_date": "2024-02-01T00:00:00", "end_date": "2024-01-01T00:00:00+00:00"},
        )
        assert response.status_code == 422

    async def test_resolution_times(self, client, unit_id, agreement_id):
        grievance = await file_grievance(client, unit_id, agreement_id)
        await client.post(
            f"{API}/grievances/{grievance['id']}/settle", json={"details": "Back pay awarded"}
        )

        response = await client.get(f"{API}/reports/resolution-times")

        assert response.status_code == 200
        body = response.json()
        assert body["resolved_count"] == 1
        assert body["fastest_resolution_days"] == 0

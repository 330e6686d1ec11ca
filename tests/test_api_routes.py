"""
Tests for the migration run HTTP API.

The orchestrator dependency is overridden with one writing under the
test's temp directory and loading into an in-memory target.
"""

import inspect

import pytest
from fastapi.testclient import TestClient

from clinic_migration.api.main import app, status_for
from clinic_migration.api.routes import runs
from clinic_migration.api.routes.runs import get_orchestrator
from clinic_migration.errors import PhaseInFlightError, RunNotFoundError


HEADERS = {"X-Clinic-Id": "clinic-1", "X-User-Id": "user-1"}
OTHER_HEADERS = {"X-Clinic-Id": "clinic-2", "X-User-Id": "user-2"}


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def run_id(client, export_dir):
    response = client.post(
        "/api/migrations/runs",
        json={
            "source_vendor": "csv_upload",
            "consent_text": "Clinic authorizes moving its records.",
            "ingest_source": str(export_dir),
        },
        headers=HEADERS,
    )
    assert response.status_code == 200
    return response.json()["id"]


class TestHealth:
    """Tests for the health endpoint."""

    def test_health_check(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRunEndpoints:
    """Tests for run creation and reads."""

    def test_create_run(self, client, run_id):
        """Created runs are returned without consent text or credentials."""
        response = client.get(f"/api/migrations/runs/{run_id}", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "created"
        assert data["clinic_id"] == "clinic-1"
        assert "encrypted_credentials" not in data
        assert "consent_text" not in data

    def test_create_without_consent(self, client):
        """Missing consent is a bad request."""
        response = client.post(
            "/api/migrations/runs",
            json={"source_vendor": "boulevard", "consent_text": " "},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert "consent" in response.json()["detail"]

    def test_unknown_entity_exclusion(self, client):
        response = client.post(
            "/api/migrations/runs",
            json={"source_vendor": "boulevard", "consent_text": "ok", "excluded_entity_types": ["gift_card"]},
            headers=HEADERS,
        )

        assert response.status_code == 400

    def test_identity_headers_required(self, client):
        response = client.get("/api/migrations/runs")

        assert response.status_code == 422

    def test_other_clinic_forbidden(self, client, run_id):
        """Runs are only visible to their own clinic."""
        response = client.get(f"/api/migrations/runs/{run_id}", headers=OTHER_HEADERS)

        assert response.status_code == 403
        listing = client.get("/api/migrations/runs", headers=OTHER_HEADERS)
        assert listing.json() == {"runs": [], "total": 0}

    def test_unknown_run(self, client):
        response = client.get("/api/migrations/runs/does-not-exist", headers=HEADERS)

        assert response.status_code == 404


class TestPhaseEndpoints:
    """Tests for phase execution through the API."""

    def test_out_of_order_phase(self, client, run_id):
        """Running a phase before its predecessor is a conflict."""
        response = client.post(f"/api/migrations/runs/{run_id}/phases/load", headers=HEADERS)

        assert response.status_code == 409

    def test_unknown_phase(self, client, run_id):
        response = client.post(f"/api/migrations/runs/{run_id}/phases/explode", headers=HEADERS)

        assert response.status_code == 422

    def test_report_before_phase(self, client, run_id):
        """Reports of phases that have not run are not found."""
        response = client.get(f"/api/migrations/runs/{run_id}/reports/validation", headers=HEADERS)

        assert response.status_code == 404

    def test_unknown_report(self, client, run_id):
        response = client.get(f"/api/migrations/runs/{run_id}/reports/raw", headers=HEADERS)

        assert response.status_code == 400

    def test_invalid_mapping_spec(self, client, run_id, mapping_spec):
        """Structurally invalid specs are rejected with their error paths."""
        client.post(f"/api/migrations/runs/{run_id}/run-to-approval", headers=HEADERS)
        mapping_spec["entity_mappings"][0]["field_mappings"][0]["transform"] = "eval"

        response = client.post(
            f"/api/migrations/runs/{run_id}/mapping-specs",
            json={"spec": mapping_spec},
            headers=HEADERS,
        )

        assert response.status_code == 400
        paths = [e["path"] for e in response.json()["errors"]]
        assert "entity_mappings[0].field_mappings[0].transform" in paths

    def test_resume_requires_pause(self, client, run_id):
        response = client.post(f"/api/migrations/runs/{run_id}/resume", headers=HEADERS)

        assert response.status_code == 409

    def test_pause_and_resume(self, client, run_id):
        """An idle run pauses immediately and resumes to its prior status."""
        paused = client.post(f"/api/migrations/runs/{run_id}/pause", headers=HEADERS)
        assert paused.json()["status"] == "paused"

        blocked = client.post(f"/api/migrations/runs/{run_id}/phases/ingest", headers=HEADERS)
        assert blocked.status_code == 409

        resumed = client.post(f"/api/migrations/runs/{run_id}/resume", headers=HEADERS)
        assert resumed.status_code == 200
        assert resumed.json()["run"]["status"] == "created"
        assert resumed.json()["result"] is None

    def test_full_migration(self, client, run_id, mapping_spec, loader):
        """A run goes from creation to completion over the API."""
        base = f"/api/migrations/runs/{run_id}"

        drafted = client.post(f"{base}/run-to-approval", headers=HEADERS)
        assert [r["phase"] for r in drafted.json()] == ["ingest", "draft_mapping"]

        profile = client.get(f"{base}/reports/profile", headers=HEADERS)
        assert profile.status_code == 200
        assert "Lovelace" not in profile.text

        submitted = client.post(f"{base}/mapping-specs", json={"spec": mapping_spec}, headers=HEADERS)
        assert submitted.json()["version"] == 2

        approved = client.post(f"{base}/approve-mapping", json={"version": 2}, headers=HEADERS)
        assert approved.json()["approved_mapping_version"] == 2

        finished = client.post(f"{base}/run-from-approval", headers=HEADERS)
        assert [r["phase"] for r in finished.json()] == ["transform", "validate", "load", "verify"]

        reconciliation = client.get(f"{base}/reports/reconciliation", headers=HEADERS).json()
        assert reconciliation["status"] == "partial"

        completed = client.post(f"{base}/complete", headers=HEADERS)
        assert completed.json()["status"] == "completed"
        assert len(loader.loaded) == 5

        actions = [e["action"] for e in client.get(f"{base}/audit-events", headers=HEADERS).json()]
        assert actions[0] == "RUN_CREATED"
        assert "MAPPING_APPROVED" in actions
        assert actions[-1] == "RUN_COMPLETED"

        specs = client.get(f"{base}/mapping-specs", headers=HEADERS).json()
        assert [s["version"] for s in specs] == [1, 2]

        terminal = client.post(f"{base}/pause", headers=HEADERS)
        assert terminal.status_code == 409


class TestErrorStatus:
    """Tests for mapping pipeline errors to HTTP statuses."""

    def test_status_for(self):
        assert status_for(RunNotFoundError("r1")) == 404
        assert status_for(PhaseInFlightError("r1", "worker")) == 409


class TestHandlers:
    """Tests for how the run endpoints are served."""

    def test_run_handlers_are_not_coroutines(self):
        """Handlers do blocking file I/O, so FastAPI must run them in its threadpool."""
        endpoints = [
            route.endpoint for route in app.routes
            if getattr(route, "endpoint", None) is not None and route.endpoint.__module__ == runs.__name__
        ]

        assert endpoints
        for endpoint in endpoints:
            assert not inspect.iscoroutinefunction(endpoint), endpoint.__name__

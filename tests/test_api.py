"""Tests for the admin API in main.py."""

import pytest
from fastapi.testclient import TestClient

from backend.auth import get_valid_api_keys
from backend.main import app, get_session_factory
from backend.pipeline.circuit_breaker import CircuitBreaker
from backend.pipeline.errors import ValidationError
from backend.pipeline.jobs import JobConfig, JobResult

OPERATOR = {"X-API-Key": "operator-key"}
ADMIN = {"X-API-Key": "admin-key"}


def _jobs(_session_factory=None):
    def _fail():
        raise ValidationError("Validation failed: empty table")

    return [
        JobConfig("teams", "teams", run=lambda: JobResult(success=True, records_processed=3), priority=1),
        JobConfig("barttorvik", "team_stats",
                  run=lambda: JobResult(success=True, records_processed=3),
                  priority=2, dependencies=["teams"]),
        JobConfig("espn", "team_stats", run=_fail, priority=3, dependencies=["teams"]),
    ]


@pytest.fixture
def client(session_factory, monkeypatch):
    monkeypatch.setenv("API_KEY_USER1", "operator-key")
    monkeypatch.setenv("ADMIN_API_KEY", "admin-key")
    monkeypatch.setattr("backend.main.build_default_jobs", _jobs)
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

def test_root(client):
    assert client.get("/").json()["status"] == "operational"


def test_health_reports_database(client):
    body = client.get("/health").json()
    assert body["database"] == "connected"
    assert body["status"] == "healthy"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def test_missing_key_is_rejected(client):
    assert client.get("/api/pipeline/runs").status_code == 401


def test_invalid_key_is_rejected(client):
    assert client.get("/api/pipeline/runs", headers={"X-API-Key": "nope"}).status_code == 401


def test_operator_cannot_trigger_runs(client):
    resp = client.post("/admin/pipeline/run", json={"run_type": "full"}, headers=OPERATOR)
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

def test_trigger_run_and_read_it_back(client):
    resp = client.post("/admin/pipeline/run", json={"run_type": "full"}, headers=ADMIN)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "partial_success"
    assert (body["sources_attempted"], body["sources_succeeded"], body["sources_failed"]) == (3, 2, 1)
    assert body["errors"] == ["Validation failed: empty table"]

    runs = client.get("/api/pipeline/runs", headers=OPERATOR).json()
    assert [r["id"] for r in runs] == [body["run_id"]]
    assert runs[0]["run_type"] == "full"

    detail = client.get(f"/api/pipeline/runs/{body['run_id']}", headers=OPERATOR).json()
    assert detail["run"]["status"] == "partial_success"
    assert sorted(j["source"] for j in detail["job_runs"]) == ["barttorvik", "espn", "teams"]

    job_runs = client.get("/api/pipeline/job-runs", headers=OPERATOR).json()
    espn = [j for j in job_runs if j["source"] == "espn"][0]
    assert espn["status"] == "failed"
    assert espn["errors"] == ["Validation failed: empty table"]


def test_incremental_run_reports_skips(client):
    client.post("/admin/pipeline/run", json={"run_type": "full"}, headers=ADMIN)
    body = client.post("/admin/pipeline/run", json={"run_type": "incremental"}, headers=ADMIN).json()

    # teams and barttorvik are fresh; espn failed last time so it runs again
    assert body["skipped"] == {"teams": "data_fresh", "barttorvik": "data_fresh"}
    assert body["sources_attempted"] == 1
    assert body["status"] == "failed"


def test_unknown_run_is_404(client):
    assert client.get("/api/pipeline/runs/999", headers=OPERATOR).status_code == 404


def test_invalid_run_type_is_422(client):
    resp = client.post("/admin/pipeline/run", json={"run_type": "sometimes"}, headers=ADMIN)
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Circuits / freshness
# ---------------------------------------------------------------------------

def test_list_and_reset_circuits(client, session_factory):
    breaker = CircuitBreaker(session_factory)
    for _ in range(5):
        breaker.record_failure("espn")

    circuits = client.get("/api/pipeline/circuits", headers=OPERATOR).json()
    assert circuits[0]["source"] == "espn"
    assert circuits[0]["state"] == "open"

    resp = client.post("/admin/pipeline/circuits/espn/reset", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["state"] == "closed"
    assert resp.json()["failure_count"] == 0


def test_freshness_after_run(client):
    client.post("/admin/pipeline/run", json={"run_type": "full"}, headers=ADMIN)
    rows = client.get("/api/pipeline/freshness", headers=OPERATOR).json()
    assert {(r["source"], r["data_type"]) for r in rows} == {
        ("teams", "teams"), ("barttorvik", "team_stats"),
    }
    assert all(r["record_count"] == 3 for r in rows)


# ---------------------------------------------------------------------------
# Key configuration
# ---------------------------------------------------------------------------

def test_user1_is_admin_without_admin_key(client, monkeypatch):
    monkeypatch.delenv("ADMIN_API_KEY")
    resp = client.post("/admin/pipeline/run", json={"run_type": "full"}, headers=OPERATOR)
    assert resp.status_code == 200


def test_rotated_key_applies_without_restart(client, monkeypatch):
    monkeypatch.setenv("API_KEY_USER1", "rotated-key")
    assert client.get("/api/pipeline/runs", headers=OPERATOR).status_code == 401
    assert client.get("/api/pipeline/runs", headers={"X-API-Key": "rotated-key"}).status_code == 200


def test_dev_fallback_key(monkeypatch):
    for i in range(1, 6):
        monkeypatch.delenv(f"API_KEY_USER{i}", raising=False)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)

    monkeypatch.setenv("ENVIRONMENT", "development")
    assert get_valid_api_keys() == {"dev-key-insecure": "admin"}

    monkeypatch.setenv("ENVIRONMENT", "production")
    with pytest.raises(ValueError):
        get_valid_api_keys()

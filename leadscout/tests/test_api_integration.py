"""Integration tests for the LeadScout HTTP API.

Uses TestClient with the database session, runner config and channel
registry swapped for in-memory fakes.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from leadscout.config import RunnerConfig
from leadscout.errors import ChannelError

SECRET = "s3cret"


@pytest.fixture()
def api(session_factory, fake_channel, make_company, monkeypatch, tmp_path):
    """TestClient plus a mutable ``state`` used to tune config and channels per test."""
    monkeypatch.setenv("LEADSCOUT_DB", str(tmp_path / "leadscout.db"))
    from leadscout.app import app, channel_registry, db_session, runner_config

    state = {
        "config": RunnerConfig(enabled=True, channel_timeout_seconds=5.0, job_secret=SECRET),
        "google": lambda: fake_channel("google", [[
            make_company("Acme Agency", "https://acme.co.za", source="google"),
            make_company("Beta Creative", "https://beta.co.za", source="google"),
        ]]),
        "keyword": lambda: fake_channel("keyword", [[]]),
    }

    def override_db_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[runner_config] = lambda: state["config"]
    app.dependency_overrides[channel_registry] = lambda: {
        "google": state["google"](), "keyword": state["keyword"](),
    }
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, state
    app.dependency_overrides.clear()


def _trigger(client, **body):
    payload = {"intent_id": "agencies_all", "dry_run": True, **body}
    return client.post("/api/discovery/runs", json=payload)


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


def test_list_intents(api):
    client, _ = api
    resp = client.get("/api/intents")
    assert resp.status_code == 200
    data = resp.json()
    assert data["runner"]["enabled"] is True
    ids = {i["id"] for i in data["intents"]}
    assert "agencies_all" in ids
    assert "agencies_marketing_branding" not in ids


# ---------------------------------------------------------------------------
# Triggering
# ---------------------------------------------------------------------------


class TestTrigger:
    def test_dry_run(self, api):
        client, _ = api
        resp = _trigger(client)
        assert resp.status_code == 201
        run = resp.json()
        assert run["status"] == "completed"
        assert run["dry_run"] is True
        assert run["mode"] == "manual"
        assert run["created_companies_count"] == 0
        assert run["result_count"] == 2
        assert [r["name"] for r in run["results"]] == ["Acme Agency", "Beta Creative"]
        assert run["stats"]["projected"]["companies"] == 2

    def test_unknown_intent(self, api):
        client, _ = api
        assert _trigger(client, intent_id="nope").status_code == 404

    def test_inactive_intent(self, api):
        client, _ = api
        assert _trigger(client, intent_id="agencies_marketing_branding").status_code == 400

    def test_kill_switch(self, api):
        client, state = api
        state["config"] = RunnerConfig(enabled=False)
        resp = _trigger(client)
        assert resp.status_code == 403
        assert client.get("/api/discovery/runs").json()["total"] == 0

    def test_failed_run_returns_502_with_run_id(self, api, fake_channel):
        client, state = api
        state["google"] = lambda: fake_channel("google", error=ChannelError("quota exceeded"))
        resp = _trigger(client, overrides={"channels": ["google"]})
        assert resp.status_code == 502
        detail = resp.json()["detail"]
        assert "quota exceeded" in detail["error"]
        stored = client.get(f"/api/discovery/runs/{detail['run_id']}").json()
        assert stored["status"] == "failed"

    def test_partial_failure(self, api, fake_channel):
        client, state = api
        state["keyword"] = lambda: fake_channel("keyword", error=ChannelError("not configured"))
        run = _trigger(client).json()
        assert run["status"] == "completed_with_errors"
        assert run["stats"]["channel_errors"] == {"keyword": "not configured"}
        assert run["result_count"] == 2

    def test_limit_overrides(self, api):
        client, _ = api
        run = _trigger(client, overrides={"limits": {"max_companies": 1}}).json()
        assert run["result_count"] == 1
        assert run["stats"]["stopped_reason"] == "company_limit"
        assert run["stats"]["limits_used"]["max_companies"] == 1

    def test_invalid_limit_rejected(self, api):
        client, _ = api
        assert _trigger(client, overrides={"limits": {"max_companies": 0}}).status_code == 422


# ---------------------------------------------------------------------------
# Listing & lifecycle
# ---------------------------------------------------------------------------


class TestRuns:
    def test_list_and_get(self, api):
        client, _ = api
        run_id = _trigger(client).json()["id"]
        listing = client.get("/api/discovery/runs").json()
        assert listing["total"] == 1
        assert listing["items"][0]["id"] == run_id
        assert "results" not in listing["items"][0]
        assert client.get("/api/discovery/runs", params={"mode": "scheduled"}).json()["total"] == 0
        assert client.get(f"/api/discovery/runs/{run_id}").json()["id"] == run_id

    def test_get_missing(self, api):
        client, _ = api
        assert client.get("/api/discovery/runs/missing").status_code == 404

    def test_materialize(self, api):
        client, _ = api
        run_id = _trigger(client).json()["id"]
        resp = client.post(f"/api/discovery/runs/{run_id}/materialize")
        assert resp.status_code == 200
        assert resp.json()["companies_created"] == 2
        run = client.get(f"/api/discovery/runs/{run_id}").json()
        assert run["dry_run"] is False
        assert run["created_companies_count"] == 2
        assert client.get("/api/companies").json()["total"] == 2
        assert client.post(f"/api/discovery/runs/{run_id}/materialize").status_code == 409

    def test_real_run_creates_records(self, api):
        client, _ = api
        run = _trigger(client, dry_run=False).json()
        assert run["created_companies_count"] == 2
        companies = client.get("/api/companies").json()
        assert {c["website"] for c in companies["items"]} == {"https://acme.co.za", "https://beta.co.za"}
        assert client.get("/api/leads").json()["total"] == 0

    def test_archive_then_delete(self, api):
        client, _ = api
        run_id = _trigger(client).json()["id"]
        assert client.delete(f"/api/discovery/runs/{run_id}").status_code == 409

        archived = client.post(f"/api/discovery/runs/{run_id}/archive").json()
        assert archived["archived_at"] is not None
        assert client.get("/api/discovery/runs").json()["total"] == 0
        assert client.get("/api/discovery/runs", params={"archived": True}).json()["total"] == 1

        resp = client.delete(f"/api/discovery/runs/{run_id}")
        assert resp.json() == {"ok": True, "deleted_run_id": run_id}
        assert client.get(f"/api/discovery/runs/{run_id}").status_code == 404

    def test_unarchive(self, api):
        client, _ = api
        run_id = _trigger(client).json()["id"]
        client.post(f"/api/discovery/runs/{run_id}/archive")
        resp = client.post(f"/api/discovery/runs/{run_id}/unarchive")
        assert resp.json()["archived_at"] is None

    def test_cancel_finished_run_conflicts(self, api):
        client, _ = api
        run_id = _trigger(client).json()["id"]
        assert client.post(f"/api/discovery/runs/{run_id}/cancel").status_code == 409
        assert client.post("/api/discovery/runs/missing/cancel").status_code == 404

    def test_bulk(self, api):
        client, _ = api
        run_id = _trigger(client).json()["id"]
        resp = client.patch("/api/discovery/runs/bulk", json={"action": "archive", "run_ids": [run_id, "missing"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["succeeded"] == [run_id]
        assert "missing" in data["failed"]

    def test_bulk_validation(self, api):
        client, _ = api
        assert client.patch("/api/discovery/runs/bulk", json={"action": "archive", "run_ids": []}).status_code == 422
        assert client.patch("/api/discovery/runs/bulk", json={"action": "purge", "run_ids": ["x"]}).status_code == 422


# ---------------------------------------------------------------------------
# Scheduled job
# ---------------------------------------------------------------------------


class TestScheduledJob:
    def test_requires_secret(self, api):
        client, _ = api
        assert client.post("/api/jobs/discovery/run").status_code == 401
        assert client.post("/api/jobs/discovery/run", headers={"x-job-secret": "wrong"}).status_code == 401

    def test_unconfigured_secret(self, api):
        client, state = api
        state["config"] = RunnerConfig(enabled=True)
        assert client.post("/api/jobs/discovery/run", headers={"x-job-secret": "anything"}).status_code == 503

    def test_runs_default_intent(self, api):
        client, _ = api
        resp = client.post("/api/jobs/discovery/run", headers={"x-job-secret": SECRET})
        assert resp.status_code == 201
        run = resp.json()
        assert run["mode"] == "scheduled"
        assert run["triggered_by"] == "scheduler"
        assert run["intent_id"] == "agencies_all"
        assert run["dry_run"] is False

    def test_explicit_intent_and_dry_run(self, api):
        client, _ = api
        resp = client.post(
            "/api/jobs/discovery/run",
            headers={"x-job-secret": SECRET},
            json={"intent_id": "schools_all", "dry_run": True},
        )
        assert resp.json()["intent_id"] == "schools_all"
        assert resp.json()["dry_run"] is True

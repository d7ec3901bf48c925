"""Tests for the MCP tools, called directly against an in-memory database."""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from leadscout import mcp_server
from leadscout.config import RunnerConfig
from leadscout.models import COMPLETED
from leadscout.schemas import RunStats
from leadscout.store import RunStore


@pytest.fixture()
def mcp_env(session_factory, fake_channel, make_company):
    config = RunnerConfig(enabled=True, channel_timeout_seconds=5.0)

    def registry(_config):
        return {
            "google": fake_channel("google", [[
                make_company("Acme Agency", "https://acme.co.za", source="google"),
            ]]),
            "keyword": fake_channel("keyword", [[]]),
        }

    with patch("leadscout.db.get_session", session_factory), \
         patch.object(mcp_server, "_config", return_value=config), \
         patch("leadscout.services.default_channels", registry):
        yield config


@pytest.fixture()
def finished_run(session_factory):
    def _make(status=COMPLETED):
        session = session_factory()
        store = RunStore(session)
        run = store.create(mode="manual", dry_run=True, triggered_by="test")
        store.mark_running(run)
        store.finish(run, status=status, results=[], stats=RunStats())
        session.close()
        return run.id
    return _make


def test_list_intents(mcp_env):
    data = mcp_server.list_intents()
    assert data["runner"]["enabled"] is True
    assert any(i["id"] == "agencies_all" for i in data["intents"])


def test_overview_resource(mcp_env):
    overview = json.loads(mcp_server.leadscout_overview())
    assert "completed_with_errors" in overview["statuses"]


@pytest.mark.asyncio
async def test_trigger_defaults_to_dry_run(mcp_env):
    run = await mcp_server.trigger_run("agencies_all")
    assert run["dry_run"] is True
    assert run["status"] == "completed"
    assert run["triggered_by"] == "mcp"
    assert run["result_count"] == 1

    detail = mcp_server.get_run(run["id"])
    assert detail["results"][0]["name"] == "Acme Agency"

    summary = mcp_server.materialize_run(run["id"])
    assert summary["companies_created"] == 1
    assert "error" in mcp_server.materialize_run(run["id"])


@pytest.mark.asyncio
async def test_trigger_errors_are_returned(mcp_env):
    assert "not found" in (await mcp_server.trigger_run("nope"))["error"]
    with patch.object(mcp_server, "_config", return_value=RunnerConfig(enabled=False)):
        assert "disabled" in (await mcp_server.trigger_run("agencies_all"))["error"]


def test_get_missing_run(mcp_env):
    assert "not found" in mcp_server.get_run("missing")["error"]


def test_archive_list_delete(mcp_env, finished_run):
    run_id = finished_run()
    assert "error" in mcp_server.delete_run(run_id)
    assert mcp_server.archive_run(run_id)["archived_at"] is not None
    assert mcp_server.list_runs()["total"] == 0
    assert mcp_server.list_runs(archived=True)["items"][0]["id"] == run_id
    assert mcp_server.unarchive_run(run_id)["archived_at"] is None
    mcp_server.archive_run(run_id)
    assert mcp_server.delete_run(run_id) == {"ok": True, "deleted_run_id": run_id}


def test_cancel_finished_run(mcp_env, finished_run):
    assert "already completed" in mcp_server.cancel_run(finished_run())["error"]


def test_bulk_run_action(mcp_env, finished_run):
    a, b = finished_run(), finished_run()
    result = mcp_server.bulk_run_action("archive", [a, b, "missing"])
    assert sorted(result["succeeded"]) == sorted([a, b])
    assert list(result["failed"]) == ["missing"]
    assert "Unknown action" in mcp_server.bulk_run_action("purge", [a])["error"]
    assert "error" in mcp_server.bulk_run_action("delete", [])

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from leadscout import services
from leadscout.config import RunnerConfig
from leadscout.db import init_db, session_scope
from leadscout.errors import DiscoveryError
from leadscout.intents import list_intents as catalog_intents
from leadscout.lifecycle import BULK_ACTIONS
from leadscout.models import FAILED
from leadscout.schemas import IntentOverrides, LimitOverrides
from leadscout.store import RunStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def leadscout_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "LeadScout",
    instructions=(
        "LeadScout discovers B2B prospects. Use list_intents() to see what a run can "
        "look for, trigger_run(intent_id, dry_run=True) to preview results, "
        "get_run(run_id) to inspect them, and materialize_run(run_id) to create "
        "the companies and leads."
    ),
    lifespan=leadscout_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config() -> RunnerConfig:
    return RunnerConfig.from_env()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("leadscout://overview")
def leadscout_overview() -> str:
    """Overview of LeadScout: run lifecycle, statuses and limits."""
    return json.dumps({
        "system": "LeadScout discovery run engine",
        "data_model": {
            "discovery_run": "One execution of an intent. Holds results, stats and counters.",
            "company": "A prospect organisation created by materialization.",
            "contact": "A person at a company.",
            "lead": "A contactable prospect (requires an email) with status 'new'.",
        },
        "workflow": [
            "1. list_intents() to pick an intent.",
            "2. trigger_run(intent_id, dry_run=True) to preview without creating records.",
            "3. get_run(run_id) to review results and projected counts.",
            "4. materialize_run(run_id) to create the records from the dry run.",
            "5. archive_run(run_id), then delete_run(run_id) to clean up.",
        ],
        "statuses": ["pending", "running", "completed", "completed_with_errors", "failed", "cancelled"],
        "runner": services.runner_status(_config()),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Intents & Runs
# ---------------------------------------------------------------------------


@mcp.tool()
def list_intents() -> dict:
    """List the active discovery intents and whether the runner is enabled."""
    config = _config()
    return {
        "runner": services.runner_status(config),
        "intents": [services.intent_summary(i, config) for i in catalog_intents()],
    }


@mcp.tool()
def list_runs(archived: bool = False, mode: str | None = None, limit: int = 20) -> dict:
    """List discovery runs, newest first.

    Args:
        archived: True to list archived runs instead of active ones.
        mode: Filter by trigger mode: manual or scheduled.
        limit: Max runs (default 20, max 200).
    """
    with session_scope() as session:
        items, total = services.list_runs(
            session, archived=archived, mode=mode, limit=max(1, min(limit, 200)),
        )
        return {"items": items, "total": total}


@mcp.tool()
def get_run(run_id: str) -> dict:
    """Get a discovery run with its stored results and stats."""
    with session_scope() as session:
        run = RunStore(session).get(run_id)
        if run is None:
            return {"error": f"Discovery run {run_id} not found"}
        return services.run_detail(run)


@mcp.tool()
async def trigger_run(
    intent_id: str,
    dry_run: bool = True,
    target_countries: list[str] | None = None,
    additional_include_keywords: list[str] | None = None,
    additional_exclude_keywords: list[str] | None = None,
    max_companies: int | None = None,
    max_queries: int | None = None,
) -> dict:
    """Run discovery for an intent and wait for it to finish.

    Defaults to a dry run: results are stored on the run but no records are
    created until materialize_run() is called. Limits are clamped to the
    process safety caps.
    """
    overrides = IntentOverrides(
        target_countries=target_countries or None,
        additional_include_keywords=additional_include_keywords or [],
        additional_exclude_keywords=additional_exclude_keywords or [],
        limits=LimitOverrides(max_companies=max_companies, max_queries=max_queries),
    )
    with session_scope() as session:
        try:
            run = await services.trigger_run(
                session, _config(), intent_id, dry_run=dry_run, overrides=overrides,
                mode="manual", triggered_by="mcp",
            )
        except DiscoveryError as exc:
            return {"error": str(exc)}
        if run.status == FAILED:
            return {"error": run.error or "Discovery run failed", "run_id": run.id}
        return services.run_summary(run)


@mcp.tool()
def cancel_run(run_id: str) -> dict:
    """Request cancellation of a pending or running discovery run."""
    with session_scope() as session:
        try:
            run = services.build_lifecycle(session).cancel(run_id, "mcp")
        except DiscoveryError as exc:
            return {"error": str(exc)}
        return services.run_summary(run)


@mcp.tool()
def materialize_run(run_id: str) -> dict:
    """Create companies, contacts and leads from a finished dry run's results."""
    with session_scope() as session:
        try:
            run, outcome = services.build_lifecycle(session).materialize(run_id)
        except DiscoveryError as exc:
            return {"error": str(exc)}
        return services.materialize_summary(run, outcome)


# ---------------------------------------------------------------------------
# Tools: Archive & Delete
# ---------------------------------------------------------------------------


@mcp.tool()
def archive_run(run_id: str) -> dict:
    """Archive a finished run (hides it from the default run list)."""
    with session_scope() as session:
        try:
            run = services.build_lifecycle(session).archive(run_id, archived_by="mcp")
        except DiscoveryError as exc:
            return {"error": str(exc)}
        return services.run_summary(run)


@mcp.tool()
def unarchive_run(run_id: str) -> dict:
    """Restore an archived run to the default run list."""
    with session_scope() as session:
        try:
            run = services.build_lifecycle(session).unarchive(run_id)
        except DiscoveryError as exc:
            return {"error": str(exc)}
        return services.run_summary(run)


@mcp.tool()
def delete_run(run_id: str) -> dict:
    """Permanently delete a run. The run must be archived first."""
    with session_scope() as session:
        try:
            services.build_lifecycle(session).delete(run_id)
        except DiscoveryError as exc:
            return {"error": str(exc)}
        return {"ok": True, "deleted_run_id": run_id}


@mcp.tool()
def bulk_run_action(action: str, run_ids: list[str]) -> dict:
    """Apply archive, unarchive or delete to several runs; reports per-run failures."""
    if action not in BULK_ACTIONS:
        return {"error": f"Unknown action {action!r}; expected one of {', '.join(BULK_ACTIONS)}"}
    if not run_ids:
        return {"error": "run_ids must contain at least one id"}
    with session_scope() as session:
        return services.bulk_summary(services.build_lifecycle(session).bulk(action, run_ids))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the LeadScout MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()

"""Shared business logic for the LeadScout API and MCP server."""
from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leadscout.channels import DiscoveryChannel, default_channels
from leadscout.config import RunnerConfig
from leadscout.errors import RunnerDisabled
from leadscout.intents import DiscoveryIntent, resolve_intent
from leadscout.lifecycle import BulkResult, LifecycleManager
from leadscout.materializer import MaterializeOutcome, ResultMaterializer
from leadscout.models import Company, DiscoveryRun, Lead
from leadscout.runner import DiscoveryRunner
from leadscout.schemas import IntentOverrides
from leadscout.store import RunStore
from leadscout.utils import iso, json_parse

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

RUN_FIELDS = (
    "id", "mode", "dry_run", "intent_id", "intent_name", "status", "triggered_by",
    "created_companies_count", "created_contacts_count", "created_leads_count",
    "skipped_count", "error_count", "error",
)

RUN_TIME_FIELDS = ("started_at", "finished_at", "cancel_requested_at", "archived_at")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def run_summary(run: DiscoveryRun) -> dict:
    stats = RunStore.load_stats(run)
    return {
        **{f: getattr(run, f) for f in RUN_FIELDS},
        **{f: iso(getattr(run, f)) for f in RUN_TIME_FIELDS},
        "result_count": stats.total_after_dedupe,
        "stats": stats.model_dump(mode="json"),
    }


def run_detail(run: DiscoveryRun) -> dict:
    base = run_summary(run)
    results = RunStore.load_results(run)
    base["result_count"] = len(results)
    base["results"] = [r.model_dump(mode="json") for r in results]
    return base


def intent_summary(intent: DiscoveryIntent, config: RunnerConfig) -> dict:
    limits = {**config.default_limits.as_dict(), **intent.limits}
    return {
        "id": intent.id, "name": intent.name, "description": intent.description,
        "category": intent.category, "target_countries": list(intent.target_countries),
        "channels": list(intent.channels), "limits": limits,
    }


def company_summary(company: Company) -> dict:
    return {
        "id": company.id, "name": company.name, "website": company.website,
        "industry": company.industry, "country": company.country,
        "discovery_metadata": json_parse(company.discovery_metadata_json),
    }


def lead_summary(lead: Lead) -> dict:
    return {
        "id": lead.id, "email": lead.email, "first_name": lead.first_name,
        "last_name": lead.last_name, "company_name": lead.company_name,
        "company_id": lead.company_id, "contact_id": lead.contact_id,
        "status": lead.status, "source": lead.source,
    }


def materialize_summary(run: DiscoveryRun, outcome: MaterializeOutcome) -> dict:
    return {
        "run_id": run.id,
        "companies_created": outcome.created.companies,
        "contacts_created": outcome.created.contacts,
        "leads_created": outcome.created.leads,
        "skipped": outcome.skipped,
        "errors": [f"{e.type}: {e.message}" for e in outcome.errors],
    }


def bulk_summary(result: BulkResult) -> dict:
    return {"action": result.action, "succeeded": result.succeeded, "failed": result.failed}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_runner(
    session: Session, config: RunnerConfig,
    channels: Mapping[str, DiscoveryChannel] | None = None,
) -> DiscoveryRunner:
    return DiscoveryRunner(
        config,
        channels if channels is not None else default_channels(config),
        RunStore(session),
        ResultMaterializer(session),
    )


def build_lifecycle(session: Session) -> LifecycleManager:
    return LifecycleManager(RunStore(session), ResultMaterializer(session))


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def trigger_run(
    session: Session,
    config: RunnerConfig,
    intent_id: str,
    *,
    dry_run: bool = False,
    overrides: IntentOverrides | None = None,
    mode: str = "manual",
    triggered_by: str = "api",
    channels: Mapping[str, DiscoveryChannel] | None = None,
) -> DiscoveryRun:
    """Resolve *intent_id* and execute a run to completion.

    Raises ``RunnerDisabled``, ``IntentNotFound`` or ``IntentInactive``
    before any run is created.
    """
    if not config.enabled:
        raise RunnerDisabled()
    plan = resolve_intent(intent_id, overrides, config.default_limits)
    runner = build_runner(session, config, channels)
    return await runner.execute(plan, dry_run=dry_run, mode=mode, triggered_by=triggered_by)


def list_runs(
    session: Session, *, archived: bool | None = False, mode: str | None = None, limit: int = 50,
) -> tuple[list[dict], int]:
    runs, total = RunStore(session).list_runs(archived=archived, mode=mode, limit=limit)
    return [run_summary(r) for r in runs], total


def list_companies(session: Session, limit: int = 100) -> tuple[list[dict], int]:
    total = session.execute(select(func.count()).select_from(Company)).scalar() or 0
    rows = session.execute(
        select(Company).order_by(Company.created_at.desc(), Company.id.desc()).limit(limit)
    ).scalars().all()
    return [company_summary(c) for c in rows], total


def list_leads(session: Session, limit: int = 100, status: str | None = None) -> tuple[list[dict], int]:
    query = select(Lead)
    count_query = select(func.count()).select_from(Lead)
    if status:
        query = query.where(Lead.status == status)
        count_query = count_query.where(Lead.status == status)
    total = session.execute(count_query).scalar() or 0
    rows = session.execute(
        query.order_by(Lead.created_at.desc(), Lead.id.desc()).limit(limit)
    ).scalars().all()
    return [lead_summary(lead) for lead in rows], total


def runner_status(config: RunnerConfig) -> dict[str, Any]:
    return {
        "enabled": config.enabled,
        "default_limits": config.default_limits.as_dict(),
        "google_configured": bool(config.google_api_key and config.google_cse_id),
        "scrape_websites": config.scrape_websites,
    }

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Generator, Mapping

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from leadscout import services
from leadscout.channels import DiscoveryChannel, default_channels
from leadscout.config import RunnerConfig
from leadscout.db import current_db_path, get_session, init_db
from leadscout.errors import (
    DiscoveryError, IntentNotFound, LifecycleError, RunNotFound, RunnerDisabled,
)
from leadscout.intents import list_intents
from leadscout.models import FAILED, DiscoveryRun
from leadscout.schemas import (
    BulkActionOut,
    BulkActionRequest,
    CompanyOut,
    IntentOut,
    LeadOut,
    MaterializeOut,
    RunDetail,
    RunListResponse,
    RunOut,
    ScheduledRunRequest,
    TriggerRunRequest,
)
from leadscout.store import RunStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    log.info("LeadScout database: %s", current_db_path())
    yield


app = FastAPI(
    title="LeadScout",
    version="0.1.0",
    description=(
        "Lead discovery API. Runs search channels for a discovery intent, "
        "deduplicates candidates and materializes them into companies, contacts "
        "and leads. Dry runs store results for review before materialization."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Intents", "description": "Discovery templates a run can execute."},
        {"name": "Runs", "description": "Trigger, inspect and manage discovery runs."},
        {"name": "Jobs", "description": "Scheduled triggers, authorized by a shared secret."},
        {"name": "Records", "description": "Companies and leads created by materialization."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def runner_config() -> RunnerConfig:
    return RunnerConfig.from_env()


def channel_registry(config: RunnerConfig = Depends(runner_config)) -> Mapping[str, DiscoveryChannel]:
    return default_channels(config)


def _http_error(exc: DiscoveryError) -> HTTPException:
    if isinstance(exc, (RunNotFound, IntentNotFound)):
        return HTTPException(404, str(exc))
    if isinstance(exc, RunnerDisabled):
        return HTTPException(403, str(exc))
    if isinstance(exc, LifecycleError):
        return HTTPException(409, str(exc))
    return HTTPException(400, str(exc))


def _get_run_or_404(session: Session, run_id: str) -> DiscoveryRun:
    run = RunStore(session).get(run_id)
    if not run:
        raise HTTPException(404, "Discovery run not found")
    return run


def _run_response(run: DiscoveryRun) -> dict:
    if run.status == FAILED:
        raise HTTPException(502, {"error": run.error or "Discovery run failed", "run_id": run.id})
    return services.run_detail(run)


# ---------------------------------------------------------------------------
# Routes: Intents
# ---------------------------------------------------------------------------


@app.get("/api/intents", tags=["Intents"], summary="List active discovery intents")
async def get_intents(config: RunnerConfig = Depends(runner_config)):
    return {
        "runner": services.runner_status(config),
        "intents": [IntentOut(**services.intent_summary(i, config)) for i in list_intents()],
    }


# ---------------------------------------------------------------------------
# Routes: Runs
# ---------------------------------------------------------------------------


@app.post("/api/discovery/runs", response_model=RunDetail, status_code=201,
          tags=["Runs"], summary="Trigger a manual discovery run and wait for it to finish")
async def trigger_manual_run(
    body: TriggerRunRequest,
    session: Session = Depends(db_session),
    config: RunnerConfig = Depends(runner_config),
    channels: Mapping[str, DiscoveryChannel] = Depends(channel_registry),
):
    try:
        run = await services.trigger_run(
            session, config, body.intent_id, dry_run=body.dry_run, overrides=body.overrides,
            mode="manual", triggered_by="api", channels=channels,
        )
    except DiscoveryError as exc:
        raise _http_error(exc) from exc
    return _run_response(run)


@app.get("/api/discovery/runs", response_model=RunListResponse,
         tags=["Runs"], summary="List discovery runs, newest first")
async def list_runs(
    archived: bool = False,
    mode: str | None = Query(None, pattern="^(manual|scheduled)$"),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items, total = services.list_runs(session, archived=archived, mode=mode, limit=limit)
    return {"items": items, "total": total}


@app.patch("/api/discovery/runs/bulk", response_model=BulkActionOut,
           tags=["Runs"], summary="Archive, unarchive or delete several runs")
async def bulk_action(body: BulkActionRequest, session: Session = Depends(db_session)):
    result = services.build_lifecycle(session).bulk(body.action, body.run_ids)
    return services.bulk_summary(result)


@app.get("/api/discovery/runs/{run_id}", response_model=RunDetail,
         tags=["Runs"], summary="Get a run with its results and stats")
async def get_run(run_id: str, session: Session = Depends(db_session)):
    return services.run_detail(_get_run_or_404(session, run_id))


@app.post("/api/discovery/runs/{run_id}/cancel", response_model=RunOut,
          tags=["Runs"], summary="Request cancellation of a pending or running run")
async def cancel_run(
    run_id: str,
    requested_by: str | None = Query(None, max_length=200),
    session: Session = Depends(db_session),
):
    try:
        run = services.build_lifecycle(session).cancel(run_id, requested_by or "api")
    except DiscoveryError as exc:
        raise _http_error(exc) from exc
    return services.run_summary(run)


@app.post("/api/discovery/runs/{run_id}/materialize", response_model=MaterializeOut,
          tags=["Runs"], summary="Create records from a finished dry run")
async def materialize_run(run_id: str, session: Session = Depends(db_session)):
    try:
        run, outcome = services.build_lifecycle(session).materialize(run_id)
    except DiscoveryError as exc:
        raise _http_error(exc) from exc
    return services.materialize_summary(run, outcome)


@app.post("/api/discovery/runs/{run_id}/archive", response_model=RunOut,
          tags=["Runs"], summary="Archive a finished run")
async def archive_run(run_id: str, session: Session = Depends(db_session)):
    try:
        run = services.build_lifecycle(session).archive(run_id, archived_by="api")
    except DiscoveryError as exc:
        raise _http_error(exc) from exc
    return services.run_summary(run)


@app.post("/api/discovery/runs/{run_id}/unarchive", response_model=RunOut,
          tags=["Runs"], summary="Restore an archived run")
async def unarchive_run(run_id: str, session: Session = Depends(db_session)):
    try:
        run = services.build_lifecycle(session).unarchive(run_id)
    except DiscoveryError as exc:
        raise _http_error(exc) from exc
    return services.run_summary(run)


@app.delete("/api/discovery/runs/{run_id}", tags=["Runs"], summary="Delete an archived run")
async def delete_run(run_id: str, session: Session = Depends(db_session)):
    try:
        services.build_lifecycle(session).delete(run_id)
    except DiscoveryError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "deleted_run_id": run_id}


# ---------------------------------------------------------------------------
# Routes: Jobs
# ---------------------------------------------------------------------------


@app.post("/api/jobs/discovery/run", response_model=RunDetail, status_code=201,
          tags=["Jobs"], summary="Scheduled discovery run (requires x-job-secret)")
async def scheduled_run(
    body: ScheduledRunRequest | None = None,
    x_job_secret: str | None = Header(None),
    session: Session = Depends(db_session),
    config: RunnerConfig = Depends(runner_config),
    channels: Mapping[str, DiscoveryChannel] = Depends(channel_registry),
):
    if not config.job_secret:
        raise HTTPException(503, "Scheduled runs are not configured (CRON_JOB_SECRET is unset)")
    if not x_job_secret or not secrets.compare_digest(x_job_secret, config.job_secret):
        raise HTTPException(401, "Invalid job secret")
    body = body or ScheduledRunRequest()
    try:
        run = await services.trigger_run(
            session, config, body.intent_id or config.scheduled_intent_id,
            dry_run=body.dry_run, mode="scheduled", triggered_by="scheduler", channels=channels,
        )
    except DiscoveryError as exc:
        raise _http_error(exc) from exc
    return _run_response(run)


# ---------------------------------------------------------------------------
# Routes: Records
# ---------------------------------------------------------------------------


@app.get("/api/companies", tags=["Records"], summary="List materialized companies")
async def list_companies(
    limit: int = Query(100, ge=1, le=500), session: Session = Depends(db_session),
):
    items, total = services.list_companies(session, limit=limit)
    return {"items": [CompanyOut(**c) for c in items], "total": total}


@app.get("/api/leads", tags=["Records"], summary="List materialized leads")
async def list_leads(
    limit: int = Query(100, ge=1, le=500),
    status: str | None = None,
    session: Session = Depends(db_session),
):
    items, total = services.list_leads(session, limit=limit, status=status)
    return {"items": [LeadOut(**lead) for lead in items], "total": total}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("leadscout.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()

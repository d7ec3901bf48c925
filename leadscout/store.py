"""Persistence for DiscoveryRun records.

All run writes go through ``RunStore``. Results and stats are (de)serialized
here, once, through the pydantic adapters in ``leadscout.schemas``; callers
only ever see typed values. Lifecycle writes that can race with an in-flight
run are conditional UPDATE/DELETE statements whose row count tells the
caller whether the precondition held.
"""
from __future__ import annotations

import logging
from datetime import datetime, UTC
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from leadscout.errors import InvalidTransition, RunNotFound
from leadscout.models import (
    ACTIVE_STATUSES, FAILED, PENDING, RUNNING, TERMINAL_STATUSES, DiscoveryRun,
)
from leadscout.schemas import RESULTS_ADAPTER, DiscoveryResult, RunStats

log = logging.getLogger(__name__)

# Allowed status moves. Terminal -> terminal only happens on materialize.
_TRANSITIONS: dict[str, tuple[str, ...]] = {
    PENDING: (RUNNING, *TERMINAL_STATUSES),
    RUNNING: TERMINAL_STATUSES,
    **{status: TERMINAL_STATUSES for status in TERMINAL_STATUSES},
}


def _now() -> datetime:
    return datetime.now(UTC)


class RunStore:
    def __init__(self, session: Session):
        self.session = session

    # -- reads --------------------------------------------------------------

    def get(self, run_id: str) -> DiscoveryRun | None:
        return self.session.execute(
            select(DiscoveryRun).where(DiscoveryRun.id == run_id)
        ).scalars().first()

    def require(self, run_id: str) -> DiscoveryRun:
        run = self.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def refresh(self, run: DiscoveryRun) -> DiscoveryRun:
        self.session.refresh(run)
        return run

    def cancel_requested(self, run_id: str) -> bool:
        """Read the cancel flag straight from the database (it is set out of band)."""
        value = self.session.execute(
            select(DiscoveryRun.cancel_requested_at).where(DiscoveryRun.id == run_id)
        ).scalar()
        return value is not None

    def list_runs(
        self, *, archived: bool | None = False, mode: str | None = None, limit: int = 50,
    ) -> tuple[list[DiscoveryRun], int]:
        query = select(DiscoveryRun)
        count_query = select(func.count()).select_from(DiscoveryRun)
        conditions = []
        if archived is True:
            conditions.append(DiscoveryRun.archived_at.is_not(None))
        elif archived is False:
            conditions.append(DiscoveryRun.archived_at.is_(None))
        if mode:
            conditions.append(DiscoveryRun.mode == mode)
        if conditions:
            query = query.where(*conditions)
            count_query = count_query.where(*conditions)
        total = self.session.execute(count_query).scalar() or 0
        runs = self.session.execute(
            query.order_by(DiscoveryRun.started_at.desc()).limit(limit)
        ).scalars().all()
        return list(runs), total

    @staticmethod
    def load_results(run: DiscoveryRun) -> list[DiscoveryResult]:
        return RESULTS_ADAPTER.validate_json(run.results_json or "[]")

    @staticmethod
    def load_stats(run: DiscoveryRun) -> RunStats:
        return RunStats.model_validate_json(run.stats_json or "{}")

    # -- execution writes (owned by the runner) -----------------------------

    def create(
        self, *, mode: str, dry_run: bool, triggered_by: str,
        intent_id: str | None = None, intent_name: str | None = None,
    ) -> DiscoveryRun:
        run = DiscoveryRun(
            mode=mode, dry_run=dry_run, triggered_by=triggered_by,
            intent_id=intent_id, intent_name=intent_name,
            status=PENDING, started_at=_now(),
        )
        self.session.add(run)
        self.session.commit()
        log.info("Discovery run %s created (mode=%s, dry_run=%s, intent=%s)",
                 run.id, mode, dry_run, intent_id)
        return run

    def _set_status(self, run: DiscoveryRun, status: str) -> None:
        if status not in _TRANSITIONS.get(run.status, ()):
            raise InvalidTransition(run.id, run.status, status)
        run.status = status

    def mark_running(self, run: DiscoveryRun) -> None:
        self._set_status(run, RUNNING)
        self.session.commit()

    def finish(
        self, run: DiscoveryRun, *, status: str, results: Sequence[DiscoveryResult],
        stats: RunStats, error: str | None = None,
    ) -> None:
        self._set_status(run, status)
        run.finished_at = _now()
        run.error = error
        self._write_payload(run, results, stats)
        self.session.commit()

    def fail(self, run: DiscoveryRun, error: str, stats: RunStats | None = None) -> None:
        # Anything left over from a half-applied transaction is discarded first.
        self.session.rollback()
        self._set_status(run, FAILED)
        run.finished_at = _now()
        run.error = error
        run.error_count = max(run.error_count, 1)
        if stats is not None:
            run.stats_json = stats.model_dump_json()
        self.session.commit()

    def _write_payload(
        self, run: DiscoveryRun, results: Sequence[DiscoveryResult], stats: RunStats,
    ) -> None:
        run.results_json = RESULTS_ADAPTER.dump_json(list(results)).decode()
        run.stats_json = stats.model_dump_json()
        if run.dry_run:
            run.created_companies_count = run.created_contacts_count = run.created_leads_count = 0
            run.skipped_count = 0
        else:
            run.created_companies_count = stats.companies_created
            run.created_contacts_count = stats.contacts_created
            run.created_leads_count = stats.leads_created
            run.skipped_count = stats.companies_skipped + stats.contacts_skipped + stats.leads_skipped
        run.error_count = len(stats.errors) + len(stats.channel_errors)

    # -- lifecycle writes ---------------------------------------------------

    def apply_materialization(self, run: DiscoveryRun, *, status: str, stats: RunStats) -> int:
        """Flip a dry run to real in place, with the counters of the materialization.

        The write only lands while the run is still a dry run; a return of 0
        means another materialization got there first and nothing was written.
        """
        if status not in _TRANSITIONS.get(run.status, ()):
            raise InvalidTransition(run.id, run.status, status)
        result = self.session.execute(
            update(DiscoveryRun)
            .where(DiscoveryRun.id == run.id, DiscoveryRun.dry_run.is_(True))
            .values(
                status=status,
                dry_run=False,
                finished_at=run.finished_at or _now(),
                stats_json=stats.model_dump_json(),
                created_companies_count=stats.companies_created,
                created_contacts_count=stats.contacts_created,
                created_leads_count=stats.leads_created,
                skipped_count=stats.companies_skipped + stats.contacts_skipped + stats.leads_skipped,
                error_count=len(stats.errors) + len(stats.channel_errors),
            )
        )
        self.session.commit()
        self.session.refresh(run)
        return result.rowcount

    def archive_if_terminal(self, run_id: str, archived_by: str | None = None) -> int:
        result = self.session.execute(
            update(DiscoveryRun)
            .where(
                DiscoveryRun.id == run_id,
                DiscoveryRun.status.in_(TERMINAL_STATUSES),
                DiscoveryRun.archived_at.is_(None),
            )
            .values(archived_at=_now(), archived_by=archived_by)
        )
        self.session.commit()
        return result.rowcount

    def unarchive(self, run_id: str) -> int:
        result = self.session.execute(
            update(DiscoveryRun)
            .where(DiscoveryRun.id == run_id, DiscoveryRun.archived_at.is_not(None))
            .values(archived_at=None, archived_by=None)
        )
        self.session.commit()
        return result.rowcount

    def delete_if_archived(self, run_id: str) -> int:
        result = self.session.execute(
            delete(DiscoveryRun)
            .where(DiscoveryRun.id == run_id, DiscoveryRun.archived_at.is_not(None))
        )
        self.session.commit()
        return result.rowcount

    def request_cancel_if_active(self, run_id: str, requested_by: str | None = None) -> int:
        result = self.session.execute(
            update(DiscoveryRun)
            .where(
                DiscoveryRun.id == run_id,
                DiscoveryRun.status.in_(ACTIVE_STATUSES),
                DiscoveryRun.cancel_requested_at.is_(None),
            )
            .values(cancel_requested_at=_now(), cancel_requested_by=requested_by)
        )
        self.session.commit()
        return result.rowcount

"""Lifecycle Manager: archive, unarchive, delete, materialize and cancel runs.

Every precondition is checked against the stored run before anything is
written; archive, delete and cancel are then applied as conditional
statements so a run that changed in between is rejected rather than
clobbered.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from leadscout.errors import (
    CancelNotAllowed, EmptyResults, LifecycleError, NotADryRun, RunNotArchived, RunNotTerminal,
)
from leadscout.materializer import MaterializeOutcome, ResultMaterializer
from leadscout.models import (
    ACTIVE_STATUSES, CANCELLED, COMPLETED, COMPLETED_WITH_ERRORS, DiscoveryRun,
)
from leadscout.store import RunStore

log = logging.getLogger(__name__)

BULK_ACTIONS = ("archive", "unarchive", "delete")


@dataclass
class BulkResult:
    action: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class LifecycleManager:
    def __init__(self, store: RunStore, materializer: ResultMaterializer):
        self.store = store
        self.materializer = materializer

    def archive(self, run_id: str, archived_by: str | None = None) -> DiscoveryRun:
        run = self.store.require(run_id)
        if run.archived_at is not None:
            return run
        if not run.is_terminal:
            raise RunNotTerminal(run_id, run.status)
        # Zero rows means it was archived concurrently; same end state.
        if self.store.archive_if_terminal(run_id, archived_by):
            log.info("Archived discovery run %s", run_id)
        return self.store.refresh(run)

    def unarchive(self, run_id: str) -> DiscoveryRun:
        run = self.store.require(run_id)
        if self.store.unarchive(run_id):
            log.info("Unarchived discovery run %s", run_id)
        return self.store.refresh(run)

    def delete(self, run_id: str) -> None:
        run = self.store.require(run_id)
        if run.archived_at is None:
            raise RunNotArchived(run_id)
        if not self.store.delete_if_archived(run_id):
            raise RunNotArchived(run_id)
        log.info("Deleted discovery run %s", run_id)

    def cancel(self, run_id: str, requested_by: str | None = None) -> DiscoveryRun:
        run = self.store.require(run_id)
        if run.status not in ACTIVE_STATUSES:
            raise CancelNotAllowed(run_id, f"Run {run_id} is already {run.status}")
        if run.cancel_requested_at is not None:
            raise CancelNotAllowed(run_id, f"Cancellation already requested for run {run_id}")
        if not self.store.request_cancel_if_active(run_id, requested_by):
            run = self.store.refresh(run)
            raise CancelNotAllowed(run_id, f"Run {run_id} can no longer be cancelled ({run.status})")
        log.info("Cancellation requested for discovery run %s by %s", run_id, requested_by or "unknown")
        return self.store.refresh(run)

    def materialize(self, run_id: str) -> tuple[DiscoveryRun, MaterializeOutcome]:
        """Create CRM records from a finished dry run's stored results, in place."""
        run = self.store.require(run_id)
        if not run.dry_run:
            raise NotADryRun(run_id)
        if not run.is_terminal:
            raise RunNotTerminal(run_id, run.status)
        results = self.store.load_results(run)
        if not results:
            raise EmptyResults(run_id)

        # Records first: a crash here leaves the run a dry run, and a retry only skips.
        outcome = self.materializer.materialize(results)
        stats = outcome.apply_to(self.store.load_stats(run))
        stats = stats.model_copy(update={"projected": None})
        if run.status == CANCELLED:
            status = CANCELLED
        elif outcome.errors or stats.channel_errors:
            status = COMPLETED_WITH_ERRORS
        else:
            status = COMPLETED
        if not self.store.apply_materialization(run, status=status, stats=stats):
            # Another request materialized this run while ours was creating records.
            raise NotADryRun(run_id)
        log.info("Materialized dry run %s: %d companies, %d contacts, %d leads, %d skipped, %d errors",
                 run_id, outcome.created.companies, outcome.created.contacts,
                 outcome.created.leads, outcome.skipped, len(outcome.errors))
        return run, outcome

    def bulk(self, action: str, run_ids: list[str]) -> BulkResult:
        if action not in BULK_ACTIONS:
            raise ValueError(f"Unknown bulk action {action!r}")
        handler = {"archive": self.archive, "unarchive": self.unarchive, "delete": self.delete}[action]
        result = BulkResult(action=action)
        for run_id in dict.fromkeys(run_ids):
            try:
                handler(run_id)
                result.succeeded.append(run_id)
            except LifecycleError as exc:
                result.failed[run_id] = str(exc)
        log.info("Bulk %s: %d succeeded, %d failed", action, len(result.succeeded), len(result.failed))
        return result

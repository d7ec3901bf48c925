"""Tests for run lifecycle actions and status monotonicity."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from leadscout.errors import (
    CancelNotAllowed, EmptyResults, InvalidTransition, NotADryRun, RunNotArchived, RunNotFound,
    RunNotTerminal,
)
from leadscout.lifecycle import LifecycleManager
from leadscout.materializer import ResultMaterializer
from leadscout.models import CANCELLED, COMPLETED, COMPLETED_WITH_ERRORS, RUNNING, Company
from leadscout.schemas import ProjectedCounts, RunStats
from leadscout.store import RunStore


@pytest.fixture()
def lifecycle(store, materializer) -> LifecycleManager:
    return LifecycleManager(store, materializer)


@pytest.fixture()
def finished_run(store):
    def _make(results=(), *, dry_run=True, status=COMPLETED, stats=None):
        run = store.create(mode="manual", dry_run=dry_run, triggered_by="test", intent_id="test_intent")
        store.mark_running(run)
        store.finish(run, status=status, results=list(results), stats=stats or RunStats())
        return run
    return _make


@pytest.fixture()
def running_run(store):
    def _make(dry_run=True):
        run = store.create(mode="manual", dry_run=dry_run, triggered_by="test")
        store.mark_running(run)
        return run
    return _make


def _companies(session) -> int:
    return session.execute(select(func.count()).select_from(Company)).scalar()


# ---------------------------------------------------------------------------
# Archive / unarchive / delete
# ---------------------------------------------------------------------------


class TestArchiveDelete:
    def test_archive_terminal_run(self, lifecycle, finished_run):
        run = lifecycle.archive(finished_run().id, "ops")
        assert run.archived_at is not None
        assert run.archived_by == "ops"

    def test_archive_twice_is_a_no_op(self, lifecycle, finished_run):
        run_id = finished_run().id
        first = lifecycle.archive(run_id).archived_at
        assert lifecycle.archive(run_id).archived_at == first

    def test_archive_active_run_rejected(self, lifecycle, running_run):
        with pytest.raises(RunNotTerminal):
            lifecycle.archive(running_run().id)

    def test_delete_requires_archive(self, lifecycle, finished_run, store):
        run_id = finished_run().id
        with pytest.raises(RunNotArchived):
            lifecycle.delete(run_id)
        lifecycle.archive(run_id)
        lifecycle.delete(run_id)
        assert store.get(run_id) is None

    def test_unarchive(self, lifecycle, finished_run, store):
        run_id = finished_run().id
        lifecycle.archive(run_id)
        assert lifecycle.unarchive(run_id).archived_at is None
        runs, total = store.list_runs(archived=False)
        assert total == 1 and runs[0].id == run_id

    def test_unknown_run(self, lifecycle):
        with pytest.raises(RunNotFound):
            lifecycle.archive("missing")

    def test_archived_runs_are_hidden_by_default(self, lifecycle, finished_run, store):
        kept = finished_run().id
        lifecycle.archive(finished_run().id)
        assert [r.id for r in store.list_runs()[0]] == [kept]
        assert store.list_runs(archived=True)[1] == 1
        assert store.list_runs(archived=None)[1] == 2


# ---------------------------------------------------------------------------
# Materialize
# ---------------------------------------------------------------------------


class TestMaterialize:
    def test_materializes_dry_run_in_place(self, lifecycle, finished_run, make_company, session):
        stats = RunStats(projected=ProjectedCounts(companies=2))
        run = finished_run([make_company("A", "https://a.com"), make_company("B", "https://b.com")], stats=stats)

        materialized, outcome = lifecycle.materialize(run.id)

        assert materialized.id == run.id
        assert materialized.dry_run is False
        assert materialized.status == COMPLETED
        assert materialized.created_companies_count == 2
        assert outcome.created.companies == 2
        assert RunStore.load_stats(materialized).projected is None
        assert _companies(session) == 2

    def test_second_materialize_rejected(self, lifecycle, finished_run, make_company):
        run = finished_run([make_company("A", "https://a.com")])
        lifecycle.materialize(run.id)
        with pytest.raises(NotADryRun):
            lifecycle.materialize(run.id)

    def test_real_run_rejected(self, lifecycle, finished_run, make_company):
        with pytest.raises(NotADryRun):
            lifecycle.materialize(finished_run([make_company("A")], dry_run=False).id)

    def test_active_run_rejected(self, lifecycle, running_run):
        with pytest.raises(RunNotTerminal):
            lifecycle.materialize(running_run().id)

    def test_empty_results_rejected(self, lifecycle, finished_run):
        with pytest.raises(EmptyResults):
            lifecycle.materialize(finished_run().id)

    def test_retry_after_crash_only_skips(self, lifecycle, finished_run, make_company, store, session):
        run = finished_run([make_company("A", "https://a.com"), make_company("B", "https://b.com")])
        with patch.object(store, "apply_materialization", side_effect=RuntimeError("crash")):
            with pytest.raises(RuntimeError):
                lifecycle.materialize(run.id)
        assert store.require(run.id).dry_run is True

        materialized, outcome = lifecycle.materialize(run.id)
        assert outcome.created.total == 0
        assert outcome.skipped == 2
        assert materialized.dry_run is False
        assert _companies(session) == 2

    def test_overlapping_materialize_keeps_first_writer(self, lifecycle, finished_run, make_company,
                                                        store, session, session_factory):
        run = finished_run([make_company("A", "https://a.com")])
        other_session = session_factory()
        other = LifecycleManager(RunStore(other_session), ResultMaterializer(other_session))
        create_records = lifecycle.materializer.materialize

        def other_request_wins(results):
            other.materialize(run.id)
            return create_records(results)

        with patch.object(lifecycle.materializer, "materialize", side_effect=other_request_wins):
            with pytest.raises(NotADryRun):
                lifecycle.materialize(run.id)
        other_session.close()

        stored = store.refresh(store.require(run.id))
        assert stored.dry_run is False
        assert stored.created_companies_count == 1
        assert stored.skipped_count == 0
        stats = RunStore.load_stats(stored)
        assert (stats.companies_created, stats.companies_skipped) == (1, 0)
        assert _companies(session) == 1

    def test_channel_errors_keep_completed_with_errors(self, lifecycle, finished_run, make_company):
        stats = RunStats(channel_errors={"google": "quota"})
        run = finished_run([make_company("A")], status=COMPLETED_WITH_ERRORS, stats=stats)
        assert lifecycle.materialize(run.id)[0].status == COMPLETED_WITH_ERRORS

    def test_candidate_errors_mark_completed_with_errors(self, lifecycle, finished_run, make_company, make_lead):
        company = make_company("A", "https://a.com")
        run, outcome = lifecycle.materialize(finished_run([company, make_lead(company)]).id)
        assert run.status == COMPLETED_WITH_ERRORS
        assert len(outcome.errors) == 1
        assert run.error_count == 1

    def test_cancelled_run_stays_cancelled(self, lifecycle, finished_run, make_company):
        run = finished_run([make_company("A")], status=CANCELLED)
        materialized, _ = lifecycle.materialize(run.id)
        assert materialized.status == CANCELLED
        assert materialized.created_companies_count == 1


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    def test_cancel_running_run(self, lifecycle, running_run, store):
        run = lifecycle.cancel(running_run().id, "ops")
        assert run.cancel_requested_at is not None
        assert run.cancel_requested_by == "ops"
        assert run.status == RUNNING
        assert store.cancel_requested(run.id)

    def test_second_request_rejected(self, lifecycle, running_run):
        run_id = running_run().id
        lifecycle.cancel(run_id)
        with pytest.raises(CancelNotAllowed, match="already requested"):
            lifecycle.cancel(run_id)

    def test_finished_run_rejected(self, lifecycle, finished_run):
        with pytest.raises(CancelNotAllowed, match="already completed"):
            lifecycle.cancel(finished_run().id)


# ---------------------------------------------------------------------------
# Bulk & transitions
# ---------------------------------------------------------------------------


class TestBulk:
    def test_partial_success(self, lifecycle, finished_run, running_run):
        done = finished_run().id
        active = running_run().id
        result = lifecycle.bulk("archive", [done, active, "missing", done])
        assert result.succeeded == [done]
        assert set(result.failed) == {active, "missing"}

    def test_bulk_delete_needs_archive(self, lifecycle, finished_run):
        archived = finished_run().id
        lifecycle.archive(archived)
        live = finished_run().id
        result = lifecycle.bulk("delete", [archived, live])
        assert result.succeeded == [archived]
        assert "archived" in result.failed[live]

    def test_unknown_action(self, lifecycle):
        with pytest.raises(ValueError):
            lifecycle.bulk("purge", ["x"])


class TestTransitions:
    def test_terminal_run_cannot_restart(self, store, finished_run):
        run = finished_run()
        with pytest.raises(InvalidTransition):
            store.mark_running(run)

    def test_running_run_cannot_return_to_running(self, store, running_run):
        with pytest.raises(InvalidTransition):
            store.mark_running(running_run())

    def test_materialization_write_needs_a_dry_run(self, store, finished_run):
        run = finished_run(dry_run=False)
        assert store.apply_materialization(run, status=COMPLETED, stats=RunStats(companies_created=3)) == 0
        assert run.created_companies_count == 0

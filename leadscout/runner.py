"""Run Controller: executes one discovery run end to end.

A run walks the intent's channels in order. Each channel's candidates go
through the Channel Executor (bounded, failure-contained) and then the run
buffer (within-run dedup and limits). Cancellation is read from the store
at every channel boundary. Real runs materialize before the terminal write
so the counters land in the same record; dry runs store a projection.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Mapping

from leadscout import dedup
from leadscout.channels import DiscoveryChannel
from leadscout.config import RunLimits, RunnerConfig
from leadscout.errors import RunnerDisabled
from leadscout.executor import ChannelExecutor
from leadscout.intents import ResolvedIntent
from leadscout.materializer import ResultMaterializer
from leadscout.models import (
    CANCELLED, COMPLETED, COMPLETED_WITH_ERRORS, FAILED, RUN_MODES, DiscoveryRun,
)
from leadscout.schemas import (
    CompanyResult, ContactResult, DiscoveryResult, LeadResult, LimitsUsed, RunStats,
)
from leadscout.store import RunStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Run buffer
# ---------------------------------------------------------------------------


def _company_identity(candidate: DiscoveryResult) -> str | None:
    if isinstance(candidate, CompanyResult):
        return dedup.company_identity(candidate.website, candidate.name)
    if isinstance(candidate, LeadResult) and candidate.company is not None:
        return dedup.company_identity(candidate.company.website, candidate.company.name)
    if isinstance(candidate, ContactResult):
        return dedup.company_identity(candidate.company_website, candidate.company_name)
    return None


class RunBuffer:
    """Accumulates unique candidates up to the run's company and lead limits.

    Companies count once per identity, whether they arrive as company results
    or inside lead results. Once full, only candidates attached to a company
    already held are accepted.
    """

    def __init__(self, limits: RunLimits):
        self.limits = limits
        self.results: list[DiscoveryResult] = []
        self.seen: set[str] = set()
        self.companies: set[str] = set()
        self.leads = 0
        self.duplicates = 0
        self.dropped_leads = 0

    @property
    def full(self) -> bool:
        return len(self.companies) >= self.limits.max_companies

    def offer(self, candidate: DiscoveryResult) -> bool:
        """Try to add *candidate*. Returns ``False`` only when the buffer is full."""
        if dedup.is_duplicate(candidate, self.seen):
            self.duplicates += 1
            return True
        identity = _company_identity(candidate)
        counts_company = not isinstance(candidate, ContactResult) and identity is not None
        new_company = counts_company and identity not in self.companies
        if self.full and (identity is None or identity not in self.companies):
            return False
        if isinstance(candidate, LeadResult):
            if self.leads >= self.limits.max_leads:
                self.dropped_leads += 1
                return True
            self.leads += 1
        if new_company:
            self.companies.add(identity)
        self.seen = dedup.merge(self.seen, candidate)
        self.results.append(candidate)
        return True

    def offer_all(self, candidates: list[DiscoveryResult]) -> int:
        """Offer each candidate in order; return how many were turned away for lack of room."""
        overflow = 0
        for candidate in candidates:
            if not self.offer(candidate):
                overflow += 1
        return overflow


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class DiscoveryRunner:
    def __init__(
        self,
        config: RunnerConfig,
        channels: Mapping[str, DiscoveryChannel],
        store: RunStore,
        materializer: ResultMaterializer,
        executor: ChannelExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.channels = channels
        self.store = store
        self.materializer = materializer
        self.executor = executor or ChannelExecutor(config.channel_timeout_seconds)
        self.clock = clock

    async def execute(
        self,
        plan: ResolvedIntent,
        *,
        dry_run: bool = False,
        mode: str = "manual",
        triggered_by: str = "system",
    ) -> DiscoveryRun:
        """Run *plan* to a terminal status and return the stored run.

        Raises ``RunnerDisabled`` before anything is persisted when the kill
        switch is off. Every other failure ends in a ``failed`` run.
        """
        if not self.config.enabled:
            raise RunnerDisabled()
        if mode not in RUN_MODES:
            raise ValueError(f"Unknown run mode {mode!r}")

        run = self.store.create(
            mode=mode, dry_run=dry_run, triggered_by=triggered_by,
            intent_id=plan.intent_id, intent_name=plan.intent_name,
        )
        started = self.clock()
        stats = RunStats(
            limits_used=LimitsUsed(**plan.limits.as_dict(), channels=list(plan.channels)),
            intent_config=plan.as_config(),
        )
        try:
            self.store.mark_running(run)
            buffer = RunBuffer(plan.limits)
            status, error = await self._gather(run, plan, buffer, stats, started)
            stats.total_after_dedupe = len(buffer.results)
            stats.within_run_duplicates = buffer.duplicates
            stats.dropped_leads = buffer.dropped_leads

            if status not in (CANCELLED, FAILED) and buffer.results:
                if dry_run:
                    stats.projected = self.materializer.project(buffer.results).as_projection()
                else:
                    outcome = self.materializer.materialize(buffer.results)
                    stats = outcome.apply_to(stats)
                    if outcome.errors:
                        status = COMPLETED_WITH_ERRORS

            stats.duration_ms = int((self.clock() - started) * 1000)
            self.store.finish(run, status=status, results=buffer.results, stats=stats, error=error)
        except Exception as exc:
            log.exception("Discovery run %s failed", run.id)
            stats.duration_ms = int((self.clock() - started) * 1000)
            self.store.fail(run, str(exc) or type(exc).__name__, stats)
            return run

        log.info("Discovery run %s finished: %s in %dms (%d results, %d created, %d channel errors)",
                 run.id, run.status, stats.duration_ms, stats.total_after_dedupe,
                 run.created_companies_count + run.created_contacts_count + run.created_leads_count,
                 len(stats.channel_errors))
        return run

    async def _gather(
        self, run: DiscoveryRun, plan: ResolvedIntent, buffer: RunBuffer,
        stats: RunStats, started: float,
    ) -> tuple[str, str | None]:
        """Walk the channels; return the terminal status and the run-level error, if any."""
        limits = plan.limits
        channels = list(plan.channels)
        if not channels:
            return FAILED, "No channels resolved for this intent"

        attempted = failed = 0
        cancelled = False
        for index, name in enumerate(channels):
            if self.store.cancel_requested(run.id):
                cancelled = True
                break
            remaining_channels = index < len(channels) - 1
            attempted += 1
            channel = self.channels.get(name)
            if channel is None:
                failed += 1
                stats.channel_results[name] = 0
                stats.channel_errors[name] = f"Unknown channel {name!r}"
                log.warning("Run %s: unknown channel %r", run.id, name)
                continue

            room = (limits.max_companies - len(buffer.companies)) + (limits.max_leads - buffer.leads)
            # One past the room, so a channel with more to give overflows the buffer.
            outcome = await self.executor.run(
                channel, plan,
                cap=room + 1,
                max_queries=limits.max_queries,
                time_remaining=limits.time_budget_seconds - (self.clock() - started),
            )
            stats.queries_executed[name] = outcome.queries_executed
            stats.channel_results[name] = len(outcome.candidates)
            stats.total_discovered += len(outcome.candidates)
            if outcome.error:
                failed += 1
                stats.channel_errors[name] = outcome.error

            overflow = buffer.offer_all(outcome.candidates)
            if buffer.full and (overflow or remaining_channels):
                stats.stopped_early = True
                stats.stopped_reason = "company_limit"
                break
            out_of_time = self.clock() - started >= limits.time_budget_seconds
            if outcome.budget_exhausted or (remaining_channels and out_of_time):
                stats.stopped_early = True
                stats.stopped_reason = "time_limit"
                break

        if not cancelled and self.store.cancel_requested(run.id):
            cancelled = True
        if cancelled:
            log.info("Discovery run %s cancelled after %d channel(s)", run.id, attempted)
            return CANCELLED, None
        if attempted and failed == attempted and not buffer.results:
            detail = "; ".join(f"{k}: {v}" for k, v in stats.channel_errors.items())
            return FAILED, f"All channels failed ({detail})"
        if stats.channel_errors:
            return COMPLETED_WITH_ERRORS, None
        return COMPLETED, None

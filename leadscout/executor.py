"""Channel Executor: runs one channel under its query, candidate and time bounds.

This is the failure boundary for channels. Whatever a channel raises is
captured in ``ChannelOutcome.error`` and the channel contributes zero
candidates; nothing propagates to the run.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from leadscout.schemas import DiscoveryResult

if TYPE_CHECKING:
    from leadscout.channels import DiscoveryChannel
    from leadscout.intents import ResolvedIntent

log = logging.getLogger(__name__)


@dataclass
class ChannelOutcome:
    channel: str
    candidates: list[DiscoveryResult] = field(default_factory=list)
    queries_executed: int = 0
    error: str | None = None
    elapsed: float = 0.0
    # The run's time budget ran out mid-channel; candidates so far are kept.
    budget_exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timed out"
    return str(exc) or type(exc).__name__


class ChannelExecutor:
    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def run(
        self,
        channel: DiscoveryChannel,
        plan: ResolvedIntent,
        cap: int,
        max_queries: int,
        time_remaining: float,
    ) -> ChannelOutcome:
        """Execute up to *max_queries* queries, stopping once *cap* candidates are held.

        A query cut short by the per-channel timeout is a channel error. A
        query cut short by *time_remaining* is not: the run is out of time,
        so the outcome keeps what earlier queries found and sets
        ``budget_exhausted``.
        """
        outcome = ChannelOutcome(channel=channel.name)
        started = time.monotonic()
        try:
            queries = channel.build_queries(plan)[:max(0, max_queries)]
            for query in queries:
                remaining_cap = cap - len(outcome.candidates)
                if remaining_cap <= 0:
                    break
                remaining_time = time_remaining - (time.monotonic() - started)
                if remaining_time <= 0:
                    outcome.budget_exhausted = True
                    break
                try:
                    found = await asyncio.wait_for(
                        channel.search(query, plan, remaining_cap),
                        timeout=min(self.timeout, remaining_time),
                    )
                except asyncio.TimeoutError:
                    if remaining_time >= self.timeout:
                        raise
                    outcome.budget_exhausted = True
                    break
                outcome.queries_executed += 1
                outcome.candidates.extend(found)
            outcome.candidates = outcome.candidates[:max(0, cap)]
        except Exception as exc:
            # A failed channel contributes nothing, not even earlier queries' hits.
            outcome.error = _describe(exc)
            outcome.candidates = []
            log.warning("Channel %s failed after %d queries: %s",
                        channel.name, outcome.queries_executed, outcome.error)
        if outcome.budget_exhausted:
            log.info("Channel %s stopped: run time budget exhausted after %d queries",
                     channel.name, outcome.queries_executed)
        outcome.elapsed = time.monotonic() - started
        log.debug("Channel %s: %d candidates from %d queries in %.2fs",
                  channel.name, len(outcome.candidates), outcome.queries_executed, outcome.elapsed)
        return outcome

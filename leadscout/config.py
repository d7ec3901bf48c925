"""Runner configuration and process-wide safety caps.

The environment is read once, by ``RunnerConfig.from_env()`` at the entry
points (API, MCP server). Everything below receives a ``RunnerConfig``
explicitly.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping


@dataclass(frozen=True)
class RunLimits:
    max_companies: int = 10
    max_leads: int = 10
    max_queries: int = 3
    time_budget_seconds: float = 120.0

    def clamped(self, caps: RunLimits | None = None) -> RunLimits:
        """Return a copy bounded to ``caps`` (the safety caps by default)."""
        caps = caps or SAFETY_CAPS
        return RunLimits(
            max_companies=max(1, min(self.max_companies, caps.max_companies)),
            max_leads=max(0, min(self.max_leads, caps.max_leads)),
            max_queries=max(1, min(self.max_queries, caps.max_queries)),
            time_budget_seconds=max(1.0, min(self.time_budget_seconds, caps.time_budget_seconds)),
        )

    def as_dict(self) -> dict[str, float | int]:
        return {
            "max_companies": self.max_companies,
            "max_leads": self.max_leads,
            "max_queries": self.max_queries,
            "time_budget_seconds": self.time_budget_seconds,
        }


# Hard upper bounds; not configurable at runtime.
SAFETY_CAPS = RunLimits(
    max_companies=100,
    max_leads=100,
    max_queries=20,
    time_budget_seconds=600.0,
)

_TRUE = ("true", "1", "yes", "on")


def _env_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    val = env.get(key, "").strip().lower()
    if not val:
        return default
    return val in _TRUE


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    try:
        return int(env.get(key, "") or default)
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    try:
        return float(env.get(key, "") or default)
    except ValueError:
        return default


@dataclass(frozen=True)
class RunnerConfig:
    enabled: bool = False
    default_limits: RunLimits = field(default_factory=RunLimits)
    channel_timeout_seconds: float = 30.0
    scrape_websites: bool = False
    google_api_key: str = ""
    google_cse_id: str = ""
    job_secret: str = ""
    scheduled_intent_id: str = "agencies_all"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RunnerConfig:
        env = os.environ if env is None else env
        limits = RunLimits(
            max_companies=_env_int(env, "DISCOVERY_MAX_COMPANIES_PER_RUN", 10),
            max_leads=_env_int(env, "DISCOVERY_MAX_LEADS_PER_RUN", 10),
            max_queries=_env_int(env, "DISCOVERY_MAX_QUERIES", 3),
            time_budget_seconds=_env_float(env, "DISCOVERY_MAX_RUNTIME_SECONDS", 120.0),
        ).clamped()
        return cls(
            enabled=_env_bool(env, "DISCOVERY_RUNNER_ENABLED"),
            default_limits=limits,
            channel_timeout_seconds=_env_float(env, "DISCOVERY_CHANNEL_TIMEOUT_SECONDS", 30.0),
            scrape_websites=_env_bool(env, "DISCOVERY_SCRAPE_WEBSITES"),
            google_api_key=env.get("GOOGLE_CSE_API_KEY", "").strip(),
            google_cse_id=env.get("GOOGLE_CSE_ID", "").strip(),
            job_secret=env.get("CRON_JOB_SECRET", "").strip(),
            scheduled_intent_id=env.get("DISCOVERY_SCHEDULED_INTENT", "").strip() or "agencies_all",
        )

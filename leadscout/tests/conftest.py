"""Shared fixtures: in-memory database, fake channels, resolved plans."""
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leadscout.channels import DiscoveryChannel
from leadscout.config import RunLimits, RunnerConfig
from leadscout.intents import ResolvedIntent
from leadscout.materializer import ResultMaterializer
from leadscout.models import Base
from leadscout.schemas import CompanyResult, ContactChannels, DiscoveryMetadata, LeadResult
from leadscout.store import RunStore


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def store(session) -> RunStore:
    return RunStore(session)


@pytest.fixture()
def materializer(session) -> ResultMaterializer:
    return ResultMaterializer(session)


# ---------------------------------------------------------------------------
# Candidates & channels
# ---------------------------------------------------------------------------


def _company(name: str, website: str | None = None, source: str = "fake",
             email: str | None = None) -> CompanyResult:
    return CompanyResult(
        name=name,
        website=website,
        contact_channels=ContactChannels(emails=[email] if email else []),
        metadata=DiscoveryMetadata(source=source, method="test query"),
    )


def _lead(company: CompanyResult) -> LeadResult:
    return LeadResult(company=company, metadata=company.metadata.model_copy())


class FakeChannel(DiscoveryChannel):
    """Returns one prepared batch per query; optionally raises or sleeps."""

    def __init__(self, name, batches=None, *, error=None, delay=0.0, on_search=None, configured=True):
        super().__init__(None)
        self.name = name
        self.batches = [list(b) for b in (batches or [])]
        self.error = error
        self.delay = delay
        self.on_search = on_search
        self.configured = configured
        self.calls: list[str] = []

    def is_configured(self) -> bool:
        return self.configured

    def build_queries(self, plan):
        return [f"{self.name}-q{i}" for i in range(max(1, len(self.batches)))]

    async def search(self, query, plan, max_results):
        self.calls.append(query)
        if self.on_search is not None:
            self.on_search(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        index = len(self.calls) - 1
        if self.error is not None and (not self.batches or index >= len(self.batches) - 1):
            raise self.error
        batch = self.batches[index] if index < len(self.batches) else []
        return batch[:max_results]


@pytest.fixture()
def make_company():
    return _company


@pytest.fixture()
def make_lead():
    return _lead


@pytest.fixture()
def fake_channel():
    return FakeChannel


@pytest.fixture()
def make_plan():
    def _plan(channels, **limits) -> ResolvedIntent:
        return ResolvedIntent(
            intent_id="test_intent",
            intent_name="Test intent",
            target_countries=["ZA"],
            queries=["test query"],
            include_keywords=["agency"],
            exclude_keywords=["jobs"],
            channels=list(channels),
            limits=RunLimits(**limits),
        )
    return _plan


@pytest.fixture()
def enabled_config() -> RunnerConfig:
    return RunnerConfig(enabled=True, channel_timeout_seconds=5.0)

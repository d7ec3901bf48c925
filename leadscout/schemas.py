"""Pydantic schemas: discovery results, run stats, and API request/response models."""
from __future__ import annotations

from datetime import datetime, UTC
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


# ---------------------------------------------------------------------------
# Discovery results (tagged union stored in DiscoveryRun.results_json)
# ---------------------------------------------------------------------------


class DiscoveryMetadata(BaseModel):
    source: str
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    method: str | None = None  # the query that surfaced the result
    relevance_score: float | None = None
    relevance_reasons: list[str] = []
    extra: dict[str, Any] = {}


class ContactChannels(BaseModel):
    emails: list[str] = []
    phones: list[str] = []


class CompanyResult(BaseModel):
    type: Literal["company"] = "company"
    name: str
    website: str | None = None
    industry: str | None = None
    country: str | None = None
    description: str | None = None
    contact_channels: ContactChannels = ContactChannels()
    metadata: DiscoveryMetadata

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company name must not be blank")
        return v


class ContactResult(BaseModel):
    type: Literal["contact"] = "contact"
    name: str = ""
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: str | None = None
    linkedin_url: str | None = None
    company_name: str | None = None
    company_website: str | None = None
    metadata: DiscoveryMetadata

    @property
    def full_name(self) -> str:
        if self.name.strip():
            return self.name.strip()
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()

    def name_parts(self) -> tuple[str, str]:
        if self.first_name or self.last_name:
            return self.first_name or "", self.last_name or ""
        parts = self.full_name.split()
        return (parts[0] if parts else ""), " ".join(parts[1:])


class LeadResult(BaseModel):
    type: Literal["lead"] = "lead"
    company: CompanyResult | None = None
    contact: ContactResult | None = None
    metadata: DiscoveryMetadata

    @property
    def email(self) -> str | None:
        if self.contact and self.contact.email:
            return self.contact.email
        if self.company and self.company.contact_channels.emails:
            return self.company.contact_channels.emails[0]
        return None


DiscoveryResult = Annotated[
    Union[CompanyResult, ContactResult, LeadResult],
    Field(discriminator="type"),
]

RESULTS_ADAPTER: TypeAdapter[list[DiscoveryResult]] = TypeAdapter(list[DiscoveryResult])


# ---------------------------------------------------------------------------
# Run stats (stored in DiscoveryRun.stats_json)
# ---------------------------------------------------------------------------


class RunError(BaseModel):
    type: str
    message: str


class ProjectedCounts(BaseModel):
    companies: int = 0
    contacts: int = 0
    leads: int = 0
    skipped: int = 0
    errors: int = 0


class LimitsUsed(BaseModel):
    max_companies: int = 0
    max_leads: int = 0
    max_queries: int = 0
    time_budget_seconds: float = 0.0
    channels: list[str] = []


class RunStats(BaseModel):
    channel_results: dict[str, int] = {}
    channel_errors: dict[str, str] = {}
    queries_executed: dict[str, int] = {}
    total_discovered: int = 0
    total_after_dedupe: int = 0
    within_run_duplicates: int = 0
    dropped_leads: int = 0
    companies_created: int = 0
    companies_skipped: int = 0
    contacts_created: int = 0
    contacts_skipped: int = 0
    leads_created: int = 0
    leads_skipped: int = 0
    projected: ProjectedCounts | None = None
    errors: list[RunError] = []
    duration_ms: int = 0
    stopped_early: bool = False
    stopped_reason: Literal["company_limit", "time_limit"] | None = None
    limits_used: LimitsUsed = LimitsUsed()
    intent_config: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# API request models
# ---------------------------------------------------------------------------


class LimitOverrides(BaseModel):
    max_companies: int | None = Field(None, ge=1)
    max_leads: int | None = Field(None, ge=0)
    max_queries: int | None = Field(None, ge=1)
    time_budget_seconds: float | None = Field(None, gt=0)


class IntentOverrides(BaseModel):
    target_countries: list[str] | None = None
    additional_include_keywords: list[str] = []
    additional_exclude_keywords: list[str] = []
    channels: list[str] | None = None
    limits: LimitOverrides | None = None


class TriggerRunRequest(BaseModel):
    intent_id: str
    dry_run: bool = False
    overrides: IntentOverrides | None = None


class ScheduledRunRequest(BaseModel):
    intent_id: str | None = None
    dry_run: bool = False


class BulkActionRequest(BaseModel):
    action: Literal["archive", "unarchive", "delete"]
    run_ids: list[str]

    @field_validator("run_ids")
    @classmethod
    def run_ids_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("run_ids must contain at least one id")
        return v


# ---------------------------------------------------------------------------
# API response models
# ---------------------------------------------------------------------------


class RunOut(BaseModel):
    id: str
    mode: str
    dry_run: bool
    intent_id: str | None = None
    intent_name: str | None = None
    status: str
    triggered_by: str
    started_at: str | None = None
    finished_at: str | None = None
    cancel_requested_at: str | None = None
    archived_at: str | None = None
    created_companies_count: int
    created_contacts_count: int
    created_leads_count: int
    skipped_count: int
    error_count: int
    error: str | None = None
    result_count: int
    stats: RunStats


class RunDetail(RunOut):
    results: list[DiscoveryResult] = []


class RunListResponse(BaseModel):
    items: list[RunOut]
    total: int


class MaterializeOut(BaseModel):
    run_id: str
    companies_created: int
    contacts_created: int
    leads_created: int
    skipped: int
    errors: list[str]


class BulkActionOut(BaseModel):
    action: str
    succeeded: list[str]
    failed: dict[str, str]


class IntentOut(BaseModel):
    id: str
    name: str
    description: str
    category: str
    target_countries: list[str]
    channels: list[str]
    limits: dict[str, float | int]


class CompanyOut(BaseModel):
    id: int
    name: str
    website: str
    industry: str
    country: str
    discovery_metadata: dict[str, Any] = {}


class LeadOut(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    company_name: str
    company_id: int | None = None
    contact_id: int | None = None
    status: str
    source: str

"""Discovery intents: code-first templates describing what a run looks for.

An intent names seed queries (optionally containing ``{country}``), the
keywords that make a hit relevant or irrelevant, the channels to search and
its limits. ``apply_intent`` turns an intent plus caller overrides into the
``ResolvedIntent`` a run executes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from leadscout.config import RunLimits
from leadscout.errors import IntentInactive, IntentNotFound
from leadscout.schemas import IntentOverrides

log = logging.getLogger(__name__)

COUNTRY_NAMES: dict[str, str] = {
    "ZA": "South Africa",
    "BW": "Botswana",
    "NA": "Namibia",
    "MZ": "Mozambique",
    "ZW": "Zimbabwe",
    "KE": "Kenya",
    "NG": "Nigeria",
    "GH": "Ghana",
}

# Applied to every intent: job boards, retail pages and listicles are never prospects.
GLOBAL_NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "jobs", "job posting", "vacancies", "vacancy", "internship", "internships",
    "careers", "career", "we are hiring", "apply now", "recruitment",
    "job opportunity", "employment", "hiring", "linkedin.com/jobs", "indeed.com",
    "glassdoor", "pnet.co.za", "careers24",
    "retail store", "online shop", "buy online", "add to cart", "shopping cart",
    "checkout", "free shipping", "customer reviews",
    "top 10", "top 20", "top 50", "top 100", "best agencies", "list of",
    "directory of", "wikipedia.org", "what is", "how to choose", "versus",
)


@dataclass(frozen=True)
class DiscoveryIntent:
    id: str
    name: str
    description: str
    category: str
    target_countries: tuple[str, ...]
    seed_queries: tuple[str, ...]
    include_keywords: tuple[str, ...] = ()
    exclude_keywords: tuple[str, ...] = ()
    channels: tuple[str, ...] = ("google", "keyword")
    # Partial limits; unset keys fall back to the runner's defaults.
    limits: dict[str, float | int] = field(default_factory=dict)
    active: bool = True


@dataclass(frozen=True)
class ResolvedIntent:
    """An intent with overrides applied: the plan a run executes."""

    intent_id: str
    intent_name: str
    target_countries: list[str]
    queries: list[str]
    include_keywords: list[str]
    exclude_keywords: list[str]
    channels: list[str]
    limits: RunLimits

    def as_config(self) -> dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "intent_name": self.intent_name,
            "target_countries": list(self.target_countries),
            "queries": list(self.queries),
            "include_keywords": list(self.include_keywords),
            "exclude_keywords": list(self.exclude_keywords),
            "channels": list(self.channels),
            "limits": self.limits.as_dict(),
        }


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

_CATALOG: tuple[DiscoveryIntent, ...] = (
    DiscoveryIntent(
        id="agencies_all",
        name="Agencies (Marketing/Branding/Creative)",
        description="Marketing, branding, creative and activation agencies that buy "
                    "branded apparel for client campaigns.",
        category="agency",
        target_countries=("ZA",),
        seed_queries=(
            "marketing agency Gauteng {country}",
            "branding agency Johannesburg",
            "creative agency Pretoria",
            "brand activation agency {country}",
            "promotional marketing agency {country}",
        ),
        include_keywords=(
            "marketing", "branding", "creative", "advertising", "activation",
            "experiential", "campaign", "promotional", "agency", "our clients",
            "case studies",
        ),
        exclude_keywords=(
            "course", "training", "university", "college", "marketing degree",
            "law firm", "accounting firm",
        ),
    ),
    DiscoveryIntent(
        id="schools_all",
        name="Schools (Uniforms/Embroidery)",
        description="Schools that purchase uniforms, embroidered items and sports kits.",
        category="schools",
        target_countries=("ZA",),
        seed_queries=(
            "private school Gauteng {country}",
            "high school sports kit supplier {country}",
            "school embroidery supplier {country}",
        ),
        include_keywords=(
            "school", "uniform", "embroidery", "sports kit", "academy",
            "high school", "primary school",
        ),
        exclude_keywords=("second hand", "used uniforms", "uniform rental"),
    ),
    DiscoveryIntent(
        id="tenders_uniforms_merch",
        name="Government Tenders (Uniforms/PPE/Merch)",
        description="Government tenders and RFQs for uniforms, PPE, corporate clothing "
                    "and promotional items.",
        category="tenders",
        target_countries=("ZA",),
        seed_queries=(
            "site:etenders.gov.za uniform",
            'site:etenders.gov.za "corporate clothing"',
            "site:etenders.gov.za PPE",
            "government tender uniform supply {country}",
        ),
        include_keywords=(
            "tender", "rfq", "rfp", "bid", "uniforms", "corporate clothing", "ppe",
            "workwear", "procurement", "closing date",
        ),
        exclude_keywords=(
            "construction tender", "software tender", "it services", "catering tender",
        ),
        limits={"max_queries": 5},
    ),
    DiscoveryIntent(
        id="events_exhibitions",
        name="Exhibitions & Events",
        description="Exhibition organisers and event companies that need branded staff wear.",
        category="event",
        target_countries=("ZA",),
        seed_queries=(
            "exhibition organiser {country}",
            "corporate event management company {country}",
            "conference organiser Johannesburg",
        ),
        include_keywords=(
            "exhibition", "expo", "event", "conference", "organiser", "trade show",
        ),
        exclude_keywords=("tickets", "wedding"),
    ),
    DiscoveryIntent(
        id="referral_ecosystem_prospects",
        name="Referral Ecosystem Prospects",
        description="Print shops, promo houses and designers that refer apparel work.",
        category="referral",
        target_countries=("ZA", "BW"),
        seed_queries=(
            "print shop {country}",
            "promotional products company {country}",
            "graphic design studio {country}",
        ),
        include_keywords=("printing", "promotional", "design", "signage", "branding"),
    ),
    DiscoveryIntent(
        id="agencies_marketing_branding",
        name="Marketing & Branding Agencies (Legacy)",
        description="Superseded by agencies_all.",
        category="agency",
        target_countries=("ZA", "BW"),
        seed_queries=("marketing agency {country}",),
        include_keywords=("marketing", "branding", "agency"),
        active=False,
    ),
)

_BY_ID = {intent.id: intent for intent in _CATALOG}


def get_intent(intent_id: str) -> DiscoveryIntent | None:
    return _BY_ID.get(intent_id)


def list_intents(include_inactive: bool = False) -> list[DiscoveryIntent]:
    return [i for i in _CATALOG if include_inactive or i.active]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _unique(values) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        key = value.strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append(value.strip())
    return out


def build_queries(seed_queries, countries) -> list[str]:
    """Expand ``{country}`` once per target country; other queries pass through."""
    queries: list[str] = []
    for query in seed_queries:
        if "{country}" in query:
            for code in countries:
                queries.append(query.replace("{country}", COUNTRY_NAMES.get(code, code)))
        else:
            queries.append(query)
    return _unique(queries)


def apply_intent(
    intent: DiscoveryIntent,
    overrides: IntentOverrides | None = None,
    defaults: RunLimits | None = None,
) -> ResolvedIntent:
    """Merge *overrides* into *intent*. Limits resolve override > intent > defaults,
    then get clamped to the safety caps."""
    overrides = overrides or IntentOverrides()
    defaults = defaults or RunLimits()

    countries = [c.upper() for c in (overrides.target_countries or intent.target_countries)]
    channels = _unique(overrides.channels or intent.channels)

    limit_overrides = overrides.limits.model_dump(exclude_none=True) if overrides.limits else {}
    merged = defaults.as_dict()
    merged.update(intent.limits)
    merged.update(limit_overrides)
    limits = RunLimits(
        max_companies=int(merged["max_companies"]),
        max_leads=int(merged["max_leads"]),
        max_queries=int(merged["max_queries"]),
        time_budget_seconds=float(merged["time_budget_seconds"]),
    ).clamped()

    return ResolvedIntent(
        intent_id=intent.id,
        intent_name=intent.name,
        target_countries=countries,
        queries=build_queries(intent.seed_queries, countries),
        include_keywords=_unique([*intent.include_keywords, *overrides.additional_include_keywords]),
        exclude_keywords=_unique([
            *GLOBAL_NEGATIVE_KEYWORDS,
            *intent.exclude_keywords,
            *overrides.additional_exclude_keywords,
        ]),
        channels=channels,
        limits=limits,
    )


def resolve_intent(
    intent_id: str,
    overrides: IntentOverrides | None = None,
    defaults: RunLimits | None = None,
) -> ResolvedIntent:
    intent = get_intent(intent_id)
    if intent is None:
        raise IntentNotFound(intent_id)
    if not intent.active:
        raise IntentInactive(intent_id)
    resolved = apply_intent(intent, overrides, defaults)
    log.debug("Resolved intent %s: %d queries, channels=%s",
              intent_id, len(resolved.queries), resolved.channels)
    return resolved

"""Discovery channels: external sources that turn queries into candidates.

A channel only searches and converts hits; it never deduplicates, never
persists, and reports every failure by raising (``ChannelError`` and
subclasses). The Channel Executor is the boundary that contains those
failures.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx
from lxml import etree, html as lxml_html

from leadscout.errors import ChannelError, ChannelNotConfigured
from leadscout.intents import COUNTRY_NAMES
from leadscout.schemas import (
    CompanyResult, ContactChannels, DiscoveryMetadata, DiscoveryResult, LeadResult,
)

if TYPE_CHECKING:
    from leadscout.config import RunnerConfig
    from leadscout.intents import ResolvedIntent

log = logging.getLogger(__name__)

_USER_AGENT = "LeadScoutBot/1.0 (+https://leadscout.local)"
_TIMEOUT = 15.0

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"

# ---------------------------------------------------------------------------
# Optional dependency detection
# ---------------------------------------------------------------------------

_DDGS_AVAILABLE = False
try:
    from duckduckgo_search import DDGS  # noqa: F401
    from duckduckgo_search.exceptions import RatelimitException  # noqa: F401
    _DDGS_AVAILABLE = True
except ImportError:
    DDGS = None  # type: ignore[assignment,misc]
    RatelimitException = Exception  # type: ignore[assignment,misc]


# ---------------------------------------------------------------------------
# Search hits -> candidates
# ---------------------------------------------------------------------------

# Directories, social networks and job boards: a hit here is never the company itself.
NON_COMPANY_DOMAINS: tuple[str, ...] = (
    "linkedin.com", "facebook.com", "instagram.com", "twitter.com", "x.com",
    "youtube.com", "tiktok.com", "pinterest.com", "reddit.com", "medium.com",
    "wikipedia.org", "indeed.com", "glassdoor.com", "pnet.co.za", "careers24.com",
    "gumtree.co.za", "yellowpages.co.za", "yelp.com", "brabys.com", "clutch.co",
    "crunchbase.com", "google.com",
)

_TITLE_SEPARATORS = re.compile(r"\s+[-|–—:]\s+|\s*\|\s*")
_LEGAL_SUFFIX = re.compile(r"\s+(?:\(pty\)\s*ltd|pty\s*ltd|ltd|inc|llc|company)\.?$", re.IGNORECASE)


@dataclass
class SearchHit:
    title: str
    link: str
    snippet: str = ""


def site_root(url: str | None) -> str | None:
    """Reduce *url* to ``scheme://host``."""
    if not url:
        return None
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    parts = urlsplit(url)
    if not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc.lower()}"


def is_company_domain(url: str | None) -> bool:
    root = site_root(url)
    if not root:
        return False
    host = urlsplit(root).netloc.removeprefix("www.")
    return not any(host == d or host.endswith("." + d) for d in NON_COMPANY_DOMAINS)


def company_name_from_title(title: str, snippet: str = "") -> str:
    """Best-effort company name: the first segment of the page title."""
    name = _TITLE_SEPARATORS.split(title.strip(), maxsplit=1)[0].strip()
    name = _LEGAL_SUFFIX.sub("", name).strip()
    if len(name) < 2 and snippet:
        name = re.split(r"[.!?]", snippet, maxsplit=1)[0].strip()
    return name or title.strip()


def score_relevance(text: str, include: list[str], exclude: list[str]) -> tuple[float, list[str]] | None:
    """Score *text* against the keyword lists. ``None`` means an exclude keyword hit."""
    lowered = text.lower()
    for keyword in exclude:
        if keyword.lower() in lowered:
            return None
    matched = [k for k in include if k.lower() in lowered]
    score = round(min(1.0, len(matched) / 3), 2) if include else 0.0
    return score, [f"keyword:{k}" for k in matched]


def hit_to_company(hit: SearchHit, plan: ResolvedIntent, source: str, query: str) -> CompanyResult | None:
    """Convert one search hit, or return ``None`` if it is not a plausible prospect."""
    if not is_company_domain(hit.link):
        return None
    relevance = score_relevance(
        f"{hit.title} {hit.snippet} {hit.link}", plan.include_keywords, plan.exclude_keywords,
    )
    if relevance is None:
        return None
    name = company_name_from_title(hit.title, hit.snippet)
    if not name:
        return None
    score, reasons = relevance
    return CompanyResult(
        name=name,
        website=site_root(hit.link),
        country=plan.target_countries[0] if len(plan.target_countries) == 1 else None,
        description=hit.snippet or None,
        metadata=DiscoveryMetadata(
            source=source,
            method=query,
            relevance_score=score,
            relevance_reasons=reasons,
            extra={"search_result_title": hit.title, "search_result_link": hit.link},
        ),
    )


# ---------------------------------------------------------------------------
# Website signal extraction
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"(?:\+|\b0)\d[\d\s()-]{7,}\d")
_IGNORED_EMAIL_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")


async def _fetch_url(url: str, timeout: float = _TIMEOUT) -> str:
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(timeout),
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text


def extract_contact_channels(raw_html: str) -> ContactChannels:
    """Pull emails and phone numbers out of a page (mailto/tel links first, then text)."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ContactChannels()

    emails: list[str] = []
    phones: list[str] = []
    for href in tree.xpath("//a[starts-with(@href, 'mailto:')]/@href"):
        emails.append(href[len("mailto:"):].split("?", 1)[0])
    for href in tree.xpath("//a[starts-with(@href, 'tel:')]/@href"):
        phones.append(href[len("tel:"):])

    text = " ".join(tree.xpath("//body//text()"))
    emails.extend(_EMAIL_RE.findall(text))
    phones.extend(_PHONE_RE.findall(text))

    def _clean(values, normalize):
        seen: set[str] = set()
        out: list[str] = []
        for value in values:
            value = normalize(value.strip())
            if value and value not in seen:
                seen.add(value)
                out.append(value)
        return out

    return ContactChannels(
        emails=[e for e in _clean(emails, str.lower) if not e.endswith(_IGNORED_EMAIL_SUFFIXES)],
        phones=_clean(phones, lambda p: re.sub(r"\s+", " ", p)),
    )


class WebsiteSignalExtractor:
    """Fetches a company homepage and extracts its contact channels."""

    def __init__(self, timeout: float = _TIMEOUT):
        self.timeout = timeout

    async def extract(self, url: str) -> ContactChannels:
        try:
            raw_html = await _fetch_url(url, self.timeout)
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("Failed to fetch %s: %s", url, exc)
            return ContactChannels()
        return extract_contact_channels(raw_html)


# ---------------------------------------------------------------------------
# Channel interface
# ---------------------------------------------------------------------------


class DiscoveryChannel:
    """Base class. Subclasses implement ``_search_hits`` or override ``search``."""

    name = "base"

    def __init__(self, signals: WebsiteSignalExtractor | None = None):
        self.signals = signals

    def is_configured(self) -> bool:
        return True

    def build_queries(self, plan: ResolvedIntent) -> list[str]:
        return list(plan.queries)

    async def search(self, query: str, plan: ResolvedIntent, max_results: int) -> list[DiscoveryResult]:
        if not self.is_configured():
            raise ChannelNotConfigured(f"Channel {self.name!r} is not configured")
        hits = await self._search_hits(query, max_results)
        return await self._to_results(hits, plan, query, max_results)

    async def _search_hits(self, query: str, max_results: int) -> list[SearchHit]:
        raise NotImplementedError

    async def _to_results(
        self, hits: list[SearchHit], plan: ResolvedIntent, query: str, max_results: int,
    ) -> list[DiscoveryResult]:
        results: list[DiscoveryResult] = []
        for hit in hits:
            if len(results) >= max_results:
                break
            company = hit_to_company(hit, plan, self.name, query)
            if company is None:
                continue
            results.append(company)
            if self.signals is None or not company.website:
                continue
            channels = await self.signals.extract(company.website)
            if not (channels.emails or channels.phones):
                continue
            company.contact_channels = channels
            if channels.emails:
                results.append(LeadResult(company=company, metadata=company.metadata.model_copy()))
        return results[:max_results]


# ---------------------------------------------------------------------------
# Google Custom Search
# ---------------------------------------------------------------------------


class GoogleSearchChannel(DiscoveryChannel):
    name = "google"

    def __init__(
        self, api_key: str = "", cse_id: str = "", *,
        timeout: float = _TIMEOUT,
        signals: WebsiteSignalExtractor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(signals)
        self.api_key = api_key
        self.cse_id = cse_id
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key and self.cse_id)

    async def _search_hits(self, query: str, max_results: int) -> list[SearchHit]:
        q = query.strip()
        if "company" not in q.lower():
            q = f"{q} company"
        params = {"key": self.api_key, "cx": self.cse_id, "q": q, "num": max(1, min(10, max_results))}
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Accept": "application/json", "User-Agent": _USER_AGENT},
                transport=self._transport,
            ) as client:
                resp = await client.get(GOOGLE_CSE_URL, params=params)
        except httpx.HTTPError as exc:
            raise ChannelError(f"Google CSE request failed: {exc}", retryable=True) from exc

        if resp.status_code == 429:
            raise ChannelError("Google CSE quota exceeded (429)", retryable=True)
        if resp.status_code in (401, 403):
            raise ChannelError(f"Google CSE rejected credentials or quota ({resp.status_code}): {resp.text[:200]}")
        if resp.status_code >= 400:
            raise ChannelError(
                f"Google CSE API error: {resp.status_code} - {resp.text[:200]}",
                retryable=resp.status_code >= 500,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ChannelError("Google CSE returned malformed JSON") from exc
        if not isinstance(data, dict):
            raise ChannelError("Google CSE returned an unexpected payload")
        items = data.get("items") or []
        if not isinstance(items, list):
            raise ChannelError("Google CSE returned malformed items")
        return [
            SearchHit(title=item.get("title", ""), link=item.get("link", ""), snippet=item.get("snippet", ""))
            for item in items if isinstance(item, dict) and item.get("link")
        ]


# ---------------------------------------------------------------------------
# DuckDuckGo
# ---------------------------------------------------------------------------


class _DDGRateLimiter:
    """Process-wide pacing for DuckDuckGo searches.

    Calls are spaced by a delay that doubles on every rate-limit response
    and drops back to the floor after a success. A channel call is bounded
    by the run's channel timeout, so ``acquire`` refuses a wait longer than
    *max_wait* with a retryable ``ChannelError`` rather than sleeping into
    that timeout.
    """

    def __init__(self, min_delay: float = 2.0, max_delay: float = 60.0):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._last_call: float = 0.0

    async def acquire(self, max_wait: float | None = None) -> None:
        async with self._lock:
            wait = self._current_delay - (time.monotonic() - self._last_call)
            if max_wait is not None and wait > max_wait:
                raise ChannelError(
                    f"DuckDuckGo is backing off for {wait:.0f}s, longer than the {max_wait:.0f}s allowed",
                    retryable=True,
                )
            if wait > 0:
                log.debug("DDG rate limiter: waiting %.1fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def backoff(self) -> None:
        self._current_delay = min(self._current_delay * 2, self._max_delay)
        log.warning("DDG rate limited, backing off to %.0fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


_ddg_limiter = _DDGRateLimiter()


def _ddg_text(query: str, max_results: int) -> list[dict]:
    with DDGS() as ddgs:
        return list(ddgs.text(query, max_results=max_results) or [])


class DuckDuckGoChannel(DiscoveryChannel):
    name = "duckduckgo"

    def __init__(
        self, *, limiter: _DDGRateLimiter | None = None,
        signals: WebsiteSignalExtractor | None = None,
        max_wait: float | None = None,
    ):
        super().__init__(signals)
        self.limiter = limiter or _ddg_limiter
        self.max_wait = max_wait

    def is_configured(self) -> bool:
        return _DDGS_AVAILABLE

    async def _search_hits(self, query: str, max_results: int) -> list[SearchHit]:
        rows = await self._search_with_retry(query, max_results)
        return [
            SearchHit(title=r.get("title", ""), link=r.get("href", ""), snippet=r.get("body", ""))
            for r in rows if r.get("href")
        ]

    async def _search_with_retry(self, query: str, max_results: int) -> list[dict]:
        await self.limiter.acquire(self.max_wait)
        try:
            rows = await asyncio.to_thread(_ddg_text, query, max_results)
        except RatelimitException:
            self.limiter.backoff()
            # One retry after backoff
            await self.limiter.acquire(self.max_wait)
            try:
                rows = await asyncio.to_thread(_ddg_text, query, max_results)
            except RatelimitException as exc:
                self.limiter.backoff()
                raise ChannelError(f"DuckDuckGo rate limited after retry for query={query!r}", retryable=True) from exc
        self.limiter.reset()
        return rows


# ---------------------------------------------------------------------------
# Keyword channel (delegates to a search channel)
# ---------------------------------------------------------------------------


class KeywordChannel(DiscoveryChannel):
    """Builds queries from include keywords x target countries and delegates
    each one to a backing search channel, re-tagging provenance."""

    name = "keyword"

    def __init__(self, backing: DiscoveryChannel):
        super().__init__(None)
        self.backing = backing

    def is_configured(self) -> bool:
        return self.backing.is_configured()

    def build_queries(self, plan: ResolvedIntent) -> list[str]:
        countries = [COUNTRY_NAMES.get(c, c) for c in plan.target_countries] or [""]
        queries: list[str] = []
        for keyword in plan.include_keywords:
            for country in countries:
                query = f"{keyword} {country}".strip()
                if query not in queries:
                    queries.append(query)
        return queries

    async def search(self, query: str, plan: ResolvedIntent, max_results: int) -> list[DiscoveryResult]:
        if not self.is_configured():
            raise ChannelNotConfigured(
                f"Keyword discovery requires the {self.backing.name!r} channel to be configured"
            )
        results = await self.backing.search(query, plan, max_results)
        return [_retag(r, self.name, self.backing.name) for r in results]


def _retag(result: DiscoveryResult, source: str, via: str) -> DiscoveryResult:
    def meta(m: DiscoveryMetadata) -> DiscoveryMetadata:
        return m.model_copy(update={"source": source, "extra": {**m.extra, "via": via}})

    update: dict = {"metadata": meta(result.metadata)}
    if isinstance(result, LeadResult):
        if result.company is not None:
            update["company"] = result.company.model_copy(update={"metadata": meta(result.company.metadata)})
        if result.contact is not None:
            update["contact"] = result.contact.model_copy(update={"metadata": meta(result.contact.metadata)})
    return result.model_copy(update=update)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def default_channels(config: RunnerConfig) -> dict[str, DiscoveryChannel]:
    """The channels a runner can use, keyed by the names intents refer to."""
    signals = WebsiteSignalExtractor() if config.scrape_websites else None
    google = GoogleSearchChannel(
        config.google_api_key, config.google_cse_id,
        timeout=config.channel_timeout_seconds, signals=signals,
    )
    # Half the channel timeout may go to pacing; the rest is for the request.
    duckduckgo = DuckDuckGoChannel(signals=signals, max_wait=config.channel_timeout_seconds / 2)
    backing: DiscoveryChannel = google if google.is_configured() or not duckduckgo.is_configured() else duckduckgo
    return {
        "google": google,
        "duckduckgo": duckduckgo,
        "keyword": KeywordChannel(backing),
    }

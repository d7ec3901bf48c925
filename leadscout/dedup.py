"""Candidate deduplication.

One set of canonical keys decides both within-run duplicates (the run
buffer) and duplicates of persisted records (the materializer and the dry-run
projection). Keys, first match wins:

1. company  -> ``website:<normalized website>``, else ``company:<normalized name>``
2. contact  -> ``email:<lowercased email>``
3. contact without email -> ``contact:<normalized full name>@<company identity>``

Leads are keyed on their email (``lead:<email>``), else on their company
(``lead-company:<company identity>``).

Website canonicalization is scheme-, ``www.``-, case- and trailing-slash
insensitive and ignores query strings and fragments, so ``http://foo.com``
and ``https://www.foo.com/`` are the same company. Paths are kept.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadscout.models import Company, Contact, Lead
from leadscout.schemas import CompanyResult, ContactResult, DiscoveryResult, LeadResult
from leadscout.utils import collapse_ws


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_website(url: str | None) -> str | None:
    if not url:
        return None
    value = url.strip().lower()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    if value.startswith("//"):
        value = value[2:]
    value = value.split("#", 1)[0].split("?", 1)[0]
    if value.startswith("www."):
        value = value[4:]
    value = value.rstrip("/")
    return value or None


def normalize_name(name: str | None) -> str:
    return collapse_ws(name).lower()


def normalize_email(email: str | None) -> str | None:
    value = (email or "").strip().lower()
    return value or None


def company_identity(website: str | None, name: str | None) -> str | None:
    site = normalize_website(website)
    if site:
        return site
    name_key = normalize_name(name)
    return f"name:{name_key}" if name_key else None


# ---------------------------------------------------------------------------
# Candidate keys
# ---------------------------------------------------------------------------


def company_key(result: CompanyResult) -> str | None:
    site = normalize_website(result.website)
    if site:
        return f"website:{site}"
    name_key = normalize_name(result.name)
    return f"company:{name_key}" if name_key else None


def contact_name_key(result: ContactResult) -> str | None:
    name_key = normalize_name(result.full_name)
    if not name_key:
        return None
    identity = company_identity(result.company_website, result.company_name) or ""
    return f"{name_key}@{identity}"


def contact_key(result: ContactResult) -> str | None:
    email = normalize_email(result.email)
    if email:
        return f"email:{email}"
    name_key = contact_name_key(result)
    return f"contact:{name_key}" if name_key else None


def lead_key(result: LeadResult) -> str | None:
    email = normalize_email(result.email)
    if email:
        return f"lead:{email}"
    if result.company:
        identity = company_identity(result.company.website, result.company.name)
        if identity:
            return f"lead-company:{identity}"
    return None


def candidate_key(candidate: DiscoveryResult) -> str | None:
    if isinstance(candidate, CompanyResult):
        return company_key(candidate)
    if isinstance(candidate, ContactResult):
        return contact_key(candidate)
    return lead_key(candidate)


def is_duplicate(candidate: DiscoveryResult, seen: set[str]) -> bool:
    key = candidate_key(candidate)
    return key is not None and key in seen


def merge(seen: set[str], candidate: DiscoveryResult) -> set[str]:
    """Record *candidate* in *seen* and return it."""
    key = candidate_key(candidate)
    if key is not None:
        seen.add(key)
    return seen


# ---------------------------------------------------------------------------
# Persisted lookups
# ---------------------------------------------------------------------------


def find_company(session: Session, website: str | None, name: str | None) -> Company | None:
    site = normalize_website(website)
    if site:
        return session.execute(
            select(Company).where(Company.website_key == site)
        ).scalars().first()
    name_key = normalize_name(name)
    if not name_key:
        return None
    return session.execute(
        select(Company).where(Company.name_key == name_key).order_by(Company.id)
    ).scalars().first()


def find_contact(session: Session, result: ContactResult) -> Contact | None:
    email = normalize_email(result.email)
    if email:
        return session.execute(
            select(Contact).where(Contact.email_key == email)
        ).scalars().first()
    name_key = contact_name_key(result)
    if not name_key:
        return None
    return session.execute(
        select(Contact).where(Contact.name_key == name_key).order_by(Contact.id)
    ).scalars().first()


def find_lead(session: Session, result: LeadResult) -> Lead | None:
    email = normalize_email(result.email)
    if not email:
        return None
    return session.execute(select(Lead).where(Lead.email_key == email)).scalars().first()


def find_persisted(session: Session, candidate: DiscoveryResult) -> Company | Contact | Lead | None:
    """Return the persisted record *candidate* duplicates, if any."""
    if isinstance(candidate, CompanyResult):
        return find_company(session, candidate.website, candidate.name)
    if isinstance(candidate, ContactResult):
        return find_contact(session, candidate)
    return find_lead(session, candidate)

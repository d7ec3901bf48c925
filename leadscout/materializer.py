"""Result Materializer: turns discovery results into Company/Contact/Lead rows.

``materialize`` and ``project`` make the same per-candidate decisions (same
dedup keys, same lookups) so a dry run's "would create" counts match what a
later materialization of the same results creates, against the same
database state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadscout import dedup
from leadscout.models import Company, Contact, Lead
from leadscout.schemas import (
    CompanyResult, ContactResult, DiscoveryResult, LeadResult, ProjectedCounts, RunError, RunStats,
)

log = logging.getLogger(__name__)


@dataclass
class Counts:
    companies: int = 0
    contacts: int = 0
    leads: int = 0

    def add(self, kind: str) -> None:
        attr = {"company": "companies", "contact": "contacts", "lead": "leads"}[kind]
        setattr(self, attr, getattr(self, attr) + 1)

    @property
    def total(self) -> int:
        return self.companies + self.contacts + self.leads


@dataclass
class MaterializeOutcome:
    created: Counts = field(default_factory=Counts)
    skipped_by_type: Counts = field(default_factory=Counts)
    errors: list[RunError] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.skipped_by_type.total

    def apply_to(self, stats: RunStats) -> RunStats:
        """Copy the created/skipped counters and candidate errors into *stats*."""
        return stats.model_copy(update={
            "companies_created": self.created.companies,
            "contacts_created": self.created.contacts,
            "leads_created": self.created.leads,
            "companies_skipped": self.skipped_by_type.companies,
            "contacts_skipped": self.skipped_by_type.contacts,
            "leads_skipped": self.skipped_by_type.leads,
            "errors": [*stats.errors, *self.errors],
        })

    def as_projection(self) -> ProjectedCounts:
        return ProjectedCounts(
            companies=self.created.companies,
            contacts=self.created.contacts,
            leads=self.created.leads,
            skipped=self.skipped,
            errors=len(self.errors),
        )


class MissingLeadEmail(ValueError):
    def __init__(self) -> None:
        super().__init__("Lead skipped: email is required (from contact or company contact channels)")


class MissingContactIdentity(ValueError):
    def __init__(self) -> None:
        super().__init__("Contact skipped: an email or a name is required")


class ResultMaterializer:
    def __init__(self, session: Session):
        self.session = session

    def materialize(self, results: Sequence[DiscoveryResult]) -> MaterializeOutcome:
        return self._process(results, write=True)

    def project(self, results: Sequence[DiscoveryResult]) -> MaterializeOutcome:
        """What ``materialize`` would do now, without writing anything."""
        return self._process(results, write=False)

    def _process(self, results: Sequence[DiscoveryResult], *, write: bool) -> MaterializeOutcome:
        outcome = MaterializeOutcome()
        seen: set[str] = set()
        for result in results:
            if dedup.is_duplicate(result, seen):
                continue
            seen = dedup.merge(seen, result)
            kind = result.type
            try:
                if isinstance(result, ContactResult) and dedup.contact_key(result) is None:
                    raise MissingContactIdentity()
                if dedup.find_persisted(self.session, result) is not None:
                    outcome.skipped_by_type.add(kind)
                    continue
                if isinstance(result, LeadResult) and not dedup.normalize_email(result.email):
                    raise MissingLeadEmail()
                if write:
                    self._create(result)
                    self.session.commit()
                outcome.created.add(kind)
            except IntegrityError:
                # A concurrent writer created the same record first.
                self.session.rollback()
                outcome.skipped_by_type.add(kind)
                log.info("Skipped %s %r: created concurrently", kind, dedup.candidate_key(result))
            except Exception as exc:
                self.session.rollback()
                outcome.errors.append(RunError(type=kind, message=str(exc)))
                log.warning("Failed to materialize %s %r: %s", kind, dedup.candidate_key(result), exc)
        if write:
            log.info("Materialized %d companies, %d contacts, %d leads (%d skipped, %d errors)",
                     outcome.created.companies, outcome.created.contacts, outcome.created.leads,
                     outcome.skipped, len(outcome.errors))
        return outcome

    # -- row builders -------------------------------------------------------

    def _create(self, result: DiscoveryResult) -> None:
        if isinstance(result, CompanyResult):
            self.session.add(self._company(result))
        elif isinstance(result, ContactResult):
            self.session.add(self._contact(result))
        else:
            self.session.add(self._lead(result))
        self.session.flush()

    @staticmethod
    def _company(result: CompanyResult) -> Company:
        return Company(
            name=result.name,
            website=result.website or "",
            website_key=dedup.normalize_website(result.website),
            name_key=dedup.normalize_name(result.name),
            industry=result.industry or "",
            country=result.country or "",
            description=result.description or "",
            discovery_metadata_json=result.metadata.model_dump_json(),
        )

    def _contact(self, result: ContactResult) -> Contact:
        company = None
        if result.company_website or result.company_name:
            company = dedup.find_company(self.session, result.company_website, result.company_name)
        first, last = result.name_parts()
        return Contact(
            company_id=company.id if company else None,
            first_name=first,
            last_name=last,
            email=result.email or "",
            email_key=dedup.normalize_email(result.email),
            name_key=dedup.contact_name_key(result),
            phone=result.phone or "",
            role=result.role or "",
            linkedin_url=result.linkedin_url or "",
            discovery_metadata_json=result.metadata.model_dump_json(),
        )

    def _lead(self, result: LeadResult) -> Lead:
        email = dedup.normalize_email(result.email)
        if not email:
            raise MissingLeadEmail()
        company = None
        if result.company is not None:
            company = dedup.find_company(self.session, result.company.website, result.company.name)
        contact = None
        if result.contact is not None:
            contact = dedup.find_contact(self.session, result.contact)
        if contact is None:
            contact = self.session.execute(
                select(Contact).where(Contact.email_key == email)
            ).scalars().first()

        first, last = result.contact.name_parts() if result.contact else ("", "")
        company_name = ""
        if result.company is not None:
            company_name = result.company.name
        elif result.contact is not None:
            company_name = result.contact.company_name or ""
        phone = result.contact.phone if result.contact and result.contact.phone else ""
        if not phone and result.company and result.company.contact_channels.phones:
            phone = result.company.contact_channels.phones[0]
        return Lead(
            company_id=company.id if company else None,
            contact_id=contact.id if contact else None,
            email=(result.email or "").strip(),
            email_key=email,
            first_name=first,
            last_name=last,
            company_name=company_name,
            phone=phone,
            country=(result.company.country or "") if result.company else "",
            status="new",
            source=result.metadata.source,
            discovery_metadata_json=result.metadata.model_dump_json(),
        )

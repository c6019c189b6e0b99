from __future__ import annotations

import logging
from dataclasses import dataclass

from app.services.crm_entity_store import CrmEntityStore, normalize_domain
from app.services.fathom_call_models import FathomAttendee

logger = logging.getLogger(__name__)

CONTACT_SOURCE = "fathom_sync"

PERSONAL_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "outlook.com",
        "hotmail.com",
        "live.com",
        "msn.com",
        "yahoo.com",
        "ymail.com",
        "icloud.com",
        "me.com",
        "mac.com",
        "aol.com",
        "proton.me",
        "protonmail.com",
        "gmx.com",
        "zoho.com",
    },
)

_SECOND_LEVEL_SUFFIXES = frozenset({"co", "com", "org", "net", "gov", "ac", "edu"})


@dataclass(frozen=True)
class ResolvedAttendee:
    contact_id: str
    company_id: str | None
    contact_created: bool = False
    company_created: bool = False


class EntityResolver:
    """Match-or-create Company and Contact records for external attendees.

    Companies are keyed by (owner, domain) and contacts by (owner, email), so
    resolving the same attendee again returns the stored ids without writing.
    """

    def __init__(self, store: CrmEntityStore) -> None:
        self.store = store

    def resolve(self, owner_id: str, attendee: FathomAttendee) -> ResolvedAttendee | None:
        if not attendee.is_external or not attendee.email:
            return None

        company_id, company_created = self._resolve_company(owner_id, attendee)

        existing_contact = self.store.find_contact_by_email(owner_id, attendee.email)
        if existing_contact:
            contact_id = str(existing_contact["_id"])
            current_company_id = existing_contact.get("company_id")
            if not current_company_id and company_id:
                self.store.set_contact_company_if_missing(contact_id, company_id)
                logger.info("Linked contact to company contact_id=%s company_id=%s", contact_id, company_id)
                current_company_id = company_id
            return ResolvedAttendee(
                contact_id=contact_id,
                company_id=current_company_id,
                company_created=company_created,
            )

        first_name, last_name = split_display_name(attendee.name, attendee.email)
        contact = self.store.create_contact(
            owner_id=owner_id,
            email=attendee.email,
            first_name=first_name,
            last_name=last_name,
            company_id=company_id,
            source=CONTACT_SOURCE,
        )
        logger.info("Created contact email=%s company_id=%s", attendee.email, company_id)
        return ResolvedAttendee(
            contact_id=str(contact["_id"]),
            company_id=contact.get("company_id"),
            contact_created=True,
            company_created=company_created,
        )

    def _resolve_company(self, owner_id: str, attendee: FathomAttendee) -> tuple[str | None, bool]:
        domain = attendee.domain
        if not domain:
            return None, False
        domain = normalize_domain(domain)
        if domain in PERSONAL_EMAIL_DOMAINS:
            return None, False

        inferred_name = infer_company_name(domain)
        existing = self.store.find_company_by_domain(owner_id, domain)
        if existing:
            company_id = str(existing["_id"])
            if not existing.get("name"):
                self.store.backfill_company_fields(company_id, {"name": inferred_name})
            return company_id, False

        company = self.store.create_company(
            owner_id=owner_id,
            name=inferred_name,
            domain=domain,
            source=CONTACT_SOURCE,
        )
        logger.info("Created company domain=%s name=%s", domain, inferred_name)
        return str(company["_id"]), True


def infer_company_name(domain: str) -> str:
    labels = [label for label in normalize_domain(domain).split(".") if label]
    if not labels:
        return domain
    if len(labels) >= 3 and labels[-2] in _SECOND_LEVEL_SUFFIXES:
        core = labels[-3]
    elif len(labels) >= 2:
        core = labels[-2]
    else:
        core = labels[0]
    return " ".join(part.capitalize() for part in core.replace("_", "-").split("-") if part)


def split_display_name(name: str | None, email: str) -> tuple[str | None, str | None]:
    cleaned = (name or "").strip()
    if not cleaned or "@" in cleaned:
        local_part = email.split("@", maxsplit=1)[0]
        pieces = [piece for piece in local_part.replace("_", ".").replace("-", ".").split(".") if piece]
        if not pieces:
            return None, None
        cleaned = " ".join(piece.capitalize() for piece in pieces)

    parts = cleaned.split()
    first_name = parts[0]
    last_name = " ".join(parts[1:]) or None
    return first_name, last_name

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from app.services.crm_entity_store import CrmEntityStore

_LATEST = datetime.max.replace(tzinfo=UTC)


class PrimaryContactSelector:
    """Deterministic ranking of one external contact per meeting.

    Order: most historical meetings, highest relationship score, most recent
    interaction, earliest created contact, then contact id. Historical
    meetings are the other meetings that started before the one being
    resolved, which keeps the winner stable when the same calls are synced
    again.
    """

    def __init__(self, store: CrmEntityStore) -> None:
        self.store = store

    def select_primary(
        self,
        contact_ids: Sequence[str],
        *,
        meeting_id: str | None = None,
        meeting_start: datetime | None = None,
    ) -> str | None:
        unique_ids = list(dict.fromkeys(contact_ids))
        if not unique_ids:
            return None

        contacts = {str(contact["_id"]): contact for contact in self.store.get_contacts(unique_ids)}
        meeting_counts = self.store.count_meetings_by_contact(
            unique_ids,
            exclude_meeting_id=meeting_id,
            started_before=_as_datetime(meeting_start),
        )
        ranked = sorted(
            unique_ids,
            key=lambda contact_id: _ranking_key(
                contact_id,
                contacts.get(contact_id, {}),
                meeting_counts.get(contact_id, 0),
            ),
        )
        return ranked[0]

    def determine_meeting_company(
        self,
        contact_ids: Sequence[str],
        primary_contact_id: str | None,
    ) -> str | None:
        if not primary_contact_id:
            return None

        contacts = {str(contact["_id"]): contact for contact in self.store.get_contacts(contact_ids)}
        primary_company_id = contacts.get(primary_contact_id, {}).get("company_id")
        if primary_company_id:
            return str(primary_company_id)

        company_ids = [
            str(contacts[contact_id]["company_id"])
            for contact_id in contact_ids
            if contact_id in contacts and contacts[contact_id].get("company_id")
        ]
        if not company_ids:
            return None
        counts = Counter(company_ids)
        best_count = max(counts.values())
        for company_id in company_ids:
            if counts[company_id] == best_count:
                return company_id
        return None


def _ranking_key(
    contact_id: str,
    contact: Mapping[str, Any],
    meeting_count: int,
) -> tuple[int, float, float, datetime, str]:
    relationship_score = contact.get("relationship_score")
    if not isinstance(relationship_score, int | float):
        relationship_score = 0.0

    last_interaction_at = _as_datetime(contact.get("last_interaction_at"))
    recency = -last_interaction_at.timestamp() if last_interaction_at else float("inf")
    created_at = _as_datetime(contact.get("created_at")) or _LATEST
    return (-meeting_count, -float(relationship_score), recency, created_at, contact_id)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None

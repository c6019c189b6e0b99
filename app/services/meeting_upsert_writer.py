from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from app.services.meeting_store import MeetingStore

logger = logging.getLogger(__name__)

SYNC_STATUS_SYNCED = "synced"
_NON_CLOBBERING_FIELDS = ("company_id", "primary_contact_id")


class MeetingUpsertWriter:
    """Idempotent insert-or-update of meetings keyed by provider recording id."""

    def __init__(self, store: MeetingStore) -> None:
        self.store = store

    def upsert(self, recording_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        existing = self.store.get_by_recording_id(recording_id)
        payload = dict(fields)
        payload.pop("_id", None)
        payload["fathom_recording_id"] = recording_id

        for field_name in _NON_CLOBBERING_FIELDS:
            if payload.get(field_name) is not None:
                continue
            if existing and existing.get(field_name) is not None:
                payload.pop(field_name, None)

        meeting_start = payload.get("meeting_start", existing.get("meeting_start") if existing else None)
        meeting_end = payload.get("meeting_end", existing.get("meeting_end") if existing else None)
        payload["duration_minutes"] = compute_duration_minutes(meeting_start, meeting_end)
        payload["last_synced_at"] = datetime.now(UTC)
        payload["sync_status"] = SYNC_STATUS_SYNCED

        meeting = self.store.upsert_by_recording_id(recording_id, payload)
        logger.info(
            "Upserted meeting recording_id=%s meeting_id=%s created=%s",
            recording_id,
            meeting.get("_id"),
            existing is None,
        )
        return meeting

    def set_primary_links(
        self,
        meeting_id: str,
        primary_contact_id: str | None,
        company_id: str | None,
    ) -> bool:
        updates = {
            field_name: value
            for field_name, value in (
                ("primary_contact_id", primary_contact_id),
                ("company_id", company_id),
            )
            if value is not None
        }
        if not updates:
            return False
        return self.store.update_meeting(meeting_id, updates)


def compute_duration_minutes(start: datetime | None, end: datetime | None) -> int | None:
    if not isinstance(start, datetime) or not isinstance(end, datetime):
        return None
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    if end.tzinfo is None:
        end = end.replace(tzinfo=UTC)
    return round((end - start).total_seconds() / 60)

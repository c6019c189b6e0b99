from datetime import UTC, datetime

from app.services.meeting_store import InMemoryMeetingStore
from app.services.meeting_upsert_writer import MeetingUpsertWriter, compute_duration_minutes


def _fields(**overrides: object) -> dict[str, object]:
    fields: dict[str, object] = {
        "owner_user_id": "user-1",
        "title": "Acme sync",
        "meeting_start": datetime(2026, 2, 1, 15, 0, tzinfo=UTC),
        "meeting_end": datetime(2026, 2, 1, 15, 44, 40, tzinfo=UTC),
    }
    fields.update(overrides)
    return fields


def test_upsert_is_keyed_by_recording_id() -> None:
    store = InMemoryMeetingStore()
    writer = MeetingUpsertWriter(store)

    first = writer.upsert("rec-1", _fields())
    second = writer.upsert("rec-1", _fields(title="Acme sync (renamed)"))

    assert first["_id"] == second["_id"]
    assert second["title"] == "Acme sync (renamed)"
    assert len(store.list_recent(owner_user_id="user-1", limit=10)) == 1
    assert second["sync_status"] == "synced"
    assert isinstance(second["last_synced_at"], datetime)


def test_upsert_recomputes_duration_on_every_write() -> None:
    writer = MeetingUpsertWriter(InMemoryMeetingStore())

    assert writer.upsert("rec-1", _fields())["duration_minutes"] == 45
    updated = writer.upsert("rec-1", _fields(meeting_end=datetime(2026, 2, 1, 15, 10, tzinfo=UTC)))
    assert updated["duration_minutes"] == 10
    missing_end = writer.upsert("rec-1", _fields(meeting_end=None))
    assert missing_end["duration_minutes"] is None


def test_none_links_never_clobber_existing_values() -> None:
    writer = MeetingUpsertWriter(InMemoryMeetingStore())
    writer.upsert("rec-1", _fields(company_id="company-1", primary_contact_id="contact-1"))

    kept = writer.upsert("rec-1", _fields(company_id=None, primary_contact_id=None))
    replaced = writer.upsert("rec-1", _fields(company_id="company-2"))

    assert kept["company_id"] == "company-1"
    assert kept["primary_contact_id"] == "contact-1"
    assert replaced["company_id"] == "company-2"
    assert replaced["primary_contact_id"] == "contact-1"


def test_set_primary_links_applies_only_known_values() -> None:
    store = InMemoryMeetingStore()
    writer = MeetingUpsertWriter(store)
    meeting = writer.upsert("rec-1", _fields(company_id="company-1"))

    assert writer.set_primary_links(meeting["_id"], None, None) is False
    assert writer.set_primary_links(meeting["_id"], "contact-9", None) is True

    stored = store.get_by_recording_id("rec-1")
    assert stored is not None
    assert stored["primary_contact_id"] == "contact-9"
    assert stored["company_id"] == "company-1"


def test_compute_duration_minutes_handles_naive_and_missing_bounds() -> None:
    assert compute_duration_minutes(datetime(2026, 1, 1, 10, 0), datetime(2026, 1, 1, 11, 30)) == 90
    assert compute_duration_minutes(None, datetime(2026, 1, 1, 11, 30)) is None

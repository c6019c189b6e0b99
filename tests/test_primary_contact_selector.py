import random
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from app.services.crm_entity_store import InMemoryCrmEntityStore
from app.services.primary_contact_selector import PrimaryContactSelector


class _FakeCrmStore:
    def __init__(self, contacts: list[dict[str, Any]], meeting_counts: dict[str, int] | None = None) -> None:
        self._contacts = {contact["_id"]: contact for contact in contacts}
        self._meeting_counts = meeting_counts or {}
        self.count_calls: list[dict[str, Any]] = []

    def get_contacts(self, contact_ids: Sequence[str]) -> list[dict[str, Any]]:
        return [dict(self._contacts[contact_id]) for contact_id in contact_ids if contact_id in self._contacts]

    def count_meetings_by_contact(self, contact_ids: Sequence[str], **kwargs: Any) -> dict[str, int]:
        self.count_calls.append(kwargs)
        return {contact_id: self._meeting_counts.get(contact_id, 0) for contact_id in contact_ids}


def _contact(
    contact_id: str,
    *,
    score: float = 0.0,
    last_interaction_at: datetime | None = None,
    created_at: datetime = datetime(2026, 1, 1, tzinfo=UTC),
    company_id: str | None = None,
) -> dict[str, Any]:
    return {
        "_id": contact_id,
        "relationship_score": score,
        "last_interaction_at": last_interaction_at,
        "created_at": created_at,
        "company_id": company_id,
    }


def test_select_primary_returns_none_for_empty_input() -> None:
    selector = PrimaryContactSelector(_FakeCrmStore([]))

    assert selector.select_primary([]) is None


def test_select_primary_prefers_meeting_count_then_score() -> None:
    store = _FakeCrmStore(
        [_contact("c1", score=90), _contact("c2", score=10), _contact("c3", score=50)],
        meeting_counts={"c2": 4, "c3": 4},
    )
    selector = PrimaryContactSelector(store)

    assert selector.select_primary(["c1", "c2", "c3"]) == "c3"


def test_select_primary_scopes_meeting_counts_to_earlier_meetings() -> None:
    store = _FakeCrmStore([_contact("c1")])
    selector = PrimaryContactSelector(store)
    meeting_start = datetime(2026, 2, 1, 15, 0, tzinfo=UTC)

    selector.select_primary(["c1"], meeting_id="meeting-7", meeting_start=meeting_start)

    assert store.count_calls == [{"exclude_meeting_id": "meeting-7", "started_before": meeting_start}]


def test_in_memory_meeting_counts_skip_current_and_later_meetings() -> None:
    store = InMemoryCrmEntityStore()
    early = datetime(2026, 1, 10, tzinfo=UTC)
    current = datetime(2026, 2, 1, tzinfo=UTC)
    late = datetime(2026, 3, 1, tzinfo=UTC)
    store.replace_meeting_contacts(
        meeting_id="m-early",
        contact_ids=["c1"],
        primary_contact_id="c1",
        meeting_start=early,
    )
    store.replace_meeting_contacts(
        meeting_id="m-current",
        contact_ids=["c1", "c2"],
        primary_contact_id="c1",
        meeting_start=current,
    )
    store.replace_meeting_contacts(
        meeting_id="m-late",
        contact_ids=["c2"],
        primary_contact_id="c2",
        meeting_start=late,
    )

    assert store.count_meetings_by_contact(["c1", "c2"]) == {"c1": 2, "c2": 2}
    assert store.count_meetings_by_contact(["c1", "c2"], exclude_meeting_id="m-current") == {"c1": 1, "c2": 1}
    assert store.count_meetings_by_contact(
        ["c1", "c2"],
        exclude_meeting_id="m-current",
        started_before=current,
    ) == {"c1": 1, "c2": 0}


def test_select_primary_uses_recency_with_missing_interactions_last() -> None:
    store = _FakeCrmStore(
        [
            _contact("c1"),
            _contact("c2", last_interaction_at=datetime(2026, 1, 5, tzinfo=UTC)),
            _contact("c3", last_interaction_at=datetime(2026, 2, 5, tzinfo=UTC)),
        ],
    )
    selector = PrimaryContactSelector(store)

    assert selector.select_primary(["c1", "c2", "c3"]) == "c3"


def test_select_primary_breaks_full_ties_by_creation_then_id() -> None:
    store = _FakeCrmStore(
        [
            _contact("c3", created_at=datetime(2026, 1, 2, tzinfo=UTC)),
            _contact("c2", created_at=datetime(2026, 1, 1, tzinfo=UTC)),
            _contact("c1", created_at=datetime(2026, 1, 1, tzinfo=UTC)),
        ],
    )
    selector = PrimaryContactSelector(store)

    assert selector.select_primary(["c3", "c2", "c1"]) == "c1"


def test_select_primary_is_independent_of_input_order() -> None:
    contacts = [
        _contact("c1", score=5, created_at=datetime(2026, 1, 3, tzinfo=UTC)),
        _contact("c2", score=5, created_at=datetime(2026, 1, 2, tzinfo=UTC)),
        _contact("c3", score=5, created_at=datetime(2026, 1, 2, tzinfo=UTC)),
        _contact("c4", score=1),
    ]
    selector = PrimaryContactSelector(_FakeCrmStore(contacts))
    contact_ids = ["c1", "c2", "c3", "c4"]

    rng = random.Random(7)
    for _ in range(10):
        rng.shuffle(contact_ids)
        assert selector.select_primary(contact_ids) == "c2"


def test_determine_meeting_company_prefers_primary_then_most_common() -> None:
    store = _FakeCrmStore(
        [
            _contact("c1"),
            _contact("c2", company_id="globex"),
            _contact("c3", company_id="acme"),
            _contact("c4", company_id="acme"),
            _contact("c5", company_id="initech"),
        ],
    )
    selector = PrimaryContactSelector(store)

    assert selector.determine_meeting_company(["c1", "c5"], "c5") == "initech"
    assert selector.determine_meeting_company(["c1", "c2", "c3", "c4"], "c1") == "acme"
    assert selector.determine_meeting_company(["c1", "c2", "c5"], "c1") == "globex"
    assert selector.determine_meeting_company(["c1"], "c1") is None
    assert selector.determine_meeting_company([], None) is None

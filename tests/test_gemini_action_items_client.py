import json
from http.client import RemoteDisconnected

import pytest

from app.services.gemini_action_items_client import (
    GeminiActionItemsClient,
    GeminiActionItemsError,
    GeneratedActionItem,
)


class _FakeResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _gemini_payload(text: str) -> dict[str, object]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_generate_action_items_retries_timeout_then_succeeds(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError("request timed out")
        return _FakeResponse(
            _gemini_payload(
                '{"action_items":[{"title":"Send the proposal","priority":"high","confidence":0.92}]}',
            ),
        )

    monkeypatch.setattr("app.services.gemini_action_items_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.gemini_action_items_client.request.urlopen", fake_urlopen)

    client = GeminiActionItemsClient(
        api_key="fake-api-key",
        model="gemini-3-flash-preview",
        timeout_seconds=0.1,
    )
    items = client.generate_action_items(
        meeting_title="Quarterly review",
        transcript_text="Alice: I will send the proposal.",
        owner_email="owner@example.com",
    )

    assert len(items) == 1
    assert items[0].title == "Send the proposal"
    assert items[0].priority == "high"
    assert items[0].confidence == pytest.approx(0.92)
    assert calls["count"] == 3


def test_generate_action_items_fails_after_retries_on_remote_disconnect(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        raise RemoteDisconnected("closed")

    monkeypatch.setattr("app.services.gemini_action_items_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.gemini_action_items_client.request.urlopen", fake_urlopen)

    client = GeminiActionItemsClient(api_key="fake-api-key", model="gemini-3-flash-preview")
    with pytest.raises(GeminiActionItemsError):
        client.generate_action_items(
            meeting_title="Quarterly review",
            transcript_text="Alice: I will send the proposal.",
            owner_email=None,
        )

    assert calls["count"] == 3


def test_generate_action_items_extracts_json_wrapped_in_text(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        return _FakeResponse(
            _gemini_payload(
                'Here you go:\n{"action_items":[{"title":"Book demo","category":"meeting"},{"title":" "}]}',
            ),
        )

    monkeypatch.setattr("app.services.gemini_action_items_client.request.urlopen", fake_urlopen)

    client = GeminiActionItemsClient(api_key="fake-api-key", model="gemini-3-flash-preview")
    items = client.generate_action_items(
        meeting_title="Demo",
        transcript_text="Bob: let's book a demo.",
        owner_email=None,
    )

    assert [item.title for item in items] == ["Book demo"]
    assert items[0].category == "meeting"


def test_generated_action_item_normalizes_unknown_values() -> None:
    item = GeneratedActionItem.from_payload(
        {
            "title": "Share pricing",
            "priority": "critical",
            "category": "Something Else",
            "confidence": "1.7",
            "assignee_email": "not-an-email",
            "deadline": "2026-03-10",
        },
    )

    assert item is not None
    assert item.priority == "medium"
    assert item.category == "action_item"
    assert item.confidence == 1.0
    assert item.assignee_email is None
    assert item.deadline is not None
    assert item.deadline.isoformat().startswith("2026-03-10T00:00:00")

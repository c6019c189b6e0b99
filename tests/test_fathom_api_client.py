import io
import json
from urllib import error, request

import pytest

from app.services.fathom_api_client import (
    FathomApiClient,
    FathomAuthError,
    FathomNotFoundError,
    FathomTransientError,
)


class _MockResponse:
    def __init__(self, payload: object) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _http_error(status_code: int, payload: dict[str, object] | None = None) -> error.HTTPError:
    return error.HTTPError(
        url="https://api.fathom.ai/external/v1/meetings",
        code=status_code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(json.dumps(payload or {"error": "failed"}).encode("utf-8")),
    )


def _build_client(**kwargs: object) -> FathomApiClient:
    return FathomApiClient(
        api_url="https://api.fathom.ai/external/v1",
        api_key="fathom-token",
        timeout_seconds=0.1,
        jitter_seconds=0.0,
        **kwargs,
    )


def test_list_meetings_retries_server_errors_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}
    delays: list[float] = []

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        calls["count"] += 1
        if calls["count"] < 3:
            raise _http_error(500)
        return _MockResponse({"items": [{"recording_id": 1}], "next_cursor": "cursor-2"})

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    monkeypatch.setattr("app.services.fathom_api_client.sleep", delays.append)

    page = _build_client().list_meetings(limit=10)

    assert calls["count"] == 3
    assert page.items == [{"recording_id": 1}]
    assert page.next_cursor == "cursor-2"
    assert delays == [1.0, 2.0]


def test_list_meetings_raises_transient_error_after_max_attempts(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {"count": 0}

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        calls["count"] += 1
        raise TimeoutError("timed out")

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    monkeypatch.setattr("app.services.fathom_api_client.sleep", lambda _: None)

    with pytest.raises(FathomTransientError):
        _build_client().list_meetings()

    assert calls["count"] == 3


def test_unauthorized_bearer_falls_back_to_api_key_header(monkeypatch: pytest.MonkeyPatch) -> None:
    seen_headers: list[dict[str, str]] = []

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        headers = dict(req.header_items())
        seen_headers.append(headers)
        if "Authorization" in headers:
            raise _http_error(401)
        return _MockResponse([{"recording_id": "abc"}])

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)

    page = _build_client().list_meetings()

    assert page.items == [{"recording_id": "abc"}]
    assert seen_headers[0]["Authorization"] == "Bearer fathom-token"
    assert seen_headers[1]["X-api-key"] == "fathom-token"


def test_unauthorized_on_every_strategy_is_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        calls["count"] += 1
        raise _http_error(401)

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    monkeypatch.setattr(
        "app.services.fathom_api_client.sleep",
        lambda _: pytest.fail("auth failures must not be retried"),
    )

    with pytest.raises(FathomAuthError) as exc_info:
        _build_client().list_meetings()

    assert exc_info.value.status_code == 401
    assert calls["count"] == 2


def test_forbidden_aborts_without_trying_other_strategies(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        calls["count"] += 1
        raise _http_error(403)

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)

    with pytest.raises(FathomAuthError):
        _build_client().fetch_recording("rec-1")

    assert calls["count"] == 1


def test_fetch_recording_raises_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        raise _http_error(404)

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)

    with pytest.raises(FathomNotFoundError):
        _build_client().fetch_recording("missing")


def test_optional_resources_return_none_when_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        raise _http_error(404)

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    client = _build_client()

    assert client.fetch_recording_summary("missing") is None
    assert client.fetch_recording_transcript("missing") is None
    assert client.fetch_recording_action_items("missing") is None


def test_list_meetings_sends_window_and_paging_query(monkeypatch: pytest.MonkeyPatch) -> None:
    seen_urls: list[str] = []

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        seen_urls.append(req.full_url)
        return _MockResponse({"meetings": []})

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)

    _build_client().list_meetings(
        created_after="2026-01-01T00:00:00Z",
        created_before="2026-01-31T00:00:00Z",
        limit=25,
        offset=50,
    )

    assert seen_urls[0].startswith("https://api.fathom.ai/external/v1/meetings?")
    assert "limit=25" in seen_urls[0]
    assert "offset=50" in seen_urls[0]
    assert "created_after=2026-01-01T00%3A00%3A00Z" in seen_urls[0]


def test_summary_prefers_markdown_and_transcript_joins_speakers(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        if req.full_url.endswith("/summary"):
            return _MockResponse(
                {"summary": {"text": "plain", "markdown_formatted": "## Recap\n- pricing"}},
            )
        return _MockResponse(
            {
                "transcript": [
                    {"speaker": {"display_name": "Alice"}, "text": "Hello there."},
                    {"speaker": {"display_name": "Bob"}, "text": "Hi Alice."},
                    {"speaker": {}, "text": "   "},
                ],
            },
        )

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    client = _build_client()

    assert client.fetch_recording_summary("rec-1") == "## Recap\n- pricing"
    assert client.fetch_recording_transcript("rec-1") == "Alice: Hello there.\nBob: Hi Alice."

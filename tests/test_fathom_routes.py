import hashlib
import hmac
import io
import json
from urllib import error, request

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.crm_entity_store import clear_crm_entity_store_cache
from app.services.meeting_store import clear_meeting_store_cache
from app.services.sync_state_store import clear_sync_state_store_cache


class _MockResponse:
    def __init__(self, payload: object) -> None:
        self._body = json.dumps(payload).encode("utf-8")
        self.status = 200

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self, size: int = -1) -> bytes:
        return self._body


def _call_payload(recording_id: str) -> dict[str, object]:
    return {
        "recording_id": recording_id,
        "title": "Acme renewal",
        "recording_start_time": "2026-02-01T15:00:00Z",
        "recording_end_time": "2026-02-01T15:45:00Z",
        "share_url": f"https://fathom.video/share/{recording_id}",
        "recorded_by": {"email": "owner@ours.com", "name": "Owner"},
        "default_summary": "Renewal terms agreed.",
        "action_items": [],
        "calendar_invitees": [
            {"name": "Owner", "email": "owner@ours.com", "is_external": False},
            {"name": "Jane Doe", "email": "jane@acme.com", "is_external": True},
        ],
    }


def _http_error(req: request.Request, code: int) -> error.HTTPError:
    return error.HTTPError(url=req.full_url, code=code, msg="error", hdrs=None, fp=io.BytesIO(b"{}"))


@pytest.fixture(autouse=True)
def reset_stores_and_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SYNC_DATA_STORE", "memory")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.setenv("FATHOM_WEBHOOK_SECRET", "")
    monkeypatch.setenv("ENABLE_VIDEO_THUMBNAILS", "false")

    def offline_thumbnail_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        raise error.URLError("offline")

    monkeypatch.setattr("app.services.thumbnail_cascade.request.urlopen", offline_thumbnail_urlopen)
    monkeypatch.setattr("app.services.fathom_api_client.sleep", lambda _: None)

    get_settings.cache_clear()
    clear_sync_state_store_cache()
    clear_crm_entity_store_cache()
    clear_meeting_store_cache()
    yield
    get_settings.cache_clear()
    clear_sync_state_store_cache()
    clear_crm_entity_store_cache()
    clear_meeting_store_cache()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _connect(client: TestClient, user_id: str = "user-1") -> None:
    response = client.post(f"/api/fathom/integrations/{user_id}", json={"access_token": "fathom-token"})
    assert response.status_code == 201


def test_connect_returns_idle_state(client: TestClient) -> None:
    response = client.post(
        "/api/v1/fathom/integrations/user-1",
        json={"access_token": "fathom-token", "fathom_user_email": "owner@ours.com"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["user_id"] == "user-1"
    assert data["status"] == "idle"
    assert data["last_error"] == []


def test_sync_persists_meetings_and_updates_state(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    requested_urls: list[str] = []

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        if not req.full_url.startswith(get_settings().fathom_api_url):
            raise error.URLError("offline")
        requested_urls.append(req.full_url)
        return _MockResponse({"items": [_call_payload("rec-1"), _call_payload("rec-2")]})

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    _connect(client)

    response = client.post("/api/fathom/sync/user-1", json={"sync_type": "manual"})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "idle"
    assert data["meetings_synced"] == 2
    assert data["total_meetings_found"] == 2
    assert data["errors"] == []
    assert len(requested_urls) == 1
    assert "created_after=" in requested_urls[0]

    state = client.get("/api/fathom/sync/user-1/state").json()
    assert state["status"] == "idle"
    assert state["last_sync_type"] == "manual"
    assert state["meetings_synced"] == 2

    meetings = client.get("/api/fathom/meetings/user-1?limit=10").json()["items"]
    assert {meeting["fathom_recording_id"] for meeting in meetings} == {"rec-1", "rec-2"}
    assert all(meeting["primary_contact_id"] for meeting in meetings)
    assert all(meeting["duration_minutes"] == 45 for meeting in meetings)
    assert all(meeting["thumbnail_url"].endswith("?text=A") for meeting in meetings)


def test_cancel_route_stops_the_next_run(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        if not req.full_url.startswith(get_settings().fathom_api_url):
            raise error.URLError("offline")
        return _MockResponse({"items": [_call_payload("rec-1")]})

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    _connect(client)

    cancel_response = client.post("/api/fathom/sync/user-1/cancel")
    cancelled = client.post("/api/fathom/sync/user-1", json={"sync_type": "manual"}).json()
    state = client.get("/api/fathom/sync/user-1/state").json()
    resumed = client.post("/api/fathom/sync/user-1", json={"sync_type": "manual"}).json()

    assert cancel_response.status_code == 202
    assert cancel_response.json()["cancel_requested"] is True
    assert cancelled["cancelled"] is True
    assert cancelled["meetings_synced"] == 0
    assert cancelled["total_meetings_found"] == 1
    assert state["cancel_requested"] is False
    assert resumed["cancelled"] is False
    assert resumed["meetings_synced"] == 1


def test_cancel_route_without_sync_state_returns_404(client: TestClient) -> None:
    response = client.post("/api/fathom/sync/nobody/cancel")

    assert response.status_code == 404


def test_sync_without_integration_returns_404(client: TestClient) -> None:
    response = client.post("/api/fathom/sync/user-404", json={"sync_type": "manual"})

    assert response.status_code == 404


def test_state_for_unknown_user_returns_404(client: TestClient) -> None:
    response = client.get("/api/fathom/sync/nobody/state")

    assert response.status_code == 404


def test_rejected_credentials_return_401_and_mark_state(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        raise _http_error(req, 401)

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    _connect(client)

    response = client.post("/api/fathom/sync/user-1", json={"sync_type": "incremental"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Fathom rejected the stored credentials."
    assert client.get("/api/fathom/sync/user-1/state").json()["status"] == "error"


def test_page_failure_after_retries_returns_502(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(req: request.Request, timeout: float) -> _MockResponse:
        calls["count"] += 1
        raise _http_error(req, 503)

    monkeypatch.setattr("app.services.fathom_api_client.request.urlopen", fake_urlopen)
    _connect(client)

    response = client.post("/api/fathom/sync/user-1", json={"sync_type": "manual"})

    assert response.status_code == 502
    assert calls["count"] == 3
    assert client.get("/api/fathom/sync/user-1/state").json()["status"] == "error"


def test_sync_rejects_out_of_range_limit(client: TestClient) -> None:
    response = client.post("/api/fathom/sync/user-1", json={"sync_type": "manual", "limit": 0})

    assert response.status_code == 422


def test_webhook_without_secret_syncs_payload(client: TestClient) -> None:
    _connect(client)

    response = client.post("/api/fathom/webhooks/user-1", json=_call_payload("rec-hook"))

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "accepted"
    assert data["recording_id"] == "rec-hook"
    assert data["sync"]["meetings_synced"] == 1


def test_webhook_signature_is_verified(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FATHOM_WEBHOOK_SECRET", "whsec")
    get_settings.cache_clear()
    _connect(client)
    raw_body = json.dumps(_call_payload("rec-signed")).encode("utf-8")
    signature = hmac.new(b"whsec", raw_body, hashlib.sha256).hexdigest()

    rejected = client.post(
        "/api/fathom/webhooks/user-1",
        content=raw_body,
        headers={"content-type": "application/json", "x-fathom-signature": "sha256=deadbeef"},
    )
    accepted = client.post(
        "/api/fathom/webhooks/user-1",
        content=raw_body,
        headers={"content-type": "application/json", "x-fathom-signature": f"sha256={signature}"},
    )
    shared_secret = client.post(
        "/api/fathom/webhooks/user-1",
        content=raw_body,
        headers={"content-type": "application/json", "authorization": "Bearer whsec"},
    )

    assert rejected.status_code == 401
    assert rejected.json()["detail"] == "Invalid webhook signature."
    assert accepted.status_code == 202
    assert shared_secret.status_code == 202


def test_webhook_rejects_non_object_body(client: TestClient) -> None:
    response = client.post(
        "/api/fathom/webhooks/user-1",
        content=b"[1, 2]",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 422

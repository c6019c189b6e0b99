from __future__ import annotations

import json
import logging
import random
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from http.client import RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, parse, request

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_MEETING_ENVELOPE_KEYS = ("items", "meetings", "data", "calls")


class FathomApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FathomAuthError(FathomApiError):
    pass


class FathomTransientError(FathomApiError):
    pass


class FathomNotFoundError(FathomApiError):
    pass


@dataclass(frozen=True)
class AuthStrategy:
    name: str
    header_name: str
    header_template: str

    def build_headers(self, credential: str) -> dict[str, str]:
        return {self.header_name: self.header_template.format(credential=credential)}


BEARER_AUTH = AuthStrategy(name="bearer", header_name="Authorization", header_template="Bearer {credential}")
API_KEY_AUTH = AuthStrategy(name="api_key", header_name="X-Api-Key", header_template="{credential}")
DEFAULT_AUTH_STRATEGIES: tuple[AuthStrategy, ...] = (BEARER_AUTH, API_KEY_AUTH)


@dataclass
class FathomMeetingsPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


class FathomApiClient:
    """Fathom external API client.

    Every request is retried with exponential backoff and jitter on transient
    failures. Authentication walks ``auth_strategies`` in order and moves to the
    next strategy only when the provider answers 401.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        user_agent: str = "MeetingSyncBackend/1.0",
        max_attempts: int = 3,
        initial_delay_seconds: float = 1.0,
        jitter_seconds: float = 1.0,
        auth_strategies: Sequence[AuthStrategy] = DEFAULT_AUTH_STRATEGIES,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.max_attempts = max(max_attempts, 1)
        self.initial_delay_seconds = initial_delay_seconds
        self.jitter_seconds = jitter_seconds
        self.auth_strategies = tuple(auth_strategies)

    def list_meetings(
        self,
        *,
        created_after: str | None = None,
        created_before: str | None = None,
        limit: int = 100,
        cursor: str | None = None,
        offset: int = 0,
    ) -> FathomMeetingsPage:
        query: dict[str, str] = {"limit": str(limit)}
        if created_after:
            query["created_after"] = created_after
        if created_before:
            query["created_before"] = created_before
        if cursor:
            query["cursor"] = cursor
        elif offset > 0:
            query["offset"] = str(offset)

        payload = self._get_json("/meetings", query=query)
        return FathomMeetingsPage(
            items=_extract_meeting_items(payload),
            next_cursor=_extract_next_cursor(payload),
        )

    def fetch_recording(self, recording_id: str) -> dict[str, Any]:
        payload = self._get_json(f"/recordings/{parse.quote(str(recording_id), safe='')}")
        if not isinstance(payload, Mapping):
            raise FathomApiError("Fathom recording response is not a JSON object.")
        return dict(payload)

    def fetch_recording_action_items(self, recording_id: str) -> list[dict[str, Any]] | None:
        try:
            payload = self.fetch_recording(recording_id)
        except FathomNotFoundError:
            return None

        raw_items = payload.get("action_items")
        if not isinstance(raw_items, list):
            return None
        return [dict(item) for item in raw_items if isinstance(item, Mapping)]

    def fetch_recording_summary(self, recording_id: str) -> str | None:
        try:
            payload = self._get_json(
                f"/recordings/{parse.quote(str(recording_id), safe='')}/summary",
            )
        except FathomNotFoundError:
            return None

        if not isinstance(payload, Mapping):
            return None
        summary = payload.get("summary")
        if isinstance(summary, str):
            return summary.strip() or None
        if not isinstance(summary, Mapping):
            return None
        for key in ("markdown_formatted", "markdown", "text"):
            value = summary.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def fetch_recording_transcript(self, recording_id: str) -> str | None:
        try:
            payload = self._get_json(
                f"/recordings/{parse.quote(str(recording_id), safe='')}/transcript",
            )
        except FathomNotFoundError:
            return None

        if isinstance(payload, str):
            return payload.strip() or None
        if not isinstance(payload, Mapping):
            return None

        transcript = payload.get("transcript")
        if isinstance(transcript, str):
            return transcript.strip() or None
        if not isinstance(transcript, list):
            return None

        lines: list[str] = []
        for segment in transcript:
            if not isinstance(segment, Mapping):
                continue
            text = segment.get("text")
            if not isinstance(text, str) or not text.strip():
                continue
            speaker = segment.get("speaker")
            speaker_name = speaker.get("display_name") if isinstance(speaker, Mapping) else None
            if isinstance(speaker_name, str) and speaker_name.strip():
                lines.append(f"{speaker_name.strip()}: {text.strip()}")
            else:
                lines.append(text.strip())
        return "\n".join(lines) or None

    def _get_json(self, path: str, query: Mapping[str, str] | None = None) -> Any:
        url = f"{self.api_url}{path}"
        if query:
            url = f"{url}?{parse.urlencode(query)}"

        response_body: bytes | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response_body = self._send_with_auth_fallback(url)
                break
            except FathomTransientError as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self._compute_backoff_delay(attempt)
                logger.warning(
                    "Fathom request failed url=%s attempt=%s/%s error=%s retry_in=%.2fs",
                    url,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                sleep(delay)

        if response_body is None:
            raise FathomTransientError("Fathom API request failed after multiple attempts.")

        try:
            return json.loads(response_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise FathomApiError("Fathom API returned invalid JSON.") from exc

    def _send_with_auth_fallback(self, url: str) -> bytes:
        auth_error: FathomAuthError | None = None
        for strategy in self.auth_strategies:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
                **strategy.build_headers(self.api_key),
            }
            req = request.Request(url, headers=headers, method="GET")
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    return response.read()
            except error.HTTPError as exc:
                body = _read_error_body(exc)
                if exc.code == 401:
                    auth_error = FathomAuthError(
                        f"Fathom API HTTP 401 with {strategy.name} auth: {body or 'empty response body'}",
                        status_code=401,
                    )
                    logger.info("Fathom auth rejected strategy=%s url=%s", strategy.name, url)
                    continue
                raise _map_http_error(exc.code, body) from exc
            except TimeoutError as exc:
                raise FathomTransientError("Fathom API request timed out.") from exc
            except RemoteDisconnected as exc:
                raise FathomTransientError(
                    "Fathom API connection was closed before sending a response.",
                ) from exc
            except error.URLError as exc:
                raise FathomTransientError(f"Fathom API connection error: {exc.reason}") from exc

        if auth_error:
            raise auth_error
        raise FathomAuthError("No Fathom authentication strategy is configured.")

    def _compute_backoff_delay(self, attempt: int) -> float:
        base_delay = self.initial_delay_seconds * (2 ** (attempt - 1))
        return base_delay + random.uniform(0, self.jitter_seconds)


def _map_http_error(status_code: int, body: str) -> FathomApiError:
    message = f"Fathom API HTTP {status_code}: {body or 'empty response body'}"
    if status_code == 403:
        return FathomAuthError(message, status_code=status_code)
    if status_code == 404:
        return FathomNotFoundError(message, status_code=status_code)
    if status_code in _RETRYABLE_STATUS_CODES or status_code >= 500:
        return FathomTransientError(message, status_code=status_code)
    return FathomApiError(message, status_code=status_code)


def _read_error_body(exc: error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="ignore")
    except (OSError, AttributeError):
        return ""


def _extract_meeting_items(payload: Any) -> list[dict[str, Any]]:
    raw_items: Any = None
    if isinstance(payload, list):
        raw_items = payload
    elif isinstance(payload, Mapping):
        for key in _MEETING_ENVELOPE_KEYS:
            candidate = payload.get(key)
            if isinstance(candidate, list):
                raw_items = candidate
                break

    if raw_items is None:
        logger.warning("Unknown Fathom meetings response structure type=%s", type(payload).__name__)
        return []
    return [dict(item) for item in raw_items if isinstance(item, Mapping)]


def _extract_next_cursor(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    for key in ("next_cursor", "nextCursor"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None

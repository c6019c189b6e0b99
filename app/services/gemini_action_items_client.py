from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from http.client import RemoteDisconnected
from time import sleep
from typing import Any, Protocol
from urllib import error, parse, request

_ALLOWED_PRIORITIES = frozenset({"low", "medium", "high", "urgent"})
_ALLOWED_CATEGORIES = frozenset({"follow_up", "deliverable", "meeting", "research", "action_item"})
_MAX_TRANSCRIPT_CHARS = 60_000


class GeminiActionItemsError(Exception):
    pass


@dataclass
class GeneratedActionItem:
    title: str
    assignee_name: str | None = None
    assignee_email: str | None = None
    deadline: datetime | None = None
    priority: str = "medium"
    category: str = "action_item"
    confidence: float = 0.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> GeneratedActionItem | None:
        raw_title = payload.get("title")
        if not isinstance(raw_title, str) or not raw_title.strip():
            return None

        priority = _normalize_text(payload.get("priority"))
        priority = priority.lower() if priority else "medium"
        category = _normalize_text(payload.get("category"))
        category = category.lower().replace(" ", "_") if category else "action_item"
        assignee_email = _normalize_text(payload.get("assignee_email"))
        if assignee_email and "@" not in assignee_email:
            assignee_email = None

        return cls(
            title=raw_title.strip(),
            assignee_name=_normalize_text(payload.get("assignee_name")),
            assignee_email=assignee_email.lower() if assignee_email else None,
            deadline=_parse_deadline(payload.get("deadline")),
            priority=priority if priority in _ALLOWED_PRIORITIES else "medium",
            category=category if category in _ALLOWED_CATEGORIES else "action_item",
            confidence=_normalize_confidence(payload.get("confidence")),
        )


class ActionItemGenerator(Protocol):
    def generate_action_items(
        self,
        *,
        meeting_title: str,
        transcript_text: str,
        owner_email: str | None,
    ) -> list[GeneratedActionItem]: ...


class GeminiActionItemsClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 20.0,
        api_base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")

    def generate_action_items(
        self,
        *,
        meeting_title: str,
        transcript_text: str,
        owner_email: str | None,
    ) -> list[GeneratedActionItem]:
        prompt = self._build_prompt(
            meeting_title=meeting_title,
            reference_date=datetime.now(UTC).date(),
            transcript_text=transcript_text,
            owner_email=owner_email,
        )
        response_payload = self._generate(prompt)
        output_text = self._extract_text_response(response_payload)
        parsed_output = self._parse_json_output(output_text)
        raw_items = parsed_output.get("action_items")
        if not isinstance(raw_items, list):
            return []

        action_items: list[GeneratedActionItem] = []
        for raw_item in raw_items:
            if not isinstance(raw_item, dict):
                continue
            item = GeneratedActionItem.from_payload(raw_item)
            if not item:
                continue
            action_items.append(item)
        return action_items

    def _generate(self, prompt: str) -> dict[str, Any]:
        query = parse.urlencode({"key": self.api_key})
        endpoint = f"{self.api_base_url}/models/{self.model}:generateContent?{query}"
        payload = {
            "system_instruction": {
                "parts": [
                    {
                        "text": (
                            "You are a meeting analyst. Extract only concrete action items "
                            "assigned to people. Respond with valid JSON."
                        ),
                    },
                ],
            },
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.1,
                "responseMimeType": "application/json",
            },
        }
        req = request.Request(
            endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        max_attempts = 3
        response_body: bytes | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    response_body = response.read()
                break
            except TimeoutError as exc:
                if attempt >= max_attempts:
                    raise GeminiActionItemsError("Gemini API request timed out.") from exc
            except RemoteDisconnected as exc:
                if attempt >= max_attempts:
                    raise GeminiActionItemsError(
                        "Gemini API connection was closed before sending a response.",
                    ) from exc
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                is_retryable_status = exc.code in {429, 500, 502, 503, 504}
                if not is_retryable_status or attempt >= max_attempts:
                    raise GeminiActionItemsError(
                        f"Gemini API HTTP {exc.code}: {body or 'empty response body'}",
                    ) from exc
            except error.URLError as exc:
                if attempt >= max_attempts:
                    raise GeminiActionItemsError(
                        f"Gemini API connection error: {exc.reason}",
                    ) from exc

            sleep(0.5 * attempt)

        if response_body is None:
            raise GeminiActionItemsError("Gemini API request failed after multiple attempts.")

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GeminiActionItemsError("Gemini API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GeminiActionItemsError("Gemini API response is not a JSON object.")
        return parsed_body

    def _extract_text_response(self, payload: Mapping[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise GeminiActionItemsError("Gemini API response missing candidates.")

        first_candidate = candidates[0]
        content = first_candidate.get("content") if isinstance(first_candidate, Mapping) else None
        parts = content.get("parts") if isinstance(content, Mapping) else None
        if not isinstance(parts, list):
            raise GeminiActionItemsError("Gemini API response missing content parts.")

        chunks = [
            part["text"].strip()
            for part in parts
            if isinstance(part, Mapping) and isinstance(part.get("text"), str) and part["text"].strip()
        ]
        if not chunks:
            raise GeminiActionItemsError("Gemini API response did not include text output.")
        return "\n".join(chunks)

    def _parse_json_output(self, raw_text: str) -> dict[str, Any]:
        direct = _loads_json_object(raw_text)
        if direct is not None:
            return direct

        start = raw_text.find("{")
        end = raw_text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise GeminiActionItemsError("Gemini output is not valid JSON.")

        parsed_candidate = _loads_json_object(raw_text[start : end + 1])
        if parsed_candidate is None:
            raise GeminiActionItemsError("Gemini output could not be parsed as JSON.")
        return parsed_candidate

    def _build_prompt(
        self,
        *,
        meeting_title: str,
        reference_date: date,
        transcript_text: str,
        owner_email: str | None,
    ) -> str:
        return (
            f"Meeting title: {meeting_title}\n"
            f"Reference date: {reference_date.isoformat()}\n"
            f"Meeting owner: {owner_email or 'unknown'}\n\n"
            "Return a JSON object with an `action_items` array. Each item has:\n"
            "- title: short imperative sentence\n"
            "- assignee_name, assignee_email: or null when not stated\n"
            "- deadline: ISO-8601 date or null; resolve relative dates against the reference date\n"
            "- priority: one of low, medium, high, urgent\n"
            "- category: one of follow_up, deliverable, meeting, research, action_item\n"
            "- confidence: number between 0 and 1\n"
            "Skip small talk and anything nobody committed to.\n\n"
            f"Transcript:\n{transcript_text[:_MAX_TRANSCRIPT_CHARS]}"
        )


def _loads_json_object(value: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None

    if not isinstance(parsed, dict):
        return None
    return parsed


def _normalize_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _normalize_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return 0.0
    try:
        confidence = float(value)
    except ValueError:
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def _parse_deadline(value: Any) -> datetime | None:
    text = _normalize_text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed

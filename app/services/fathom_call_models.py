from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


class FathomCallDataError(Exception):
    pass


@dataclass(frozen=True)
class FathomAttendee:
    name: str | None
    email: str | None
    is_external: bool

    @property
    def domain(self) -> str | None:
        if not self.email or "@" not in self.email:
            return None
        domain = self.email.rsplit("@", maxsplit=1)[1].strip().lower()
        return domain or None


@dataclass
class FathomCall:
    recording_id: str
    title: str
    start_time: datetime
    end_time: datetime | None = None
    share_url: str | None = None
    calls_url: str | None = None
    owner_email: str | None = None
    team_name: str | None = None
    summary: str | None = None
    action_items: list[dict[str, Any]] | None = None
    attendees: list[FathomAttendee] = field(default_factory=list)

    @property
    def external_attendees(self) -> list[FathomAttendee]:
        return [attendee for attendee in self.attendees if attendee.is_external and attendee.email]

    @property
    def internal_attendees(self) -> list[FathomAttendee]:
        return [attendee for attendee in self.attendees if not attendee.is_external]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> FathomCall:
        recording_id = _first_text(payload, ("recording_id", "id"))
        if not recording_id:
            raise FathomCallDataError("Fathom call is missing recording_id.")

        start_time = _parse_timestamp(
            _first_present(payload, ("recording_start_time", "scheduled_start_time", "start_time")),
            field_name="start time",
        )
        if start_time is None:
            raise FathomCallDataError(f"Fathom call {recording_id} is missing a start time.")
        end_time = _parse_timestamp(
            _first_present(payload, ("recording_end_time", "scheduled_end_time", "end_time")),
            field_name="end time",
        )

        owner_email = _extract_owner_email(payload)
        recorded_by = payload.get("recorded_by")
        team_name = None
        if isinstance(recorded_by, Mapping):
            team_name = _normalize_text(recorded_by.get("team"))

        raw_action_items = payload.get("action_items")
        action_items: list[dict[str, Any]] | None = None
        if isinstance(raw_action_items, list):
            action_items = [
                dict(item) if isinstance(item, Mapping) else {"title": item}
                for item in raw_action_items
                if isinstance(item, Mapping | str)
            ]

        return cls(
            recording_id=recording_id,
            title=_first_text(payload, ("title", "meeting_title")) or "Untitled meeting",
            start_time=start_time,
            end_time=end_time,
            share_url=_normalize_text(payload.get("share_url")),
            calls_url=_normalize_text(payload.get("url")),
            owner_email=owner_email,
            team_name=team_name,
            summary=_extract_summary(payload),
            action_items=action_items,
            attendees=_extract_attendees(payload, owner_email=owner_email),
        )


def extract_recording_id(payload: Mapping[str, Any]) -> str:
    return _first_text(payload, ("recording_id", "id")) or "unknown"


def _extract_owner_email(payload: Mapping[str, Any]) -> str | None:
    candidates: list[Any] = []
    recorded_by = payload.get("recorded_by")
    if isinstance(recorded_by, Mapping):
        candidates.append(recorded_by.get("email"))
    candidates.append(payload.get("host_email"))
    host = payload.get("host")
    if isinstance(host, Mapping):
        candidates.append(host.get("email"))
    for list_key in ("participants", "calendar_invitees"):
        raw_people = payload.get(list_key)
        if not isinstance(raw_people, list):
            continue
        for person in raw_people:
            if isinstance(person, Mapping) and person.get("is_host") is True:
                candidates.append(person.get("email"))
                break

    for candidate in candidates:
        email = _normalize_email(candidate)
        if email:
            return email
    return None


def _extract_attendees(payload: Mapping[str, Any], *, owner_email: str | None) -> list[FathomAttendee]:
    raw_people = payload.get("calendar_invitees")
    if not isinstance(raw_people, list):
        raw_people = payload.get("participants")
    if not isinstance(raw_people, list):
        return []

    owner_domain = owner_email.rsplit("@", maxsplit=1)[1] if owner_email else None
    attendees: list[FathomAttendee] = []
    for person in raw_people:
        if not isinstance(person, Mapping):
            continue
        email = _normalize_email(person.get("email"))
        name = _normalize_text(person.get("name")) or _normalize_text(
            person.get("matched_speaker_display_name"),
        )
        if not email and not name:
            continue

        raw_is_external = person.get("is_external")
        if isinstance(raw_is_external, bool):
            is_external = raw_is_external
        elif person.get("is_host") is True:
            is_external = False
        elif email and owner_domain:
            is_external = email.rsplit("@", maxsplit=1)[1] != owner_domain
        else:
            is_external = False
        attendees.append(FathomAttendee(name=name, email=email, is_external=is_external))
    return attendees


def _extract_summary(payload: Mapping[str, Any]) -> str | None:
    for key in ("default_summary", "summary"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, Mapping):
            for nested_key in ("markdown_formatted", "markdown", "text"):
                nested_value = value.get(nested_key)
                if isinstance(nested_value, str) and nested_value.strip():
                    return nested_value.strip()
    return None


def _parse_timestamp(value: Any, *, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise FathomCallDataError(f"Malformed {field_name}: {value!r}")
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise FathomCallDataError(f"Malformed {field_name}: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _first_present(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _first_text(payload: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        text = _normalize_text(value)
        if text:
            return text
    return None


def _normalize_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _normalize_email(value: Any) -> str | None:
    text = _normalize_text(value)
    if not text or "@" not in text:
        return None
    return text.lower()

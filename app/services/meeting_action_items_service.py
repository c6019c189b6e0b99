from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from app.services.action_item_dedup import deduplicate_action_items
from app.services.fathom_api_client import FathomApiClient, FathomAuthError
from app.services.gemini_action_items_client import ActionItemGenerator, GeneratedActionItem
from app.services.meeting_store import MeetingStore

logger = logging.getLogger(__name__)

NEEDS_REVIEW_CONFIDENCE = 0.8
ACTION_ITEM_SOURCE_PROVIDER = "fathom"
ACTION_ITEM_SOURCE_GENERATED = "generated"

_TRANSCRIPT_COOLDOWN_STEPS: tuple[tuple[int, int], ...] = (
    (24, 720),
    (12, 180),
    (6, 60),
    (3, 15),
)
_DEFAULT_TRANSCRIPT_COOLDOWN_MINUTES = 5


class MeetingActionItemsService:
    def __init__(
        self,
        store: MeetingStore,
        generator: ActionItemGenerator | None = None,
    ) -> None:
        self.store = store
        self.generator = generator

    def store_provider_items(self, meeting_id: str, raw_items: Iterable[Mapping[str, Any]]) -> int:
        stored = 0
        for raw_item in raw_items:
            title = _provider_item_title(raw_item)
            timestamp_seconds = parse_recording_timestamp(raw_item.get("recording_timestamp"))
            if self.store.find_action_item(
                meeting_id=meeting_id,
                title=title,
                timestamp_seconds=timestamp_seconds,
            ):
                continue

            playback_url = raw_item.get("recording_playback_url") or raw_item.get("playback_url")
            self.store.insert_action_item(
                meeting_id,
                {
                    "title": title,
                    "timestamp_seconds": timestamp_seconds,
                    "playback_url": playback_url if isinstance(playback_url, str) else None,
                    "category": raw_item.get("type") or raw_item.get("category") or "action_item",
                    "priority": raw_item.get("priority") or "medium",
                    "assignee_name": _assignee_field(raw_item, "name"),
                    "assignee_email": _assignee_field(raw_item, "email"),
                    "deadline_at": None,
                    "completed": bool(raw_item.get("completed")),
                    "ai_generated": not bool(raw_item.get("user_generated")),
                    "ai_confidence": None,
                    "needs_review": False,
                    "source": ACTION_ITEM_SOURCE_PROVIDER,
                },
            )
            stored += 1
        if stored:
            logger.info("Stored provider action items meeting_id=%s count=%s", meeting_id, stored)
        return stored

    def store_generated_items(
        self,
        meeting_id: str,
        generated: Sequence[GeneratedActionItem],
        native_titles: Iterable[str],
    ) -> int:
        survivors = deduplicate_action_items(generated, native_titles)
        existing_titles = {item.get("title") for item in self.store.list_action_items(meeting_id)}

        stored = 0
        for item in survivors:
            if item.title in existing_titles:
                continue
            self.store.insert_action_item(
                meeting_id,
                {
                    "title": item.title,
                    "timestamp_seconds": None,
                    "playback_url": None,
                    "category": item.category,
                    "priority": item.priority,
                    "assignee_name": item.assignee_name,
                    "assignee_email": item.assignee_email,
                    "deadline_at": item.deadline,
                    "completed": False,
                    "ai_generated": True,
                    "ai_confidence": item.confidence,
                    "needs_review": item.confidence < NEEDS_REVIEW_CONFIDENCE,
                    "source": ACTION_ITEM_SOURCE_GENERATED,
                },
            )
            existing_titles.add(item.title)
            stored += 1
        logger.info(
            "Stored generated action items meeting_id=%s generated=%s stored=%s",
            meeting_id,
            len(generated),
            stored,
        )
        return stored

    def generate_for_meeting(
        self,
        meeting: Mapping[str, Any],
        *,
        client: FathomApiClient,
        native_titles: Sequence[str],
        now: datetime | None = None,
    ) -> int:
        """Fetch the transcript when due and store deduplicated generated items.

        Failures are logged and reported as zero stored items, except
        authentication errors which belong to the whole run.
        """
        if self.generator is None:
            return 0

        meeting_id = str(meeting["_id"])
        if any(
            item.get("source") == ACTION_ITEM_SOURCE_GENERATED
            for item in self.store.list_action_items(meeting_id)
        ):
            return 0

        try:
            transcript = self._load_transcript(meeting, client=client, now=now or datetime.now(UTC))
            if not transcript:
                return 0
            generated = self.generator.generate_action_items(
                meeting_title=str(meeting.get("title") or "Meeting"),
                transcript_text=transcript,
                owner_email=meeting.get("owner_email"),
            )
            return self.store_generated_items(meeting_id, generated, native_titles)
        except FathomAuthError:
            raise
        except Exception as exc:
            logger.warning("Action item generation failed meeting_id=%s error=%s", meeting_id, exc)
            return 0

    def _load_transcript(
        self,
        meeting: Mapping[str, Any],
        *,
        client: FathomApiClient,
        now: datetime,
    ) -> str | None:
        transcript = meeting.get("transcript_text")
        if isinstance(transcript, str) and transcript.strip():
            return transcript

        meeting_id = str(meeting["_id"])
        attempts = int(meeting.get("transcript_fetch_attempts") or 0)
        if not is_transcript_fetch_due(meeting.get("last_transcript_fetch_at"), attempts, now=now):
            logger.info("Transcript fetch cooling down meeting_id=%s attempts=%s", meeting_id, attempts)
            return None

        self.store.update_meeting(
            meeting_id,
            {"transcript_fetch_attempts": attempts + 1, "last_transcript_fetch_at": now},
        )
        transcript = client.fetch_recording_transcript(str(meeting["fathom_recording_id"]))
        if not transcript:
            logger.info("Transcript not yet available meeting_id=%s", meeting_id)
            return None
        self.store.update_meeting(meeting_id, {"transcript_text": transcript})
        return transcript


def transcript_cooldown_minutes(attempts: int | None) -> int:
    count = attempts or 0
    for threshold, minutes in _TRANSCRIPT_COOLDOWN_STEPS:
        if count >= threshold:
            return minutes
    return _DEFAULT_TRANSCRIPT_COOLDOWN_MINUTES


def is_transcript_fetch_due(last_fetch_at: Any, attempts: int | None, *, now: datetime) -> bool:
    if not isinstance(last_fetch_at, datetime):
        return True
    if last_fetch_at.tzinfo is None:
        last_fetch_at = last_fetch_at.replace(tzinfo=UTC)
    elapsed = now - last_fetch_at
    if elapsed < timedelta(0):
        return True
    return elapsed >= timedelta(minutes=transcript_cooldown_minutes(attempts))


def parse_recording_timestamp(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = (int(part) for part in parts)
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def _provider_item_title(raw_item: Mapping[str, Any]) -> str:
    for key in ("description", "title"):
        value = raw_item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return "Untitled Action Item"


def _assignee_field(raw_item: Mapping[str, Any], key: str) -> str | None:
    assignee = raw_item.get("assignee")
    if not isinstance(assignee, Mapping):
        return None
    value = assignee.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings


class MeetingStore(ABC):
    @abstractmethod
    def get_by_recording_id(self, recording_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def upsert_by_recording_id(self, recording_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update_meeting(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, *, owner_user_id: str, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def add_attendee_if_missing(
        self,
        *,
        meeting_id: str,
        name: str | None,
        email: str | None,
        role: str,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_attendees(self, meeting_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def find_action_item(
        self,
        *,
        meeting_id: str,
        title: str,
        timestamp_seconds: int | None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def insert_action_item(self, meeting_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_action_items(self, meeting_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._meetings: list[dict[str, Any]] = []
        self._attendees: list[dict[str, Any]] = []
        self._action_items: list[dict[str, Any]] = []

    def get_by_recording_id(self, recording_id: str) -> dict[str, Any] | None:
        for meeting in self._meetings:
            if meeting["fathom_recording_id"] == recording_id:
                return dict(meeting)
        return None

    def upsert_by_recording_id(self, recording_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        now = datetime.now(UTC)
        for meeting in self._meetings:
            if meeting["fathom_recording_id"] != recording_id:
                continue
            meeting.update(dict(fields))
            meeting["updated_at"] = now
            return dict(meeting)

        meeting = {
            **dict(fields),
            "_id": f"memory-meeting-{len(self._meetings) + 1}",
            "fathom_recording_id": recording_id,
            "created_at": now,
            "updated_at": now,
        }
        self._meetings.append(meeting)
        return dict(meeting)

    def update_meeting(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        for meeting in self._meetings:
            if meeting["_id"] != meeting_id:
                continue
            meeting.update(dict(updates))
            meeting["updated_at"] = datetime.now(UTC)
            return True
        return False

    def list_recent(self, *, owner_user_id: str, limit: int) -> list[dict[str, Any]]:
        owned = [dict(meeting) for meeting in self._meetings if meeting.get("owner_user_id") == owner_user_id]
        owned.sort(
            key=lambda meeting: meeting.get("meeting_start") or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        return owned[:limit]

    def add_attendee_if_missing(
        self,
        *,
        meeting_id: str,
        name: str | None,
        email: str | None,
        role: str,
    ) -> bool:
        attendee_key = _attendee_key(name=name, email=email)
        for attendee in self._attendees:
            if attendee["meeting_id"] == meeting_id and attendee["attendee_key"] == attendee_key:
                return False
        self._attendees.append(
            {
                "_id": f"memory-attendee-{len(self._attendees) + 1}",
                "meeting_id": meeting_id,
                "attendee_key": attendee_key,
                "name": name,
                "email": email,
                "is_external": False,
                "role": role,
                "created_at": datetime.now(UTC),
            },
        )
        return True

    def list_attendees(self, meeting_id: str) -> list[dict[str, Any]]:
        return [dict(attendee) for attendee in self._attendees if attendee["meeting_id"] == meeting_id]

    def find_action_item(
        self,
        *,
        meeting_id: str,
        title: str,
        timestamp_seconds: int | None,
    ) -> dict[str, Any] | None:
        for item in self._action_items:
            if (
                item["meeting_id"] == meeting_id
                and item["title"] == title
                and item.get("timestamp_seconds") == timestamp_seconds
            ):
                return dict(item)
        return None

    def insert_action_item(self, meeting_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        item = {
            **dict(values),
            "_id": f"memory-action-item-{len(self._action_items) + 1}",
            "meeting_id": meeting_id,
            "created_at": datetime.now(UTC),
        }
        self._action_items.append(item)
        return dict(item)

    def list_action_items(self, meeting_id: str) -> list[dict[str, Any]]:
        return [dict(item) for item in self._action_items if item["meeting_id"] == meeting_id]


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        meetings_collection_name: str,
        attendees_collection_name: str,
        action_items_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, DESCENDING, MongoClient

        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._meetings = database[meetings_collection_name]
        self._attendees = database[attendees_collection_name]
        self._action_items = database[action_items_collection_name]

        self._meetings.create_index("fathom_recording_id", unique=True)
        self._meetings.create_index([("owner_user_id", ASCENDING), ("meeting_start", DESCENDING)])
        self._attendees.create_index(
            [("meeting_id", ASCENDING), ("attendee_key", ASCENDING)],
            unique=True,
        )
        self._action_items.create_index(
            [("meeting_id", ASCENDING), ("title", ASCENDING), ("timestamp_seconds", ASCENDING)],
        )

    def get_by_recording_id(self, recording_id: str) -> dict[str, Any] | None:
        return _serialize_record(self._meetings.find_one({"fathom_recording_id": recording_id}))

    def upsert_by_recording_id(self, recording_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        payload = {key: value for key, value in fields.items() if key != "_id"}
        record = self._meetings.find_one_and_update(
            {"fathom_recording_id": recording_id},
            {
                "$set": {**payload, "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return _serialize_record(record) or {}

    def update_meeting(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        object_id = _to_object_id(meeting_id)
        if object_id is None:
            return False
        result = self._meetings.update_one(
            {"_id": object_id},
            {"$set": {**dict(updates), "updated_at": datetime.now(UTC)}},
        )
        return result.matched_count > 0

    def list_recent(self, *, owner_user_id: str, limit: int) -> list[dict[str, Any]]:
        cursor = (
            self._meetings.find({"owner_user_id": owner_user_id})
            .sort("meeting_start", self._desc)
            .limit(limit)
        )
        return [_serialize_record(record) or {} for record in cursor]

    def add_attendee_if_missing(
        self,
        *,
        meeting_id: str,
        name: str | None,
        email: str | None,
        role: str,
    ) -> bool:
        result = self._attendees.update_one(
            {"meeting_id": meeting_id, "attendee_key": _attendee_key(name=name, email=email)},
            {
                "$setOnInsert": {
                    "name": name,
                    "email": email,
                    "is_external": False,
                    "role": role,
                    "created_at": datetime.now(UTC),
                },
            },
            upsert=True,
        )
        return result.upserted_id is not None

    def list_attendees(self, meeting_id: str) -> list[dict[str, Any]]:
        return [_serialize_record(record) or {} for record in self._attendees.find({"meeting_id": meeting_id})]

    def find_action_item(
        self,
        *,
        meeting_id: str,
        title: str,
        timestamp_seconds: int | None,
    ) -> dict[str, Any] | None:
        record = self._action_items.find_one(
            {
                "meeting_id": meeting_id,
                "title": title,
                "timestamp_seconds": timestamp_seconds,
            },
        )
        return _serialize_record(record)

    def insert_action_item(self, meeting_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        payload = {**dict(values), "meeting_id": meeting_id, "created_at": datetime.now(UTC)}
        insert_result = self._action_items.insert_one(payload)
        payload["_id"] = insert_result.inserted_id
        return _serialize_record(payload) or {}

    def list_action_items(self, meeting_id: str) -> list[dict[str, Any]]:
        return [
            _serialize_record(record) or {}
            for record in self._action_items.find({"meeting_id": meeting_id})
        ]


def _attendee_key(*, name: str | None, email: str | None) -> str:
    if email:
        return email.strip().lower()
    return (name or "").strip().lower()


def _to_object_id(value: str) -> Any:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _serialize_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def create_meeting_store(settings: Settings) -> MeetingStore:
    return _create_meeting_store_cached(
        store_name=settings.sync_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_meetings_collection=settings.mongodb_meetings_collection,
        mongodb_attendees_collection=settings.mongodb_meeting_attendees_collection,
        mongodb_action_items_collection=settings.mongodb_action_items_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_meetings_collection: str,
    mongodb_attendees_collection: str,
    mongodb_action_items_collection: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if store_name == "memory":
        return InMemoryMeetingStore()

    if store_name == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            meetings_collection_name=mongodb_meetings_collection,
            attendees_collection_name=mongodb_attendees_collection,
            action_items_collection_name=mongodb_action_items_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()

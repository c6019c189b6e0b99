from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings

MAX_STORED_SYNC_ERRORS = 10


class SyncStateStore(ABC):
    @abstractmethod
    def save_integration(
        self,
        *,
        user_id: str,
        access_token: str,
        fathom_user_email: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_active_integration(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_sync_state(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def upsert_sync_state(self, user_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


class InMemorySyncStateStore(SyncStateStore):
    def __init__(self) -> None:
        self._integrations_by_user_id: dict[str, dict[str, Any]] = {}
        self._sync_states_by_user_id: dict[str, dict[str, Any]] = {}

    def save_integration(
        self,
        *,
        user_id: str,
        access_token: str,
        fathom_user_email: str | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        current = self._integrations_by_user_id.get(user_id)
        integration = dict(current) if current else {
            "_id": f"memory-integration-{len(self._integrations_by_user_id) + 1}",
            "user_id": user_id,
            "created_at": now,
        }
        integration.update(
            {
                "access_token": access_token.strip(),
                "fathom_user_email": fathom_user_email,
                "is_active": True,
                "updated_at": now,
            },
        )
        self._integrations_by_user_id[user_id] = integration
        return dict(integration)

    def get_active_integration(self, user_id: str) -> dict[str, Any] | None:
        integration = self._integrations_by_user_id.get(user_id)
        if not integration or not integration.get("is_active"):
            return None
        return dict(integration)

    def get_sync_state(self, user_id: str) -> dict[str, Any] | None:
        state = self._sync_states_by_user_id.get(user_id)
        if not state:
            return None
        return dict(state)

    def upsert_sync_state(self, user_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        now = datetime.now(UTC)
        state = dict(self._sync_states_by_user_id.get(user_id) or {"user_id": user_id, "created_at": now})
        state.update(dict(updates))
        state["updated_at"] = now
        self._sync_states_by_user_id[user_id] = state
        return dict(state)


class MongoSyncStateStore(SyncStateStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        integrations_collection_name: str,
        sync_states_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._integrations = database[integrations_collection_name]
        self._sync_states = database[sync_states_collection_name]

        self._integrations.create_index("user_id", unique=True)
        self._sync_states.create_index("user_id", unique=True)

    def save_integration(
        self,
        *,
        user_id: str,
        access_token: str,
        fathom_user_email: str | None = None,
    ) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        record = self._integrations.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {
                    "access_token": access_token.strip(),
                    "fathom_user_email": fathom_user_email,
                    "is_active": True,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return _serialize_record(record) or {}

    def get_active_integration(self, user_id: str) -> dict[str, Any] | None:
        record = self._integrations.find_one({"user_id": user_id, "is_active": True})
        return _serialize_record(record)

    def get_sync_state(self, user_id: str) -> dict[str, Any] | None:
        return _serialize_record(self._sync_states.find_one({"user_id": user_id}))

    def upsert_sync_state(self, user_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        record = self._sync_states.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {**dict(updates), "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return _serialize_record(record) or {}


def _serialize_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def create_sync_state_store(settings: Settings) -> SyncStateStore:
    return _create_sync_state_store_cached(
        store_name=settings.sync_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_integrations_collection=settings.mongodb_integrations_collection,
        mongodb_sync_states_collection=settings.mongodb_sync_states_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_sync_state_store_cached(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_integrations_collection: str,
    mongodb_sync_states_collection: str,
    mongodb_connect_timeout_ms: int,
) -> SyncStateStore:
    if store_name == "memory":
        return InMemorySyncStateStore()

    if store_name == "mongodb":
        return MongoSyncStateStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            integrations_collection_name=mongodb_integrations_collection,
            sync_states_collection_name=mongodb_sync_states_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemorySyncStateStore()


def clear_sync_state_store_cache() -> None:
    _create_sync_state_store_cached.cache_clear()

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings


class CrmEntityStore(ABC):
    @abstractmethod
    def find_company_by_domain(self, owner_id: str, domain: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_company(
        self,
        *,
        owner_id: str,
        name: str,
        domain: str,
        source: str,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def backfill_company_fields(self, company_id: str, values: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_companies(self, owner_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def find_contact_by_email(self, owner_id: str, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_contacts(self, contact_ids: Sequence[str]) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def create_contact(
        self,
        *,
        owner_id: str,
        email: str,
        first_name: str | None,
        last_name: str | None,
        company_id: str | None,
        source: str,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def set_contact_company_if_missing(self, contact_id: str, company_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_contacts(self, owner_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def count_meetings_by_contact(
        self,
        contact_ids: Sequence[str],
        *,
        exclude_meeting_id: str | None = None,
        started_before: datetime | None = None,
    ) -> dict[str, int]:
        """Count MeetingContact links per contact.

        ``exclude_meeting_id`` drops the links of one meeting. With
        ``started_before`` only links to meetings that started strictly earlier
        are counted, so the result for a meeting does not depend on which
        other meetings happen to be synced already.
        """
        raise NotImplementedError

    @abstractmethod
    def replace_meeting_contacts(
        self,
        *,
        meeting_id: str,
        contact_ids: Sequence[str],
        primary_contact_id: str | None,
        meeting_start: datetime | None = None,
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    def list_meeting_contacts(self, meeting_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryCrmEntityStore(CrmEntityStore):
    def __init__(self) -> None:
        self._companies: list[dict[str, Any]] = []
        self._contacts: list[dict[str, Any]] = []
        self._meeting_contacts: list[dict[str, Any]] = []

    def find_company_by_domain(self, owner_id: str, domain: str) -> dict[str, Any] | None:
        normalized_domain = normalize_domain(domain)
        for company in self._companies:
            if company["owner_id"] == owner_id and company.get("domain") == normalized_domain:
                return dict(company)
        return None

    def create_company(
        self,
        *,
        owner_id: str,
        name: str,
        domain: str,
        source: str,
    ) -> dict[str, Any]:
        normalized_domain = normalize_domain(domain)
        existing = self.find_company_by_domain(owner_id, normalized_domain)
        if existing:
            return existing

        now = datetime.now(UTC)
        company = {
            "_id": f"memory-company-{len(self._companies) + 1}",
            "owner_id": owner_id,
            "name": name.strip(),
            "domain": normalized_domain,
            "source": source,
            "created_at": now,
            "updated_at": now,
        }
        self._companies.append(company)
        return dict(company)

    def backfill_company_fields(self, company_id: str, values: Mapping[str, Any]) -> bool:
        for company in self._companies:
            if company["_id"] != company_id:
                continue
            missing = {
                key: value
                for key, value in values.items()
                if value is not None and not company.get(key)
            }
            if not missing:
                return False
            company.update(missing)
            company["updated_at"] = datetime.now(UTC)
            return True
        return False

    def list_companies(self, owner_id: str) -> list[dict[str, Any]]:
        return [dict(company) for company in self._companies if company["owner_id"] == owner_id]

    def find_contact_by_email(self, owner_id: str, email: str) -> dict[str, Any] | None:
        normalized_email = email.strip().lower()
        for contact in self._contacts:
            if contact["owner_id"] == owner_id and contact["email"] == normalized_email:
                return dict(contact)
        return None

    def get_contacts(self, contact_ids: Sequence[str]) -> list[dict[str, Any]]:
        wanted = set(contact_ids)
        return [dict(contact) for contact in self._contacts if contact["_id"] in wanted]

    def create_contact(
        self,
        *,
        owner_id: str,
        email: str,
        first_name: str | None,
        last_name: str | None,
        company_id: str | None,
        source: str,
    ) -> dict[str, Any]:
        existing = self.find_contact_by_email(owner_id, email)
        if existing:
            return existing

        now = datetime.now(UTC)
        contact = {
            "_id": f"memory-contact-{len(self._contacts) + 1}",
            "owner_id": owner_id,
            "email": email.strip().lower(),
            "first_name": first_name,
            "last_name": last_name,
            "company_id": company_id,
            "relationship_score": 0.0,
            "last_interaction_at": None,
            "source": source,
            "first_seen_at": now,
            "created_at": now,
            "updated_at": now,
        }
        self._contacts.append(contact)
        return dict(contact)

    def set_contact_company_if_missing(self, contact_id: str, company_id: str) -> bool:
        for contact in self._contacts:
            if contact["_id"] != contact_id:
                continue
            if contact.get("company_id"):
                return False
            contact["company_id"] = company_id
            contact["updated_at"] = datetime.now(UTC)
            return True
        return False

    def list_contacts(self, owner_id: str) -> list[dict[str, Any]]:
        return [dict(contact) for contact in self._contacts if contact["owner_id"] == owner_id]

    def count_meetings_by_contact(
        self,
        contact_ids: Sequence[str],
        *,
        exclude_meeting_id: str | None = None,
        started_before: datetime | None = None,
    ) -> dict[str, int]:
        counts = {contact_id: 0 for contact_id in contact_ids}
        for link in self._meeting_contacts:
            if link["contact_id"] not in counts:
                continue
            if exclude_meeting_id is not None and link["meeting_id"] == exclude_meeting_id:
                continue
            if started_before is not None:
                meeting_start = link.get("meeting_start")
                if meeting_start is None or meeting_start >= started_before:
                    continue
            counts[link["contact_id"]] += 1
        return counts

    def replace_meeting_contacts(
        self,
        *,
        meeting_id: str,
        contact_ids: Sequence[str],
        primary_contact_id: str | None,
        meeting_start: datetime | None = None,
    ) -> int:
        existing_contact_ids = {
            link["contact_id"] for link in self._meeting_contacts if link["meeting_id"] == meeting_id
        }
        now = datetime.now(UTC)
        for contact_id in contact_ids:
            if contact_id in existing_contact_ids:
                continue
            self._meeting_contacts.append(
                {
                    "_id": f"memory-meeting-contact-{len(self._meeting_contacts) + 1}",
                    "meeting_id": meeting_id,
                    "contact_id": contact_id,
                    "role": "attendee",
                    "is_primary": False,
                    "created_at": now,
                },
            )
            existing_contact_ids.add(contact_id)

        for link in self._meeting_contacts:
            if link["meeting_id"] == meeting_id:
                link["is_primary"] = link["contact_id"] == primary_contact_id
                link["meeting_start"] = meeting_start
        return len(contact_ids)

    def list_meeting_contacts(self, meeting_id: str) -> list[dict[str, Any]]:
        return [dict(link) for link in self._meeting_contacts if link["meeting_id"] == meeting_id]


class MongoCrmEntityStore(CrmEntityStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        companies_collection_name: str,
        contacts_collection_name: str,
        meeting_contacts_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._companies = database[companies_collection_name]
        self._contacts = database[contacts_collection_name]
        self._meeting_contacts = database[meeting_contacts_collection_name]

        self._companies.create_index(
            [("owner_id", ASCENDING), ("domain", ASCENDING)],
            unique=True,
            partialFilterExpression={"domain": {"$type": "string"}},
        )
        self._contacts.create_index([("owner_id", ASCENDING), ("email", ASCENDING)], unique=True)
        self._meeting_contacts.create_index(
            [("meeting_id", ASCENDING), ("contact_id", ASCENDING)],
            unique=True,
        )
        self._meeting_contacts.create_index([("contact_id", ASCENDING), ("meeting_start", ASCENDING)])

    def find_company_by_domain(self, owner_id: str, domain: str) -> dict[str, Any] | None:
        record = self._companies.find_one({"owner_id": owner_id, "domain": normalize_domain(domain)})
        return _serialize_record(record)

    def create_company(
        self,
        *,
        owner_id: str,
        name: str,
        domain: str,
        source: str,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        normalized_domain = normalize_domain(domain)
        now = datetime.now(UTC)
        payload = {
            "owner_id": owner_id,
            "name": name.strip(),
            "domain": normalized_domain,
            "source": source,
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = self._companies.insert_one(payload)
        except DuplicateKeyError:
            existing = self.find_company_by_domain(owner_id, normalized_domain)
            if not existing:
                raise
            return existing
        payload["_id"] = insert_result.inserted_id
        return _serialize_record(payload) or {}

    def backfill_company_fields(self, company_id: str, values: Mapping[str, Any]) -> bool:
        object_id = _to_object_id(company_id)
        if object_id is None:
            return False
        record = self._companies.find_one({"_id": object_id})
        if not record:
            return False
        missing = {key: value for key, value in values.items() if value is not None and not record.get(key)}
        if not missing:
            return False
        self._companies.update_one(
            {"_id": object_id},
            {"$set": {**missing, "updated_at": datetime.now(UTC)}},
        )
        return True

    def list_companies(self, owner_id: str) -> list[dict[str, Any]]:
        return [_serialize_record(record) or {} for record in self._companies.find({"owner_id": owner_id})]

    def find_contact_by_email(self, owner_id: str, email: str) -> dict[str, Any] | None:
        record = self._contacts.find_one({"owner_id": owner_id, "email": email.strip().lower()})
        return _serialize_record(record)

    def get_contacts(self, contact_ids: Sequence[str]) -> list[dict[str, Any]]:
        object_ids = [object_id for object_id in map(_to_object_id, contact_ids) if object_id]
        if not object_ids:
            return []
        return [
            _serialize_record(record) or {}
            for record in self._contacts.find({"_id": {"$in": object_ids}})
        ]

    def create_contact(
        self,
        *,
        owner_id: str,
        email: str,
        first_name: str | None,
        last_name: str | None,
        company_id: str | None,
        source: str,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        now = datetime.now(UTC)
        payload = {
            "owner_id": owner_id,
            "email": email.strip().lower(),
            "first_name": first_name,
            "last_name": last_name,
            "company_id": company_id,
            "relationship_score": 0.0,
            "last_interaction_at": None,
            "source": source,
            "first_seen_at": now,
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = self._contacts.insert_one(payload)
        except DuplicateKeyError:
            existing = self.find_contact_by_email(owner_id, email)
            if not existing:
                raise
            return existing
        payload["_id"] = insert_result.inserted_id
        return _serialize_record(payload) or {}

    def set_contact_company_if_missing(self, contact_id: str, company_id: str) -> bool:
        object_id = _to_object_id(contact_id)
        if object_id is None:
            return False
        result = self._contacts.update_one(
            {"_id": object_id, "company_id": None},
            {"$set": {"company_id": company_id, "updated_at": datetime.now(UTC)}},
        )
        return result.modified_count > 0

    def list_contacts(self, owner_id: str) -> list[dict[str, Any]]:
        return [_serialize_record(record) or {} for record in self._contacts.find({"owner_id": owner_id})]

    def count_meetings_by_contact(
        self,
        contact_ids: Sequence[str],
        *,
        exclude_meeting_id: str | None = None,
        started_before: datetime | None = None,
    ) -> dict[str, int]:
        counts = {contact_id: 0 for contact_id in contact_ids}
        if not counts:
            return counts
        match: dict[str, Any] = {"contact_id": {"$in": list(counts)}}
        if exclude_meeting_id is not None:
            match["meeting_id"] = {"$ne": exclude_meeting_id}
        if started_before is not None:
            match["meeting_start"] = {"$lt": started_before}
        cursor = self._meeting_contacts.aggregate(
            [
                {"$match": match},
                {"$group": {"_id": "$contact_id", "count": {"$sum": 1}}},
            ],
        )
        for row in cursor:
            counts[str(row["_id"])] = int(row["count"])
        return counts

    def replace_meeting_contacts(
        self,
        *,
        meeting_id: str,
        contact_ids: Sequence[str],
        primary_contact_id: str | None,
        meeting_start: datetime | None = None,
    ) -> int:
        now = datetime.now(UTC)
        for contact_id in contact_ids:
            self._meeting_contacts.update_one(
                {"meeting_id": meeting_id, "contact_id": contact_id},
                {
                    "$setOnInsert": {
                        "role": "attendee",
                        "is_primary": False,
                        "created_at": now,
                    },
                },
                upsert=True,
            )
        self._meeting_contacts.update_many(
            {"meeting_id": meeting_id},
            {"$set": {"meeting_start": meeting_start}},
        )
        self._meeting_contacts.update_many(
            {"meeting_id": meeting_id, "contact_id": {"$ne": primary_contact_id}},
            {"$set": {"is_primary": False}},
        )
        if primary_contact_id:
            self._meeting_contacts.update_one(
                {"meeting_id": meeting_id, "contact_id": primary_contact_id},
                {"$set": {"is_primary": True}},
            )
        return len(contact_ids)

    def list_meeting_contacts(self, meeting_id: str) -> list[dict[str, Any]]:
        return [
            _serialize_record(record) or {}
            for record in self._meeting_contacts.find({"meeting_id": meeting_id})
        ]


def normalize_domain(domain: str) -> str:
    cleaned = domain.strip().lower()
    if cleaned.startswith("www."):
        cleaned = cleaned[4:]
    return cleaned


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


def create_crm_entity_store(settings: Settings) -> CrmEntityStore:
    return _create_crm_entity_store_cached(
        store_name=settings.sync_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_companies_collection=settings.mongodb_companies_collection,
        mongodb_contacts_collection=settings.mongodb_contacts_collection,
        mongodb_meeting_contacts_collection=settings.mongodb_meeting_contacts_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_crm_entity_store_cached(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_companies_collection: str,
    mongodb_contacts_collection: str,
    mongodb_meeting_contacts_collection: str,
    mongodb_connect_timeout_ms: int,
) -> CrmEntityStore:
    if store_name == "memory":
        return InMemoryCrmEntityStore()

    if store_name == "mongodb":
        return MongoCrmEntityStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            companies_collection_name=mongodb_companies_collection,
            contacts_collection_name=mongodb_contacts_collection,
            meeting_contacts_collection_name=mongodb_meeting_contacts_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryCrmEntityStore()


def clear_crm_entity_store_cache() -> None:
    _create_crm_entity_store_cached.cache_clear()

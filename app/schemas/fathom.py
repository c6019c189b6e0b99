from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class SyncType(StrEnum):
    initial = "initial"
    incremental = "incremental"
    manual = "manual"
    webhook = "webhook"
    all_time = "all_time"


class SyncStatus(StrEnum):
    idle = "idle"
    syncing = "syncing"
    error = "error"


class FathomConnectRequest(BaseModel):
    access_token: str = Field(min_length=1)
    fathom_user_email: str | None = None


class FathomSyncRequest(BaseModel):
    sync_type: SyncType = SyncType.manual
    start_date: datetime | None = None
    end_date: datetime | None = None
    call_id: str | None = None
    limit: int | None = Field(default=None, ge=1, le=500)
    webhook_payload: dict[str, Any] | None = None


class FathomSyncError(BaseModel):
    call_id: str | None = None
    error: str


class FathomSyncResponse(BaseModel):
    sync_type: SyncType
    status: SyncStatus
    meetings_synced: int
    total_meetings_found: int
    errors: list[FathomSyncError] = Field(default_factory=list)
    cancelled: bool = False


class FathomSyncStateResponse(BaseModel):
    user_id: str
    status: SyncStatus
    meetings_synced: int = 0
    total_meetings_found: int = 0
    last_error: list[FathomSyncError] = Field(default_factory=list)
    last_sync_type: SyncType | None = None
    last_sync_started_at: datetime | None = None
    last_sync_completed_at: datetime | None = None
    cancel_requested: bool = False
    updated_at: datetime | None = None


class MeetingRecord(BaseModel):
    id: str
    fathom_recording_id: str
    title: str | None = None
    meeting_start: datetime | None = None
    meeting_end: datetime | None = None
    duration_minutes: int | None = None
    share_url: str | None = None
    calls_url: str | None = None
    fathom_embed_url: str | None = None
    thumbnail_url: str | None = None
    summary: str | None = None
    owner_email: str | None = None
    primary_contact_id: str | None = None
    company_id: str | None = None
    sync_status: str | None = None
    last_synced_at: datetime | None = None


class MeetingListResponse(BaseModel):
    items: list[MeetingRecord] = Field(default_factory=list)


class FathomWebhookResponse(BaseModel):
    status: str = "accepted"
    recording_id: str | None = None
    sync: FathomSyncResponse

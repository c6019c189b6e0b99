from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.config import Settings
from app.schemas.fathom import (
    FathomSyncError,
    FathomSyncResponse,
    MeetingRecord,
    SyncStatus,
    SyncType,
)
from app.services.crm_entity_store import CrmEntityStore, create_crm_entity_store
from app.services.entity_resolver import EntityResolver
from app.services.fathom_api_client import FathomApiClient, FathomAuthError
from app.services.fathom_call_models import FathomCall, extract_recording_id
from app.services.fathom_fetch_loop import SyncWindow, fetch_unwindowed_page, iterate_call_pages
from app.services.gemini_action_items_client import ActionItemGenerator, GeminiActionItemsClient
from app.services.meeting_action_items_service import MeetingActionItemsService
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.meeting_upsert_writer import MeetingUpsertWriter
from app.services.primary_contact_selector import PrimaryContactSelector
from app.services.sync_state_store import (
    MAX_STORED_SYNC_ERRORS,
    SyncStateStore,
    create_sync_state_store,
)
from app.services.thumbnail_cascade import (
    ThumbnailCascade,
    ThumbnailRequest,
    build_embed_url,
    build_thumbnail_cascade,
)

logger = logging.getLogger(__name__)

INCREMENTAL_WINDOW = timedelta(hours=24)
DEFAULT_WINDOW = timedelta(days=30)

ApiClientFactory = Callable[[str], FathomApiClient]


class FathomIntegrationNotFoundError(Exception):
    pass


class FathomSyncRunError(Exception):
    pass


class FathomSyncService:
    """Drives one sync run per user: fetch, resolve, link and persist calls.

    Per-call failures are collected into the run summary. Authentication
    failures and unexpected errors end the run with SyncState ``error``.
    """

    def __init__(
        self,
        settings: Settings,
        sync_state_store: SyncStateStore | None = None,
        crm_store: CrmEntityStore | None = None,
        meeting_store: MeetingStore | None = None,
        api_client_factory: ApiClientFactory | None = None,
        thumbnail_cascade: ThumbnailCascade | None = None,
        action_item_generator: ActionItemGenerator | None = None,
    ) -> None:
        self.settings = settings
        self.sync_state_store = sync_state_store or create_sync_state_store(settings)
        self.crm_store = crm_store or create_crm_entity_store(settings)
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.api_client_factory = api_client_factory or self._create_api_client
        self.thumbnail_cascade = thumbnail_cascade or build_thumbnail_cascade(settings)

        self.entity_resolver = EntityResolver(self.crm_store)
        self.primary_selector = PrimaryContactSelector(self.crm_store)
        self.upsert_writer = MeetingUpsertWriter(self.meeting_store)
        self.action_items_service = MeetingActionItemsService(
            self.meeting_store,
            generator=action_item_generator or self._create_action_item_generator(),
        )

    def connect(
        self,
        *,
        user_id: str,
        access_token: str,
        fathom_user_email: str | None = None,
    ) -> dict[str, Any]:
        self.sync_state_store.save_integration(
            user_id=user_id,
            access_token=access_token,
            fathom_user_email=fathom_user_email,
        )
        state = self.sync_state_store.get_sync_state(user_id)
        if state is None:
            state = self.sync_state_store.upsert_sync_state(
                user_id,
                {
                    "status": SyncStatus.idle.value,
                    "meetings_synced": 0,
                    "total_meetings_found": 0,
                    "last_error": [],
                    "cancel_requested": False,
                },
            )
        logger.info("Fathom integration connected user_id=%s", user_id)
        return state

    def cancel(self, user_id: str) -> dict[str, Any] | None:
        """Ask the user's sync run to stop before its next call.

        The flag lives on SyncState so any service instance running the sync
        sees it. A request made while no run is active stops the next run
        before it processes a call. Each run clears the flag when it ends.
        """
        if self.sync_state_store.get_sync_state(user_id) is None:
            return None
        logger.info("Fathom sync cancel requested user_id=%s", user_id)
        return self.sync_state_store.upsert_sync_state(user_id, {"cancel_requested": True})

    def get_sync_state(self, user_id: str) -> dict[str, Any] | None:
        return self.sync_state_store.get_sync_state(user_id)

    def list_meetings(self, user_id: str, limit: int = 50) -> list[MeetingRecord]:
        normalized_limit = min(max(limit, 1), 200)
        return [
            _map_meeting(record)
            for record in self.meeting_store.list_recent(owner_user_id=user_id, limit=normalized_limit)
        ]

    def sync(
        self,
        *,
        user_id: str,
        sync_type: SyncType,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        call_id: str | None = None,
        limit: int | None = None,
        webhook_payload: Mapping[str, Any] | None = None,
    ) -> FathomSyncResponse:
        integration = self.sync_state_store.get_active_integration(user_id)
        if not integration:
            raise FathomIntegrationNotFoundError(f"No active Fathom integration for user {user_id}.")

        client = self.api_client_factory(
            str(integration.get("access_token") or self.settings.fathom_api_key),
        )
        self.sync_state_store.upsert_sync_state(
            user_id,
            {
                "status": SyncStatus.syncing.value,
                "last_sync_type": sync_type.value,
                "last_sync_started_at": datetime.now(UTC),
            },
        )
        logger.info("Fathom sync started user_id=%s sync_type=%s", user_id, sync_type.value)

        run = _SyncRun()
        try:
            if sync_type == SyncType.webhook:
                self._sync_webhook(
                    run,
                    user_id=user_id,
                    client=client,
                    call_id=call_id,
                    webhook_payload=webhook_payload,
                )
            else:
                self._sync_window(
                    run,
                    user_id=user_id,
                    client=client,
                    window=build_sync_window(sync_type, start_date=start_date, end_date=end_date),
                    limit=limit,
                )
        except FathomAuthError as exc:
            logger.warning("Fathom sync aborted by auth failure user_id=%s error=%s", user_id, exc)
            self._mark_failed(user_id, run, str(exc))
            raise
        except Exception as exc:
            logger.exception("Fathom sync failed user_id=%s", user_id)
            self._mark_failed(user_id, run, str(exc))
            raise FathomSyncRunError(str(exc)) from exc

        self.sync_state_store.upsert_sync_state(
            user_id,
            {
                "status": SyncStatus.idle.value,
                "meetings_synced": run.meetings_synced,
                "total_meetings_found": run.total_meetings_found,
                "last_error": run.errors[:MAX_STORED_SYNC_ERRORS],
                "last_sync_completed_at": datetime.now(UTC),
                "cancel_requested": False,
            },
        )
        logger.info(
            "Fathom sync completed user_id=%s synced=%s found=%s errors=%s cancelled=%s",
            user_id,
            run.meetings_synced,
            run.total_meetings_found,
            len(run.errors),
            run.cancelled,
        )
        return FathomSyncResponse(
            sync_type=sync_type,
            status=SyncStatus.idle,
            meetings_synced=run.meetings_synced,
            total_meetings_found=run.total_meetings_found,
            errors=[FathomSyncError(**error) for error in run.errors],
            cancelled=run.cancelled,
        )

    def sync_call(self, *, user_id: str, client: FathomApiClient, payload: Mapping[str, Any]) -> dict[str, Any]:
        call = FathomCall.from_payload(payload)
        existing = self.meeting_store.get_by_recording_id(call.recording_id)

        summary = call.summary
        if summary is None:
            summary = client.fetch_recording_summary(call.recording_id)

        embed_url = build_embed_url(
            recording_id=call.recording_id,
            share_url=call.share_url,
            app_base_url=self.settings.fathom_app_base_url,
            embed_base_url=self.settings.fathom_embed_base_url,
        )
        thumbnail_url = existing.get("thumbnail_url") if existing else None
        if not thumbnail_url:
            thumbnail_url = self.thumbnail_cascade.resolve(
                ThumbnailRequest(
                    recording_id=call.recording_id,
                    title=call.title,
                    share_url=call.share_url,
                    embed_url=embed_url,
                ),
            )

        fields: dict[str, Any] = {
            "owner_user_id": user_id,
            "title": call.title,
            "meeting_start": call.start_time,
            "meeting_end": call.end_time,
            "share_url": call.share_url,
            "calls_url": call.calls_url,
            "fathom_embed_url": embed_url,
            "thumbnail_url": thumbnail_url,
            "owner_email": call.owner_email,
            "team_name": call.team_name,
        }
        if summary is not None:
            fields["summary"] = summary
        meeting = self.upsert_writer.upsert(call.recording_id, fields)
        meeting_id = str(meeting["_id"])

        for attendee in call.internal_attendees:
            self.meeting_store.add_attendee_if_missing(
                meeting_id=meeting_id,
                name=attendee.name,
                email=attendee.email,
                role="host" if attendee.email and attendee.email == call.owner_email else "attendee",
            )

        contact_ids: list[str] = []
        for attendee in call.external_attendees:
            resolved = self.entity_resolver.resolve(user_id, attendee)
            if resolved and resolved.contact_id not in contact_ids:
                contact_ids.append(resolved.contact_id)

        primary_contact_id = self.primary_selector.select_primary(
            contact_ids,
            meeting_id=meeting_id,
            meeting_start=call.start_time,
        )
        company_id = self.primary_selector.determine_meeting_company(contact_ids, primary_contact_id)
        if contact_ids:
            self.crm_store.replace_meeting_contacts(
                meeting_id=meeting_id,
                contact_ids=contact_ids,
                primary_contact_id=primary_contact_id,
                meeting_start=call.start_time,
            )
        if self.upsert_writer.set_primary_links(meeting_id, primary_contact_id, company_id):
            meeting = self.meeting_store.get_by_recording_id(call.recording_id) or meeting

        raw_action_items = call.action_items
        if raw_action_items is None:
            raw_action_items = client.fetch_recording_action_items(call.recording_id) or []
        self.action_items_service.store_provider_items(meeting_id, raw_action_items)
        self.action_items_service.generate_for_meeting(
            meeting,
            client=client,
            native_titles=[item.get("title", "") for item in self.meeting_store.list_action_items(meeting_id)],
        )
        return meeting

    def _sync_window(
        self,
        run: _SyncRun,
        *,
        user_id: str,
        client: FathomApiClient,
        window: SyncWindow,
        limit: int | None,
    ) -> None:
        page_size = limit or self.settings.sync_page_size
        logger.info("Fathom sync window user_id=%s start=%s end=%s", user_id, window.start, window.end)
        for page in iterate_call_pages(
            client,
            window,
            page_size=page_size,
            safety_cap=self.settings.sync_safety_cap,
            single_page=limit is not None,
        ):
            run.total_meetings_found += len(page)
            if not self._sync_payloads(run, user_id=user_id, client=client, payloads=page):
                return

        if run.total_meetings_found == 0 and window.is_bounded:
            logger.info("No meetings in window, retrying without date filters user_id=%s", user_id)
            retry_page = fetch_unwindowed_page(client, page_size=page_size)
            run.total_meetings_found += len(retry_page)
            self._sync_payloads(run, user_id=user_id, client=client, payloads=retry_page)

    def _sync_webhook(
        self,
        run: _SyncRun,
        *,
        user_id: str,
        client: FathomApiClient,
        call_id: str | None,
        webhook_payload: Mapping[str, Any] | None,
    ) -> None:
        if webhook_payload:
            run.total_meetings_found = 1
            self._sync_payloads(run, user_id=user_id, client=client, payloads=[webhook_payload])
            return
        if call_id:
            run.total_meetings_found = 1
            try:
                payload = client.fetch_recording(call_id)
            except FathomAuthError:
                raise
            except Exception as exc:
                logger.warning("Fathom call fetch failed call_id=%s error=%s", call_id, exc)
                run.errors.append({"call_id": call_id, "error": str(exc)})
                return
            self._sync_payloads(run, user_id=user_id, client=client, payloads=[payload])
            return
        run.errors.append(
            {"call_id": "unknown", "error": "Webhook sync requires either webhook_payload or call_id."},
        )

    def _sync_payloads(
        self,
        run: _SyncRun,
        *,
        user_id: str,
        client: FathomApiClient,
        payloads: Iterable[Mapping[str, Any]],
    ) -> bool:
        for payload in payloads:
            if self._is_cancel_requested(user_id):
                logger.info("Fathom sync cancelled user_id=%s synced=%s", user_id, run.meetings_synced)
                run.cancelled = True
                return False
            recording_id = extract_recording_id(payload)
            try:
                self.sync_call(user_id=user_id, client=client, payload=payload)
            except FathomAuthError:
                raise
            except Exception as exc:
                logger.warning("Fathom call sync failed call_id=%s error=%s", recording_id, exc)
                run.errors.append({"call_id": recording_id, "error": str(exc)})
                continue
            run.meetings_synced += 1
        return True

    def _mark_failed(self, user_id: str, run: _SyncRun, message: str) -> None:
        errors = [*run.errors, {"call_id": None, "error": message}]
        self.sync_state_store.upsert_sync_state(
            user_id,
            {
                "status": SyncStatus.error.value,
                "meetings_synced": run.meetings_synced,
                "total_meetings_found": run.total_meetings_found,
                "last_error": errors[:MAX_STORED_SYNC_ERRORS],
                "last_sync_completed_at": datetime.now(UTC),
                "cancel_requested": False,
            },
        )

    def _is_cancel_requested(self, user_id: str) -> bool:
        state = self.sync_state_store.get_sync_state(user_id) or {}
        return bool(state.get("cancel_requested"))

    def _create_api_client(self, access_token: str) -> FathomApiClient:
        return FathomApiClient(
            api_url=self.settings.fathom_api_url,
            api_key=access_token,
            timeout_seconds=self.settings.fathom_api_timeout_seconds,
            user_agent=self.settings.fathom_api_user_agent,
            max_attempts=self.settings.fathom_max_attempts,
            initial_delay_seconds=self.settings.fathom_retry_initial_delay_seconds,
            jitter_seconds=self.settings.fathom_retry_jitter_seconds,
        )

    def _create_action_item_generator(self) -> GeminiActionItemsClient | None:
        if not self.settings.gemini_api_key.strip():
            return None
        model = self.settings.gemini_model.strip()
        if not model:
            return None
        return GeminiActionItemsClient(
            api_key=self.settings.gemini_api_key,
            model=model,
            timeout_seconds=self.settings.gemini_api_timeout_seconds,
        )


class _SyncRun:
    def __init__(self) -> None:
        self.meetings_synced = 0
        self.total_meetings_found = 0
        self.cancelled = False
        self.errors: list[dict[str, Any]] = []


def build_sync_window(
    sync_type: SyncType,
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    now: datetime | None = None,
) -> SyncWindow:
    current_time = now or datetime.now(UTC)
    if start_date is not None:
        return SyncWindow(start=_as_utc(start_date), end=_as_utc(end_date) if end_date else None)

    if sync_type == SyncType.incremental:
        return SyncWindow(start=current_time - INCREMENTAL_WINDOW, end=current_time)
    if sync_type == SyncType.all_time:
        return SyncWindow(start=None, end=_as_utc(end_date) if end_date else current_time)
    return SyncWindow(start=current_time - DEFAULT_WINDOW, end=_as_utc(end_date) if end_date else current_time)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _map_meeting(record: Mapping[str, Any]) -> MeetingRecord:
    return MeetingRecord(
        id=str(record.get("_id", "")),
        fathom_recording_id=str(record.get("fathom_recording_id", "")),
        title=record.get("title"),
        meeting_start=record.get("meeting_start"),
        meeting_end=record.get("meeting_end"),
        duration_minutes=record.get("duration_minutes"),
        share_url=record.get("share_url"),
        calls_url=record.get("calls_url"),
        fathom_embed_url=record.get("fathom_embed_url"),
        thumbnail_url=record.get("thumbnail_url"),
        summary=record.get("summary"),
        owner_email=record.get("owner_email"),
        primary_contact_id=record.get("primary_contact_id"),
        company_id=record.get("company_id"),
        sync_status=record.get("sync_status"),
        last_synced_at=record.get("last_synced_at"),
    )

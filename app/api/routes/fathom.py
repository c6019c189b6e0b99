import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from app.core.config import get_settings
from app.schemas.fathom import (
    FathomConnectRequest,
    FathomSyncRequest,
    FathomSyncResponse,
    FathomSyncStateResponse,
    FathomWebhookResponse,
    MeetingListResponse,
    SyncType,
)
from app.services.fathom_api_client import FathomAuthError
from app.services.fathom_call_models import extract_recording_id
from app.services.fathom_sync_service import (
    FathomIntegrationNotFoundError,
    FathomSyncRunError,
    FathomSyncService,
)
from app.services.security_utils import is_authorized_webhook

router = APIRouter(prefix="/fathom", tags=["fathom"])
logger = logging.getLogger(__name__)


@router.post(
    "/integrations/{user_id}",
    response_model=FathomSyncStateResponse,
    status_code=status.HTTP_201_CREATED,
)
def connect_fathom_integration(user_id: str, payload: FathomConnectRequest) -> FathomSyncStateResponse:
    settings = get_settings()
    service = FathomSyncService(settings)
    state = service.connect(
        user_id=user_id,
        access_token=payload.access_token,
        fathom_user_email=payload.fathom_user_email,
    )
    return FathomSyncStateResponse.model_validate(state)


@router.post(
    "/sync/{user_id}",
    response_model=FathomSyncResponse,
)
def trigger_fathom_sync(user_id: str, payload: FathomSyncRequest) -> FathomSyncResponse:
    return _run_sync(
        user_id=user_id,
        sync_type=payload.sync_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        call_id=payload.call_id,
        limit=payload.limit,
        webhook_payload=payload.webhook_payload,
    )


@router.post(
    "/sync/{user_id}/cancel",
    response_model=FathomSyncStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def cancel_fathom_sync(user_id: str) -> FathomSyncStateResponse:
    settings = get_settings()
    service = FathomSyncService(settings)
    state = service.cancel(user_id)
    if not state:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Fathom sync state not found.",
        )
    return FathomSyncStateResponse.model_validate(state)


@router.post(
    "/webhooks/{user_id}",
    response_model=FathomWebhookResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_fathom_webhook(user_id: str, request: Request) -> FathomWebhookResponse:
    payload, raw_body = await _load_payload_and_raw_body(request)
    signature = request.headers.get("x-fathom-signature")
    logger.info(
        "Webhook received provider=fathom user_id=%s has_signature=%s",
        user_id,
        bool(signature),
    )
    if not is_authorized_webhook(
        expected_secret=get_settings().fathom_webhook_secret,
        raw_body=raw_body,
        signature=signature,
        shared_secret=_extract_shared_secret(request),
    ):
        logger.warning("Webhook rejected provider=fathom user_id=%s", user_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature.",
        )

    sync_response = _run_sync(user_id=user_id, sync_type=SyncType.webhook, webhook_payload=payload)
    return FathomWebhookResponse(recording_id=extract_recording_id(payload), sync=sync_response)


@router.get(
    "/sync/{user_id}/state",
    response_model=FathomSyncStateResponse,
)
def get_fathom_sync_state(user_id: str) -> FathomSyncStateResponse:
    settings = get_settings()
    service = FathomSyncService(settings)
    state = service.get_sync_state(user_id)
    if not state:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Fathom sync state not found.",
        )
    return FathomSyncStateResponse.model_validate(state)


@router.get(
    "/meetings/{user_id}",
    response_model=MeetingListResponse,
)
def list_synced_meetings(user_id: str, limit: int = 50) -> MeetingListResponse:
    settings = get_settings()
    service = FathomSyncService(settings)
    return MeetingListResponse(items=service.list_meetings(user_id, limit=limit))


def _run_sync(
    *,
    user_id: str,
    sync_type: SyncType,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    call_id: str | None = None,
    limit: int | None = None,
    webhook_payload: Mapping[str, Any] | None = None,
) -> FathomSyncResponse:
    settings = get_settings()
    service = FathomSyncService(settings)
    try:
        return service.sync(
            user_id=user_id,
            sync_type=sync_type,
            start_date=start_date,
            end_date=end_date,
            call_id=call_id,
            limit=limit,
            webhook_payload=webhook_payload,
        )
    except FathomIntegrationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except FathomAuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Fathom rejected the stored credentials.",
        ) from exc
    except FathomSyncRunError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Fathom sync failed: {exc}",
        ) from exc


def _extract_shared_secret(request: Request) -> str | None:
    x_webhook_secret = request.headers.get("x-webhook-secret")
    if x_webhook_secret:
        return x_webhook_secret.strip()

    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    auth_scheme, _, auth_token = authorization.partition(" ")
    if auth_scheme.lower() != "bearer":
        return None

    token = auth_token.strip()
    return token or None


async def _load_payload_and_raw_body(request: Request) -> tuple[dict[str, Any], bytes]:
    raw_body = await request.body()
    try:
        parsed_payload = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be valid JSON.",
        ) from exc

    if not isinstance(parsed_payload, dict):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be a JSON object.",
        )

    return parsed_payload, raw_body

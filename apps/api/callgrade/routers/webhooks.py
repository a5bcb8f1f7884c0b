"""Telephony webhook and polling sync endpoints."""
from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Body, Header, HTTPException

from ..core.config import settings
from ..schemas.calls import SyncRequest, SyncResponse, WebhookResponse
from ..services import ingestion

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_secret(x_webhook_secret: str | None, authorization: str | None) -> None:
    expected = settings.telephony_webhook_secret
    if not expected:
        return
    provided = x_webhook_secret
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Rejected telephony webhook with invalid or missing secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/telephony", response_model=WebhookResponse)
async def telephony_event(
    payload: dict[str, Any] = Body(...),
    x_webhook_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> WebhookResponse:
    """Receive ``call.ended`` notifications from the telephony provider."""

    _verify_secret(x_webhook_secret, authorization)
    logger.info("Telephony webhook event: %s", payload.get("event"))
    outcome = await ingestion.ingest_telephony_event(payload)
    return WebhookResponse(
        status=outcome.status,
        reason=outcome.reason,
        call_id=outcome.call_id,
        existing_call_id=outcome.existing_call_id,
    )


@router.get("/telephony")
async def telephony_challenge(challenge: str | None = None) -> dict[str, str]:
    """Echo the provider's verification challenge."""

    if challenge:
        return {"challenge": challenge}
    return {"status": "Telephony webhook endpoint active"}


@router.post("/telephony/sync", response_model=SyncResponse)
async def sync_telephony(
    request: SyncRequest | None = Body(default=None),
    x_webhook_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> SyncResponse:
    """Pull recent answered calls from the provider; meant for a scheduler."""

    _verify_secret(x_webhook_secret, authorization)
    request = request or SyncRequest()
    result = await ingestion.sync_telephony_calls(
        request.since, min_duration_seconds=request.min_duration_seconds
    )
    return SyncResponse.from_result(result)

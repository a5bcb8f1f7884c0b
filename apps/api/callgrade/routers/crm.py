"""Manual CRM sync trigger."""
from __future__ import annotations

from fastapi import APIRouter, Body

from ..schemas.calls import SyncRequest, SyncResponse
from ..services import ingestion

router = APIRouter()


@router.post("/sync", response_model=SyncResponse)
async def sync_crm(request: SyncRequest | None = Body(default=None)) -> SyncResponse:
    request = request or SyncRequest()
    result = await ingestion.sync_crm_calls(request.since, min_duration_seconds=request.min_duration_seconds)
    return SyncResponse.from_result(result)

"""Call ingestion, status and retry endpoints."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import CallNotFoundError
from ..db.session import get_session
from ..models.call import CallStatus
from ..repositories import calls as calls_repo
from ..schemas import calls as calls_schema
from ..services import call_state, ingestion, pipeline
from ..services.scoring_queue import ScoringQueue, scoring_queue

router = APIRouter()


def get_queue() -> ScoringQueue:
    return scoring_queue


async def _read_upload(upload: UploadFile | None) -> ingestion.UploadedFile | None:
    if upload is None:
        return None
    content = await upload.read()
    if not content:
        raise HTTPException(status_code=400, detail=f"{upload.filename or 'Upload'} was empty")
    return ingestion.UploadedFile(filename=upload.filename or "", content=content)


@router.post("/upload", response_model=calls_schema.UploadResponse)
async def upload_call(
    transcript: UploadFile | None = File(default=None),
    audio: UploadFile | None = File(default=None),
    contact_name: str | None = Form(default=None),
    contact_phone: str | None = Form(default=None),
    call_date: datetime | None = Form(default=None),
    duration_seconds: int | None = Form(default=None, ge=0),
    queue: ScoringQueue = Depends(get_queue),
) -> calls_schema.UploadResponse:
    """Create a call from a transcript export and/or an audio recording."""

    if transcript is None and audio is None:
        raise HTTPException(status_code=400, detail="A transcript file or an audio file is required")

    result = await ingestion.ingest_upload(
        transcript=await _read_upload(transcript),
        audio=await _read_upload(audio),
        contact_name=contact_name,
        contact_phone=contact_phone,
        call_date=call_date,
        duration_seconds=duration_seconds,
        queue=queue,
    )
    return calls_schema.UploadResponse(
        call_id=result.call_id,
        status=result.status,
        segment_count=result.segment_count,
        rep_name=result.rep_name,
        prospect_identifier=result.prospect_identifier,
        duration=result.duration,
    )


@router.get("/queue/stats", response_model=calls_schema.QueueStatsResponse)
async def queue_stats(queue: ScoringQueue = Depends(get_queue)) -> calls_schema.QueueStatsResponse:
    return calls_schema.QueueStatsResponse(**await queue.stats())


@router.post("/retry-failed", response_model=calls_schema.BulkRetryResponse)
async def retry_failed(
    limit: int | None = Query(default=None, ge=1, le=100),
    queue: ScoringQueue = Depends(get_queue),
) -> calls_schema.BulkRetryResponse:
    """Re-enqueue one batch of errored calls that already have a transcript."""

    result = await queue.retry_failed(limit)
    return calls_schema.BulkRetryResponse(retried=result.retried, errors=result.errors)


@router.get("/{call_id}/status", response_model=calls_schema.CallStatusResponse)
async def call_status(
    call_id: str, session: AsyncSession = Depends(get_session)
) -> calls_schema.CallStatusResponse:
    """Polling endpoint for the UI."""

    call = await calls_repo.get_by_id(session, call_id)
    if call is None:
        raise CallNotFoundError(call_id)
    return calls_schema.CallStatusResponse(
        id=call.id,
        source=call.source,
        status=call.status,
        error_message=call.error_message,
        overall_score=call.overall_score,
        has_transcript=call.has_transcript,
        can_retry_transcription=call_state.can_retry_transcription(call),
        can_retry_scoring=call_state.can_retry_scoring(call),
        updated_at=call.updated_at,
    )


@router.post("/{call_id}/swap-speakers", response_model=calls_schema.ActionResponse)
async def swap_speakers(call_id: str, queue: ScoringQueue = Depends(get_queue)) -> calls_schema.ActionResponse:
    await pipeline.swap_call_speakers(call_id, queue=queue)
    return calls_schema.ActionResponse(
        call_id=call_id, status=CallStatus.SCORING, message="Speakers swapped; rescoring"
    )


@router.post("/{call_id}/retry-transcription", response_model=calls_schema.ActionResponse)
async def retry_transcription(
    call_id: str, queue: ScoringQueue = Depends(get_queue)
) -> calls_schema.ActionResponse:
    await pipeline.retry_transcription(call_id, queue=queue)
    return calls_schema.ActionResponse(
        call_id=call_id, status=CallStatus.TRANSCRIBING, message="Transcription restarted"
    )


@router.post("/{call_id}/retry-scoring", response_model=calls_schema.ActionResponse)
async def retry_scoring(call_id: str, queue: ScoringQueue = Depends(get_queue)) -> calls_schema.ActionResponse:
    await pipeline.retry_scoring(call_id, queue=queue)
    return calls_schema.ActionResponse(
        call_id=call_id, status=CallStatus.SCORING, message="Scoring restarted"
    )

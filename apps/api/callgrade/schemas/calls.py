"""Schemas for the calls, webhook and sync APIs."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..models.call import CallSource, CallStatus

MAX_REPORTED_ERRORS = 10


class UploadResponse(BaseModel):
    success: bool = True
    call_id: str
    status: CallStatus
    segment_count: int = 0
    rep_name: str | None = None
    prospect_identifier: str | None = None
    duration: float | None = None


class CallStatusResponse(BaseModel):
    id: str
    source: CallSource
    status: CallStatus
    error_message: str | None = None
    overall_score: float | None = None
    has_transcript: bool
    can_retry_transcription: bool
    can_retry_scoring: bool
    updated_at: datetime


class ActionResponse(BaseModel):
    call_id: str
    status: CallStatus
    message: str


class BulkRetryResponse(BaseModel):
    retried: int
    errors: list[str] = Field(default_factory=list)


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    failed: int
    completed_today: int
    in_flight: int = 0


class WebhookResponse(BaseModel):
    status: str
    reason: str | None = None
    call_id: str | None = None
    existing_call_id: str | None = None


class SyncRequest(BaseModel):
    since: datetime | None = None
    min_duration_seconds: int | None = Field(default=None, ge=0)


class SyncResponse(BaseModel):
    synced: int
    failed: int
    skipped: int
    transcribing: int
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result) -> "SyncResponse":
        return cls(
            synced=result.synced,
            failed=result.failed,
            skipped=result.skipped,
            transcribing=result.transcribing,
            errors=result.errors[:MAX_REPORTED_ERRORS],
        )

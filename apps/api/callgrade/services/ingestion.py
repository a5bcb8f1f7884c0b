"""Entry points that create calls: manual upload, CRM sync, telephony webhook and telephony sync."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from ..core.config import settings
from ..core.errors import DuplicateCallError, ParseError, TranscriptionError
from ..db.session import SessionFactory, SessionLocal
from ..models.call import Call, CallSource, CallStatus
from ..repositories import calls as calls_repo
from ..schemas.transcript import dump_segments
from . import call_state
from .attribution import attribute
from .crm import CrmClient, parse_call as parse_crm_call
from .dedup import find_duplicate, is_matchable, normalize_phone
from .pipeline import start_transcription
from .scoring_queue import ScoringQueue, scoring_queue
from .stt import Transcriber
from .telephony import TelephonyClient, parse_call as parse_telephony_call
from .transcript_parser import parse_crm_transcript, parse_export_filename, parse_vendor_export

CALL_ENDED_EVENTS = frozenset({"call.ended", "call_ended"})
SKIPPED_DISPOSITIONS = ("voicemail", "no answer", "busy")

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")

logger = logging.getLogger(__name__)


@dataclass
class UploadedFile:
    filename: str
    content: bytes


@dataclass
class UploadResult:
    call_id: str
    status: CallStatus
    segment_count: int = 0
    rep_name: str | None = None
    prospect_identifier: str | None = None
    duration: float | None = None


@dataclass
class SyncResult:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    transcribing: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class WebhookOutcome:
    status: str
    reason: str | None = None
    call_id: str | None = None
    existing_call_id: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def store_recording(upload: UploadedFile) -> str:
    """Write an uploaded recording under the recordings directory and return its path."""

    directory = Path(settings.recordings_dir)
    safe_name = _UNSAFE_FILENAME.sub("_", Path(upload.filename or "audio").name) or "audio"
    path = directory / f"{uuid4().hex}-{safe_name}"

    def _write() -> None:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(upload.content)

    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, _write)
    except OSError as exc:
        raise TranscriptionError(f"Failed to store audio upload: {exc}") from exc
    return str(path)


async def _insert_call(
    session_factory: SessionFactory,
    *,
    on_created: Callable[[Call], None] | None = None,
    **fields: Any,
) -> tuple[Call, bool]:
    """Create a call and return ``(call, created)``.

    When a concurrent delivery already stored the same ``(source, external_id)``
    the unique constraint rejects this insert; the stored call is returned with
    ``created=False`` instead.
    """

    try:
        async with session_factory() as session:
            async with session.begin():
                call = await calls_repo.create_call(session, **fields)
                if on_created is not None:
                    on_created(call)
        return call, True
    except IntegrityError:
        external_id = fields.get("external_id")
        if not external_id:
            raise
        async with session_factory() as session:
            existing = await calls_repo.get_by_external_id(
                session, source=fields["source"], external_id=external_id
            )
        if existing is None:
            raise
        logger.info("Call %s from %s was stored concurrently as %s", external_id, fields["source"], existing.id)
        return existing, False


async def ingest_upload(
    *,
    transcript: UploadedFile | None = None,
    audio: UploadedFile | None = None,
    contact_name: str | None = None,
    contact_phone: str | None = None,
    call_date: datetime | None = None,
    duration_seconds: int | None = None,
    session_factory: SessionFactory = SessionLocal,
    queue: ScoringQueue | None = None,
    transcriber: Transcriber | None = None,
) -> UploadResult:
    """Create a call from a manual upload.

    A transcript export is parsed and enters ``scoring`` directly. Audio alone is
    stored, created ``pending`` and moved to ``transcribing``. Raises ``ParseError``
    for unreadable exports and ``DuplicateCallError`` when the call already exists.
    """

    queue = queue or scoring_queue
    if transcript is None and audio is None:
        raise ParseError("Upload a transcript export or an audio file.")

    parsed = None
    external_id = None
    if transcript is not None:
        parsed = parse_vendor_export(transcript.content.decode("utf-8", errors="replace"))
        info = parse_export_filename(transcript.filename)
        external_id = info.call_id
        call_date = call_date or info.export_date
        if duration_seconds is None:
            duration_seconds = int(round(parsed.duration))
        if contact_phone is None and is_matchable(parsed.prospect_identifier):
            contact_phone = parsed.prospect_identifier
        contact_name = contact_name or parsed.prospect_identifier

    call_date = _aware(call_date) or _utcnow()

    async with session_factory() as session:
        if external_id:
            existing = await calls_repo.get_by_external_id(
                session, source=CallSource.MANUAL, external_id=external_id
            )
            if existing is not None:
                raise DuplicateCallError(existing.id, "This call export was already uploaded")
        check = await find_duplicate(
            session,
            phone=contact_phone,
            call_date=call_date,
            exclude_source=CallSource.MANUAL,
            duration_seconds=duration_seconds,
        )
        if check.is_duplicate and check.existing_call_id:
            raise DuplicateCallError(
                check.existing_call_id,
                "This call appears to already exist (possibly imported from another source)",
            )

    audio_path = await store_recording(audio) if audio is not None else None

    if parsed is not None:
        call, created = await _insert_call(
            session_factory,
            source=CallSource.MANUAL,
            status=CallStatus.SCORING,
            external_id=external_id,
            call_date=call_date,
            contact_name=contact_name or "Unknown",
            contact_phone=normalize_phone(contact_phone) or None,
            duration_seconds=duration_seconds,
            transcript=dump_segments(parsed.segments),
            audio_path=audio_path,
        )
        if not created:
            raise DuplicateCallError(call.id, "This call export was already uploaded")
    else:
        call, _ = await _insert_call(
            session_factory,
            on_created=call_state.start_transcription,
            source=CallSource.MANUAL,
            status=CallStatus.PENDING,
            call_date=call_date,
            contact_name=contact_name or contact_phone or "Unknown",
            contact_phone=normalize_phone(contact_phone) or None,
            duration_seconds=duration_seconds,
            audio_path=audio_path,
        )
    call_id = call.id
    status = call.status

    if parsed is not None:
        logger.info("Uploaded transcript created call %s with %d segments", call_id, len(parsed.segments))
        await queue.enqueue(call_id)
        return UploadResult(
            call_id=call_id,
            status=status,
            segment_count=len(parsed.segments),
            rep_name=parsed.rep_name,
            prospect_identifier=parsed.prospect_identifier,
            duration=parsed.duration,
        )

    logger.info("Uploaded audio created call %s; transcription started", call_id)
    start_transcription(call_id, session_factory=session_factory, transcriber=transcriber, queue=queue)
    return UploadResult(call_id=call_id, status=status, duration=duration_seconds)


def _skipped_disposition(disposition: str | None) -> bool:
    lowered = (disposition or "").lower()
    return any(marker in lowered for marker in SKIPPED_DISPOSITIONS)


async def sync_crm_calls(
    since: datetime | None = None,
    *,
    client: CrmClient | None = None,
    session_factory: SessionFactory = SessionLocal,
    queue: ScoringQueue | None = None,
    transcriber: Transcriber | None = None,
    min_duration_seconds: int | None = None,
) -> SyncResult:
    """Import completed CRM calls; per-call failures are collected, never raised."""

    client = client or CrmClient()
    queue = queue or scoring_queue
    min_duration = settings.min_call_duration_seconds if min_duration_seconds is None else min_duration_seconds
    result = SyncResult()

    try:
        records = await client.fetch_call_records(since)
    except Exception as exc:  # noqa: BLE001
        logger.exception("CRM sync failed to fetch calls")
        result.errors.append(f"Sync failed: {exc}")
        return result

    for record in records:
        record_id = record.get("id", "unknown")
        try:
            crm_call = parse_crm_call(record)
            if _skipped_disposition(crm_call.disposition):
                result.skipped += 1
                continue
            if crm_call.duration_seconds is not None and crm_call.duration_seconds < min_duration:
                result.skipped += 1
                continue

            async with session_factory() as session:
                existing = await calls_repo.get_by_external_id(
                    session, source=CallSource.CRM, external_id=crm_call.id
                )
            if existing is not None:
                result.skipped += 1
                continue

            contact_name = "Unknown"
            contact_phone = crm_call.to_number
            if crm_call.contact_id:
                contact = await client.fetch_contact(crm_call.contact_id)
                if contact is not None:
                    contact_name = contact.name
                    contact_phone = contact.phone or contact_phone

            async with session_factory() as session:
                check = await find_duplicate(
                    session,
                    phone=contact_phone,
                    call_date=crm_call.call_date,
                    exclude_source=CallSource.CRM,
                    duration_seconds=crm_call.duration_seconds,
                )
            if check.is_duplicate:
                result.skipped += 1
                result.errors.append(
                    f"Skipped call {crm_call.id}: Duplicate found (existing call {check.existing_call_id})"
                )
                continue

            segments = attribute(parse_crm_transcript(crm_call.transcript_text)).segments
            if segments:
                status = CallStatus.SCORING
            elif crm_call.recording_url:
                status = CallStatus.TRANSCRIBING
            else:
                result.skipped += 1
                continue

            call, created = await _insert_call(
                session_factory,
                source=CallSource.CRM,
                status=status,
                external_id=crm_call.id,
                call_date=crm_call.call_date,
                contact_name=contact_name,
                contact_phone=normalize_phone(contact_phone) or None,
                duration_seconds=crm_call.duration_seconds,
                transcript=dump_segments(segments) if segments else None,
                recording_url=crm_call.recording_url,
            )
            if not created:
                result.skipped += 1
                continue

            await _start_processing(call.id, status, result, session_factory, queue, transcriber)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to sync CRM call %s", record_id)
            result.failed += 1
            result.errors.append(f"Failed to sync call {record_id}: {exc}")

    _log_sync("CRM", result)
    return result


async def _start_processing(
    call_id: str,
    status: CallStatus,
    result: SyncResult,
    session_factory: SessionFactory,
    queue: ScoringQueue,
    transcriber: Transcriber | None,
) -> None:
    result.synced += 1
    if status is CallStatus.SCORING:
        await queue.enqueue(call_id)
    else:
        result.transcribing += 1
        start_transcription(call_id, session_factory=session_factory, transcriber=transcriber, queue=queue)


def _log_sync(source: str, result: SyncResult) -> None:
    logger.info(
        "%s sync finished: synced=%d skipped=%d failed=%d transcribing=%d",
        source,
        result.synced,
        result.skipped,
        result.failed,
        result.transcribing,
    )


async def sync_telephony_calls(
    since: datetime | None = None,
    *,
    client: TelephonyClient | None = None,
    session_factory: SessionFactory = SessionLocal,
    queue: ScoringQueue | None = None,
    transcriber: Transcriber | None = None,
    min_duration_seconds: int | None = None,
) -> SyncResult:
    """Poll the telephony provider for answered calls the webhook may have missed.

    Calls with a provider transcript go straight to scoring; calls with only a
    recording go to transcription. Per-call failures are collected, never raised.
    """

    client = client or TelephonyClient()
    queue = queue or scoring_queue
    min_duration = settings.min_call_duration_seconds if min_duration_seconds is None else min_duration_seconds
    since = _aware(since) or _utcnow() - timedelta(hours=settings.telephony_sync_lookback_hours)
    result = SyncResult()

    try:
        records = await client.fetch_call_records(since)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Telephony sync failed to fetch calls")
        result.errors.append(f"Sync failed: {exc}")
        return result

    for record in records:
        record_id = record.get("call_id", "unknown")
        try:
            telephony_call = parse_telephony_call(record)
            if not telephony_call.answered or telephony_call.duration_seconds < min_duration:
                result.skipped += 1
                continue

            async with session_factory() as session:
                existing = await calls_repo.get_by_external_id(
                    session, source=CallSource.TELEPHONY, external_id=telephony_call.id
                )
                if existing is not None:
                    result.skipped += 1
                    continue
                check = await find_duplicate(
                    session,
                    phone=telephony_call.contact_phone,
                    call_date=telephony_call.call_date,
                    exclude_source=CallSource.TELEPHONY,
                    duration_seconds=telephony_call.duration_seconds,
                )
            if check.is_duplicate:
                result.skipped += 1
                result.errors.append(
                    f"Skipped call {telephony_call.id}: Duplicate found (existing call {check.existing_call_id})"
                )
                continue

            raw_segments = await client.fetch_transcription(telephony_call.id)
            segments = attribute(raw_segments).segments if raw_segments else []
            if segments:
                status = CallStatus.SCORING
            elif telephony_call.recording_url:
                status = CallStatus.TRANSCRIBING
            else:
                result.skipped += 1
                continue

            call, created = await _insert_call(
                session_factory,
                source=CallSource.TELEPHONY,
                status=status,
                external_id=telephony_call.id,
                call_date=telephony_call.call_date,
                contact_name=telephony_call.contact_name,
                contact_phone=normalize_phone(telephony_call.contact_phone) or None,
                duration_seconds=telephony_call.duration_seconds,
                transcript=dump_segments(segments) if segments else None,
                recording_url=telephony_call.recording_url,
            )
            if not created:
                result.skipped += 1
                continue

            await _start_processing(call.id, status, result, session_factory, queue, transcriber)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to sync telephony call %s", record_id)
            result.failed += 1
            result.errors.append(f"Failed to sync call {record_id}: {exc}")

    _log_sync("Telephony", result)
    return result


def _event_phone(data: dict[str, Any]) -> str | None:
    contact = data.get("contact") or {}
    return contact.get("number") or data.get("raw_digits") or None


def _event_date(data: dict[str, Any]) -> datetime:
    raw = data.get("started_at")
    if not raw:
        return _utcnow()
    try:
        return _aware(datetime.fromisoformat(str(raw).replace("Z", "+00:00"))) or _utcnow()
    except ValueError:
        return _utcnow()


async def ingest_telephony_event(
    payload: dict[str, Any],
    *,
    session_factory: SessionFactory = SessionLocal,
    queue: ScoringQueue | None = None,
    transcriber: Transcriber | None = None,
) -> WebhookOutcome:
    """Handle a telephony ``call.ended`` event."""

    event = payload.get("event")
    if event not in CALL_ENDED_EVENTS:
        return WebhookOutcome(status="ignored", reason="Not a call ended event")

    data = payload.get("data") or {}
    try:
        duration = int(float(data.get("duration") or 0))
    except (TypeError, ValueError):
        duration = 0
    if duration < settings.min_call_duration_seconds:
        logger.info("Skipping short telephony call %s (%ss)", data.get("call_id"), duration)
        return WebhookOutcome(status="skipped", reason="Call too short")
    recording_url = data.get("recording_url")
    if not recording_url:
        return WebhookOutcome(status="skipped", reason="No recording available")

    external_id = str(data.get("call_id") or "").strip()
    if not external_id:
        return WebhookOutcome(status="skipped", reason="Missing call id")

    phone = _event_phone(data)
    call_date = _event_date(data)

    async with session_factory() as session:
        existing = await calls_repo.get_by_external_id(
            session, source=CallSource.TELEPHONY, external_id=external_id
        )
        if existing is not None:
            return WebhookOutcome(status="skipped", reason="Call already exists", existing_call_id=existing.id)
        check = await find_duplicate(
            session,
            phone=phone,
            call_date=call_date,
            exclude_source=CallSource.TELEPHONY,
            duration_seconds=duration,
        )
    if check.is_duplicate:
        return WebhookOutcome(
            status="skipped", reason="Duplicate call found", existing_call_id=check.existing_call_id
        )

    contact = data.get("contact") or {}
    call, created = await _insert_call(
        session_factory,
        source=CallSource.TELEPHONY,
        status=CallStatus.TRANSCRIBING,
        external_id=external_id,
        call_date=call_date,
        contact_name=contact.get("name") or phone or "Unknown",
        contact_phone=normalize_phone(phone) or None,
        duration_seconds=duration,
        recording_url=recording_url,
    )
    if not created:
        return WebhookOutcome(status="skipped", reason="Call already exists", existing_call_id=call.id)
    call_id = call.id

    logger.info("Telephony call %s created as %s; transcription started", external_id, call_id)
    start_transcription(call_id, session_factory=session_factory, transcriber=transcriber, queue=queue)
    return WebhookOutcome(status="processing", reason="Call created, transcription in progress", call_id=call_id)

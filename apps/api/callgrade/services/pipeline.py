"""Transcription stage: audio -> labeled transcript -> scoring queue."""
from __future__ import annotations

import logging

from sqlalchemy.orm.exc import StaleDataError

from ..core.errors import CallNotFoundError, InvalidTransitionError, TranscriptionError
from ..db.session import SessionFactory, SessionLocal
from ..models.call import CallStatus
from ..repositories import calls as calls_repo
from ..schemas.transcript import load_segments
from . import call_state
from .attribution import attribute, swap_speakers
from .background import TaskRegistry
from .scoring_queue import ScoringQueue, scoring_queue
from .stt import Transcriber, get_transcriber

logger = logging.getLogger(__name__)

transcription_tasks = TaskRegistry("transcription")


async def _fail(session_factory: SessionFactory, call_id: str, message: str) -> None:
    try:
        async with session_factory() as session:
            async with session.begin():
                call = await calls_repo.get_by_id(session, call_id)
                if call is None or call.status is not CallStatus.TRANSCRIBING:
                    return
                call_state.fail(call, message)
    except StaleDataError:
        logger.info("Transcription failure for call %s lost a concurrent update", call_id)
        return
    logger.warning("Transcription failed for call %s: %s", call_id, message)


async def transcribe_call(
    call_id: str,
    *,
    session_factory: SessionFactory = SessionLocal,
    transcriber: Transcriber | None = None,
    queue: ScoringQueue | None = None,
) -> bool:
    """Transcribe a ``transcribing`` call and hand it to the scoring queue.

    Failures are written to the call as ``error`` with a readable message; the
    user can retry transcription or upload a transcript instead. Returns True
    when the call reached ``scoring``.
    """

    queue = queue or scoring_queue
    async with session_factory() as session:
        call = await calls_repo.get_by_id(session, call_id)
        if call is None:
            raise CallNotFoundError(call_id)
        if call.status is not CallStatus.TRANSCRIBING:
            raise InvalidTransitionError(call.status, CallStatus.SCORING, "call is not transcribing")
        audio_ref = call.audio_ref

    if not audio_ref:
        await _fail(session_factory, call_id, "No audio available to transcribe")
        return False

    transcriber = transcriber or get_transcriber()
    try:
        result = await transcriber.transcribe(audio_ref)
        attribution = attribute(result.segments)
        if not attribution.segments:
            raise TranscriptionError("Transcription produced no speech")
    except TranscriptionError as exc:
        await _fail(session_factory, call_id, str(exc))
        return False
    except Exception as exc:  # noqa: BLE001
        logger.exception("Transcriber %s crashed for call %s", transcriber.name, call_id)
        await _fail(session_factory, call_id, f"Transcription failed: {exc}")
        return False

    logger.info(
        "Transcribed call %s with %s: %d segments, diarized=%s",
        call_id,
        transcriber.name,
        len(attribution.segments),
        attribution.diarized,
    )

    try:
        async with session_factory() as session:
            async with session.begin():
                call = await calls_repo.get_by_id(session, call_id)
                if call is None or call.status is not CallStatus.TRANSCRIBING:
                    logger.info("Transcript for call %s discarded; call changed", call_id)
                    return False
                duration = int(round(result.duration)) if result.duration else None
                call_state.finish_transcription(call, attribution.segments, duration_seconds=duration)
    except StaleDataError:
        logger.info("Transcript for call %s lost a concurrent update", call_id)
        return False

    await queue.enqueue(call_id)
    return True


def start_transcription(
    call_id: str,
    *,
    session_factory: SessionFactory = SessionLocal,
    transcriber: Transcriber | None = None,
    queue: ScoringQueue | None = None,
) -> None:
    """Run ``transcribe_call`` in the background."""

    transcription_tasks.spawn(
        transcribe_call(call_id, session_factory=session_factory, transcriber=transcriber, queue=queue),
        key=call_id,
    )


async def retry_transcription(
    call_id: str,
    *,
    session_factory: SessionFactory = SessionLocal,
    transcriber: Transcriber | None = None,
    queue: ScoringQueue | None = None,
) -> None:
    """Move an errored call without a transcript back to ``transcribing`` and rerun it."""

    async with session_factory() as session:
        async with session.begin():
            call = await calls_repo.get_by_id(session, call_id)
            if call is None:
                raise CallNotFoundError(call_id)
            call_state.apply_action(call, call_state.CallAction.RETRY_TRANSCRIPTION)

    logger.info("Retrying transcription for call %s", call_id)
    start_transcription(call_id, session_factory=session_factory, transcriber=transcriber, queue=queue)


async def retry_scoring(
    call_id: str,
    *,
    session_factory: SessionFactory = SessionLocal,
    queue: ScoringQueue | None = None,
) -> None:
    """Move an errored call with a transcript back to ``scoring`` and enqueue it."""

    async with session_factory() as session:
        async with session.begin():
            call = await calls_repo.get_by_id(session, call_id)
            if call is None:
                raise CallNotFoundError(call_id)
            call_state.apply_action(call, call_state.CallAction.RETRY_SCORING)

    await (queue or scoring_queue).enqueue(call_id)


async def swap_call_speakers(
    call_id: str,
    *,
    session_factory: SessionFactory = SessionLocal,
    queue: ScoringQueue | None = None,
) -> None:
    """Flip rep/prospect on the stored transcript and rescore the call."""

    async with session_factory() as session:
        async with session.begin():
            call = await calls_repo.get_by_id(session, call_id)
            if call is None:
                raise CallNotFoundError(call_id)
            flipped = swap_speakers(load_segments(call.transcript))
            call_state.apply_action(call, call_state.CallAction.SWAP_SPEAKERS, transcript=flipped)

    logger.info("Swapped speakers for call %s; rescoring", call_id)
    await (queue or scoring_queue).enqueue(call_id)

"""Call lifecycle state machine.

Pipeline transitions::

    pending -> transcribing -> scoring -> complete
                    |             |
                    +--> error <--+

User actions move a call backward: ``retry-transcription`` (error -> transcribing),
``retry-scoring`` (error -> scoring) and ``swap-speakers`` (scoring, complete or
error -> scoring). Everything else raises ``InvalidTransitionError``.
"""
from __future__ import annotations

import enum
from typing import Any

from ..core.errors import InvalidTransitionError
from ..models.call import Call, CallStatus
from ..schemas.transcript import TranscriptSegment, dump_segments

INITIAL_STATES = frozenset({CallStatus.PENDING, CallStatus.TRANSCRIBING, CallStatus.SCORING})

PIPELINE_TRANSITIONS: dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.PENDING: frozenset({CallStatus.TRANSCRIBING}),
    CallStatus.TRANSCRIBING: frozenset({CallStatus.SCORING, CallStatus.ERROR}),
    CallStatus.SCORING: frozenset({CallStatus.COMPLETE, CallStatus.ERROR}),
    CallStatus.COMPLETE: frozenset(),
    CallStatus.ERROR: frozenset(),
}


class CallAction(str, enum.Enum):
    RETRY_TRANSCRIPTION = "retry-transcription"
    RETRY_SCORING = "retry-scoring"
    SWAP_SPEAKERS = "swap-speakers"


ACTION_RULES: dict[CallAction, tuple[frozenset[CallStatus], CallStatus]] = {
    CallAction.RETRY_TRANSCRIPTION: (frozenset({CallStatus.ERROR}), CallStatus.TRANSCRIBING),
    CallAction.RETRY_SCORING: (frozenset({CallStatus.ERROR}), CallStatus.SCORING),
    CallAction.SWAP_SPEAKERS: (
        frozenset({CallStatus.SCORING, CallStatus.COMPLETE, CallStatus.ERROR}),
        CallStatus.SCORING,
    ),
}


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    return target in PIPELINE_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: CallStatus, target: CallStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def ensure_initial(status: CallStatus) -> None:
    if status not in INITIAL_STATES:
        raise InvalidTransitionError("new", status, "calls start as pending, transcribing or scoring")


def start_transcription(call: Call) -> None:
    """pending -> transcribing once audio is available."""

    ensure_transition(call.status, CallStatus.TRANSCRIBING)
    call.status = CallStatus.TRANSCRIBING


def finish_transcription(
    call: Call,
    segments: list[TranscriptSegment],
    *,
    duration_seconds: int | None = None,
) -> None:
    """transcribing -> scoring with the produced transcript."""

    ensure_transition(call.status, CallStatus.SCORING)
    if not segments:
        raise InvalidTransitionError(call.status, CallStatus.SCORING, "transcript is empty")
    call.status = CallStatus.SCORING
    call.transcript = dump_segments(segments)
    call.error_message = None
    if duration_seconds is not None and call.duration_seconds is None:
        call.duration_seconds = duration_seconds


def complete(call: Call, overall_score: float, details: dict[str, Any] | None = None) -> None:
    """scoring -> complete with the rubric score."""

    ensure_transition(call.status, CallStatus.COMPLETE)
    call.status = CallStatus.COMPLETE
    call.overall_score = overall_score
    call.score_details = details
    call.error_message = None


def fail(call: Call, message: str) -> None:
    """transcribing/scoring -> error with a human-readable cause."""

    ensure_transition(call.status, CallStatus.ERROR)
    if not message:
        raise InvalidTransitionError(call.status, CallStatus.ERROR, "an error message is required")
    call.status = CallStatus.ERROR
    call.error_message = message


def note_retry(call: Call, message: str) -> None:
    """Record an intermediate scoring failure without leaving ``scoring``."""

    if call.status is not CallStatus.SCORING:
        raise InvalidTransitionError(call.status, CallStatus.SCORING, "retry notes apply to scoring calls")
    call.error_message = message


def apply_action(
    call: Call,
    action: CallAction,
    *,
    transcript: list[TranscriptSegment] | None = None,
) -> None:
    """Apply an explicit user action, resetting downstream fields."""

    allowed, target = ACTION_RULES[action]
    if call.status not in allowed:
        raise InvalidTransitionError(call.status, target, f"{action.value} is not available")

    if action is CallAction.RETRY_TRANSCRIPTION:
        if call.has_transcript:
            raise InvalidTransitionError(call.status, target, "call already has a transcript; retry scoring instead")
        if not call.audio_ref:
            raise InvalidTransitionError(call.status, target, "no audio available to transcribe")
    elif not call.has_transcript:
        raise InvalidTransitionError(call.status, target, "call has no transcript")

    call.status = target
    call.overall_score = None
    call.score_details = None
    call.error_message = None
    if action is CallAction.RETRY_TRANSCRIPTION:
        call.transcript = None
    if transcript is not None:
        call.transcript = dump_segments(transcript)


def can_retry_transcription(call: Call) -> bool:
    return call.status is CallStatus.ERROR and not call.has_transcript and bool(call.audio_ref)


def can_retry_scoring(call: Call) -> bool:
    return call.status is CallStatus.ERROR and call.has_transcript

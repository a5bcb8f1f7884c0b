"""Speech-to-text backend built on faster-whisper (no diarization)."""
from __future__ import annotations

import asyncio
import os
import tempfile
from functools import lru_cache
from typing import Any

try:  # pragma: no cover - import guard for optional dependency
    from faster_whisper import WhisperModel as _WhisperModel
except ImportError as import_error:  # pragma: no cover - handled at runtime
    _WhisperModel = None
    _IMPORT_ERROR = import_error
else:
    _IMPORT_ERROR = None

WhisperModelType = Any

from ..core.config import settings
from ..core.errors import TranscriptionError
from ..schemas.transcript import RawSegment
from .stt import TranscriptionResult, load_audio

SALES_CALL_PROMPT = "This is a sales call between a sales representative and a prospect."


@lru_cache
def _load_model() -> WhisperModelType:
    """Load the Whisper model once per process."""

    if _WhisperModel is None:  # pragma: no cover - exercised when dependency missing
        raise RuntimeError(
            "faster-whisper is not installed. Install it or configure a Deepgram API key."
        ) from _IMPORT_ERROR

    return _WhisperModel(
        settings.whisper_model,
        device=settings.whisper_device,
        compute_type=settings.whisper_compute_type,
    )


class WhisperTranscriber:
    """Local transcription; segments come back without speaker tags."""

    name = "whisper"

    async def transcribe(self, audio_ref: str) -> TranscriptionResult:
        audio_bytes = await load_audio(audio_ref)
        if not audio_bytes:
            raise TranscriptionError("Audio file was empty")

        loop = asyncio.get_running_loop()

        def _run_transcription() -> TranscriptionResult:
            with tempfile.NamedTemporaryFile(suffix=".audio", delete=False) as tmp_file:
                tmp_file.write(audio_bytes)
                tmp_path = tmp_file.name

            try:
                segments, info = _load_model().transcribe(
                    tmp_path, beam_size=1, initial_prompt=SALES_CALL_PROMPT
                )
                raw = [
                    RawSegment(start=float(segment.start), end=float(segment.end), text=segment.text.strip())
                    for segment in segments
                    if segment.text and segment.text.strip()
                ]
                duration = float(getattr(info, "duration", 0.0) or 0.0)
                return TranscriptionResult(segments=raw, duration=duration, diarized=False)
            finally:
                try:
                    os.remove(tmp_path)
                except FileNotFoundError:
                    pass

        try:
            return await loop.run_in_executor(None, _run_transcription)
        except RuntimeError as exc:
            raise TranscriptionError(str(exc)) from exc

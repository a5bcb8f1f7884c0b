"""Speech-to-text contract shared by the transcription backends."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from ..core.config import settings
from ..core.errors import TranscriptionError
from ..schemas.transcript import RawSegment

DOWNLOAD_TIMEOUT_SECONDS = 120.0


@dataclass
class TranscriptionResult:
    segments: list[RawSegment]
    duration: float
    confidence: float | None = None
    diarized: bool = False


class Transcriber(Protocol):
    name: str

    async def transcribe(self, audio_ref: str) -> TranscriptionResult:
        ...


def is_remote(audio_ref: str) -> bool:
    return audio_ref.startswith(("http://", "https://"))


async def load_audio(audio_ref: str, *, client: httpx.AsyncClient | None = None) -> bytes:
    """Return audio bytes from a URL or a local recordings path."""

    if is_remote(audio_ref):
        try:
            if client is not None:
                response = await client.get(audio_ref, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS) as owned:
                    response = await owned.get(audio_ref, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"Failed to download audio: {exc}") from exc
        return response.content

    path = Path(audio_ref)
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, path.read_bytes)
    except OSError as exc:
        raise TranscriptionError(f"Failed to read audio file {path.name}: {exc}") from exc


def get_transcriber() -> Transcriber:
    """Prefer the diarizing Deepgram backend and fall back to local Whisper."""

    if settings.deepgram_api_key.strip():
        from .deepgram import DeepgramTranscriber

        return DeepgramTranscriber()

    from .asr import WhisperTranscriber

    return WhisperTranscriber()

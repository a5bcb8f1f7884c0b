"""Deepgram pre-recorded transcription client with speaker diarization."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.config import settings
from ..core.errors import TranscriptionError
from ..schemas.transcript import RawSegment
from .stt import TranscriptionResult, is_remote, load_audio

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"

logger = logging.getLogger(__name__)


class DeepgramTranscriber:
    """Transcribe recorded calls through Deepgram's REST API."""

    name = "deepgram"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.deepgram_api_key
        self._model = model or settings.deepgram_model
        self._transport = transport

    def _params(self) -> dict[str, str]:
        return {
            "model": self._model,
            "language": "en",
            "diarize": "true",
            "utterances": "true",
            "punctuate": "true",
            "smart_format": "true",
        }

    async def transcribe(self, audio_ref: str) -> TranscriptionResult:
        if not self._api_key:
            raise TranscriptionError("Deepgram API key missing")

        headers = {"Authorization": f"Token {self._api_key}"}
        async with httpx.AsyncClient(
            timeout=settings.deepgram_timeout_seconds, transport=self._transport
        ) as client:
            if is_remote(audio_ref):
                request_kwargs: dict[str, Any] = {"json": {"url": audio_ref}}
            else:
                audio = await load_audio(audio_ref, client=client)
                headers["Content-Type"] = "audio/mpeg"
                request_kwargs = {"content": audio}

            try:
                response = await client.post(
                    DEEPGRAM_LISTEN_URL, params=self._params(), headers=headers, **request_kwargs
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise TranscriptionError(
                    f"Deepgram returned {exc.response.status_code}: {exc.response.text[:200]}"
                ) from exc
            except httpx.HTTPError as exc:
                raise TranscriptionError(f"Deepgram request failed: {exc}") from exc

        result = parse_response(response.json())
        logger.info(
            "Deepgram transcription complete: %d segments, %.1fs", len(result.segments), result.duration
        )
        return result


def parse_response(payload: dict[str, Any]) -> TranscriptionResult:
    """Convert a Deepgram listen response into raw diarized segments."""

    results = payload.get("results") or {}
    duration = float((payload.get("metadata") or {}).get("duration") or 0.0)

    segments: list[RawSegment] = []
    confidences: list[float] = []
    for utterance in results.get("utterances") or []:
        text = (utterance.get("transcript") or "").strip()
        if not text:
            continue
        speaker = utterance.get("speaker")
        segments.append(
            RawSegment(
                start=float(utterance.get("start") or 0.0),
                end=float(utterance.get("end") or 0.0),
                text=text,
                speaker=str(speaker) if speaker is not None else None,
            )
        )
        if utterance.get("confidence") is not None:
            confidences.append(float(utterance["confidence"]))

    if not segments:
        channels = results.get("channels") or []
        alternatives = channels[0].get("alternatives") if channels else []
        if alternatives and (alternatives[0].get("transcript") or "").strip():
            alternative = alternatives[0]
            segments.append(RawSegment(start=0.0, end=duration, text=alternative["transcript"].strip()))
            if alternative.get("confidence") is not None:
                confidences.append(float(alternative["confidence"]))

    confidence = sum(confidences) / len(confidences) if confidences else None
    diarized = len({segment.speaker for segment in segments if segment.speaker is not None}) >= 2
    return TranscriptionResult(segments=segments, duration=duration, confidence=confidence, diarized=diarized)

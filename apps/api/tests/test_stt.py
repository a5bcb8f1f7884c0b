"""Tests for the Deepgram transcription client and audio loading."""
from __future__ import annotations

import json

import httpx
import pytest

from callgrade.core.errors import TranscriptionError
from callgrade.services import deepgram, stt

UTTERANCE_PAYLOAD = {
    "metadata": {"duration": 42.5},
    "results": {
        "utterances": [
            {"start": 0.0, "end": 3.2, "transcript": "Hi, this is Dana.", "speaker": 0, "confidence": 0.9},
            {"start": 3.4, "end": 5.0, "transcript": "Hello?", "speaker": 1, "confidence": 0.8},
            {"start": 5.0, "end": 5.5, "transcript": "  ", "speaker": 1},
        ]
    },
}


def test_parse_response_reads_diarized_utterances() -> None:
    result = deepgram.parse_response(UTTERANCE_PAYLOAD)

    assert [(segment.speaker, segment.text) for segment in result.segments] == [
        ("0", "Hi, this is Dana."),
        ("1", "Hello?"),
    ]
    assert result.duration == 42.5
    assert result.diarized is True
    assert result.confidence == pytest.approx(0.85)


def test_parse_response_falls_back_to_channel_transcript() -> None:
    payload = {
        "metadata": {"duration": 10},
        "results": {"channels": [{"alternatives": [{"transcript": "one long line", "confidence": 0.7}]}]},
    }

    result = deepgram.parse_response(payload)

    assert len(result.segments) == 1
    assert result.segments[0].speaker is None
    assert result.segments[0].end == 10
    assert result.diarized is False


@pytest.mark.asyncio
async def test_transcribe_requires_api_key() -> None:
    with pytest.raises(TranscriptionError):
        await deepgram.DeepgramTranscriber(api_key="").transcribe("https://example.com/a.mp3")


@pytest.mark.asyncio
async def test_transcribe_remote_url_sends_json_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=UTTERANCE_PAYLOAD)

    transcriber = deepgram.DeepgramTranscriber(api_key="dg-key", transport=httpx.MockTransport(handler))

    result = await transcriber.transcribe("https://example.com/a.mp3")

    request = seen[0]
    assert request.headers["Authorization"] == "Token dg-key"
    assert request.url.params["diarize"] == "true"
    assert json.loads(request.content) == {"url": "https://example.com/a.mp3"}
    assert len(result.segments) == 2


@pytest.mark.asyncio
async def test_transcribe_local_file_uploads_bytes(tmp_path) -> None:
    recording = tmp_path / "call.mp3"
    recording.write_bytes(b"ID3fake")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=UTTERANCE_PAYLOAD)

    transcriber = deepgram.DeepgramTranscriber(api_key="dg-key", transport=httpx.MockTransport(handler))

    await transcriber.transcribe(str(recording))

    assert seen[0].content == b"ID3fake"
    assert seen[0].headers["Content-Type"] == "audio/mpeg"


@pytest.mark.asyncio
async def test_transcribe_http_error_becomes_transcription_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream exploded"))
    transcriber = deepgram.DeepgramTranscriber(api_key="dg-key", transport=transport)

    with pytest.raises(TranscriptionError, match="Deepgram returned 500"):
        await transcriber.transcribe("https://example.com/a.mp3")


@pytest.mark.asyncio
async def test_load_audio_missing_file_raises(tmp_path) -> None:
    with pytest.raises(TranscriptionError):
        await stt.load_audio(str(tmp_path / "missing.mp3"))


def test_get_transcriber_prefers_deepgram(monkeypatch) -> None:
    monkeypatch.setattr(stt.settings, "deepgram_api_key", "dg-key")

    assert stt.get_transcriber().name == "deepgram"

"""Transcript segment schemas shared by parsers, attribution and storage."""
from __future__ import annotations

import enum

from pydantic import BaseModel, Field


class Speaker(str, enum.Enum):
    REP = "rep"
    PROSPECT = "prospect"

    @property
    def other(self) -> "Speaker":
        return Speaker.PROSPECT if self is Speaker.REP else Speaker.REP


class RawSegment(BaseModel):
    """Timed text from a transcription source, optionally tagged by the vendor."""

    start: float
    end: float
    text: str
    speaker: str | None = Field(default=None, description="Vendor speaker tag, if diarized")


class TranscriptSegment(BaseModel):
    speaker: Speaker
    text: str
    start_time: float
    end_time: float


def dump_segments(segments: list[TranscriptSegment]) -> list[dict]:
    """Serialize segments for the JSON transcript column."""

    return [segment.model_dump(mode="json") for segment in segments]


def load_segments(raw: list[dict] | None) -> list[TranscriptSegment]:
    return [TranscriptSegment.model_validate(item) for item in raw or []]

"""Call model."""
from __future__ import annotations

from datetime import datetime, timezone
import enum

from sqlalchemy import DateTime, Enum, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, validates

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallSource(str, enum.Enum):
    MANUAL = "manual"
    CRM = "crm"
    TELEPHONY = "telephony"


class CallStatus(str, enum.Enum):
    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    SCORING = "scoring"
    COMPLETE = "complete"
    ERROR = "error"


class Call(Base):
    """One recorded sales conversation and its processing state."""

    __tablename__ = "calls"
    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_calls_source_external_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    source: Mapped[CallSource] = mapped_column(Enum(CallSource, name="call_source"), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String)

    status: Mapped[CallStatus] = mapped_column(
        Enum(CallStatus, name="call_status"), default=CallStatus.PENDING, nullable=False, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    overall_score: Mapped[float | None] = mapped_column(Float)
    score_details: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True))

    transcript: Mapped[list[dict] | None] = mapped_column(JSONB(none_as_null=True))
    contact_name: Mapped[str | None] = mapped_column(String)
    contact_phone: Mapped[str | None] = mapped_column(String)
    call_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    recording_url: Mapped[str | None] = mapped_column(String)
    audio_path: Mapped[str | None] = mapped_column(String)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @validates("overall_score")
    def _validate_overall_score(self, key: str, value: float | None) -> float | None:
        if value is not None and self.status is not CallStatus.COMPLETE:
            raise ValueError("overall_score may only be set on a complete call")
        return value

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript)

    @property
    def audio_ref(self) -> str | None:
        """Return the audio location usable for (re)transcription."""

        return self.audio_path or self.recording_url

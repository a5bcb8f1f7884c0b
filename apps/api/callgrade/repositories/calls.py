"""Call repository helpers."""
from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.call import Call, CallSource, CallStatus


async def get_by_id(session: AsyncSession, call_id: str) -> Call | None:
    """Return a call record by identifier."""

    return await session.get(Call, call_id)


async def get_by_external_id(session: AsyncSession, *, source: CallSource, external_id: str) -> Call | None:
    """Return the call owning ``(source, external_id)``, if any."""

    stmt: Select[tuple[Call]] = select(Call).where(Call.source == source, Call.external_id == external_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_call(
    session: AsyncSession,
    *,
    source: CallSource,
    status: CallStatus,
    call_date: datetime,
    external_id: str | None = None,
    contact_name: str | None = None,
    contact_phone: str | None = None,
    duration_seconds: int | None = None,
    transcript: list[dict] | None = None,
    recording_url: str | None = None,
    audio_path: str | None = None,
) -> Call:
    """Persist a new call and return it."""

    call = Call(
        id=str(uuid4()),
        source=source,
        status=status,
        external_id=external_id,
        call_date=call_date,
        contact_name=contact_name,
        contact_phone=contact_phone,
        duration_seconds=duration_seconds,
        transcript=transcript,
        recording_url=recording_url,
        audio_path=audio_path,
    )
    session.add(call)
    await session.flush()
    return call


async def list_in_window(
    session: AsyncSession,
    *,
    window_start: datetime,
    window_end: datetime,
    exclude_source: CallSource | None = None,
) -> list[Call]:
    """Return calls whose ``call_date`` falls inside the window, oldest first."""

    stmt = select(Call).where(Call.call_date >= window_start, Call.call_date <= window_end)
    if exclude_source is not None:
        stmt = stmt.where(Call.source != exclude_source)
    stmt = stmt.order_by(Call.call_date.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_retryable_failures(session: AsyncSession, *, limit: int) -> list[Call]:
    """Return errored calls that already carry a transcript."""

    stmt = (
        select(Call)
        .where(Call.status == CallStatus.ERROR, Call.transcript.is_not(None))
        .order_by(Call.updated_at.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_by_status(session: AsyncSession, *, since: datetime | None = None) -> dict[str, int]:
    """Return queue-facing counts: awaiting transcription, scoring, error and completed since ``since``."""

    async def _count(*conditions) -> int:
        stmt = select(func.count(Call.id)).where(*conditions)
        result = await session.execute(stmt)
        return int(result.scalar_one())

    completed_conditions = [Call.status == CallStatus.COMPLETE]
    if since is not None:
        completed_conditions.append(Call.updated_at >= since)

    return {
        "pending": await _count(Call.status.in_((CallStatus.PENDING, CallStatus.TRANSCRIBING))),
        "processing": await _count(Call.status == CallStatus.SCORING),
        "failed": await _count(Call.status == CallStatus.ERROR),
        "completed_today": await _count(*completed_conditions),
    }

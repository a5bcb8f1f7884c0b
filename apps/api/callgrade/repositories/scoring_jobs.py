"""Scoring job persistence helpers."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.scoring_job import ScoringJob


async def get(session: AsyncSession, call_id: str) -> ScoringJob | None:
    return await session.get(ScoringJob, call_id)


async def reset(
    session: AsyncSession,
    *,
    call_id: str,
    max_attempts: int,
    next_attempt_at: datetime,
) -> ScoringJob:
    """Create the job row for a call, or restart an existing one from attempt zero."""

    job = await session.get(ScoringJob, call_id)
    if job is None:
        job = ScoringJob(call_id=call_id, attempt=0, max_attempts=max_attempts, next_attempt_at=next_attempt_at)
        session.add(job)
    else:
        job.attempt = 0
        job.max_attempts = max_attempts
        job.last_error = None
        job.next_attempt_at = next_attempt_at
    await session.flush()
    return job


async def record_attempt(
    session: AsyncSession,
    *,
    call_id: str,
    attempt: int,
    last_error: str | None = None,
    next_attempt_at: datetime | None = None,
) -> None:
    """Update retry bookkeeping for a call's job."""

    job = await session.get(ScoringJob, call_id)
    if job is None:
        return
    job.attempt = attempt
    if last_error is not None:
        job.last_error = last_error
    if next_attempt_at is not None:
        job.next_attempt_at = next_attempt_at


async def delete(session: AsyncSession, call_id: str) -> None:
    job = await session.get(ScoringJob, call_id)
    if job is not None:
        await session.delete(job)


async def list_due(session: AsyncSession, *, now: datetime | None = None) -> list[ScoringJob]:
    """Return jobs waiting on an attempt, optionally only those due by ``now``."""

    stmt = select(ScoringJob).order_by(ScoringJob.next_attempt_at.asc())
    if now is not None:
        stmt = stmt.where(ScoringJob.next_attempt_at <= now)
    result = await session.execute(stmt)
    return list(result.scalars().all())

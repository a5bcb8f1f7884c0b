"""Scoring job queue with bounded retries and backoff.

``enqueue`` persists a ``scoring_jobs`` row and starts one driver task per call.
The driver reads the transcript, calls the scorer outside any transaction and
writes the outcome only if the call is still the version it read; anything else
means a user action (a speaker swap, say) superseded the attempt. Job rows
survive restarts and ``resume_pending`` picks them up again.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.errors import CallNotFoundError, InvalidTransitionError
from ..db.session import SessionFactory, SessionLocal
from ..models.call import CallStatus
from ..repositories import calls as calls_repo
from ..repositories import scoring_jobs as jobs_repo
from ..schemas.transcript import TranscriptSegment, load_segments
from . import call_state
from .background import TaskRegistry
from .scoring import RubricScorer, Scorer

MAX_RETRIES = 3
RETRY_DELAYS: tuple[float, ...] = (1.0, 5.0, 15.0)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


@dataclass
class BulkRetryResult:
    retried: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class _Snapshot:
    version: int
    transcript: list[TranscriptSegment]
    context: dict[str, Any]


class ScoringQueue:
    """Drive scoring attempts for calls in ``scoring`` status."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory = SessionLocal,
        scorer: Scorer | None = None,
        max_attempts: int = MAX_RETRIES,
        delays: Sequence[float] = RETRY_DELAYS,
        sleep: Sleep = asyncio.sleep,
        batch_size: int = 10,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not delays:
            raise ValueError("delays must not be empty")
        self._session_factory = session_factory
        self._scorer = scorer or RubricScorer()
        self.max_attempts = max_attempts
        self.delays = tuple(delays)
        self._sleep = sleep
        self.batch_size = batch_size
        self._tasks = TaskRegistry("scoring")

    def delay_for(self, attempt: int) -> float:
        """Wait after ``attempt`` (1-based); the last delay repeats."""

        return self.delays[min(attempt, len(self.delays)) - 1]

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def enqueue(self, call_id: str) -> None:
        """Queue a call for scoring and start its driver.

        Accepts a call already in ``scoring`` or an errored call with a transcript,
        which is moved back to ``scoring`` first.
        """

        async with self._session_factory() as session:
            async with session.begin():
                call = await calls_repo.get_by_id(session, call_id)
                if call is None:
                    raise CallNotFoundError(call_id)
                if call.status is CallStatus.ERROR:
                    call_state.apply_action(call, call_state.CallAction.RETRY_SCORING)
                elif call.status is not CallStatus.SCORING:
                    raise InvalidTransitionError(call.status, CallStatus.SCORING, "call is not ready for scoring")
                if not call.has_transcript:
                    raise InvalidTransitionError(call.status, CallStatus.SCORING, "call has no transcript")
                await jobs_repo.reset(
                    session, call_id=call_id, max_attempts=self.max_attempts, next_attempt_at=_utcnow()
                )

        logger.info("Enqueued call %s for scoring", call_id)
        self._tasks.spawn(self._drive(call_id), key=call_id)

    async def wait_for(self, call_id: str) -> None:
        task = self._tasks.get(call_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _drive(
        self,
        call_id: str,
        *,
        start_attempt: int = 1,
        initial_delay: float = 0.0,
        max_attempts: int | None = None,
    ) -> None:
        max_attempts = max_attempts or self.max_attempts
        if initial_delay > 0:
            await self._sleep(initial_delay)

        attempt = start_attempt
        while True:
            snapshot = await self._load(call_id)
            if snapshot is None:
                logger.info("Scoring for call %s superseded before attempt %d", call_id, attempt)
                return

            try:
                result = await self._scorer.score(snapshot.transcript, snapshot.context)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                error = _describe(exc)
                logger.warning("Scoring attempt %d/%d for call %s failed: %s", attempt, max_attempts, call_id, error)
            else:
                await self._write(
                    call_id,
                    snapshot.version,
                    lambda call: call_state.complete(call, result.overall_score, result.details()),
                    delete_job=True,
                )
                return

            if attempt >= max_attempts:
                message = f"Scoring failed after {attempt} attempts. Last error: {error}"
                await self._write(call_id, snapshot.version, lambda call: call_state.fail(call, message), delete_job=True)
                return

            delay = self.delay_for(attempt)
            message = f"Attempt {attempt} failed: {error}. Retrying in {delay:g}s..."
            still_current = await self._write(
                call_id,
                snapshot.version,
                lambda call: call_state.note_retry(call, message),
                attempt=attempt,
                last_error=error,
                next_attempt_at=_utcnow() + timedelta(seconds=delay),
            )
            if not still_current:
                return
            await self._sleep(delay)
            attempt += 1

    async def _load(self, call_id: str) -> _Snapshot | None:
        async with self._session_factory() as session:
            call = await calls_repo.get_by_id(session, call_id)
            if call is None or call.status is not CallStatus.SCORING or not call.has_transcript:
                return None
            return _Snapshot(
                version=call.version,
                transcript=load_segments(call.transcript),
                context={
                    "contact_name": call.contact_name,
                    "source": call.source.value,
                    "duration_seconds": call.duration_seconds,
                },
            )

    async def _write(
        self,
        call_id: str,
        version: int,
        apply: Callable[[Any], None],
        *,
        delete_job: bool = False,
        attempt: int | None = None,
        last_error: str | None = None,
        next_attempt_at: datetime | None = None,
    ) -> bool:
        """Apply ``apply`` to the call if it is unchanged since ``version``."""

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    call = await calls_repo.get_by_id(session, call_id)
                    if call is None or call.version != version or call.status is not CallStatus.SCORING:
                        logger.info("Scoring result for call %s discarded; call changed", call_id)
                        return False
                    apply(call)
                    if delete_job:
                        await jobs_repo.delete(session, call_id)
                    elif attempt is not None:
                        await jobs_repo.record_attempt(
                            session,
                            call_id=call_id,
                            attempt=attempt,
                            last_error=last_error,
                            next_attempt_at=next_attempt_at,
                        )
        except StaleDataError:
            logger.info("Scoring result for call %s lost a concurrent update", call_id)
            return False
        return True

    async def retry_failed(self, limit: int | None = None) -> BulkRetryResult:
        """Re-enqueue errored calls that have a transcript, one bounded batch at a time."""

        async with self._session_factory() as session:
            calls = await calls_repo.list_retryable_failures(session, limit=limit or self.batch_size)
            call_ids = [call.id for call in calls]

        outcome = BulkRetryResult()
        for call_id in call_ids:
            try:
                await self.enqueue(call_id)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Bulk retry failed for call %s", call_id)
                outcome.errors.append(f"{call_id}: {_describe(exc)}")
            else:
                outcome.retried += 1
        logger.info("Bulk retry queued %d calls with %d errors", outcome.retried, len(outcome.errors))
        return outcome

    async def resume_pending(self) -> int:
        """Restart drivers for job rows left by a previous process."""

        now = _utcnow()
        resumed = 0
        async with self._session_factory() as session:
            async with session.begin():
                jobs = await jobs_repo.list_due(session)
                plans: list[tuple[str, int, float, int]] = []
                for job in jobs:
                    call = await calls_repo.get_by_id(session, job.call_id)
                    if call is None or call.status is not CallStatus.SCORING or not call.has_transcript:
                        await jobs_repo.delete(session, job.call_id)
                        continue
                    next_at = job.next_attempt_at
                    if next_at.tzinfo is None:
                        next_at = next_at.replace(tzinfo=timezone.utc)
                    wait = max(0.0, (next_at - now).total_seconds())
                    plans.append((job.call_id, job.attempt + 1, wait, job.max_attempts))

        for call_id, start_attempt, wait, max_attempts in plans:
            if self._tasks.get(call_id) is not None:
                continue
            self._tasks.spawn(
                self._drive(call_id, start_attempt=start_attempt, initial_delay=wait, max_attempts=max_attempts),
                key=call_id,
            )
            resumed += 1
        if resumed:
            logger.info("Resumed %d scoring jobs", resumed)
        return resumed

    async def stats(self) -> dict[str, int]:
        today = _utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        async with self._session_factory() as session:
            counts = await calls_repo.count_by_status(session, since=today)
        counts["in_flight"] = self.in_flight
        return counts

    async def shutdown(self) -> None:
        await self._tasks.shutdown()


scoring_queue = ScoringQueue(
    max_attempts=settings.scoring_max_attempts,
    delays=settings.scoring_retry_delays,
    batch_size=settings.bulk_retry_batch_size,
)

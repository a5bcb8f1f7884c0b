"""Shared fixtures: an in-memory call store patched over the repositories."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from callgrade.models.call import Call, CallSource, CallStatus
from callgrade.models.scoring_job import ScoringJob
from callgrade.repositories import calls as calls_repo
from callgrade.repositories import scoring_jobs as jobs_repo
from callgrade.schemas.transcript import Speaker, TranscriptSegment, dump_segments
from callgrade.services.scoring import PhaseScore, ScoreResult


class DummySession:
    """Minimal session stub supporting ``async with`` and ``begin()``."""

    def __init__(self, store: "FakeStore") -> None:
        self.store = store
        self.in_transaction = False
        self.touched: set[str] = set()

    async def __aenter__(self) -> "DummySession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    def begin(self):  # noqa: D401 - mimic SQLAlchemy's async begin
        session = self

        class _Tx:
            async def __aenter__(self_inner):
                session.in_transaction = True
                session.touched = set()
                return session

            async def __aexit__(self_inner, exc_type, exc, tb):
                session.in_transaction = False
                if exc_type is None:
                    session.store.commit(session.touched)
                return False

        return _Tx()


class FakeStore:
    """Calls and scoring jobs kept in dictionaries, with a version bump per committed write."""

    def __init__(self) -> None:
        self.calls: dict[str, Call] = {}
        self.jobs: dict[str, ScoringJob] = {}
        self.sessions: list[DummySession] = []

    def session_factory(self) -> DummySession:
        session = DummySession(self)
        self.sessions.append(session)
        return session

    def commit(self, call_ids: set[str]) -> None:
        now = datetime.now(timezone.utc)
        for call_id in call_ids:
            call = self.calls.get(call_id)
            if call is not None:
                call.version += 1
                call.updated_at = now

    def add_call(
        self,
        *,
        status: CallStatus,
        source: CallSource = CallSource.MANUAL,
        transcript: list[TranscriptSegment] | None = None,
        overall_score: float | None = None,
        **fields,
    ) -> Call:
        now = datetime.now(timezone.utc)
        call = Call(id=fields.pop("id", str(uuid4())), source=source)
        call.status = status
        call.transcript = dump_segments(transcript) if transcript else None
        call.overall_score = overall_score
        call.call_date = fields.pop("call_date", now)
        call.created_at = now
        call.updated_at = now
        call.version = 1
        for key, value in fields.items():
            setattr(call, key, value)
        self.calls[call.id] = call
        return call


def sample_transcript() -> list[TranscriptSegment]:
    return [
        TranscriptSegment(speaker=Speaker.REP, text="Hi, this is Sam calling from Acme.", start_time=0, end_time=4),
        TranscriptSegment(speaker=Speaker.PROSPECT, text="Oh hi, how much does it cost?", start_time=4, end_time=8),
    ]


def sample_score(overall: float = 82.0) -> ScoreResult:
    return ScoreResult(
        phase_scores=[PhaseScore(phase="opening", score=overall, feedback="Clear intro")],
        overall_score=overall,
        feedback="Solid call.",
    )


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()

    def _touch(session: DummySession, call: Call | None) -> Call | None:
        if call is not None and session.in_transaction:
            session.touched.add(call.id)
        return call

    async def get_by_id(session, call_id):
        return _touch(session, fake.calls.get(call_id))

    async def get_by_external_id(session, *, source, external_id):
        for call in fake.calls.values():
            if call.source is source and call.external_id == external_id:
                return call
        return None

    async def create_call(session, **fields):
        transcript = fields.pop("transcript", None)
        call = Call(id=str(uuid4()), **{key: value for key, value in fields.items() if key != "status"})
        call.status = fields["status"]
        call.transcript = transcript
        call.created_at = call.updated_at = datetime.now(timezone.utc)
        call.version = 1
        fake.calls[call.id] = call
        return call

    async def list_in_window(session, *, window_start, window_end, exclude_source=None):
        return sorted(
            (
                call
                for call in fake.calls.values()
                if window_start <= call.call_date <= window_end and call.source is not exclude_source
            ),
            key=lambda call: call.call_date,
        )

    async def list_retryable_failures(session, *, limit):
        failed = [call for call in fake.calls.values() if call.status is CallStatus.ERROR and call.transcript]
        return failed[:limit]

    async def count_by_status(session, *, since=None):
        values = list(fake.calls.values())
        return {
            "pending": sum(1 for c in values if c.status in (CallStatus.PENDING, CallStatus.TRANSCRIBING)),
            "processing": sum(1 for c in values if c.status is CallStatus.SCORING),
            "failed": sum(1 for c in values if c.status is CallStatus.ERROR),
            "completed_today": sum(
                1 for c in values if c.status is CallStatus.COMPLETE and (since is None or c.updated_at >= since)
            ),
        }

    async def job_get(session, call_id):
        return fake.jobs.get(call_id)

    async def job_reset(session, *, call_id, max_attempts, next_attempt_at):
        job = ScoringJob(call_id=call_id, attempt=0, max_attempts=max_attempts, next_attempt_at=next_attempt_at)
        fake.jobs[call_id] = job
        return job

    async def job_record_attempt(session, *, call_id, attempt, last_error=None, next_attempt_at=None):
        job = fake.jobs.get(call_id)
        if job is None:
            return
        job.attempt = attempt
        if last_error is not None:
            job.last_error = last_error
        if next_attempt_at is not None:
            job.next_attempt_at = next_attempt_at

    async def job_delete(session, call_id):
        fake.jobs.pop(call_id, None)

    async def job_list_due(session, *, now=None):
        jobs = sorted(fake.jobs.values(), key=lambda job: job.next_attempt_at)
        return [job for job in jobs if now is None or job.next_attempt_at <= now]

    monkeypatch.setattr(calls_repo, "get_by_id", get_by_id)
    monkeypatch.setattr(calls_repo, "get_by_external_id", get_by_external_id)
    monkeypatch.setattr(calls_repo, "create_call", create_call)
    monkeypatch.setattr(calls_repo, "list_in_window", list_in_window)
    monkeypatch.setattr(calls_repo, "list_retryable_failures", list_retryable_failures)
    monkeypatch.setattr(calls_repo, "count_by_status", count_by_status)
    monkeypatch.setattr(jobs_repo, "get", job_get)
    monkeypatch.setattr(jobs_repo, "reset", job_reset)
    monkeypatch.setattr(jobs_repo, "record_attempt", job_record_attempt)
    monkeypatch.setattr(jobs_repo, "delete", job_delete)
    monkeypatch.setattr(jobs_repo, "list_due", job_list_due)
    return fake

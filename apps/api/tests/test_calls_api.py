"""HTTP-level tests for the calls, webhook and sync routers."""
from __future__ import annotations

from functools import partial
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from callgrade.core.config import settings
from callgrade.db.session import get_session
from callgrade.main import app
from callgrade.models.call import CallSource, CallStatus
from callgrade.routers.calls import get_queue
from callgrade.services import ingestion, pipeline
from callgrade.services.ingestion import SyncResult

from conftest import sample_transcript

EXPORT_BODY = b"""Transcription
0s - Alice
Hi Bob, thanks for taking my call.
5s - Bob
Sure, what is this about?
"""


@pytest.fixture
def queue() -> SimpleNamespace:
    return SimpleNamespace(
        enqueue=AsyncMock(),
        stats=AsyncMock(
            return_value={"pending": 0, "processing": 2, "failed": 1, "completed_today": 4, "in_flight": 2}
        ),
        retry_failed=AsyncMock(return_value=SimpleNamespace(retried=3, errors=["x: gone"])),
    )


@pytest_asyncio.fixture
async def client(store, queue, monkeypatch):
    async def session_override():
        async with store.session_factory() as session:
            yield session

    for name in ("swap_call_speakers", "retry_transcription", "retry_scoring"):
        monkeypatch.setattr(pipeline, name, partial(getattr(pipeline, name), session_factory=store.session_factory))
    monkeypatch.setattr(
        ingestion, "ingest_upload", partial(ingestion.ingest_upload, session_factory=store.session_factory)
    )
    monkeypatch.setattr(ingestion, "start_transcription", lambda call_id, **kwargs: None)
    monkeypatch.setattr(pipeline, "start_transcription", lambda call_id, **kwargs: None)

    app.dependency_overrides[get_session] = session_override
    app.dependency_overrides[get_queue] = lambda: queue
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_upload_transcript_returns_call(client, store, queue) -> None:
    response = await client.post(
        "/api/calls/upload",
        files={"transcript": ("export.txt", EXPORT_BODY, "text/plain")},
        data={"contact_name": "Bob"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "scoring"
    assert body["segment_count"] == 2
    assert store.calls[body["call_id"]].contact_name == "Bob"
    queue.enqueue.assert_awaited_once_with(body["call_id"])


@pytest.mark.asyncio
async def test_upload_without_files_is_rejected(client) -> None:
    response = await client.post("/api/calls/upload", data={"contact_name": "Bob"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unparseable_upload_maps_to_400(client, store) -> None:
    response = await client.post(
        "/api/calls/upload", files={"transcript": ("export.txt", b"not a transcript", "text/plain")}
    )

    assert response.status_code == 400
    assert "hint" in response.json()
    assert store.calls == {}


@pytest.mark.asyncio
async def test_duplicate_upload_maps_to_409(client, store) -> None:
    existing = store.add_call(status=CallStatus.SCORING, source=CallSource.CRM, contact_phone="+1 415 555 0100")

    response = await client.post(
        "/api/calls/upload",
        files={"transcript": ("export.txt", EXPORT_BODY, "text/plain")},
        data={"contact_phone": "4155550100"},
    )

    assert response.status_code == 409
    assert response.json()["existing_call_id"] == existing.id
    assert response.json()["is_duplicate"] is True


@pytest.mark.asyncio
async def test_status_reports_retry_options(client, store) -> None:
    call = store.add_call(
        status=CallStatus.ERROR,
        transcript=sample_transcript(),
        error_message="Scoring failed after 3 attempts. Last error: boom",
    )

    response = await client.get(f"/api/calls/{call.id}/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "error"
    assert body["has_transcript"] is True
    assert body["can_retry_scoring"] is True
    assert body["can_retry_transcription"] is False


@pytest.mark.asyncio
async def test_unknown_call_is_404(client) -> None:
    response = await client.get("/api/calls/missing/status")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_invalid_action_maps_to_409(client, store, queue) -> None:
    call = store.add_call(status=CallStatus.COMPLETE, transcript=sample_transcript(), overall_score=80.0)

    response = await client.post(f"/api/calls/{call.id}/retry-scoring")

    assert response.status_code == 409
    assert call.status is CallStatus.COMPLETE
    queue.enqueue.assert_not_awaited()


@pytest.mark.asyncio
async def test_swap_speakers_endpoint_requeues(client, store, queue) -> None:
    call = store.add_call(status=CallStatus.COMPLETE, transcript=sample_transcript(), overall_score=80.0)

    response = await client.post(f"/api/calls/{call.id}/swap-speakers")

    assert response.status_code == 200
    assert response.json()["status"] == "scoring"
    assert call.overall_score is None
    queue.enqueue.assert_awaited_once_with(call.id)


@pytest.mark.asyncio
async def test_queue_stats_and_bulk_retry(client, queue) -> None:
    stats = await client.get("/api/calls/queue/stats")
    retried = await client.post("/api/calls/retry-failed", params={"limit": 5})

    assert stats.json()["completed_today"] == 4
    assert retried.json() == {"retried": 3, "errors": ["x: gone"]}
    queue.retry_failed.assert_awaited_once_with(5)


@pytest.mark.asyncio
async def test_telephony_webhook_checks_secret(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "telephony_webhook_secret", "s3cret")
    handler = AsyncMock(return_value=ingestion.WebhookOutcome(status="ignored", reason="Not a call ended event"))
    monkeypatch.setattr(ingestion, "ingest_telephony_event", handler)

    denied = await client.post("/api/webhooks/telephony", json={"event": "call.ended"})
    allowed = await client.post(
        "/api/webhooks/telephony",
        json={"event": "call.started"},
        headers={"Authorization": "Bearer s3cret"},
    )

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["status"] == "ignored"
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_telephony_challenge_is_echoed(client) -> None:
    response = await client.get("/api/webhooks/telephony", params={"challenge": "abc123"})

    assert response.json() == {"challenge": "abc123"}


@pytest.mark.asyncio
async def test_crm_sync_endpoint_truncates_errors(client, monkeypatch) -> None:
    result = SyncResult(synced=1, skipped=12, errors=[f"Skipped call {n}" for n in range(12)])
    sync = AsyncMock(return_value=result)
    monkeypatch.setattr(ingestion, "sync_crm_calls", sync)

    response = await client.post("/api/crm/sync", json={"min_duration_seconds": 30})

    assert response.status_code == 200
    body = response.json()
    assert body["synced"] == 1
    assert len(body["errors"]) == 10
    assert sync.await_args.kwargs["min_duration_seconds"] == 30


@pytest.mark.asyncio
async def test_telephony_sync_endpoint_checks_secret_and_reports(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "telephony_webhook_secret", "s3cret")
    result = SyncResult(synced=2, skipped=1, transcribing=1, errors=[f"Failed to sync call {n}: boom" for n in range(11)])
    sync = AsyncMock(return_value=result)
    monkeypatch.setattr(ingestion, "sync_telephony_calls", sync)

    denied = await client.post("/api/webhooks/telephony/sync")
    allowed = await client.post(
        "/api/webhooks/telephony/sync",
        json={"since": "2024-06-01T00:00:00Z"},
        headers={"X-Webhook-Secret": "s3cret"},
    )

    assert denied.status_code == 401
    assert allowed.status_code == 200
    body = allowed.json()
    assert (body["synced"], body["skipped"], body["transcribing"]) == (2, 1, 1)
    assert len(body["errors"]) == 10
    since = sync.await_args.args[0]
    assert (since.year, since.month, since.day) == (2024, 6, 1)
    sync.assert_awaited_once()

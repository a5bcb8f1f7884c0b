"""Telephony provider client for polling recent calls and their transcripts."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from ..core.config import settings
from ..schemas.transcript import RawSegment

PAGE_LIMIT = 100
REQUEST_TIMEOUT_SECONDS = 30.0
# The provider allows roughly one request per second per key.
MIN_REQUEST_INTERVAL_SECONDS = 1.0
ANSWERED_STATE = "ANSWERED"

logger = logging.getLogger(__name__)


class TelephonyError(RuntimeError):
    """Raised when the telephony API is unreachable or misconfigured."""


@dataclass
class TelephonyCall:
    id: str
    call_date: datetime
    duration_seconds: int
    last_state: str
    direction: str
    contact_phone: str | None
    contact_name: str
    recording_url: str | None

    @property
    def answered(self) -> bool:
        return self.last_state.upper() == ANSWERED_STATE


def _parse_time(value: Any) -> datetime:
    if value in (None, ""):
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_call(record: dict[str, Any]) -> TelephonyCall:
    """Convert one raw call-list entry; malformed fields raise ``ValueError``."""

    call_id = record.get("call_id")
    if call_id in (None, ""):
        raise ValueError("call record has no call_id")
    direction = str(record.get("direction") or "")
    contact = record.get("contact") or {}
    name = f"{contact.get('firstname') or ''} {contact.get('lastname') or ''}".strip()
    phone = record.get("to_number") if direction == "out" else record.get("from_number")
    return TelephonyCall(
        id=str(call_id),
        call_date=_parse_time(record.get("start_time")),
        duration_seconds=int(record.get("incall_duration") or record.get("total_duration") or 0),
        last_state=str(record.get("last_state") or ""),
        direction=direction,
        contact_phone=str(phone) if phone else None,
        contact_name=name or "Unknown",
        recording_url=record.get("record") or None,
    )


def _role(speaker: Any) -> str:
    return "rep" if str(speaker or "").lower() == "agent" else "prospect"


def parse_transcription(payload: dict[str, Any]) -> list[RawSegment]:
    """Read either transcript shape the provider returns into role-tagged segments."""

    transcription = payload.get("transcription") or {}
    if transcription.get("segments"):
        return [
            RawSegment(
                start=float(item.get("start") or 0),
                end=float(item.get("end") or 0),
                text=str(item.get("text") or ""),
                speaker=_role(item.get("speaker")),
            )
            for item in transcription["segments"]
        ]
    return [
        RawSegment(
            start=float(item.get("timestamp_start") or 0),
            end=float(item.get("timestamp_end") or 0),
            text=str(item.get("content") or ""),
            speaker=_role(item.get("speaker")),
        )
        for item in payload.get("transcript") or []
    ]


class TelephonyClient:
    """Minimal async client over the provider's call-list and transcript APIs."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        min_interval: float = MIN_REQUEST_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = (base_url or settings.telephony_api_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.telephony_api_key
        self._transport = transport
        self._min_interval = min_interval
        self._sleep = sleep
        self._last_request = float("-inf")

    def _client(self) -> httpx.AsyncClient:
        if not self._api_key:
            raise TelephonyError("Telephony API key is not configured")
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": self._api_key},
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _throttle(self) -> None:
        wait = self._last_request + self._min_interval - time.monotonic()
        if wait > 0:
            await self._sleep(wait)
        self._last_request = time.monotonic()

    async def fetch_call_records(
        self, since: datetime, until: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Return raw call-list entries started between ``since`` and ``until``.

        Records are left unparsed; convert each with :func:`parse_call`.
        """

        until = until or datetime.now(timezone.utc)
        params = {
            "limit": PAGE_LIMIT,
            "start_date": since.astimezone(timezone.utc).isoformat(),
            "end_date": until.astimezone(timezone.utc).isoformat(),
        }
        async with self._client() as client:
            await self._throttle()
            try:
                response = await client.get("/calls", params=params)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise TelephonyError(f"Failed to fetch telephony calls: {exc}") from exc

        records = list(response.json().get("call_list") or [])
        logger.info("Fetched %d calls from telephony provider", len(records))
        return records

    async def fetch_transcription(self, call_id: str) -> list[RawSegment] | None:
        """Return the provider's transcript for a call; lookup failures yield None."""

        async with self._client() as client:
            await self._throttle()
            try:
                response = await client.get(f"/empower/call/{call_id}")
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("Failed to fetch transcript for telephony call %s: %s", call_id, exc)
                return None

        segments = parse_transcription(response.json())
        return segments or None

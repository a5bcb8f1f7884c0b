"""HubSpot-style CRM client for pulling completed calls."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from ..core.config import settings

CALL_PROPERTIES = [
    "hs_call_body",
    "hs_call_callee_object_id",
    "hs_call_disposition",
    "hs_call_duration",
    "hs_call_recording_url",
    "hs_call_status",
    "hs_call_title",
    "hs_call_to_number",
    "hs_timestamp",
    "hubspot_owner_id",
    "hs_call_transcript",
]
PAGE_SIZE = 100
REQUEST_TIMEOUT_SECONDS = 30.0

logger = logging.getLogger(__name__)


class CrmError(RuntimeError):
    """Raised when the CRM API is unreachable or misconfigured."""


@dataclass
class CrmCall:
    id: str
    call_date: datetime
    duration_seconds: int | None
    disposition: str | None
    recording_url: str | None
    transcript_text: str
    contact_id: str | None
    to_number: str | None
    owner_id: str | None


@dataclass
class CrmContact:
    name: str
    phone: str | None


def parse_timestamp(value: Any) -> datetime:
    """Accept epoch milliseconds or ISO-8601; missing values mean now."""

    if value in (None, ""):
        return datetime.now(timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_duration(value: Any) -> int | None:
    """HubSpot reports ``hs_call_duration`` in milliseconds."""

    if value in (None, ""):
        return None
    try:
        return int(float(value) / 1000)
    except (TypeError, ValueError):
        return None


def parse_call(record: dict[str, Any]) -> CrmCall:
    """Convert one raw search result; malformed properties raise ValueError."""

    props = record.get("properties") or {}
    return CrmCall(
        id=str(record["id"]),
        call_date=parse_timestamp(props.get("hs_timestamp")),
        duration_seconds=parse_duration(props.get("hs_call_duration")),
        disposition=props.get("hs_call_disposition") or None,
        recording_url=props.get("hs_call_recording_url") or None,
        transcript_text=props.get("hs_call_transcript") or props.get("hs_call_body") or "",
        contact_id=props.get("hs_call_callee_object_id") or None,
        to_number=props.get("hs_call_to_number") or None,
        owner_id=props.get("hubspot_owner_id") or None,
    )


class CrmClient:
    """Minimal async client over the CRM search and objects APIs."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.crm_api_base_url).rstrip("/")
        self._token = access_token if access_token is not None else settings.crm_access_token
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self._token:
            raise CrmError("CRM access token is not configured")
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def fetch_call_records(self, since: datetime | None = None) -> list[dict[str, Any]]:
        """Return raw completed-call records, oldest first, following ``after`` cursors.

        Records are left unparsed so one malformed call cannot fail the whole page;
        convert each with :func:`parse_call`.
        """

        filters: list[dict[str, str]] = [
            {"propertyName": "hs_call_status", "operator": "EQ", "value": "COMPLETED"}
        ]
        if since is not None:
            filters.insert(
                0,
                {"propertyName": "hs_timestamp", "operator": "GTE", "value": str(int(since.timestamp() * 1000))},
            )

        records: list[dict[str, Any]] = []
        after: str | None = None
        async with self._client() as client:
            while True:
                body: dict[str, Any] = {
                    "filterGroups": [{"filters": filters}],
                    "properties": CALL_PROPERTIES,
                    "sorts": ["hs_timestamp"],
                    "limit": PAGE_SIZE,
                }
                if after:
                    body["after"] = after
                try:
                    response = await client.post("/crm/v3/objects/calls/search", json=body)
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    raise CrmError(f"Failed to fetch CRM calls: {exc}") from exc

                payload = response.json()
                records.extend(payload.get("results") or [])
                after = ((payload.get("paging") or {}).get("next") or {}).get("after")
                if not after:
                    break

        logger.info("Fetched %d calls from CRM", len(records))
        return records

    async def fetch_contact(self, contact_id: str) -> CrmContact | None:
        """Return contact name and phone; lookup failures yield None."""

        async with self._client() as client:
            try:
                response = await client.get(
                    f"/crm/v3/objects/contacts/{contact_id}",
                    params={"properties": "firstname,lastname,phone"},
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("Failed to fetch CRM contact %s: %s", contact_id, exc)
                return None

        props = response.json().get("properties") or {}
        name = f"{props.get('firstname') or ''} {props.get('lastname') or ''}".strip() or "Unknown"
        return CrmContact(name=name, phone=props.get("phone") or None)

"""Cross-source duplicate detection for incoming calls.

The same conversation can reach us through the CRM sync and the telephony webhook.
Two records are the same call when the last ten digits of the contact phone agree,
the call dates are within the window and, if both carry one, the durations are
within the tolerance. Records from the same source are never compared here; that
is covered by the ``(source, external_id)`` uniqueness check.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..models.call import CallSource
from ..repositories import calls as calls_repo

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 7
MATCH_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    existing_call_id: str | None = None


NOT_DUPLICATE = DuplicateCheck(is_duplicate=False)


@dataclass(frozen=True)
class CallFingerprint:
    """The fields the duplicate predicate looks at."""

    phone: str | None
    call_date: datetime
    duration_seconds: int | None = None
    source: CallSource | None = None


def normalize_phone(phone: str | None) -> str:
    """Strip everything but digits."""

    if not phone:
        return ""
    return _NON_DIGITS.sub("", phone)


def is_matchable(phone: str | None) -> bool:
    return len(normalize_phone(phone)) >= MIN_PHONE_DIGITS


def phones_match(first: str | None, second: str | None) -> bool:
    """Compare the last ten digits of two phone numbers."""

    left = normalize_phone(first)[-MATCH_DIGITS:]
    right = normalize_phone(second)[-MATCH_DIGITS:]
    return bool(left) and left == right and len(left) >= MIN_PHONE_DIGITS


def _ensure_tz(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_same_conversation(
    first: CallFingerprint,
    second: CallFingerprint,
    *,
    window: timedelta | None = None,
    duration_tolerance: int | None = None,
) -> bool:
    """Symmetric duplicate predicate over two call fingerprints."""

    window = window if window is not None else timedelta(minutes=settings.dedup_window_minutes)
    tolerance = duration_tolerance if duration_tolerance is not None else settings.dedup_duration_tolerance_seconds

    if first.source is not None and first.source == second.source:
        return False
    if not phones_match(first.phone, second.phone):
        return False
    if abs(_ensure_tz(first.call_date) - _ensure_tz(second.call_date)) > window:
        return False
    if first.duration_seconds is not None and second.duration_seconds is not None:
        if abs(first.duration_seconds - second.duration_seconds) > tolerance:
            return False
    return True


async def find_duplicate(
    session: AsyncSession,
    *,
    phone: str | None,
    call_date: datetime,
    exclude_source: CallSource,
    duration_seconds: int | None = None,
) -> DuplicateCheck:
    """Return the first stored call from another source that matches the candidate."""

    if not is_matchable(phone):
        return NOT_DUPLICATE

    window = timedelta(minutes=settings.dedup_window_minutes)
    call_date = _ensure_tz(call_date)
    candidates = await calls_repo.list_in_window(
        session,
        window_start=call_date - window,
        window_end=call_date + window,
        exclude_source=exclude_source,
    )

    incoming = CallFingerprint(
        phone=phone, call_date=call_date, duration_seconds=duration_seconds, source=exclude_source
    )
    for existing in candidates:
        stored = CallFingerprint(
            phone=existing.contact_phone,
            call_date=existing.call_date,
            duration_seconds=existing.duration_seconds,
            source=existing.source,
        )
        if is_same_conversation(incoming, stored, window=window):
            logger.info(
                "Duplicate call detected: existing=%s source=%s incoming_source=%s",
                existing.id,
                existing.source.value if existing.source else None,
                exclude_source.value,
            )
            return DuplicateCheck(is_duplicate=True, existing_call_id=existing.id)

    return NOT_DUPLICATE

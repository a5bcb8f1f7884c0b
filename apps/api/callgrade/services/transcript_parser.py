"""Parsers for vendor transcript exports and CRM transcript text."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..core.errors import ParseError
from ..schemas.transcript import RawSegment, Speaker, TranscriptSegment

TAIL_PADDING_SECONDS = 5.0
CRM_LINE_SECONDS = 10.0

TIMESTAMP_LINE = re.compile(r"^(?:(\d+)\s*m(?:in)?\s*)?(\d+)\s*s\s*-\s*(.+)$", re.IGNORECASE)
LEGACY_LINE = re.compile(r'^(\d{2}):(\d{2})\s*-\s*([^-]+?)\s*-\s*"(.+)"$')
TRANSCRIPTION_MARKER = re.compile(r"^transcript(ion)?\b", re.IGNORECASE)
MAIN_AGENT_LINE = re.compile(r"^main agent:\s*(.+)$", re.IGNORECASE)
EXTERNAL_USER_LINE = re.compile(r"^external user:\s*(.+)$", re.IGNORECASE)
TOTAL_TIME_LINE = re.compile(r"^total time:\s*(?:(\d+)\s*min\s*)?(?:(\d+)\s*s)?", re.IGNORECASE)
PARTIES_LINE = re.compile(r"^(.+?)\s+-\s+(.+)$")
HEADER_PREFIXES = ("main agent:", "external user:", "start time:", "total time:")
PHONE_LIKE = re.compile(r"^\+?\d[\d\s-]{6,}$")
EXPORT_FILENAME = re.compile(r"log_call_export_(\d{4}-\d{2}-\d{2}T[\d_]+\.\d+Z)_(\d+)_([A-Z]{2})\.")

CRM_TIMESTAMP = re.compile(r"[\[(]?(\d{1,2}):(\d{2})[\])]?\s*")
CRM_SPEAKER = re.compile(
    r"^(Agent|Rep|Sales|Salesperson|Caller|Customer|Prospect|Client|Contact|User|Speaker\s*[A-Z0-9]?|Person\s*[0-9]?)[\s:]+",
    re.IGNORECASE,
)
CRM_REP_LABELS = ("agent", "rep", "sales", "salesperson", "caller")
CRM_PROSPECT_LABELS = ("customer", "prospect", "client", "contact", "user")


@dataclass
class ExportHeader:
    account_holder: str | None = None
    other_party: str | None = None
    parties: tuple[str, str] | None = None
    total_seconds: int | None = None


@dataclass
class ParsedTranscript:
    segments: list[TranscriptSegment]
    rep_name: str | None
    prospect_identifier: str | None
    duration: float
    header: ExportHeader = field(default_factory=ExportHeader)


@dataclass(frozen=True)
class ExportFileInfo:
    export_date: datetime | None
    call_id: str | None
    language: str | None


@dataclass
class _Entry:
    seconds: int
    speaker: str
    lines: list[str] = field(default_factory=list)


def _match_timestamp(line: str) -> tuple[int, str] | None:
    match = TIMESTAMP_LINE.match(line)
    if not match:
        return None
    minutes, seconds, name = match.groups()
    return int(minutes or 0) * 60 + int(seconds), name.strip()


def _is_phone_like(value: str) -> bool:
    return bool(PHONE_LIKE.match(value.replace(" ", "")))


def _parse_header(lines: list[str]) -> ExportHeader:
    header = ExportHeader()
    for line in lines:
        if match := MAIN_AGENT_LINE.match(line):
            header.account_holder = match.group(1).strip()
        elif match := EXTERNAL_USER_LINE.match(line):
            header.other_party = match.group(1).strip()
        elif match := TOTAL_TIME_LINE.match(line):
            minutes, seconds = match.groups()
            if minutes or seconds:
                header.total_seconds = int(minutes or 0) * 60 + int(seconds or 0)
        elif header.parties is None and ":" not in line:
            if parties := PARTIES_LINE.match(line):
                header.parties = (parties.group(1).strip(), parties.group(2).strip())
    return header


def _collect_entries(lines: list[str]) -> list[_Entry]:
    entries: list[_Entry] = []
    current: _Entry | None = None
    for line in lines:
        stamp = _match_timestamp(line)
        if stamp is not None:
            if current is not None and current.lines:
                entries.append(current)
            current = _Entry(seconds=stamp[0], speaker=stamp[1])
        elif current is not None and not line.lower().startswith(HEADER_PREFIXES):
            current.lines.append(line)
    if current is not None and current.lines:
        entries.append(current)
    return entries


def _collect_legacy_entries(lines: list[str]) -> list[_Entry]:
    entries: list[_Entry] = []
    for line in lines:
        match = LEGACY_LINE.match(line)
        if match:
            minutes, seconds, speaker, text = match.groups()
            entries.append(_Entry(seconds=int(minutes) * 60 + int(seconds), speaker=speaker.strip(), lines=[text.strip()]))
    return entries


def _resolve_roles(entries: list[_Entry], header: ExportHeader) -> tuple[str | None, str | None]:
    speakers = list(dict.fromkeys(entry.speaker for entry in entries))

    holder = header.account_holder
    if holder and holder in speakers:
        others = [speaker for speaker in speakers if speaker != holder]
        return holder, others[0] if others else header.other_party

    rep_name: str | None = None
    prospect: str | None = None
    for speaker in speakers:
        if _is_phone_like(speaker):
            prospect = speaker
        elif rep_name is None:
            rep_name = speaker
        else:
            prospect = speaker

    if len(speakers) >= 2 and (rep_name is None or prospect is None):
        counts = {speaker: sum(1 for entry in entries if entry.speaker == speaker) for speaker in speakers}
        ranked = sorted(speakers, key=lambda speaker: counts[speaker], reverse=True)
        if rep_name is None:
            rep_name = ranked[0]
        if prospect is None:
            prospect = next((speaker for speaker in ranked if speaker != rep_name), None)
    return rep_name, prospect


def parse_vendor_export(content: str) -> ParsedTranscript:
    """Parse a telephony vendor call-log export into labeled segments.

    The export starts with a header naming both parties (``Main agent:`` marks the
    account holder) followed by ``<offset> - <name>`` lines, each followed by the
    spoken text. Raises ``ParseError`` when nothing transcript-shaped is found.
    """

    lines = [line.strip() for line in content.strip().splitlines()]

    entries = _collect_legacy_entries(lines)
    header = ExportHeader()
    if not entries:
        first_stamp = next((index for index, line in enumerate(lines) if _match_timestamp(line)), None)
        header_end = first_stamp if first_stamp is not None else len(lines)
        marker = next(
            (index for index, line in enumerate(lines[:header_end]) if TRANSCRIPTION_MARKER.match(line)), None
        )
        start = marker + 1 if marker is not None else first_stamp
        if start is None:
            raise ParseError("No valid transcript lines found. Check the file format.")
        header = _parse_header([line for line in lines[:start] if line])
        entries = _collect_entries([line for line in lines[start:] if line])

    if not entries:
        raise ParseError("Transcript block contained no speaker segments.")

    rep_name, prospect = _resolve_roles(entries, header)

    segments: list[TranscriptSegment] = []
    for index, entry in enumerate(entries):
        start_time = float(entry.seconds)
        if index + 1 < len(entries):
            end_time = float(entries[index + 1].seconds)
        else:
            end_time = start_time + TAIL_PADDING_SECONDS
        segments.append(
            TranscriptSegment(
                speaker=Speaker.REP if entry.speaker == rep_name else Speaker.PROSPECT,
                text=" ".join(entry.lines),
                start_time=start_time,
                end_time=end_time,
            )
        )

    return ParsedTranscript(
        segments=segments,
        rep_name=rep_name,
        prospect_identifier=prospect,
        duration=segments[-1].end_time,
        header=header,
    )


def parse_export_filename(filename: str) -> ExportFileInfo:
    """Extract export date, vendor call id and language from an export filename."""

    match = EXPORT_FILENAME.search(filename or "")
    if not match:
        return ExportFileInfo(export_date=None, call_id=None, language=None)

    raw_date, call_id, language = match.groups()
    date_part, _, time_part = raw_date.partition("T")
    clock, _, fraction = time_part.rstrip("Z").partition(".")
    try:
        export_date = datetime.fromisoformat(f"{date_part}T{clock.replace('_', ':')}.{fraction}").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        export_date = None
    return ExportFileInfo(export_date=export_date, call_id=call_id, language=language)


def _crm_role(label: str) -> Speaker | None:
    lowered = label.lower()
    if any(lowered.startswith(candidate) for candidate in CRM_REP_LABELS):
        return Speaker.REP
    if any(lowered.startswith(candidate) for candidate in CRM_PROSPECT_LABELS):
        return Speaker.PROSPECT
    return None


def parse_crm_transcript(text: str) -> list[RawSegment]:
    """Split CRM free-text transcripts into timed segments.

    Lines labeled ``Agent:``/``Customer:`` and similar carry the role directly as
    the speaker tag (``rep``/``prospect``); generic labels such as ``Speaker A``
    are kept as vendor tags, and unlabeled lines carry no tag at all.
    """

    segments: list[RawSegment] = []
    current_time = 0.0
    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue

        stamp = CRM_TIMESTAMP.match(line)
        if stamp:
            current_time = float(int(stamp.group(1)) * 60 + int(stamp.group(2)))
            line = line[stamp.end():]

        tag: str | None = None
        label = CRM_SPEAKER.match(line)
        if label:
            role = _crm_role(label.group(1))
            tag = role.value if role is not None else re.sub(r"\s+", " ", label.group(1).strip().lower())
            line = line[label.end():]

        body = line.strip()
        if body:
            segments.append(RawSegment(start=current_time, end=current_time + CRM_LINE_SECONDS, text=body, speaker=tag))
            current_time += CRM_LINE_SECONDS
    return segments

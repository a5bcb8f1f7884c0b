"""Speaker attribution heuristics for rep/prospect labeling.

Input is labeled one of three ways:

* role-tagged input (a CRM transcript already says who is the rep): trust the tags;
* diarized input (the speech API tagged 2+ speakers): aggregate per-speaker metrics
  and map the best-scoring tag to ``rep``;
* flat input (no speaker tags): classify every segment on its own content and fall
  back to alternating turns when the evidence is tied.

Every function here is pure. Nothing raises on odd input; the worst case is a
best-effort labeling.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ..schemas.transcript import RawSegment, Speaker, TranscriptSegment

logger = logging.getLogger(__name__)

STRONG = 5
MODERATE = 2

FIRST_SPEAKER_BONUS = 3.0
QUESTION_RATIO_PENALTY = 10.0
LONG_UTTERANCE_SECONDS = 10.0
LONG_UTTERANCE_BONUS = 2.0
TALK_TIME_DOMINANCE = 1.3
TALK_TIME_BONUS = 5.0

SEGMENT_RULE_WEIGHT = 2
TRAILING_QUESTION_WEIGHT = 1
ACKNOWLEDGEMENT_WEIGHT = 1
ACKNOWLEDGEMENT_MAX_CHARS = 20

MERGE_GAP_SECONDS = 2.0

ROLE_TAGS = frozenset(role.value for role in Speaker)


@dataclass(frozen=True)
class PhraseRule:
    """A weighted phrase pattern voting for one role."""

    pattern: re.Pattern[str]
    weight: int
    role: Speaker

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None

    @property
    def signed_weight(self) -> int:
        return self.weight if self.role is Speaker.REP else -self.weight


def _rule(expression: str, weight: int, role: Speaker) -> PhraseRule:
    return PhraseRule(pattern=re.compile(expression, re.IGNORECASE), weight=weight, role=role)


DIARIZED_RULES: tuple[PhraseRule, ...] = (
    # self-introduction and company-offer language
    _rule(r"\b(my name is|i'm .* (from|with|at)|this is .* (from|calling))", STRONG, Speaker.REP),
    _rule(r"\b(calling (from|on behalf|about|regarding))", STRONG, Speaker.REP),
    _rule(r"\b(our (company|service|program|product|team|solution))", STRONG, Speaker.REP),
    _rule(r"\b(we (offer|provide|specialize|help|work with))", STRONG, Speaker.REP),
    _rule(r"\b(let me (tell|explain|share|walk you through|show))", STRONG, Speaker.REP),
    # pricing, enrollment and affirmation language
    _rule(r"\b(payment (plan|option)|pricing|investment|cost is|that's \$)", MODERATE, Speaker.REP),
    _rule(r"\b(sign up|get started|enroll|register|book|schedule)", MODERATE, Speaker.REP),
    _rule(r"\b(guarantee|no risk|money back|free trial)", MODERATE, Speaker.REP),
    _rule(r"\b(what (works|brings you|made you|are you looking))", MODERATE, Speaker.REP),
    _rule(r"\b(i (understand|hear|appreciate|see what you mean))", MODERATE, Speaker.REP),
    _rule(r"\b(great question|absolutely|definitely|exactly)", MODERATE, Speaker.REP),
    _rule(r"\b(the (benefit|advantage|difference|reason))", MODERATE, Speaker.REP),
    _rule(r"\b(how does that sound|does that make sense|any questions)", MODERATE, Speaker.REP),
    # dependents, deferral and hedging
    _rule(r"\b(my (son|daughter|child|kid|husband|wife|spouse)('s)?)", STRONG, Speaker.PROSPECT),
    _rule(r"\b(i('m| am) (not sure|thinking|considering|looking))", STRONG, Speaker.PROSPECT),
    _rule(r"\b(let me (think|talk to|check with|discuss))", STRONG, Speaker.PROSPECT),
    _rule(r"\b(i('ll| will) (need to|have to|get back))", STRONG, Speaker.PROSPECT),
    _rule(r"\b(we('ll| will)? (think about|consider|discuss))", STRONG, Speaker.PROSPECT),
    # price shock and open questions
    _rule(r"\b(how much|what's the (price|cost)|can i afford)", MODERATE, Speaker.PROSPECT),
    _rule(r"\b(what (is|are|does|do you)|how (does|do|long|often))", MODERATE, Speaker.PROSPECT),
    _rule(r"\b(can you (explain|tell me|send me))", MODERATE, Speaker.PROSPECT),
    _rule(r"\b(i('m| am) (worried|concerned|hesitant|unsure))", MODERATE, Speaker.PROSPECT),
    _rule(r"\b(that's (expensive|a lot|too much))", MODERATE, Speaker.PROSPECT),
    _rule(r"\b(i don't (know|think|have))", MODERATE, Speaker.PROSPECT),
    _rule(r"\b(maybe|perhaps|possibly|i guess)", MODERATE, Speaker.PROSPECT),
    _rule(r"\b(we('re| are)? (busy|not sure|undecided))", MODERATE, Speaker.PROSPECT),
)

SEGMENT_RULES: tuple[PhraseRule, ...] = (
    _rule(r"\b(my name is|i'm .* (from|with|calling))", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(our (company|service|program|product|team))", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(we (offer|provide|specialize|help|can))", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(let me (explain|tell|share|walk|show))", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(payment|pricing|sign up|enroll|schedule|appointment)", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(great question|absolutely|definitely|exactly right)", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(i('d| would) (love|like) to|can i ask)", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(thanks for (taking|your)|appreciate your time)", SEGMENT_RULE_WEIGHT, Speaker.REP),
    _rule(r"\b(my (son|daughter|child|kid|husband|wife|mother|father))", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
    _rule(r"\b(how much|what's the (cost|price)|can i afford)", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
    _rule(r"\b(let me (think|talk to|check|ask))", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
    _rule(r"\b(i('m| am) (not sure|interested|thinking|considering|busy))", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
    _rule(r"\b(what (is|are|does)|how (does|do|long|often))\b.*\?", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
    _rule(r"\b(who (is|are) (this|you|calling))", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
    _rule(r"\b(send me|email me|call me back)", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
    _rule(r"\b(i (already|don't|can't|won't))", SEGMENT_RULE_WEIGHT, Speaker.PROSPECT),
)

QUESTION_PATTERN = re.compile(
    r"\?|^(what|how|when|where|why|who|which|can|could|would|is|are|do|does|will|have|has)\b",
    re.IGNORECASE,
)
ACKNOWLEDGEMENT_PATTERN = re.compile(r"^(okay|yes|yeah|uh|um|right|sure|no|hmm)", re.IGNORECASE)


def rule_score(text: str, rules: Iterable[PhraseRule]) -> int:
    """Return the signed phrase score of ``text`` (positive leans rep)."""

    return sum(rule.signed_weight for rule in rules if rule.matches(text))


@dataclass
class SpeakerMetrics:
    talk_time: float = 0.0
    utterances: int = 0
    questions: int = 0
    pattern_score: float = 0.0
    spoke_first: bool = False

    @property
    def question_ratio(self) -> float:
        return self.questions / self.utterances if self.utterances else 0.0

    @property
    def avg_utterance_seconds(self) -> float:
        return self.talk_time / self.utterances if self.utterances else 0.0


@dataclass(frozen=True)
class Attribution:
    """Labeled segments plus the internal scores behind them.

    ``segment_margins`` runs parallel to ``segments``: the rep-minus-prospect
    phrase margin for content-classified lines, ``None`` for lines whose role came
    from a tag. Merged segments carry the sum of their parts.
    """

    segments: list[TranscriptSegment]
    diarized: bool
    roles: dict[str, Speaker] = field(default_factory=dict)
    speaker_scores: dict[str, float] = field(default_factory=dict)
    segment_margins: list[int | None] = field(default_factory=list)


def first_tag(segments: Sequence[RawSegment]) -> str | None:
    return next((segment.speaker for segment in segments if segment.speaker is not None), None)


def collect_speaker_metrics(
    segments: Sequence[RawSegment],
    first_speaker: str | None = None,
) -> dict[str, SpeakerMetrics]:
    """Aggregate talk time, questions and phrase evidence per vendor speaker tag.

    The first-speaker bonus goes to ``first_speaker``, or by default to the first
    tagged segment; untagged lines before it do not take the bonus away.
    """

    if first_speaker is None:
        first_speaker = first_tag(segments)
    metrics: dict[str, SpeakerMetrics] = {}
    for segment in segments:
        if segment.speaker is None:
            continue
        entry = metrics.setdefault(segment.speaker, SpeakerMetrics())
        text = segment.text.strip()
        entry.talk_time += max(0.0, segment.end - segment.start)
        entry.utterances += 1
        if segment.speaker == first_speaker:
            entry.spoke_first = True
        if QUESTION_PATTERN.search(text):
            entry.questions += 1
        entry.pattern_score += rule_score(text, DIARIZED_RULES)
    return metrics


def score_speakers(metrics: dict[str, SpeakerMetrics]) -> dict[str, float]:
    """Combine per-speaker metrics into a single rep-likelihood score."""

    scores: dict[str, float] = {}
    for speaker, entry in metrics.items():
        score = entry.pattern_score
        if entry.spoke_first:
            score += FIRST_SPEAKER_BONUS
        score -= entry.question_ratio * QUESTION_RATIO_PENALTY
        if entry.avg_utterance_seconds > LONG_UTTERANCE_SECONDS:
            score += LONG_UTTERANCE_BONUS
        scores[speaker] = score

    if len(metrics) >= 2:
        by_talk_time = sorted(metrics.items(), key=lambda item: item[1].talk_time, reverse=True)
        (leader, leader_metrics), (_, runner_up) = by_talk_time[0], by_talk_time[1]
        if leader_metrics.talk_time > runner_up.talk_time * TALK_TIME_DOMINANCE:
            scores[leader] += TALK_TIME_BONUS
    return scores


def assign_roles(scores: dict[str, float]) -> dict[str, Speaker]:
    """Map the top-scoring speaker to rep and every other speaker to prospect."""

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    roles: dict[str, Speaker] = {}
    for position, (speaker, _) in enumerate(ranked):
        roles[speaker] = Speaker.REP if position == 0 else Speaker.PROSPECT
    return roles


def label_diarized(segments: Sequence[RawSegment]) -> Attribution:
    """Label vendor-diarized segments by mapping speaker tags to roles."""

    metrics = collect_speaker_metrics(segments)
    scores = score_speakers(metrics)
    roles = assign_roles(scores)
    labeled = [
        TranscriptSegment(
            speaker=roles.get(segment.speaker or "", Speaker.PROSPECT),
            text=segment.text.strip(),
            start_time=segment.start,
            end_time=segment.end,
        )
        for segment in segments
    ]
    return Attribution(
        segments=labeled,
        diarized=True,
        roles=roles,
        speaker_scores=scores,
        segment_margins=[None] * len(labeled),
    )


def classify_segment(text: str, previous: Speaker) -> tuple[Speaker, int]:
    """Classify one untagged utterance, returning the role and its score margin."""

    rep_score = 0
    prospect_score = 0
    for rule in SEGMENT_RULES:
        if rule.matches(text):
            if rule.role is Speaker.REP:
                rep_score += rule.weight
            else:
                prospect_score += rule.weight

    if text.endswith("?"):
        prospect_score += TRAILING_QUESTION_WEIGHT
    if len(text) < ACKNOWLEDGEMENT_MAX_CHARS and ACKNOWLEDGEMENT_PATTERN.match(text):
        prospect_score += ACKNOWLEDGEMENT_WEIGHT

    margin = rep_score - prospect_score
    if margin > 0:
        return Speaker.REP, margin
    if margin < 0:
        return Speaker.PROSPECT, margin
    return previous.other, margin


def label_undiarized(segments: Sequence[RawSegment]) -> Attribution:
    """Label untagged segments one by one from their content."""

    previous = Speaker.REP  # calls are assumed to be rep-initiated
    labeled: list[TranscriptSegment] = []
    margins: list[int | None] = []
    for segment in segments:
        text = segment.text.strip()
        speaker, margin = classify_segment(text, previous)
        labeled.append(
            TranscriptSegment(speaker=speaker, text=text, start_time=segment.start, end_time=segment.end)
        )
        margins.append(margin)
        previous = speaker
    return Attribution(segments=labeled, diarized=False, segment_margins=margins)


def _add_margins(left: int | None, right: int | None) -> int | None:
    if left is None:
        return right
    if right is None:
        return left
    return left + right


def _merge(
    segments: Sequence[TranscriptSegment],
    margins: Sequence[int | None],
    max_gap: float,
) -> tuple[list[TranscriptSegment], list[int | None]]:
    merged: list[TranscriptSegment] = []
    merged_margins: list[int | None] = []
    for segment, margin in zip(segments, margins):
        if merged:
            current = merged[-1]
            if segment.speaker is current.speaker and segment.start_time - current.end_time <= max_gap:
                merged[-1] = current.model_copy(
                    update={"text": f"{current.text} {segment.text}", "end_time": segment.end_time}
                )
                merged_margins[-1] = _add_margins(merged_margins[-1], margin)
                continue
        merged.append(segment.model_copy())
        merged_margins.append(margin)
    return merged, merged_margins


def merge_consecutive(
    segments: Sequence[TranscriptSegment],
    max_gap: float = MERGE_GAP_SECONDS,
) -> list[TranscriptSegment]:
    """Merge adjacent same-speaker segments separated by at most ``max_gap`` seconds."""

    merged, _ = _merge(segments, [None] * len(segments), max_gap)
    return merged


def label_role_tagged(segments: Sequence[RawSegment]) -> Attribution:
    """Label segments whose tags may already name a role (``rep``/``prospect``).

    Role tags are trusted as-is, other vendor tags are ranked with the diarized
    heuristic and untagged lines are classified on content.
    """

    vendor_tagged = [
        segment for segment in segments if segment.speaker is not None and segment.speaker not in ROLE_TAGS
    ]
    # A role-tagged opener means no vendor speaker spoke first.
    metrics = collect_speaker_metrics(vendor_tagged, first_speaker=first_tag(segments))
    scores = score_speakers(metrics) if vendor_tagged else {}
    roles = assign_roles(scores)

    previous = Speaker.REP
    labeled: list[TranscriptSegment] = []
    margins: list[int | None] = []
    for segment in segments:
        text = segment.text.strip()
        margin: int | None = None
        if segment.speaker in ROLE_TAGS:
            speaker = Speaker(segment.speaker)
        elif segment.speaker is not None:
            speaker = roles.get(segment.speaker, Speaker.PROSPECT)
        else:
            speaker, margin = classify_segment(text, previous)
        labeled.append(
            TranscriptSegment(speaker=speaker, text=text, start_time=segment.start, end_time=segment.end)
        )
        margins.append(margin)
        previous = speaker
    return Attribution(
        segments=labeled,
        diarized=bool(roles),
        roles=roles,
        speaker_scores=scores,
        segment_margins=margins,
    )


def is_diarized(segments: Sequence[RawSegment]) -> bool:
    tags = {segment.speaker for segment in segments if segment.speaker is not None}
    return len(tags) >= 2


def has_role_tags(segments: Sequence[RawSegment]) -> bool:
    return any(segment.speaker in ROLE_TAGS for segment in segments)


def attribute(segments: Sequence[RawSegment], *, merge: bool = True) -> Attribution:
    """Label raw transcription segments with rep/prospect roles.

    Diarized input (two or more vendor speaker tags) uses the aggregate heuristic;
    anything else falls back to per-segment content classification. Blank segments
    are dropped and adjacent same-speaker segments are merged afterwards.
    """

    usable = [segment for segment in segments if segment.text.strip()]
    if not usable:
        return Attribution(segments=[], diarized=False)

    if has_role_tags(usable):
        result = label_role_tagged(usable)
    elif is_diarized(usable):
        result = label_diarized(usable)
    else:
        result = label_undiarized(usable)
    if result.speaker_scores:
        logger.debug("Speaker attribution scores: %s -> %s", result.speaker_scores, result.roles)
    if not merge:
        return result
    merged, margins = _merge(result.segments, result.segment_margins, MERGE_GAP_SECONDS)
    return Attribution(
        segments=merged,
        diarized=result.diarized,
        roles=result.roles,
        speaker_scores=result.speaker_scores,
        segment_margins=margins,
    )


def swap_speakers(segments: Sequence[TranscriptSegment]) -> list[TranscriptSegment]:
    """Flip every segment's role."""

    return [segment.model_copy(update={"speaker": segment.speaker.other}) for segment in segments]

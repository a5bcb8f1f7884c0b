"""Tests for rep/prospect speaker attribution."""
from __future__ import annotations

from callgrade.schemas.transcript import RawSegment, Speaker, TranscriptSegment
from callgrade.services import attribution


def seg(start: float, end: float, text: str, speaker: str | None = None) -> RawSegment:
    return RawSegment(start=start, end=end, text=text, speaker=speaker)


def test_phrase_tables_score_in_isolation() -> None:
    assert attribution.rule_score("My name is Dana and I'm calling from Acme", attribution.DIARIZED_RULES) == 10
    assert attribution.rule_score("How much is it? I'm not sure.", attribution.DIARIZED_RULES) == -7


def test_diarized_rep_does_not_have_to_speak_first() -> None:
    segments = [
        seg(0, 2, "Hello?", "1"),
        seg(2, 14, "Hi, my name is Dana, I'm calling from Bright Tutors. Let me explain our program.", "0"),
        seg(14, 16, "Who is this?", "1"),
    ]

    result = attribution.attribute(segments)

    assert result.diarized is True
    assert result.roles == {"0": Speaker.REP, "1": Speaker.PROSPECT}
    assert [segment.speaker for segment in result.segments] == [Speaker.PROSPECT, Speaker.REP, Speaker.PROSPECT]
    assert result.speaker_scores["0"] > result.speaker_scores["1"]


def test_diarized_output_is_one_to_one_without_merge() -> None:
    segments = [
        seg(0, 3, "Hi, this is Dana calling from Acme.", "A"),
        seg(3, 4, "We offer tutoring.", "A"),
        seg(4, 6, "Okay.", "B"),
    ]

    result = attribution.attribute(segments, merge=False)

    assert len(result.segments) == 3
    assert [segment.text for segment in result.segments] == [segment.text for segment in segments]


def test_single_speaker_tag_uses_content_classification() -> None:
    segments = [
        seg(0, 3, "Let me explain our program.", "0"),
        seg(3, 5, "How much does it cost?", "0"),
    ]

    result = attribution.attribute(segments)

    assert result.diarized is False
    assert [segment.speaker for segment in result.segments] == [Speaker.REP, Speaker.PROSPECT]


def test_classify_segment_scores_and_ties() -> None:
    assert attribution.classify_segment("How much does it cost?", Speaker.REP) == (Speaker.PROSPECT, -3)
    assert attribution.classify_segment("Let me explain how our program works", Speaker.PROSPECT) == (Speaker.REP, 4)
    assert attribution.classify_segment("Sounds good", Speaker.REP) == (Speaker.PROSPECT, 0)
    assert attribution.classify_segment("Sounds good", Speaker.PROSPECT) == (Speaker.REP, 0)


def test_undiarized_ties_alternate_from_an_assumed_rep_opening() -> None:
    segments = [seg(0, 2, "Good afternoon"), seg(5, 7, "Hello there"), seg(10, 12, "Nice weather")]

    result = attribution.attribute(segments)

    assert [segment.speaker for segment in result.segments] == [Speaker.PROSPECT, Speaker.REP, Speaker.PROSPECT]


def test_role_tags_are_trusted_and_untagged_lines_classified() -> None:
    segments = [
        seg(0, 10, "Hi Dana.", "prospect"),
        seg(10, 20, "Hello, I wanted to follow up.", "rep"),
        seg(20, 30, "Thanks for your time today."),
    ]

    result = attribution.attribute(segments, merge=False)

    assert [segment.speaker for segment in result.segments] == [Speaker.PROSPECT, Speaker.REP, Speaker.REP]


def test_blank_segments_are_dropped() -> None:
    result = attribution.attribute([seg(0, 1, "  "), seg(1, 2, "")])

    assert result.segments == []


def test_merge_consecutive_respects_gap() -> None:
    segments = [
        TranscriptSegment(speaker=Speaker.REP, text="First.", start_time=0, end_time=2),
        TranscriptSegment(speaker=Speaker.REP, text="Second.", start_time=3, end_time=5),
        TranscriptSegment(speaker=Speaker.REP, text="Much later.", start_time=9, end_time=10),
        TranscriptSegment(speaker=Speaker.PROSPECT, text="Reply.", start_time=10, end_time=11),
    ]

    merged = attribution.merge_consecutive(segments)

    assert [(segment.speaker, segment.text) for segment in merged] == [
        (Speaker.REP, "First. Second."),
        (Speaker.REP, "Much later."),
        (Speaker.PROSPECT, "Reply."),
    ]
    assert merged[0].end_time == 5


def test_swap_speakers_flips_every_segment() -> None:
    segments = [
        TranscriptSegment(speaker=Speaker.REP, text="a", start_time=0, end_time=1),
        TranscriptSegment(speaker=Speaker.PROSPECT, text="b", start_time=1, end_time=2),
    ]

    swapped = attribution.swap_speakers(segments)

    assert [segment.speaker for segment in swapped] == [Speaker.PROSPECT, Speaker.REP]
    assert segments[0].speaker is Speaker.REP


def test_attribute_empty_input_returns_no_segments() -> None:
    result = attribution.attribute([])

    assert result.segments == []
    assert result.segment_margins == []
    assert result.diarized is False


def test_attribution_is_deterministic() -> None:
    segments = [
        seg(0, 4, "Hi, this is Dana calling from Bright Tutors."),
        seg(4, 6, "Okay, who is this?"),
        seg(6, 12, "Let me explain how our program works."),
        seg(12, 14, "Sounds good"),
    ]

    first = attribution.attribute(segments)
    second = attribution.attribute(segments)

    assert [(s.speaker, s.text) for s in first.segments] == [(s.speaker, s.text) for s in second.segments]
    assert first.segment_margins == second.segment_margins


def test_undiarized_segments_keep_their_classification_margin() -> None:
    segments = [
        seg(0, 4, "Let me explain how our program works"),
        seg(4, 6, "How much does it cost?"),
    ]

    result = attribution.attribute(segments, merge=False)

    assert [segment.speaker for segment in result.segments] == [Speaker.REP, Speaker.PROSPECT]
    assert result.segment_margins == [4, -3]


def test_merged_segments_sum_their_margins() -> None:
    segments = [
        seg(0, 4, "Let me explain how our program works"),
        seg(5, 8, "We offer tutoring for all ages."),
        seg(8, 10, "How much does it cost?"),
    ]

    result = attribution.attribute(segments)

    assert len(result.segments) == len(result.segment_margins) == 2
    assert result.segments[0].text == "Let me explain how our program works We offer tutoring for all ages."
    assert result.segment_margins == [6, -3]


def test_tagged_segments_have_no_margin() -> None:
    segments = [
        seg(0, 10, "Hi Dana.", "prospect"),
        seg(10, 20, "Hello, I wanted to follow up.", "rep"),
        seg(20, 30, "Thanks for your time today."),
    ]

    result = attribution.attribute(segments, merge=False)

    assert result.segment_margins == [None, None, 2]

    diarized = attribution.attribute([seg(0, 2, "Hello?", "1"), seg(2, 5, "Hi there.", "0")], merge=False)

    assert diarized.segment_margins == [None, None]


def test_first_speaker_bonus_skips_leading_untagged_lines() -> None:
    metrics = attribution.collect_speaker_metrics(
        [seg(0, 1, "Connecting..."), seg(1, 3, "Okay then.", "1"), seg(3, 5, "Okay then.", "0")]
    )

    assert metrics["1"].spoke_first is True
    assert metrics["0"].spoke_first is False


def test_role_tagged_opener_withholds_first_speaker_bonus() -> None:
    untagged_first = attribution.label_role_tagged(
        [seg(0, 2, "Thanks for your time today."), seg(2, 4, "Okay then.", "A"), seg(4, 6, "Okay then.", "B")]
    )
    rep_first = attribution.label_role_tagged(
        [seg(0, 2, "Thanks for your time today.", "rep"), seg(2, 4, "Okay then.", "A"), seg(4, 6, "Okay then.", "B")]
    )

    assert untagged_first.speaker_scores["A"] == untagged_first.speaker_scores["B"] + attribution.FIRST_SPEAKER_BONUS
    assert rep_first.speaker_scores["A"] == rep_first.speaker_scores["B"]

"""Rubric scoring of call transcripts with Gemini."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel, Field, ValidationError

from ..core.config import settings
from ..core.errors import ScoringError
from ..schemas.transcript import TranscriptSegment

PHASES = (
    "opening",
    "clarify",
    "label",
    "overview",
    "sell_vacation",
    "price_presentation",
    "explain",
    "reinforce",
)

# Overview carries the most weight; unscored phases drop out of the denominator.
PHASE_WEIGHTS: Dict[str, float] = {
    "opening": 0.10,
    "clarify": 0.12,
    "label": 0.08,
    "overview": 0.20,
    "sell_vacation": 0.15,
    "price_presentation": 0.15,
    "explain": 0.10,
    "reinforce": 0.10,
}

SCORING_SYSTEM_PROMPT = (
    "You are a sales coach grading a recorded sales call against the CLOSER framework: "
    "Clarify why they are here, Label the problem, Overview past pain, Sell the vacation, "
    "Explain away concerns, Reinforce the decision. Also grade the opening and the price "
    "presentation. Score each phase from 0 to 100, quote the transcript where useful and be specific."
)

RESPONSE_FORMAT = (
    "Respond with JSON only, in this shape:\n"
    '{"overall_score": <0-100>, "summary": "<two sentences>", "scores": ['
    '{"phase": "<one of: ' + ", ".join(PHASES) + '>", "score": <0-100>, "feedback": "...", '
    '"highlights": ["..."], "improvements": ["..."]}]}'
)

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

logger = logging.getLogger(__name__)


class PhaseScore(BaseModel):
    phase: str
    score: float = Field(ge=0, le=100)
    feedback: str = ""
    highlights: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


class ScoreResult(BaseModel):
    """Parsed scoring response stored on the call as ``score_details``."""

    phase_scores: List[PhaseScore] = Field(default_factory=list)
    overall_score: float = Field(ge=0, le=100)
    feedback: str = ""

    def details(self) -> dict[str, Any]:
        return {
            "phase_scores": [phase.model_dump() for phase in self.phase_scores],
            "feedback": self.feedback,
        }


class Scorer(Protocol):
    async def score(
        self, transcript: List[TranscriptSegment], context: Optional[Dict[str, Any]] = None
    ) -> ScoreResult:
        ...


def weighted_overall(phase_scores: List[PhaseScore]) -> float:
    if not phase_scores:
        return 0.0
    weighted_sum = 0.0
    total_weight = 0.0
    for phase in phase_scores:
        weight = PHASE_WEIGHTS.get(phase.phase, 1 / len(PHASES))
        weighted_sum += phase.score * weight
        total_weight += weight
    return round(weighted_sum / total_weight, 1)


def parse_score_response(text: str) -> ScoreResult:
    """Extract and validate the JSON body of a model reply."""

    fenced = _JSON_FENCE.search(text)
    if fenced:
        body = fenced.group(1)
    else:
        match = _JSON_OBJECT.search(text)
        body = match.group(0) if match else text

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ScoringError(f"Scoring response was not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ScoringError("Scoring response was not a JSON object")

    try:
        phases = [PhaseScore.model_validate(item) for item in payload.get("scores") or []]
        overall = payload.get("overall_score")
        return ScoreResult(
            phase_scores=phases,
            overall_score=weighted_overall(phases) if overall is None else overall,
            feedback=str(payload.get("summary") or ""),
        )
    except ValidationError as exc:
        raise ScoringError(f"Scoring response failed validation: {exc.error_count()} errors") from exc


def format_transcript(transcript: List[TranscriptSegment]) -> str:
    lines = []
    for segment in transcript:
        minutes, seconds = divmod(int(segment.start_time), 60)
        lines.append(f"[{minutes:02d}:{seconds:02d}] {segment.speaker.value.upper()}: {segment.text}")
    return "\n".join(lines)


def build_prompt(transcript: List[TranscriptSegment], context: Optional[Dict[str, Any]] = None) -> str:
    lines = [SCORING_SYSTEM_PROMPT, ""]
    if context:
        lines.append("Call context:")
        for key, value in context.items():
            if value not in (None, ""):
                lines.append(f"- {key.replace('_', ' ')}: {value}")
        lines.append("")
    lines.extend(["Transcript:", format_transcript(transcript), "", RESPONSE_FORMAT])
    return "\n".join(lines)


def _has_api_key() -> bool:
    return bool(settings.gemini_api_key.strip())


@lru_cache
def _configured_api() -> bool:
    """Configure the Google Generative AI client once."""

    if not _has_api_key():
        raise ScoringError("GEMINI_API_KEY is missing")

    genai.configure(api_key=settings.gemini_api_key)
    return True


_model_cache: Dict[str, genai.GenerativeModel] = {}


def _get_model(name: str) -> genai.GenerativeModel:
    """Return a cached Gemini model instance."""

    _configured_api()
    model_name = name.strip()
    if not model_name:
        raise ScoringError("Gemini model name was empty")

    if model_name not in _model_cache:
        _model_cache[model_name] = genai.GenerativeModel(model_name)
    return _model_cache[model_name]


def _candidate_models() -> list[str]:
    candidates: list[str] = []
    seen: set[str] = set()
    for candidate in (settings.gemini_model, *settings.gemini_model_fallbacks):
        if candidate and candidate not in seen:
            candidates.append(candidate)
            seen.add(candidate)
    return candidates


class RubricScorer:
    """Score a labeled transcript, walking the configured model fallback chain."""

    async def score(
        self, transcript: List[TranscriptSegment], context: Optional[Dict[str, Any]] = None
    ) -> ScoreResult:
        if not transcript:
            raise ScoringError("Transcript is empty")
        if not _has_api_key():
            raise ScoringError("GEMINI_API_KEY is missing")

        loop = asyncio.get_running_loop()
        prompt = build_prompt(transcript, context)
        last_error: Exception | None = None

        for model_name in _candidate_models():
            def _run_inference(current_model: str = model_name) -> str:
                response = _get_model(current_model).generate_content(
                    prompt, generation_config={"response_mime_type": "application/json"}
                )
                return (getattr(response, "text", "") or "").strip()

            try:
                text = await loop.run_in_executor(None, _run_inference)
            except google_exceptions.NotFound as exc:
                logger.warning("Gemini model %s not available: %s", model_name, exc)
                _model_cache.pop(model_name, None)
                last_error = exc
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Gemini generate_content failed for %s", model_name)
                last_error = exc
                continue

            if not text:
                last_error = ScoringError(f"Model {model_name} returned an empty response")
                continue
            result = parse_score_response(text)
            logger.info("Scored call with %s: overall=%.1f", model_name, result.overall_score)
            return result

        raise ScoringError(f"No Gemini models responded: {last_error}") from last_error

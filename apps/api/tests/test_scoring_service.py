import pytest

from callgrade.core.errors import ScoringError
from callgrade.services import scoring
from callgrade.services.scoring import PhaseScore

from conftest import sample_transcript


def test_parse_score_response_reads_fenced_json() -> None:
    text = """Here is the grade:
```json
{"overall_score": 74, "summary": "Good discovery.", "scores": [
  {"phase": "opening", "score": 80, "feedback": "Warm intro", "highlights": ["Used the prospect's name"]}
]}
```"""

    result = scoring.parse_score_response(text)

    assert result.overall_score == 74
    assert result.feedback == "Good discovery."
    assert result.phase_scores[0].highlights == ["Used the prospect's name"]
    assert result.details()["phase_scores"][0]["phase"] == "opening"


def test_missing_overall_uses_weighted_phases() -> None:
    text = '{"scores": [{"phase": "overview", "score": 90}, {"phase": "opening", "score": 60}]}'

    result = scoring.parse_score_response(text)

    assert result.overall_score == 80.0


def test_weighted_overall_of_nothing_is_zero() -> None:
    assert scoring.weighted_overall([]) == 0.0
    assert scoring.weighted_overall([PhaseScore(phase="label", score=55)]) == 55.0


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        '{"overall_score": 140, "scores": []}',
        '{"scores": [{"phase": "opening", "score": -5}]}',
    ],
)
def test_bad_responses_raise_scoring_error(text: str) -> None:
    with pytest.raises(ScoringError):
        scoring.parse_score_response(text)


def test_prompt_includes_context_and_labeled_lines() -> None:
    prompt = scoring.build_prompt(sample_transcript(), {"contact_name": "Bob", "duration_seconds": None})

    assert "- contact name: Bob" in prompt
    assert "duration seconds" not in prompt
    assert "[00:04] PROSPECT: Oh hi, how much does it cost?" in prompt


@pytest.mark.asyncio
async def test_score_without_api_key_raises(monkeypatch) -> None:
    monkeypatch.setattr(scoring.settings, "gemini_api_key", "", raising=False)

    with pytest.raises(ScoringError):
        await scoring.RubricScorer().score(sample_transcript())


@pytest.mark.asyncio
async def test_score_falls_back_to_next_model(monkeypatch) -> None:
    monkeypatch.setattr(scoring.settings, "gemini_api_key", "test-key", raising=False)
    monkeypatch.setattr(scoring.settings, "gemini_model", "primary", raising=False)
    monkeypatch.setattr(scoring.settings, "gemini_model_fallbacks", ["backup"], raising=False)
    attempted: list[str] = []

    class FakeModel:
        def __init__(self, name: str) -> None:
            self.name = name

        def generate_content(self, prompt, generation_config=None):
            attempted.append(self.name)
            if self.name == "primary":
                raise RuntimeError("quota exceeded")
            return type("Response", (), {"text": '{"overall_score": 66, "summary": "ok", "scores": []}'})()

    monkeypatch.setattr(scoring, "_get_model", FakeModel)

    result = await scoring.RubricScorer().score(sample_transcript())

    assert attempted == ["primary", "backup"]
    assert result.overall_score == 66

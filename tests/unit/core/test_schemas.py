from __future__ import annotations

from typing import Any

import pytest
from pydantic import ValidationError

from sr_council.core.schemas import (
    ArticleData,
    DownloadProgress,
    ExtractedData,
    ModelVote,
    PICOCriteria,
    RiskOfBias,
    ScreeningResponse,
    ScreeningResult,
    round_half_up,
)
from sr_council.core.types import (
    ConsensusType,
    RiskOfBiasJudgement,
    ScreeningDecisionType,
)


def _vote(decision: str = "include", confidence: int = 80, **kw: Any) -> ModelVote:
    return ModelVote(
        model=kw.pop("model", "model-a"),
        decision=ScreeningDecisionType(decision),
        confidence=confidence,
        reasoning=kw.pop("reasoning", "Matches PICO"),
        **kw,
    )


@pytest.mark.parametrize(
    ("value", "expected"), [(74.375, 74), (72.5, 73), (73.5, 74), (0.49, 0), (99.5, 100)]
)
def test_round_half_up(value: float, expected: int):
    assert round_half_up(value) == expected


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
def test_round_half_up_rejects_non_finite(value: float):
    with pytest.raises(ValueError, match="not a finite number"):
        round_half_up(value)


class TestPICOCriteria:
    def test_blank_fields_are_reported(self):
        pico = PICOCriteria(
            population="Adults", intervention=" ", comparison="", outcomes="HbA1c"
        )
        assert pico.blank_fields() == ["intervention", "comparison"]

    def test_is_immutable(self):
        pico = PICOCriteria(
            population="Adults", intervention="A", comparison="B", outcomes="C"
        )
        with pytest.raises(ValidationError):
            pico.population = "Children"  # type: ignore[misc]


class TestArticleData:
    @pytest.mark.parametrize(
        ("abstract", "full_text", "expected"),
        [
            ("An abstract", None, True),
            (None, "Full text", True),
            ("   ", "", False),
            (None, None, False),
        ],
    )
    def test_has_content(self, abstract: str | None, full_text: str | None, expected: bool):
        article = ArticleData(id=1, abstract=abstract, full_text=full_text)
        assert article.has_content is expected


class TestScreeningResponse:
    def test_decision_is_case_insensitive(self):
        response = ScreeningResponse.model_validate(
            {"decision": " INCLUDE ", "confidence": 90, "reasoning": "ok"}
        )
        assert response.decision is ScreeningDecisionType.INCLUDE

    @pytest.mark.parametrize(("raw", "expected"), [(87.5, 88), ("72", 72), ("64%", 64)])
    def test_confidence_is_coerced_to_int(self, raw: Any, expected: int):
        response = ScreeningResponse.model_validate(
            {"decision": "exclude", "confidence": raw}
        )
        assert response.confidence == expected

    @pytest.mark.parametrize("raw", [101, -1, True, "high"])
    def test_invalid_confidence_is_rejected(self, raw: Any):
        with pytest.raises(ValidationError):
            ScreeningResponse.model_validate({"decision": "exclude", "confidence": raw})

    def test_unknown_decision_is_rejected(self):
        with pytest.raises(ValidationError):
            ScreeningResponse.model_validate({"decision": "maybe", "confidence": 50})

    def test_extra_keys_and_null_reasoning(self):
        response = ScreeningResponse.model_validate(
            {
                "decision": "include",
                "confidence": 70,
                "reasoning": None,
                "pico_alignment": {"population": "yes", "unexpected": "x"},
                "something_else": 1,
            }
        )
        assert response.reasoning == ""
        assert response.pico_alignment is not None
        assert response.pico_alignment.population == "yes"


class TestModelVote:
    def test_is_frozen(self):
        vote = _vote()
        with pytest.raises(ValidationError):
            vote.confidence = 10  # type: ignore[misc]

    def test_failed_flag(self):
        assert _vote().failed is False
        assert _vote("exclude", 0, error="timeout").failed is True


class TestScreeningResult:
    def test_manual_result_rejects_votes(self):
        with pytest.raises(ValidationError, match="Manual decisions carry no model votes"):
            ScreeningResult(
                decision=ScreeningDecisionType.INCLUDE,
                confidence=100,
                reasoning="Manual",
                consensus_type=ConsensusType.MANUAL,
                model_votes=[_vote()],
                provider="manual",
            )

    def test_council_result_requires_votes(self):
        with pytest.raises(ValidationError):
            ScreeningResult(
                decision=ScreeningDecisionType.INCLUDE,
                confidence=80,
                reasoning="Council",
                consensus_type=ConsensusType.UNANIMOUS,
                provider="local-council",
            )

    def test_partial_vote_list_is_rejected(self):
        with pytest.raises(ValidationError, match="exactly 3 model votes, got 2"):
            ScreeningResult(
                decision=ScreeningDecisionType.INCLUDE,
                confidence=85,
                reasoning="Council",
                consensus_type=ConsensusType.MAJORITY,
                model_votes=[_vote(model="a"), _vote(model="b")],
                provider="local-council",
            )

    def test_degradation(self):
        result = ScreeningResult(
            decision=ScreeningDecisionType.INCLUDE,
            confidence=68,
            reasoning="Council",
            consensus_type=ConsensusType.MAJORITY,
            model_votes=[
                _vote(model="a"),
                _vote(model="b"),
                _vote("exclude", 0, model="c", error="boom"),
            ],
            provider="local-council",
        )
        assert result.failed_votes == 1
        assert result.is_degraded is True

    def test_wire_format(self):
        result = ScreeningResult(
            decision=ScreeningDecisionType.EXCLUDE,
            confidence=100,
            reasoning="Manual",
            consensus_type=ConsensusType.MANUAL,
            provider="manual",
        )
        assert result.model_dump(mode="json") == {
            "decision": "exclude",
            "confidence": 100,
            "reasoning": "Manual",
            "consensus_type": "manual",
            "model_votes": None,
            "provider": "manual",
            "cost_usd": 0.0,
        }


class TestExtractedData:
    def test_minimal_payload(self):
        data = ExtractedData.model_validate(
            {
                "population": {"description": "Adults", "sample_size": 200},
                "intervention": {"name": "Metformin"},
                "study_design": "RCT",
                "primary_outcomes": [
                    {"outcome": "HbA1c", "intervention_n": 100, "confidence_interval": [0.1, 0.5]}
                ],
            }
        )
        assert data.population.sample_size == 200
        assert data.primary_outcomes[0].confidence_interval == (0.1, 0.5)
        assert data.manual_edits_made is False

    def test_missing_required_fields(self):
        with pytest.raises(ValidationError) as excinfo:
            ExtractedData.model_validate({"population": {}, "intervention": {}})
        fields = {e["loc"][0] for e in excinfo.value.errors()}
        assert fields == {"study_design", "primary_outcomes"}

    def test_risk_of_bias_is_case_insensitive(self):
        rob = RiskOfBias.model_validate({"allocation_concealment": "High"})
        assert rob.allocation_concealment is RiskOfBiasJudgement.HIGH
        assert rob.other_bias is RiskOfBiasJudgement.UNCLEAR


class TestDownloadProgress:
    def test_percent(self):
        assert DownloadProgress(completed=25, total=100).percent == 25.0

    def test_percent_without_total(self):
        assert DownloadProgress(status="pulling manifest").percent == 0.0

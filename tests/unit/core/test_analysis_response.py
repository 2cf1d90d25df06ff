"""
Tests for assistant response normalization.
Covers score clamping, shape detection, bullet joining and stored-row mapping.
"""

import json

import pytest

from core.exceptions import ConfigurationError, ParseError
from core.parsers.analysis_response import (
    DEFAULT_CONFIDENCE,
    DEFAULT_SUMMARY,
    AnalysisResult,
    FreeFormResponse,
    LegacyResponse,
    SchemaValidatedResponse,
    classify_response,
    join_with_bullets,
    normalize_payload,
    normalize_score,
    parse_analysis_response,
    result_from_row,
    strip_code_fences,
    to_row_values,
)


class TestScoreNormalization:
    """Every score ends up an integer in [0, 100]."""

    @pytest.mark.parametrize("raw,expected", [
        (50, 50),
        ("85", 85),
        (" 42 ", 42),
        ("73%", 73),
        (130, 100),
        (-5, 0),
        ("-20", 0),
        ("250.7", 100),
        (66.4, 66),
        (66.5, 67),
        ("12.5", 13),
        (0, 0),
        (100, 100),
    ])
    def test_clamps_and_rounds(self, raw, expected):
        assert normalize_score(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "high", [], {}, float("nan"), True])
    def test_unparseable_maps_to_default(self, raw):
        assert normalize_score(raw) == 0
        assert normalize_score(raw, default=85) == 85

    @pytest.mark.parametrize("raw,expected", [
        (10 ** 400, 100),
        (-(10 ** 400), 0),
        ("1" + "0" * 400, 100),
        (float("inf"), 100),
        (float("-inf"), 0),
    ])
    def test_out_of_range_magnitudes_clamp(self, raw, expected):
        assert normalize_score(raw) == expected

    def test_result_is_always_int(self):
        for raw in (1e9, -1e9, "3.14159", 99.99):
            score = normalize_score(raw)
            assert isinstance(score, int)
            assert 0 <= score <= 100


class TestBulletJoin:
    def test_empty_list(self):
        assert join_with_bullets([]) == ""

    def test_list_of_items(self):
        assert join_with_bullets(["a", "b"]) == "• a\n• b"

    def test_string_passes_through(self):
        assert join_with_bullets("• already\n• joined") == "• already\n• joined"

    def test_none(self):
        assert join_with_bullets(None) == ""

    def test_skips_empty_items(self):
        assert join_with_bullets(["a", "", None, "b"]) == "• a\n• b"


class TestCodeFences:
    @pytest.mark.parametrize("text", [
        '```json\n{"a": 1}\n```',
        '```\n{"a": 1}\n```',
        '  ```json {"a": 1} ```  ',
        '{"a": 1}',
    ])
    def test_strips_fences(self, text):
        assert json.loads(strip_code_fences(text)) == {"a": 1}


class TestShapeDetection:
    def test_legacy_keys_win(self):
        shape = classify_response({"Awakening": "...", "moves": {"immediate_action": []}})
        assert isinstance(shape, LegacyResponse)
        assert shape.legacy_keys == ("Awakening",)

    def test_nested_moves_is_schema_validated(self, payload_factory):
        assert isinstance(classify_response(payload_factory()), SchemaValidatedResponse)

    def test_flat_payload_is_free_form(self):
        assert isinstance(classify_response({"power_score": 10}), FreeFormResponse)

    def test_non_object_is_parse_error(self):
        with pytest.raises(ParseError):
            classify_response([1, 2, 3])

    @pytest.mark.parametrize("legacy_key", [
        "Awakening", "Stakeholder Map", "Invisible Architecture", "Sovereignty Move",
    ])
    def test_legacy_payload_is_configuration_error(self, legacy_key):
        text = json.dumps({legacy_key: "Some narrative", "power_score": 50})
        with pytest.raises(ConfigurationError) as exc_info:
            parse_analysis_response(text)

        assert exc_info.value.remediation
        assert "outdated instructions" in str(exc_info.value)
        assert exc_info.value.details["legacy_keys"] == [legacy_key]


class TestParseAnalysisResponse:
    def test_free_form_scores_are_clamped(self):
        text = json.dumps({"power_score": "85", "gravity_score": 130, "risk": -5, "tl_dr": "ok"})

        result = parse_analysis_response(text)

        assert result.power_score == 85
        assert result.gravity_score == 100
        assert result.risk_score == 0
        assert result.summary == "ok"

    def test_huge_integer_score_is_clamped(self):
        text = '{"power_score": 1' + "0" * 400 + ', "risk": -1' + "0" * 400 + ', "tl_dr": "ok"}'

        result = parse_analysis_response(text)

        assert result.power_score == 100
        assert result.risk_score == 0

    def test_schema_validated_payload(self, payload_factory):
        result = parse_analysis_response(json.dumps(payload_factory()))

        assert (result.power_score, result.gravity_score, result.risk_score) == (72, 64, 41)
        assert result.confidence_level == 90
        assert result.immediate_move == "• Document the last three requests\n• Ask for written priorities"
        assert result.strategic_tool == "• Map who signs off on budget"
        assert result.power_explanation == "You own the delivery pipeline."
        assert result.risk_definition == "Downside if it goes wrong."
        assert result.psychological_profile is None

    def test_fenced_payload(self, payload_factory):
        text = f"```json\n{json.dumps(payload_factory())}\n```"
        assert parse_analysis_response(text).power_score == 72

    def test_schema_and_free_form_agree(self, payload_factory):
        schema_payload = payload_factory()
        free_form_payload = {
            "power_score": 72,
            "gravity_score": 64,
            "risk_score": 41,
            "issue_confidence_pct": 90,
            "tl_dr": schema_payload["tl_dr"],
            "snapshot": schema_payload["snapshot"],
            "whats_happening": schema_payload["whats_happening"],
            "why_it_matters": schema_payload["why_it_matters"],
            "narrative_summary": schema_payload["narrative_summary"],
            "immediate_move": schema_payload["moves"]["immediate_action"],
            "strategic_tool": schema_payload["moves"]["strategic_tool"],
            "analytical_check": schema_payload["moves"]["analytical_check"],
            "long_term_fix": schema_payload["moves"]["long_term_fix"],
            "power_expl": schema_payload["explanations"]["power"],
            "gravity_expl": schema_payload["explanations"]["gravity"],
            "risk_expl": schema_payload["explanations"]["risk"],
            "def_power": schema_payload["definitions"]["power"],
            "def_gravity": schema_payload["definitions"]["gravity"],
            "def_risk": schema_payload["definitions"]["risk"],
            "issue_type": schema_payload["issue_type"],
            "issue_category": schema_payload["issue_category"],
            "issue_layer": schema_payload["issue_layer"],
        }

        assert normalize_payload(schema_payload) == normalize_payload(free_form_payload)

    def test_free_form_alias_candidates(self):
        result = normalize_payload({
            "powerScore": 10,
            "radar_gravity": "20",
            "riskScore": 30,
            "confidence": 40,
            "summary": "From summary",
            "powerExplanation": "camel explanation",
            "powerDefinition": "camel definition",
        })

        assert (result.power_score, result.gravity_score, result.risk_score) == (10, 20, 30)
        assert result.confidence_level == 40
        assert result.summary == "From summary"
        assert result.power_explanation == "camel explanation"
        assert result.power_definition == "camel definition"

    def test_first_present_skips_empty_values(self):
        result = normalize_payload({"power_score": "", "power": 55, "tl_dr": "", "summary": "fallback"})
        assert result.power_score == 55
        assert result.summary == "fallback"

    def test_defaults_for_missing_fields(self):
        result = normalize_payload({"whats_happening": "Only this"})

        assert result.power_score == 0
        assert result.gravity_score == 0
        assert result.risk_score == 0
        assert result.confidence_level == DEFAULT_CONFIDENCE
        assert result.summary == DEFAULT_SUMMARY
        assert result.title == "Strategic Analysis"

    def test_psychological_profile_mapping(self):
        result = normalize_payload({
            "power_score": 50,
            "psychological_profile": {
                "primary_motivation": "Security",
                "motivation_evidence": "Mentions layoffs twice",
                "emotionalState": "Anxious",
            },
        })

        profile = result.psychological_profile
        assert profile is not None
        assert profile.primary_motivation == "Security"
        assert profile.motivation_evidence == "Mentions layoffs twice"
        assert profile.emotional_state == "Anxious"
        assert profile.hidden_driver == ""

    @pytest.mark.parametrize("text", [None, "", "   ", "not json", "{broken", "```json\n```"])
    def test_unparseable_text(self, text):
        with pytest.raises(ParseError):
            parse_analysis_response(text)

    def test_is_deterministic(self, payload_factory):
        text = json.dumps(payload_factory(power=33.3))
        assert parse_analysis_response(text) == parse_analysis_response(text)

    def test_camel_case_serialization(self, payload_factory):
        dumped = parse_analysis_response(json.dumps(payload_factory())).model_dump(by_alias=True)

        assert dumped["powerScore"] == 72
        assert dumped["immediateMove"].startswith("• ")
        assert "psychologicalProfile" in dumped


class TestStoredRows:
    def test_row_round_trip_keeps_values(self, payload_factory):
        result = normalize_payload(payload_factory())
        assert result_from_row(to_row_values(result)) == result

    def test_radar_columns(self):
        values = to_row_values(AnalysisResult(power_score=70, gravity_score=60, risk_score=45, confidence_level=90))

        assert values["radar_control"] == 45
        assert values["radar_gravity"] == 60
        assert values["radar_confidence"] == 90
        assert values["radar_stability"] == 30
        assert values["radar_strategy"] == 58

    def test_automation_column_names(self):
        row = {
            "radar_power": "140",
            "gravity_score": None,
            "radar_gravity": 22,
            "risk_score": -3,
            "issue_confidence_pct": "77",
            "tl_dr": "Stored by automation",
            "power_expl": "old column",
            "def_risk": "old definition",
            "immediate_move": ["one", "two"],
            "psychological_profile": json.dumps({"power_dynamic": "Upward"}),
        }

        result = result_from_row(row)

        assert result.power_score == 100
        assert result.gravity_score == 22
        assert result.risk_score == 0
        assert result.confidence_level == 77
        assert result.summary == "Stored by automation"
        assert result.power_explanation == "old column"
        assert result.risk_definition == "old definition"
        assert result.immediate_move == "• one\n• two"
        assert result.psychological_profile.power_dynamic == "Upward"

"""
Assistant response normalization.

Turns the raw text returned by the assistant into one canonical
``AnalysisResult``. Three payload shapes are recognised, tried in this order:

- legacy narrative payloads (``Awakening``, ``Stakeholder Map`` ...), which
  mean the assistant still runs outdated instructions and are rejected with
  a ``ConfigurationError``;
- schema-validated payloads (nested ``moves``/``explanations``/``definitions``
  objects produced under a strict JSON schema);
- free-form payloads (flat keys whose names drifted across prompt versions).

Everything here is pure and deterministic.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from core.exceptions import ConfigurationError, ParseError


DEFAULT_SUMMARY = "Analysis complete"
DEFAULT_CONFIDENCE = 85
BULLET = "• "

LEGACY_KEYS = ("Awakening", "Stakeholder Map", "Invisible Architecture", "Sovereignty Move")

LEGACY_REMEDIATION = (
    "The assistant is running outdated instructions.\n"
    "1. Open https://platform.openai.com/assistants\n"
    "2. Edit the assistant configured as OPENAI_ASSISTANT_ID\n"
    "3. Replace its instructions with the current JSON analysis instructions"
)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)


# ==================== Canonical models ==================== #
class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PsychologicalProfile(_CamelModel):
    """Motivation and emotion read of the counterpart, each with its evidence."""

    primary_motivation: str = ""
    motivation_evidence: str = ""
    hidden_driver: str = ""
    hidden_driver_signal: str = ""
    emotional_state: str = ""
    emotional_evidence: str = ""
    power_dynamic: str = ""
    power_dynamic_evidence: str = ""


class AnalysisResult(_CamelModel):
    """Normalized analysis. Serialize with ``by_alias=True`` for the UI."""

    # Scores (0-100)
    power_score: int = 0
    gravity_score: int = 0
    risk_score: int = 0
    confidence_level: int = 0

    # Summaries
    summary: str = ""
    snapshot: str = ""
    whats_happening: str = ""
    why_it_matters: str = ""
    narrative_summary: str = ""

    # Strategic moves, newline-joined bullets
    immediate_move: str = ""
    strategic_tool: str = ""
    analytical_check: str = ""
    long_term_fix: str = ""

    # Explanations / definitions
    power_explanation: str = ""
    gravity_explanation: str = ""
    risk_explanation: str = ""
    power_definition: str = ""
    gravity_definition: str = ""
    risk_definition: str = ""

    # Classification
    issue_type: str = ""
    issue_category: str = ""
    issue_layer: str = ""

    # Diagnostics
    diagnostic_state: str = ""
    diagnostic_so_what: str = ""
    diagnosis_primary: str = ""
    diagnosis_secondary: str = ""
    diagnosis_tertiary: str = ""
    radar_red_1: str = ""
    radar_red_2: str = ""
    radar_red_3: str = ""
    tactical_moves: str = ""

    psychological_profile: Optional[PsychologicalProfile] = None

    @property
    def title(self) -> str:
        return self.summary if self.summary and self.summary != DEFAULT_SUMMARY else "Strategic Analysis"

    def moves(self) -> dict[str, str]:
        """The four strategic-move fields keyed by action-item section."""
        return {
            "immediate_move": self.immediate_move,
            "strategic_tool": self.strategic_tool,
            "analytical_check": self.analytical_check,
            "long_term_fix": self.long_term_fix,
        }


# ==================== Field helpers ==================== #
def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` (or bare ```) fence."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def normalize_score(value: Any, default: int = 0) -> int:
    """
    Coerce a score to an integer in [0, 100].

    Numeric strings are parsed (a trailing ``%`` is tolerated). Missing or
    unparseable values fall back to ``default``. Halves round up.
    """
    if value is None or isinstance(value, bool):
        number = float(default)
    elif isinstance(value, int):
        # arbitrary-size ints cannot always be converted to float
        number = float(max(-1, min(101, value)))
    elif isinstance(value, float):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip().rstrip("%"))
        except ValueError:
            number = float(default)
    else:
        number = float(default)

    if math.isnan(number):
        number = float(default)
    clamped = max(0.0, min(100.0, number))
    return int(math.floor(clamped + 0.5))


def join_with_bullets(items: Any) -> str:
    """Join a list of moves as ``• item`` lines; strings pass through unchanged."""
    if items is None:
        return ""
    if isinstance(items, str):
        return items
    if isinstance(items, (list, tuple)):
        return "\n".join(f"{BULLET}{item}" for item in items if item is not None and str(item) != "")
    return str(items)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return join_with_bullets(value)
    return str(value)


def _first(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    """First candidate key holding a present, non-empty value."""
    for key in keys:
        value = payload.get(key)
        if value is None or value == "" or value == []:
            continue
        return value
    return None


_PROFILE_FIELDS = tuple(PsychologicalProfile.model_fields)


def normalize_profile(raw: Any) -> Optional[PsychologicalProfile]:
    """Map a snake_case (or camelCase) profile object; anything else is ``None``."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, Mapping):
        return None
    values = {
        field: _text(_first(raw, (field, to_camel(field))))
        for field in _PROFILE_FIELDS
    }
    return PsychologicalProfile(**values)


def _diagnostics(payload: Mapping[str, Any]) -> dict[str, str]:
    return {
        "diagnostic_state": _text(_first(payload, ("diagnostic_state", "diagnosticState"))),
        "diagnostic_so_what": _text(_first(payload, ("diagnostic_so_what", "diagnosticSoWhat"))),
        "diagnosis_primary": _text(_first(payload, ("diagnosis_primary", "diagnosisPrimary"))),
        "diagnosis_secondary": _text(_first(payload, ("diagnosis_secondary", "diagnosisSecondary"))),
        "diagnosis_tertiary": _text(_first(payload, ("diagnosis_tertiary", "diagnosisTertiary"))),
        "radar_red_1": join_with_bullets(_first(payload, ("radar_red_1", "radarRed1"))),
        "radar_red_2": join_with_bullets(_first(payload, ("radar_red_2", "radarRed2"))),
        "radar_red_3": join_with_bullets(_first(payload, ("radar_red_3", "radarRed3"))),
        "tactical_moves": join_with_bullets(_first(payload, ("tactical_moves", "tacticalMoves"))),
    }


# ==================== Response shapes ==================== #
@dataclass(frozen=True)
class LegacyResponse:
    """Narrative payload from outdated assistant instructions."""

    payload: dict[str, Any]
    legacy_keys: tuple[str, ...]

    kind = "legacy"

    def to_result(self) -> AnalysisResult:
        raise ConfigurationError(
            "Assistant returned the legacy narrative format instead of analysis JSON",
            remediation=LEGACY_REMEDIATION,
            details={"legacy_keys": list(self.legacy_keys)},
        )


@dataclass(frozen=True)
class SchemaValidatedResponse:
    """Payload produced under the strict JSON schema."""

    payload: dict[str, Any]

    kind = "schema_validated"

    def to_result(self) -> AnalysisResult:
        p = self.payload
        moves = p.get("moves") or {}
        explanations = p.get("explanations") if isinstance(p.get("explanations"), Mapping) else {}
        definitions = p.get("definitions") if isinstance(p.get("definitions"), Mapping) else {}

        return AnalysisResult(
            power_score=normalize_score(p.get("power")),
            gravity_score=normalize_score(p.get("gravity")),
            risk_score=normalize_score(p.get("risk")),
            confidence_level=normalize_score(p.get("issue_confidence_pct"), default=DEFAULT_CONFIDENCE),
            summary=_text(p.get("tl_dr")) or DEFAULT_SUMMARY,
            snapshot=_text(p.get("snapshot")),
            whats_happening=_text(p.get("whats_happening")),
            why_it_matters=_text(p.get("why_it_matters")),
            narrative_summary=_text(p.get("narrative_summary")),
            immediate_move=join_with_bullets(_first(moves, ("immediate_action", "immediate_move"))),
            strategic_tool=join_with_bullets(moves.get("strategic_tool")),
            analytical_check=join_with_bullets(moves.get("analytical_check")),
            long_term_fix=join_with_bullets(moves.get("long_term_fix")),
            power_explanation=_text(explanations.get("power")),
            gravity_explanation=_text(explanations.get("gravity")),
            risk_explanation=_text(explanations.get("risk")),
            power_definition=_text(definitions.get("power")),
            gravity_definition=_text(definitions.get("gravity")),
            risk_definition=_text(definitions.get("risk")),
            issue_type=_text(p.get("issue_type")),
            issue_category=_text(p.get("issue_category")),
            issue_layer=_text(p.get("issue_layer")),
            psychological_profile=normalize_profile(p.get("psychological_profile")),
            **_diagnostics(p),
        )


# Candidate keys per canonical field, most specific first.
FREE_FORM_KEYS: dict[str, tuple[str, ...]] = {
    "power_score": ("power_score", "power", "powerScore", "radar_power"),
    "gravity_score": ("gravity_score", "gravity", "gravityScore", "radar_gravity"),
    "risk_score": ("risk_score", "risk", "riskScore", "radar_risk"),
    "confidence_level": ("issue_confidence_pct", "confidence", "confidence_level", "confidenceLevel"),
    "summary": ("tl_dr", "summary", "tldr"),
    "snapshot": ("snapshot",),
    "whats_happening": ("whats_happening", "whatsHappening"),
    "why_it_matters": ("why_it_matters", "whyItMatters"),
    "narrative_summary": ("narrative_summary", "narrativeSummary"),
    "immediate_move": ("immediate_move", "immediateMove", "immediate_action"),
    "strategic_tool": ("strategic_tool", "strategicTool"),
    "analytical_check": ("analytical_check", "analyticalCheck"),
    "long_term_fix": ("long_term_fix", "longTermFix"),
    "power_explanation": ("power_expl", "power_explanation", "powerExplanation"),
    "gravity_explanation": ("gravity_expl", "gravity_explanation", "gravityExplanation"),
    "risk_explanation": ("risk_expl", "risk_explanation", "riskExplanation"),
    "power_definition": ("power_definition", "def_power", "powerDefinition"),
    "gravity_definition": ("gravity_definition", "def_gravity", "gravityDefinition"),
    "risk_definition": ("risk_definition", "def_risk", "riskDefinition"),
    "issue_type": ("issue_type", "issueType"),
    "issue_category": ("issue_category", "issueCategory"),
    "issue_layer": ("issue_layer", "issueLayer"),
}

SCORE_FIELDS = ("power_score", "gravity_score", "risk_score", "confidence_level")
MOVE_FIELDS = ("immediate_move", "strategic_tool", "analytical_check", "long_term_fix")


@dataclass(frozen=True)
class FreeFormResponse:
    """Flat payload; every field is looked up through its candidate keys."""

    payload: dict[str, Any]

    kind = "free_form"

    def to_result(self) -> AnalysisResult:
        p = self.payload
        values: dict[str, Any] = {}
        for field, keys in FREE_FORM_KEYS.items():
            raw = _first(p, keys)
            if field == "confidence_level":
                values[field] = normalize_score(raw, default=DEFAULT_CONFIDENCE)
            elif field in SCORE_FIELDS:
                values[field] = normalize_score(raw)
            elif field in MOVE_FIELDS:
                values[field] = join_with_bullets(raw)
            else:
                values[field] = _text(raw)
        values["summary"] = values["summary"] or DEFAULT_SUMMARY
        values.update(_diagnostics(p))
        values["psychological_profile"] = normalize_profile(
            _first(p, ("psychological_profile", "psychologicalProfile"))
        )
        return AnalysisResult(**values)


ResponseShape = Union[LegacyResponse, SchemaValidatedResponse, FreeFormResponse]


def classify_response(payload: Any) -> ResponseShape:
    """Tag a decoded payload with its shape (legacy, schema-validated, free-form)."""
    if not isinstance(payload, dict):
        raise ParseError(
            f"Assistant response is JSON but not an object (got {type(payload).__name__})"
        )

    legacy_keys = tuple(key for key in LEGACY_KEYS if key in payload)
    if legacy_keys:
        return LegacyResponse(payload=payload, legacy_keys=legacy_keys)

    if isinstance(payload.get("moves"), Mapping):
        return SchemaValidatedResponse(payload=payload)

    return FreeFormResponse(payload=payload)


def normalize_payload(payload: Any) -> AnalysisResult:
    """Normalize an already-decoded payload."""
    return classify_response(payload).to_result()


def parse_analysis_response(text: Optional[str]) -> AnalysisResult:
    """
    Parse raw assistant output into an ``AnalysisResult``.

    Raises:
        ParseError: empty text, undecodable JSON, or JSON that is not an object
        ConfigurationError: legacy narrative payload
    """
    if text is None or not text.strip():
        raise ParseError("Assistant returned an empty response")

    cleaned = strip_code_fences(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ParseError(
            "Failed to parse assistant response - assistant may not be returning valid JSON",
            details={"position": exc.pos},
        ) from exc

    return normalize_payload(payload)


# ==================== Stored rows ==================== #
# Column names used by the different writers of the analyses table.
ROW_KEYS: dict[str, tuple[str, ...]] = {
    "power_score": ("power_score", "radar_power"),
    "gravity_score": ("gravity_score", "radar_gravity"),
    "risk_score": ("risk_score", "radar_risk"),
    "confidence_level": ("confidence_level", "issue_confidence_pct", "radar_confidence"),
    "summary": ("summary", "tl_dr"),
    "power_explanation": ("power_explanation", "power_expl"),
    "gravity_explanation": ("gravity_explanation", "gravity_expl"),
    "risk_explanation": ("risk_explanation", "risk_expl"),
    "power_definition": ("power_definition", "def_power"),
    "gravity_definition": ("gravity_definition", "def_gravity"),
    "risk_definition": ("risk_definition", "def_risk"),
}


def result_from_row(row: Mapping[str, Any]) -> AnalysisResult:
    """Build a result from a stored analyses row written by any integration path."""
    values: dict[str, Any] = {}
    for field in AnalysisResult.model_fields:
        if field == "psychological_profile":
            continue
        raw = _first(row, ROW_KEYS.get(field, (field,)))
        if field in SCORE_FIELDS:
            values[field] = normalize_score(raw)
        elif field in MOVE_FIELDS or field.startswith("radar_red") or field == "tactical_moves":
            values[field] = join_with_bullets(raw)
        else:
            values[field] = _text(raw)
    values["psychological_profile"] = normalize_profile(row.get("psychological_profile"))
    return AnalysisResult(**values)


def to_row_values(result: AnalysisResult) -> dict[str, Any]:
    """Flatten a result into analyses columns, including the radar duplicates."""
    values = result.model_dump(exclude={"psychological_profile"})
    values["psychological_profile"] = (
        result.psychological_profile.model_dump() if result.psychological_profile else None
    )
    values["radar_control"] = result.risk_score
    values["radar_gravity"] = result.gravity_score
    values["radar_confidence"] = result.confidence_level
    values["radar_stability"] = 100 - result.power_score
    values["radar_strategy"] = int(math.floor((result.power_score + result.risk_score) / 2 + 0.5))
    return values

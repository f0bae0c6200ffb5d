"""
Tolerant decoding of AI provider output into :class:`BatchAnalysis`.

Providers are asked for a single JSON object with camelCase keys, but real
responses arrive wrapped in code fences, prefixed with prose, truncated or
partially filled. Decoding never raises: a missing section or field falls back
to a documented default and an undecodable response becomes a full default
analysis flagged with ``used_defaults``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from .exceptions import ParseError
from .logging_utils import get_logger
from .models import (
    AutomationSuggestions,
    BatchAnalysis,
    BlockerAnalysis,
    CommunicationInsights,
    GoalAlignment,
    NextSteps,
    Recognition,
    WorkSummary,
)

logger = get_logger("decoder")

TIME_BREAKDOWN_KEYS = (
    "coding",
    "meetings",
    "communication",
    "research",
    "debugging",
    "design",
    "documentation",
    "contextSwitching",
)

_FENCE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


@dataclass(frozen=True)
class DecodeContext:
    batch_index: int
    session_id: str
    artifact_ids: List[str]
    time_range_start: datetime
    time_range_end: datetime
    goal_text: str = ""
    has_goals: bool = False
    model: str = ""


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE.sub("", cleaned).strip()
    return cleaned


def find_first_object(text: str) -> Optional[str]:
    """Return the first balanced top-level ``{...}`` in ``text``, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        # Unbalanced from this brace; try the next one.
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str | None) -> Optional[dict[str, Any]]:
    if not text or not text.strip():
        return None

    cleaned = strip_code_fence(text)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    candidate = find_first_object(cleaned)
    while candidate is not None:
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
        # Skip the whole invalid object so a nested one is never returned.
        offset = cleaned.find(candidate) + len(candidate)
        cleaned = cleaned[offset:]
        candidate = find_first_object(cleaned)
    return None


def decode_analysis(text: str | None, context: DecodeContext) -> BatchAnalysis:
    payload = extract_json_object(text)
    if payload is None:
        error = ParseError("No JSON object found in provider response", {"length": len(text or "")})
        logger.warning("Batch %s: %s; using default analysis", context.batch_index, error)
        return default_analysis(context, raw_response=text)

    return BatchAnalysis(
        batch_index=context.batch_index,
        session_id=context.session_id,
        artifact_ids=list(context.artifact_ids),
        time_range_start=context.time_range_start,
        time_range_end=context.time_range_end,
        summary=_summary(payload.get("summary")),
        goal_alignment=_goal_alignment(payload.get("goalAlignment"), context),
        blockers=_blockers(payload.get("blockers")),
        recognition=_recognition(payload.get("recognition")),
        automation=_automation(payload.get("automation")),
        communication=_communication(payload.get("communication")),
        next_steps=_next_steps(payload.get("nextSteps")),
        applications=_str_list(payload.get("applications"), []),
        detected_urls=_str_list(payload.get("detectedUrls"), []),
        redacted_sensitive_data=_bool(payload.get("redactedSensitiveData")),
        model=context.model,
        raw_response=text,
    )


def default_analysis(context: DecodeContext, raw_response: str | None = None) -> BatchAnalysis:
    return BatchAnalysis(
        batch_index=context.batch_index,
        session_id=context.session_id,
        artifact_ids=list(context.artifact_ids),
        time_range_start=context.time_range_start,
        time_range_end=context.time_range_end,
        summary=_summary(None),
        goal_alignment=_goal_alignment(None, context),
        blockers=_blockers(None),
        recognition=_recognition(None),
        automation=_automation(None),
        communication=_communication(None),
        next_steps=_next_steps(None),
        model=context.model or "fallback",
        used_defaults=True,
        raw_response=raw_response,
    )


# --- sections ---


def _summary(raw: Any) -> WorkSummary:
    section = raw if isinstance(raw, dict) else {}
    return WorkSummary(
        report_ready_summary=_str(
            section.get("reportReadySummary"), "Made progress on current work session with focused effort."
        ),
        work_completed=_str_list(section.get("workCompleted"), ["Work session in progress"]),
        time_breakdown=_time_breakdown(section.get("timeBreakdown")),
    )


def _goal_alignment(raw: Any, context: DecodeContext) -> GoalAlignment:
    section = raw if isinstance(raw, dict) else {}
    if context.has_goals:
        goal = context.goal_text
        defaults = (
            f'Session work on "{goal}" contributes to personal short-term objectives',
            "This work session advances personal strategic goals and career growth",
            "Work completed supports team's immediate deliverables and commitments",
            "Progress made aligns with broader team and organizational objectives",
        )
        default_misalignments: List[str] = []
    else:
        defaults = (
            "Session work supports general productivity and skill development",
            "Contributes to overall professional development and capability building",
            "Session work supports team collaboration and shared objectives",
            "Contributes to organizational goals and team success",
        )
        default_misalignments = ["Consider defining specific personal and team goals for better alignment tracking"]

    return GoalAlignment(
        personal_micro_alignment=_str(section.get("personalMicroAlignment"), defaults[0]),
        personal_macro_alignment=_str(section.get("personalMacroAlignment"), defaults[1]),
        team_micro_alignment=_str(section.get("teamMicroAlignment"), defaults[2]),
        team_macro_alignment=_str(section.get("teamMacroAlignment"), defaults[3]),
        alignment_score=_score(section.get("alignmentScore"), 80.0 if context.has_goals else 60.0),
        misalignments=_str_list(section.get("misalignments"), default_misalignments),
    )


def _blockers(raw: Any) -> BlockerAnalysis:
    section = raw if isinstance(raw, dict) else {}
    return BlockerAnalysis(
        technical=_str_list(section.get("technical"), []),
        dependency=_str_list(section.get("dependency"), []),
        process=_str_list(section.get("process"), []),
        recommended_actions=_str_list(section.get("recommendedActions"), []),
        escalation_needed=_bool(section.get("escalationNeeded")),
        escalation_reason=_str(section.get("escalationReason"), ""),
    )


def _recognition(raw: Any) -> Recognition:
    section = raw if isinstance(raw, dict) else {}
    return Recognition(
        accomplishments=_str_list(section.get("accomplishments"), ["Focused work session completed"]),
        invisible_work=_str_list(section.get("invisibleWork"), ["Maintained focus and productivity"]),
        team_impact=_str(section.get("teamImpact"), "Contributing to team progress"),
        effort_highlight=_str(section.get("effortHighlight"), "Dedicated effort on current tasks"),
    )


def _automation(raw: Any) -> AutomationSuggestions:
    section = raw if isinstance(raw, dict) else {}
    return AutomationSuggestions(
        patterns=_str_list(section.get("patterns"), []),
        suggestions=_str_list(section.get("suggestions"), []),
        time_savings_potential=_str(section.get("timeSavingsPotential"), "No patterns detected yet"),
    )


def _communication(raw: Any) -> CommunicationInsights:
    section = raw if isinstance(raw, dict) else {}
    return CommunicationInsights(
        should_share=_str_list(section.get("shouldShare"), []),
        affected_stakeholders=_str_list(section.get("affectedStakeholders"), []),
        gaps_detected=_str_list(section.get("gapsDetected"), []),
        suggested_message=_str(section.get("suggestedMessage"), "Work session completed with good progress"),
    )


def _next_steps(raw: Any) -> NextSteps:
    section = raw if isinstance(raw, dict) else {}
    return NextSteps(
        immediate=_str_list(section.get("immediate"), ["Continue with current focus"]),
        short_term=_str_list(section.get("shortTerm"), ["Maintain productive momentum"]),
        conversations=_str_list(section.get("conversations"), []),
        priority_recommendation=_str(section.get("priorityRecommendation"), "Continue current work trajectory"),
    )


# --- coercion ---


def _str(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _str_list(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    if not isinstance(value, list):
        return list(default)
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _score(value: Any, default: float) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return min(100.0, max(0.0, score))


def _time_breakdown(value: Any) -> dict[str, float]:
    breakdown = {key: 0.0 for key in TIME_BREAKDOWN_KEYS}
    if not isinstance(value, dict):
        return breakdown
    for key, raw in value.items():
        try:
            breakdown[str(key)] = float(raw)
        except (TypeError, ValueError):
            continue
    return breakdown


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)

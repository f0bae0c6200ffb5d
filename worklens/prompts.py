from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence

from .models import BatchAnalysis, CapturedArtifact, UserGoals

RESPONSE_SCHEMA = """
{
  "summary": {
    "reportReadySummary": "One paragraph progress update suitable for standups",
    "workCompleted": ["Specific task completed or progressed"],
    "timeBreakdown": {"coding": 0, "meetings": 0, "communication": 0, "research": 0,
                      "debugging": 0, "design": 0, "documentation": 0, "contextSwitching": 0}
  },
  "goalAlignment": {
    "personalMicroAlignment": "How work relates to personal micro goals",
    "personalMacroAlignment": "How work relates to personal macro goals",
    "teamMicroAlignment": "How work relates to team micro goals",
    "teamMacroAlignment": "How work relates to team macro goals",
    "alignmentScore": 0,
    "misalignments": ["Specific concern if any"]
  },
  "blockers": {
    "technical": [], "dependency": [], "process": [],
    "recommendedActions": [], "escalationNeeded": false, "escalationReason": ""
  },
  "recognition": {
    "accomplishments": [], "invisibleWork": [], "teamImpact": "", "effortHighlight": ""
  },
  "automation": {"patterns": [], "suggestions": [], "timeSavingsPotential": ""},
  "communication": {
    "shouldShare": [], "affectedStakeholders": [], "gapsDetected": [], "suggestedMessage": ""
  },
  "nextSteps": {"immediate": [], "shortTerm": [], "conversations": [], "priorityRecommendation": ""},
  "applications": ["app.exe"],
  "detectedUrls": ["https://..."],
  "redactedSensitiveData": false
}
""".strip()

ANALYSIS_PROMPT = """
You are WorkLens, an analysis engine that brings clarity, recognition and alignment to modern work.
You receive a chronological batch of desktop screenshots with capture metadata.

## CONTEXT
- Personal micro goals: {personal_micro}
- Personal macro goals: {personal_macro}
- Team micro goals: {team_micro}
- Team macro goals: {team_macro}
- Session goal: {session_goal}
- Session started: {session_start}
- Batch: #{batch_number} ({screenshot_count} screenshots, {time_range})
- User profile: {role} on {team}, work style {work_style}

## SCREENSHOTS (in order)
{screenshot_lines}

## TASK
Describe the work that was completed or progressed, how it aligns with each goal tier (alignmentScore 0-100),
blockers and support needs, invisible work worth recognising, repetitive patterns that could be automated,
what should be communicated and to whom, and the logical next steps.

Respond strictly as one JSON object with exactly this structure:
{schema}

Never include passwords, API keys, credentials or personal data. If you see any, set redactedSensitiveData to true
and omit the details. Use empowering, non-judgmental language.
""".strip()

SYNTHESIS_PROMPT = """
You are WorkLens. The work session below was analysed in {batch_count} consecutive batches.
Combine them into one final session report that reads as a single coherent story.

- Session goal: {session_goal}
- Session span: {time_range}
- Screenshots analysed: {artifact_count}

## BATCH SUMMARIES (chronological)
{batch_lines}

Respond strictly as one JSON object with exactly this structure:
{schema}
""".strip()


@dataclass(frozen=True)
class UserProfile:
    role: str = "Developer"
    team: str = "Engineering"
    work_style: str = "Focused"


@dataclass(frozen=True)
class AnalysisRequest:
    session_id: str
    session_goal: str
    goals: UserGoals
    artifacts: Sequence[CapturedArtifact]
    batch_index: int
    profile: UserProfile = field(default_factory=UserProfile)
    session_start: str = ""

    def prompt(self) -> str:
        return build_analysis_prompt(self)

    def images(self) -> List[bytes]:
        return [artifact.image_bytes for artifact in self.artifacts]


def _goals(items: List[str]) -> str:
    return ", ".join(items) if items else "Not specified"


def build_analysis_prompt(request: AnalysisRequest) -> str:
    artifacts = list(request.artifacts)
    lines = []
    for position, artifact in enumerate(artifacts, start=1):
        line = (
            f"{position}. {artifact.captured_at.isoformat()} trigger={artifact.trigger_kind.value} "
            f"window={artifact.active_window_title!r} app={artifact.active_application}"
        )
        if artifact.source_url:
            line += f" url={artifact.source_url}"
        lines.append(line)

    time_range = "n/a"
    if artifacts:
        time_range = f"{artifacts[0].captured_at.isoformat()} - {artifacts[-1].captured_at.isoformat()}"

    return ANALYSIS_PROMPT.format(
        personal_micro=_goals(request.goals.personal_micro),
        personal_macro=_goals(request.goals.personal_macro),
        team_micro=_goals(request.goals.team_micro),
        team_macro=_goals(request.goals.team_macro),
        session_goal=request.session_goal,
        session_start=request.session_start or "unknown",
        batch_number=request.batch_index + 1,
        screenshot_count=len(artifacts),
        time_range=time_range,
        role=request.profile.role,
        team=request.profile.team,
        work_style=request.profile.work_style,
        screenshot_lines="\n".join(lines) or "(none)",
        schema=RESPONSE_SCHEMA,
    )


def build_synthesis_prompt(session_goal: str, analyses: Sequence[BatchAnalysis]) -> str:
    lines = []
    for analysis in analyses:
        lines.append(
            f"Batch {analysis.batch_index + 1} ({analysis.time_range_start.isoformat()} - "
            f"{analysis.time_range_end.isoformat()}, alignment {analysis.alignment_score:.0f}):\n"
            f"  Summary: {analysis.summary.report_ready_summary}\n"
            f"  Completed: {'; '.join(analysis.summary.work_completed) or 'n/a'}\n"
            f"  Blockers: {'; '.join(analysis.blockers.all()) or 'none'}\n"
            f"  Applications: {', '.join(analysis.applications) or 'n/a'}"
        )

    return SYNTHESIS_PROMPT.format(
        batch_count=len(analyses),
        session_goal=session_goal,
        time_range=f"{analyses[0].time_range_start.isoformat()} - {analyses[-1].time_range_end.isoformat()}",
        artifact_count=sum(len(analysis.artifact_ids) for analysis in analyses),
        batch_lines="\n".join(lines),
        schema=RESPONSE_SCHEMA,
    )

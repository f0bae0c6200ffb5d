from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

MIN_INTERVAL_MS = 5000
DEFAULT_BATCH_SIZE = 30
DEFAULT_SESSION_GOAL = "General Work Session"


class TriggerKind(str, Enum):
    INTERVAL = "interval"
    POINTER_CLICK = "pointer-click"
    ENTER_KEY = "enter-key"
    COPY = "copy"
    PASTE = "paste"
    TAB_SWITCH = "tab-switch"
    WINDOW_SWITCH = "window-switch"


@dataclass
class UserGoals:
    personal_micro: List[str] = field(default_factory=list)
    personal_macro: List[str] = field(default_factory=list)
    team_micro: List[str] = field(default_factory=list)
    team_macro: List[str] = field(default_factory=list)

    def has_any(self) -> bool:
        return bool(self.personal_micro or self.personal_macro or self.team_micro or self.team_macro)


@dataclass
class CaptureOptions:
    interval_ms: int = MIN_INTERVAL_MS
    quality: int = 80
    exclude_apps: List[str] = field(default_factory=list)
    include_mouse_position: bool = True
    privacy_mode: bool = False
    enable_event_triggers: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    upload_threshold: int = 1
    session_goal: str = DEFAULT_SESSION_GOAL
    user_goals: UserGoals = field(default_factory=UserGoals)

    def __post_init__(self) -> None:
        self.interval_ms = max(MIN_INTERVAL_MS, int(self.interval_ms))
        self.quality = min(100, max(0, int(self.quality)))
        self.batch_size = max(1, int(self.batch_size))
        self.upload_threshold = max(1, int(self.upload_threshold))
        self.session_goal = self.session_goal or DEFAULT_SESSION_GOAL

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    def is_excluded(self, application: str | None) -> bool:
        if not application:
            return False
        target = application.strip().lower()
        return any(target == app.strip().lower() for app in self.exclude_apps)


@dataclass
class CaptureSession:
    session_id: str
    options: CaptureOptions
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def goal_text(self) -> str:
        return self.options.session_goal

    @property
    def user_goals(self) -> UserGoals:
        return self.options.user_goals

    @property
    def batch_size(self) -> int:
        return self.options.batch_size


def new_artifact_id(now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return f"shot_{int(moment.timestamp() * 1000)}_{secrets.token_hex(5)}"


@dataclass(frozen=True)
class CapturedArtifact:
    artifact_id: str
    session_id: str
    captured_at: datetime
    image_bytes: bytes
    trigger_kind: TriggerKind
    trigger_detail: dict = field(default_factory=dict)
    active_window_title: str = "Unknown"
    active_application: str = "Unknown"
    source_url: Optional[str] = None
    mouse_position: Optional[tuple[int, int]] = None

    @property
    def byte_size(self) -> int:
        return len(self.image_bytes)

    def metadata(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "session_id": self.session_id,
            "captured_at": self.captured_at.isoformat(),
            "trigger": self.trigger_kind.value,
            "trigger_detail": self.trigger_detail,
            "window_title": self.active_window_title,
            "application": self.active_application,
            "url": self.source_url,
            "mouse_position": list(self.mouse_position) if self.mouse_position else None,
            "byte_size": self.byte_size,
        }


@dataclass
class UploadTask:
    artifact: CapturedArtifact
    attempt_count: int = 0
    last_error: Optional[str] = None
    resolved_storage_url: Optional[str] = None


@dataclass
class StoreResult:
    artifact_id: str
    success: bool
    storage_ref: Optional[str] = None
    tier: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ApiError:
    code: str
    message: str
    details: Any = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class ApiResponse:
    success: bool
    data: Any = None
    error: Optional[ApiError] = None
    status: Optional[int] = None

    @classmethod
    def ok(cls, data: Any, status: int | None = None) -> "ApiResponse":
        return cls(success=True, data=data, status=status)

    @classmethod
    def fail(cls, code: str, message: str, details: Any = None, status: int | None = None) -> "ApiResponse":
        return cls(success=False, error=ApiError(code=code, message=message, details=details), status=status)


# --- analysis ---


@dataclass(frozen=True)
class WorkSummary:
    report_ready_summary: str = ""
    work_completed: List[str] = field(default_factory=list)
    time_breakdown: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class GoalAlignment:
    personal_micro_alignment: str = ""
    personal_macro_alignment: str = ""
    team_micro_alignment: str = ""
    team_macro_alignment: str = ""
    alignment_score: float = 0.0
    misalignments: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BlockerAnalysis:
    technical: List[str] = field(default_factory=list)
    dependency: List[str] = field(default_factory=list)
    process: List[str] = field(default_factory=list)
    recommended_actions: List[str] = field(default_factory=list)
    escalation_needed: bool = False
    escalation_reason: str = ""

    def all(self) -> List[str]:
        return [*self.technical, *self.dependency, *self.process]


@dataclass(frozen=True)
class Recognition:
    accomplishments: List[str] = field(default_factory=list)
    invisible_work: List[str] = field(default_factory=list)
    team_impact: str = ""
    effort_highlight: str = ""


@dataclass(frozen=True)
class AutomationSuggestions:
    patterns: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    time_savings_potential: str = ""


@dataclass(frozen=True)
class CommunicationInsights:
    should_share: List[str] = field(default_factory=list)
    affected_stakeholders: List[str] = field(default_factory=list)
    gaps_detected: List[str] = field(default_factory=list)
    suggested_message: str = ""


@dataclass(frozen=True)
class NextSteps:
    immediate: List[str] = field(default_factory=list)
    short_term: List[str] = field(default_factory=list)
    conversations: List[str] = field(default_factory=list)
    priority_recommendation: str = ""


@dataclass(frozen=True)
class BatchAnalysis:
    batch_index: int
    session_id: str
    artifact_ids: List[str]
    time_range_start: datetime
    time_range_end: datetime
    summary: WorkSummary = field(default_factory=WorkSummary)
    goal_alignment: GoalAlignment = field(default_factory=GoalAlignment)
    blockers: BlockerAnalysis = field(default_factory=BlockerAnalysis)
    recognition: Recognition = field(default_factory=Recognition)
    automation: AutomationSuggestions = field(default_factory=AutomationSuggestions)
    communication: CommunicationInsights = field(default_factory=CommunicationInsights)
    next_steps: NextSteps = field(default_factory=NextSteps)
    applications: List[str] = field(default_factory=list)
    detected_urls: List[str] = field(default_factory=list)
    redacted_sensitive_data: bool = False
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    model: str = ""
    processing_ms: int = 0
    tokens_estimate: int = 0
    used_defaults: bool = False
    raw_response: str | None = None

    @property
    def alignment_score(self) -> float:
        return self.goal_alignment.alignment_score

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("raw_response", None)
        data["kind"] = "final" if isinstance(self, FinalReport) else "batch"
        return _jsonable(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchAnalysis":
        target = FinalReport if data.get("kind") == "final" else cls
        known = {item.name for item in fields(target)}
        values = {key: value for key, value in data.items() if key in known}
        for key in ("time_range_start", "time_range_end", "analyzed_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        for key, section_type in _SECTION_TYPES.items():
            if isinstance(values.get(key), dict):
                values[key] = section_type(**values[key])
        if isinstance(values.get("alignment_trend"), dict):
            values["alignment_trend"] = AlignmentTrend(**values["alignment_trend"])
        return target(**values)


@dataclass(frozen=True)
class AlignmentTrend:
    direction: str
    score_change: float
    scores: List[float]
    peak_score: float
    lowest_score: float


@dataclass(frozen=True)
class FinalReport(BatchAnalysis):
    batch_count: int = 0
    artifact_count: int = 0
    alignment_trend: Optional[AlignmentTrend] = None
    common_blockers: dict[str, int] = field(default_factory=dict)
    application_usage: dict[str, int] = field(default_factory=dict)
    synthesized: bool = True


_SECTION_TYPES = {
    "summary": WorkSummary,
    "goal_alignment": GoalAlignment,
    "blockers": BlockerAnalysis,
    "recognition": Recognition,
    "automation": AutomationSuggestions,
    "communication": CommunicationInsights,
    "next_steps": NextSteps,
}


@dataclass
class SessionResult:
    session_id: str
    artifacts: List[CapturedArtifact]
    batch_analyses: List[BatchAnalysis]
    final_report: Optional[BatchAnalysis]
    unresolved_uploads: List[UploadTask] = field(default_factory=list)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value

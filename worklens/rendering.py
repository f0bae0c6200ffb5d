from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Tuple

from .models import BatchAnalysis, FinalReport, SessionResult
from .utils import ensure_directory


def render_markdown(result: SessionResult) -> str:
    report = result.final_report
    lines = [f"# Work session {result.session_id}\n"]
    lines.append(f"- Screenshots: {len(result.artifacts)}")
    lines.append(f"- Analysed batches: {len(result.batch_analyses)}")
    if result.unresolved_uploads:
        lines.append(f"- Uploads still pending: {len(result.unresolved_uploads)}")

    if report is None:
        lines.append("\nNo analysis is available for this session.")
        return "\n".join(lines)

    lines.append(f"- Alignment score: **{report.alignment_score:.0f}/100**")
    lines.append(f"- Span: {report.time_range_start:%Y-%m-%d %H:%M} - {report.time_range_end:%H:%M} UTC")

    lines.append("\n## Summary\n")
    lines.append(report.summary.report_ready_summary)
    _bullets(lines, "Work completed", report.summary.work_completed)

    breakdown = [(name, value) for name, value in report.summary.time_breakdown.items() if value]
    if breakdown:
        lines.append("\n## Time breakdown")
        lines.append("| Activity | Share |")
        lines.append("| --- | ---: |")
        for name, value in sorted(breakdown, key=lambda item: item[1], reverse=True):
            lines.append(f"| {name} | {value:g} |")

    alignment = report.goal_alignment
    lines.append("\n## Goal alignment\n")
    lines.append(f"- Personal (micro): {alignment.personal_micro_alignment}")
    lines.append(f"- Personal (macro): {alignment.personal_macro_alignment}")
    lines.append(f"- Team (micro): {alignment.team_micro_alignment}")
    lines.append(f"- Team (macro): {alignment.team_macro_alignment}")
    _bullets(lines, "Misalignments", alignment.misalignments)

    if isinstance(report, FinalReport) and report.alignment_trend:
        trend = report.alignment_trend
        lines.append(
            f"\nAlignment trend: **{trend.direction}** ({trend.score_change:+.0f}; "
            f"peak {trend.peak_score:.0f}, lowest {trend.lowest_score:.0f})"
        )

    _bullets(lines, "Blockers", report.blockers.all())
    if report.blockers.escalation_needed:
        lines.append(f"\n> Escalation needed: {report.blockers.escalation_reason}")
    _bullets(lines, "Recommended actions", report.blockers.recommended_actions)
    _bullets(lines, "Accomplishments", report.recognition.accomplishments)
    _bullets(lines, "Invisible work", report.recognition.invisible_work)
    _bullets(lines, "Automation ideas", report.automation.suggestions)
    _bullets(lines, "Share with the team", report.communication.should_share)
    _bullets(lines, "Next steps", [*report.next_steps.immediate, *report.next_steps.short_term])

    if isinstance(report, FinalReport):
        _table(lines, "Applications", "Application", list(report.application_usage.items()))
        _table(lines, "Common blockers", "Blocker", list(report.common_blockers.items()))

    lines.append("\n## Batches\n")
    lines.append("| # | Time range | Screenshots | Alignment | Summary |")
    lines.append("| ---: | --- | ---: | ---: | --- |")
    for analysis in result.batch_analyses:
        lines.append(_batch_row(analysis))

    return "\n".join(lines)


def to_dict(result: SessionResult) -> dict[str, Any]:
    return {
        "session_id": result.session_id,
        "artifacts": [artifact.metadata() for artifact in result.artifacts],
        "batch_analyses": [analysis.to_dict() for analysis in result.batch_analyses],
        "final_report": result.final_report.to_dict() if result.final_report else None,
        "unresolved_uploads": [
            {
                "artifact_id": task.artifact.artifact_id,
                "attempt_count": task.attempt_count,
                "last_error": task.last_error,
            }
            for task in result.unresolved_uploads
        ],
    }


def write_session_report(result: SessionResult, output_dir: Path) -> Tuple[Path, Path]:
    ensure_directory(output_dir)
    json_path = output_dir / f"session-{result.session_id}.json"
    md_path = output_dir / f"session-{result.session_id}.md"
    json_path.write_text(json.dumps(to_dict(result), ensure_ascii=False, indent=2), encoding="utf-8")
    md_path.write_text(render_markdown(result), encoding="utf-8")
    return json_path, md_path


def _bullets(lines: List[str], title: str, items: List[str]) -> None:
    if not items:
        return
    lines.append(f"\n## {title}\n")
    for item in items:
        lines.append(f"- {item}")


def _table(lines: List[str], title: str, label: str, rows: List[Tuple[str, int]]) -> None:
    if not rows:
        return
    lines.append(f"\n## {title}")
    lines.append(f"| {label} | Batches |")
    lines.append("| --- | ---: |")
    for name, count in rows:
        lines.append(f"| {name} | {count} |")


def _batch_row(analysis: BatchAnalysis) -> str:
    span = f"{analysis.time_range_start:%H:%M:%S}-{analysis.time_range_end:%H:%M:%S}"
    summary = analysis.summary.report_ready_summary.replace("|", "/").replace("\n", " ")
    return (
        f"| {analysis.batch_index + 1} | {span} | {len(analysis.artifact_ids)} | "
        f"{analysis.alignment_score:.0f} | {summary} |"
    )

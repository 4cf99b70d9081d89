from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from matrixci.logging_utils import RunContext
from matrixci.pipeline.aggregate import PipelineReport
from matrixci.pipeline.models import EnvironmentResult

STATUS_LABELS: Dict[str, str] = {
    "passed": "PASS",
    "failed": "FAIL",
    "cancelled": "CANCELLED",
    "infrastructure_failed": "INFRA-FAIL",
}


def tail(text: str, lines: int) -> str:
    if lines <= 0 or not text:
        return ""
    return "\n".join(text.rstrip("\n").splitlines()[-lines:])


def _failure_detail(result: EnvironmentResult) -> Optional[str]:
    failure = result.first_failure
    if failure is not None:
        return f"{failure.step_name}: {failure.error_message}"
    if result.status == "infrastructure_failed":
        return result.error_message
    if result.status == "cancelled":
        return f"skipped: {', '.join(result.skipped_steps)}"
    return None


def render_summary(report: PipelineReport, *, tail_lines: int = 20) -> str:
    """Console summary: one line per environment plus failing output tails."""

    lines: List[str] = []
    for result in report.results:
        passed = sum(1 for o in result.outcomes if o.status == "passed")
        label = STATUS_LABELS[result.status]
        line = f"{label:<10} {result.environment.key}  ({passed}/{len(result.outcomes)} steps passed, {result.duration_s:.1f}s)"
        detail = _failure_detail(result)
        if detail:
            line += f"\n           {detail}"
        lines.append(line)

        failure = result.first_failure
        if failure is not None:
            excerpt = tail(failure.output, tail_lines)
            if excerpt:
                lines.extend("           | " + out for out in excerpt.splitlines())

    counts = report.counts()
    lines.append("")
    lines.append(
        "passed={passed} failed={failed} cancelled={cancelled} infrastructure_failed={infrastructure_failed}".format(
            **counts
        )
    )
    lines.append("RESULT: " + ("SUCCESS" if report.overall_success else "FAILURE"))
    return "\n".join(lines) + "\n"


def write_report_artifacts(
    *,
    report: PipelineReport,
    reports_dir: Path,
    run_ctx: RunContext,
    pipeline_name: str,
    tail_lines: int = 20,
) -> Dict[str, Path]:
    """Write Markdown + JSON + per-step CSV artifacts for one run."""

    ts_tag = run_ctx.tag
    reports_dir.mkdir(parents=True, exist_ok=True)

    md_path = reports_dir / f"report-{ts_tag}.md"
    json_path = reports_dir / f"report-{ts_tag}.json"
    csv_path = reports_dir / f"steps-{ts_tag}.csv"

    md_path.write_text(
        _render_markdown(report=report, pipeline_name=pipeline_name, generated_at=run_ctx.started_at_utc, tail_lines=tail_lines),
        encoding="utf-8",
    )
    json_path.write_text(
        _render_json_payload(report=report, pipeline_name=pipeline_name, run_ctx=run_ctx),
        encoding="utf-8",
    )

    df = steps_frame(report)
    df.to_csv(csv_path, index=False)

    return {"markdown": md_path, "json": json_path, "csv": csv_path}


def steps_frame(report: PipelineReport) -> pd.DataFrame:
    """One row per (environment, step) outcome."""

    rows: List[Dict[str, object]] = []
    for result in report.results:
        for position, outcome in enumerate(result.outcomes, start=1):
            rows.append(
                {
                    "environment": result.environment.key,
                    "environment_status": result.status,
                    "position": position,
                    "step": outcome.step_name,
                    "status": outcome.status,
                    "exit_code": outcome.exit_code,
                    "duration_s": round(outcome.duration_s, 3),
                    "continue_on_failure": outcome.continue_on_failure,
                    "error_kind": outcome.error_kind,
                }
            )
    columns = [
        "environment",
        "environment_status",
        "position",
        "step",
        "status",
        "exit_code",
        "duration_s",
        "continue_on_failure",
        "error_kind",
    ]
    return pd.DataFrame(rows, columns=columns)


def _render_markdown(
    *,
    report: PipelineReport,
    pipeline_name: str,
    generated_at: datetime,
    tail_lines: int,
) -> str:
    lines: List[str] = []
    lines.append(f"# {pipeline_name}")
    lines.append("")
    lines.append(f"Generated at {generated_at.isoformat()}")
    lines.append("")
    lines.append(f"**Result:** {'SUCCESS' if report.overall_success else 'FAILURE'}")
    lines.append("")

    headers = ["Environment", "Status", "Steps", "Duration", "First failure"]
    lines.append(" | ".join(headers))
    lines.append(" | ".join(["---"] * len(headers)))

    for result in report.results:
        passed = sum(1 for o in result.outcomes if o.status == "passed")
        row = [
            result.environment.key,
            STATUS_LABELS[result.status],
            f"{passed}/{len(result.outcomes)}",
            f"{result.duration_s:.1f}s",
            _failure_detail(result) or "",
        ]
        lines.append(" | ".join(cell.replace("|", "\\|") for cell in row))

    for result in report.results:
        failure = result.first_failure
        if failure is None:
            continue
        excerpt = tail(failure.output, tail_lines)
        lines.append("")
        lines.append(f"## {result.environment.key}: {failure.step_name}")
        lines.append("")
        lines.append("```")
        lines.append(excerpt)
        lines.append("```")

    return "\n".join(lines) + "\n"


def _render_json_payload(*, report: PipelineReport, pipeline_name: str, run_ctx: RunContext) -> str:
    serializable: Dict[str, object] = {
        "pipeline": pipeline_name,
        "run_id": run_ctx.run_id,
        "generated_at": run_ctx.started_at_utc.isoformat(),
        "overall_success": report.overall_success,
        "status_counts": report.counts(),
        "environments": [],
    }

    for result in report.results:
        entry: Dict[str, object] = {
            "key": result.environment.key,
            "axes": result.environment.as_dict(),
            "status": result.status,
            "duration_s": result.duration_s,
            "error_kind": result.error_kind,
            "error_message": result.error_message,
            "steps": [
                {
                    "name": o.step_name,
                    "status": o.status,
                    "exit_code": o.exit_code,
                    "duration_s": o.duration_s,
                    "continue_on_failure": o.continue_on_failure,
                    "error_kind": o.error_kind,
                    "error_message": o.error_message,
                    "output": o.output,
                }
                for o in result.outcomes
            ],
        }
        serializable["environments"].append(entry)

    return json.dumps(serializable, indent=2, ensure_ascii=False)

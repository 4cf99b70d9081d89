"""Report rendering (console summary, Markdown/JSON/CSV artifacts)."""

from matrixci.report.render import render_summary, steps_frame, write_report_artifacts

__all__ = [
    "render_summary",
    "steps_frame",
    "write_report_artifacts",
]

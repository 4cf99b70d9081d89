from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from matrixci.logging_utils import (
    JsonlLogger,
    RunContext,
    configure_logging,
    default_log_path,
    new_run_context,
    run_summary_event,
)


def test_jsonl_logger_appends_stamped_lines(tmp_path: Path) -> None:
    logger = JsonlLogger(tmp_path / "nested" / "run.jsonl", run_id="abc")

    logger.log({"event": "a", "path": Path("x")})
    logger.log({"event": "b"})

    lines = (tmp_path / "nested" / "run.jsonl").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    assert [r["event"] for r in records] == ["a", "b"]
    assert records[0]["path"] == "x"
    assert all(r["run_id"] == "abc" and "ts" in r for r in records)


def test_unbound_logger_omits_run_id(tmp_path: Path) -> None:
    logger = JsonlLogger(tmp_path / "run.jsonl")
    logger.log({"event": "a"})

    record = json.loads((tmp_path / "run.jsonl").read_text(encoding="utf-8"))
    assert "run_id" not in record


def test_default_log_path() -> None:
    ts = datetime(2025, 1, 2, tzinfo=timezone.utc)
    assert default_log_path(Path("logs"), now_utc=ts) == Path("logs/run-20250102.jsonl")


def test_run_context_tag() -> None:
    ctx = RunContext(run_id="r", started_at_utc=datetime(2025, 3, 1, 8, 30, 5, tzinfo=timezone.utc))
    assert ctx.tag == "20250301T083005Z"


def test_run_summary_event() -> None:
    ctx = new_run_context()
    event = run_summary_event(ctx=ctx, status_counts={"passed": 3, "failed": 1}, overall_success=False)

    assert event["event"] == "run_summary"
    assert event["duration_s"] >= 0
    assert event["environments"] == 4
    assert event["status_counts"] == {"passed": 3, "failed": 1}
    assert event["overall_success"] is False


def test_configure_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        configure_logging("LOUD")

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


@dataclass(frozen=True)
class RunContext:
    """Identity of one `matrixci run` invocation."""

    run_id: str
    started_at_utc: datetime

    @property
    def tag(self) -> str:
        # Filesystem-safe timestamp shared by every artifact of the run.
        return self.started_at_utc.strftime("%Y%m%dT%H%M%SZ")


def new_run_context() -> RunContext:
    return RunContext(run_id=uuid.uuid4().hex[:12], started_at_utc=datetime.now(timezone.utc))


def configure_logging(level: str = "WARNING") -> None:
    """Route stdlib logging (runner/orchestrator diagnostics) to stderr."""

    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def default_log_path(logs_dir: Path, now_utc: Optional[datetime] = None) -> Path:
    day = (now_utc or datetime.now(timezone.utc)).strftime("%Y%m%d")
    return logs_dir / f"run-{day}.jsonl"


class JsonlLogger:
    """Append-only event log, one JSON object per line.

    Every event is stamped with `ts` and, when the logger is bound to a run,
    with `run_id`. Environment results arrive from worker threads, so writes
    are serialized.
    """

    def __init__(self, path: Path, *, run_id: Optional[str] = None) -> None:
        self.path = path
        self.run_id = run_id
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, event: Mapping[str, Any]) -> None:
        record: Dict[str, Any] = {"ts": datetime.now(timezone.utc).isoformat()}
        if self.run_id is not None:
            record["run_id"] = self.run_id
        record.update(event)

        line = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")


def run_summary_event(
    *,
    ctx: RunContext,
    status_counts: Mapping[str, int],
    overall_success: bool,
) -> Dict[str, Any]:
    ended_at_utc = datetime.now(timezone.utc)

    return {
        "event": "run_summary",
        "started_at": ctx.started_at_utc.isoformat(),
        "ended_at": ended_at_utc.isoformat(),
        "duration_s": (ended_at_utc - ctx.started_at_utc).total_seconds(),
        "environments": sum(status_counts.values()),
        "status_counts": dict(status_counts),
        "overall_success": overall_success,
    }

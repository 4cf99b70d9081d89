from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from matrixci.errors import ConfigError
from matrixci.pipeline.aggregate import PipelineReport
from matrixci.pipeline.models import EnvironmentStatus


class EnvironmentStatusEntry(BaseModel):
    status: EnvironmentStatus

    # Semantics:
    # - last_passed is only updated on status==passed
    # - last_run_at is updated on every run that decided this environment
    last_passed: Optional[str] = Field(default=None)
    last_run_at: Optional[str] = Field(default=None)

    # First failing step and its error (cleared on passed).
    last_failed_step: Optional[str] = Field(default=None)
    last_error: Optional[str] = Field(default=None)


class RunStatusFile(BaseModel):
    version: int = Field(default=1)
    pipeline: Optional[str] = Field(default=None)
    updated_at: Optional[str] = Field(default=None)

    # Keyed by environment key (axis=value,axis=value).
    environments: Dict[str, EnvironmentStatusEntry] = Field(default_factory=dict)


@dataclass(frozen=True)
class MergeResult:
    merged: RunStatusFile
    updated_entries: int


def load_run_status(path: Path) -> RunStatusFile:
    """Load the run status file.

    If the file does not exist, returns an empty default structure.
    """

    if not path.exists():
        return RunStatusFile()

    try:
        raw = path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        raise ConfigError(f"cannot read run status file {path}: {exc}") from exc
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid run status file {path}: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigError("run status must be a JSON object at the top level")

    try:
        return RunStatusFile.model_validate(parsed)
    except ValidationError as exc:
        raise ConfigError(f"Invalid run status file: {exc}") from exc


def merge_run_status(
    *,
    existing: RunStatusFile,
    report: PipelineReport,
    run_at_utc: datetime,
    pipeline: Optional[str] = None,
) -> MergeResult:
    """Merge a pipeline report into an existing RunStatusFile.

    Deterministic merge rules:
    - Only environments present in the report are touched.
    - Cancelled environments keep their previous entry (nothing was decided).
    - status and last_run_at are overwritten for every other environment.
    - last_passed moves to run_at_utc *only* when status=="passed".
    - last_failed_step/last_error describe the first failure; cleared on pass.
    """

    run_at_iso = _utc_iso(run_at_utc)

    merged_envs: Dict[str, EnvironmentStatusEntry] = dict(existing.environments)
    updated_entries = 0

    for result in report.results:
        if result.status == "cancelled":
            continue

        key = result.environment.key
        prev = merged_envs.get(key)
        prev_dump = prev.model_dump(mode="python") if prev is not None else None

        entry = prev.model_copy(deep=True) if prev is not None else EnvironmentStatusEntry(status=result.status)
        entry.status = result.status
        entry.last_run_at = run_at_iso

        if result.status == "passed":
            entry.last_passed = run_at_iso
            entry.last_failed_step = None
            entry.last_error = None
        else:
            failure = result.first_failure
            entry.last_failed_step = failure.step_name if failure is not None else None
            if failure is not None:
                entry.last_error = failure.error_message
            else:
                entry.last_error = result.error_message

        if entry.model_dump(mode="python") != prev_dump:
            updated_entries += 1
        merged_envs[key] = entry

    merged = RunStatusFile(
        version=existing.version,
        pipeline=pipeline if pipeline is not None else existing.pipeline,
        updated_at=run_at_iso,
        environments=merged_envs,
    )
    return MergeResult(merged=merged, updated_entries=updated_entries)


def save_run_status(path: Path, status_file: RunStatusFile) -> None:
    """Replace the status file in one step so readers never see a partial write."""

    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(status_file.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, indent=2)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content + "\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def failed_environment_keys(status_file: RunStatusFile) -> List[str]:
    """Keys of environments whose last decided run did not pass."""

    return sorted(key for key, entry in status_file.environments.items() if entry.status != "passed")


def _utc_iso(ts: datetime) -> str:
    # Naive timestamps are taken to be UTC already.
    aware = ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)
    return aware.isoformat()

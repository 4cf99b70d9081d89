"""Persisted per-environment run status (drives --rerun-failed)."""

from matrixci.status.run_status import (
    EnvironmentStatusEntry,
    MergeResult,
    RunStatusFile,
    failed_environment_keys,
    load_run_status,
    merge_run_status,
    save_run_status,
)

__all__ = [
    "EnvironmentStatusEntry",
    "MergeResult",
    "RunStatusFile",
    "failed_environment_keys",
    "load_run_status",
    "merge_run_status",
    "save_run_status",
]

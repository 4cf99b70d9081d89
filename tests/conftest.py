from __future__ import annotations

import os
from pathlib import Path

import pytest

from matrixci.pipeline.job_runner import RunnerConfig
from matrixci.retry_utils import RetryConfig


@pytest.fixture()
def runner_config(tmp_path: Path) -> RunnerConfig:
    return RunnerConfig(
        workspace_root=tmp_path / "workspaces",
        base_env=dict(os.environ),
        provision_retry=RetryConfig(max_attempts=1),
    )

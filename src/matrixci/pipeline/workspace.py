from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from matrixci.errors import InfrastructureError
from matrixci.pipeline.matrix import Environment
from matrixci.retry_utils import RetryConfig, retry_call

logger = logging.getLogger(__name__)


def provision_workspace(root: Path, environment: Environment, *, retry: RetryConfig) -> Path:
    """Create a fresh, empty workspace directory for one environment.

    Transient OSErrors are retried; exhaustion raises InfrastructureError.
    """

    def _create() -> Path:
        root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{environment.slug}-", dir=root))

    try:
        return retry_call(
            _create,
            cfg=retry,
            retry_on=(OSError,),
            what=f"workspace provisioning for {environment.key}",
        )
    except OSError as exc:
        raise InfrastructureError(
            f"could not provision workspace for {environment.key} under {root}: {exc}"
        ) from exc


def discard_workspace(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.warning(f"could not remove workspace {path}: {exc}")

from __future__ import annotations

from typing import Optional


class MatrixCIError(Exception):
    """Base class for all matrixci errors."""


class ConfigError(MatrixCIError, ValueError):
    """Malformed pipeline, axis set, step list or settings.

    Raised before anything is executed.
    """


class StepExecutionError(MatrixCIError):
    def __init__(
        self, step_name: str, exit_code: Optional[int], output: str = "", *, reason: Optional[str] = None
    ) -> None:
        super().__init__(reason or f"step '{step_name}' exited with status {exit_code}")
        self.step_name = step_name
        self.exit_code = exit_code
        self.output = output


class StepTimeoutError(StepExecutionError, TimeoutError):
    def __init__(self, step_name: str, timeout_s: float, output: str = "") -> None:
        super().__init__(step_name, None, output)
        self.timeout_s = timeout_s
        self.args = (f"step '{step_name}' timed out after {timeout_s:g}s",)


class InfrastructureError(MatrixCIError):
    """An environment could not be provisioned (e.g. no workspace)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Optional, Tuple, Union

from matrixci.pipeline.matrix import Environment

StepStatus = Literal["passed", "failed", "timed_out", "skipped"]
EnvironmentStatus = Literal["passed", "failed", "cancelled", "infrastructure_failed"]

ENVIRONMENT_STATUSES: Tuple[str, ...] = ("passed", "failed", "cancelled", "infrastructure_failed")


@dataclass(frozen=True)
class Step:
    """One unit of pipeline work backed by an external executable.

    `command` is either a literal argv tuple or a command line. Command lines
    are rendered per environment and then split with shlex, or handed to
    `shell -c` when `shell` is set.
    """

    name: str
    command: Union[Tuple[str, ...], str]
    continue_on_failure: bool = False
    timeout_s: Optional[float] = None
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    shell: Optional[str] = None


@dataclass(frozen=True)
class StepOutcome:
    step_name: str
    status: StepStatus
    exit_code: Optional[int]
    output: str
    duration_s: float
    continue_on_failure: bool = False
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "timed_out")


@dataclass(frozen=True)
class EnvironmentResult:
    environment: Environment
    outcomes: Tuple[StepOutcome, ...]
    status: EnvironmentStatus
    duration_s: float = 0.0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "passed"

    @property
    def first_failure(self) -> Optional[StepOutcome]:
        for outcome in self.outcomes:
            if outcome.failed:
                return outcome
        return None

    @property
    def skipped_steps(self) -> Tuple[str, ...]:
        return tuple(o.step_name for o in self.outcomes if o.status == "skipped")

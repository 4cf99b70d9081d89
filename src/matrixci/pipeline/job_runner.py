from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from matrixci.errors import ConfigError, InfrastructureError, StepExecutionError, StepTimeoutError
from matrixci.pipeline.expressions import build_context, render
from matrixci.pipeline.matrix import Environment
from matrixci.pipeline.models import EnvironmentResult, EnvironmentStatus, Step, StepOutcome
from matrixci.pipeline.workspace import discard_workspace, provision_workspace
from matrixci.retry_utils import RetryConfig

logger = logging.getLogger(__name__)

# Conventional shell exit codes for "command not found" / "not executable".
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126

_SHELL_FLAGS: Dict[str, List[str]] = {
    "cmd": ["/d", "/s", "/c"],
    "pwsh": ["-Command"],
    "powershell": ["-Command"],
}

_ENV_NAME_RE = re.compile(r"[^A-Za-z0-9]+")


@dataclass(frozen=True)
class RunnerConfig:
    """Everything a JobRunner needs, passed explicitly.

    base_env is the process environment every step starts from. Callers that
    want host inheritance snapshot `os.environ` themselves.
    """

    workspace_root: Path
    base_env: Mapping[str, str] = field(default_factory=dict)
    default_timeout_s: Optional[float] = None
    keep_workspaces: bool = False
    concurrency: Optional[int] = None
    cancel_on_infrastructure_error: bool = False
    provision_retry: RetryConfig = field(default_factory=RetryConfig)


def axis_env_name(axis: str) -> str:
    return "MATRIX_" + _ENV_NAME_RE.sub("_", axis).strip("_").upper()


def build_argv(step: Step, context: Mapping[str, Mapping[str, str]]) -> List[str]:
    """Render a step's command into an argv list."""

    if isinstance(step.command, tuple):
        return [render(arg, context) for arg in step.command]

    line = render(step.command, context)
    if step.shell:
        shell_name = Path(step.shell).stem.lower()
        return [step.shell, *_SHELL_FLAGS.get(shell_name, ["-c"]), line]
    try:
        argv = shlex.split(line, posix=os.name == "posix")
    except ValueError as exc:
        raise ConfigError(f"step '{step.name}': cannot split command line {line!r}: {exc}") from exc
    if not argv:
        raise ConfigError(f"step '{step.name}': command renders to nothing")
    return argv


def execute_step(
    name: str,
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    timeout_s: Optional[float],
) -> str:
    """Run one step process to completion and return its combined output.

    Raises StepExecutionError on a non-zero exit or a launch failure and
    StepTimeoutError when the process outlives `timeout_s` (it is killed).
    """

    logger.debug(f"executing step '{name}': {' '.join(argv)} (cwd={cwd})")

    # subprocess reports a missing cwd as FileNotFoundError, same as a missing executable
    if not cwd.is_dir():
        raise StepExecutionError(name, None, reason=f"step '{name}': working directory {cwd} does not exist")

    try:
        completed = subprocess.run(
            list(argv),
            cwd=cwd,
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout_s,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise StepTimeoutError(name, float(exc.timeout), _as_text(exc.output)) from exc
    except FileNotFoundError as exc:
        raise StepExecutionError(
            name, EXIT_NOT_FOUND, str(exc), reason=f"step '{name}': executable not found: {argv[0]}"
        ) from exc
    except OSError as exc:
        raise StepExecutionError(
            name, EXIT_NOT_EXECUTABLE, str(exc), reason=f"step '{name}': cannot launch {argv[0]}: {exc}"
        ) from exc

    if completed.returncode != 0:
        raise StepExecutionError(name, completed.returncode, completed.stdout or "")
    return completed.stdout or ""


def _as_text(data: object) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


class JobRunner:
    """Executes the ordered steps of a pipeline inside one environment.

    Steps run strictly one after another in a fresh workspace that is removed
    afterwards (unless keep_workspaces). A failing step without
    continue_on_failure ends the sequence. A set cancel event is honored
    between steps: the remaining steps are recorded as skipped.
    """

    def __init__(self, config: RunnerConfig, *, global_env: Optional[Mapping[str, str]] = None) -> None:
        self.config = config
        self.global_env: Dict[str, str] = dict(global_env or {})

    def run(
        self,
        environment: Environment,
        steps: Sequence[Step],
        cancel_event: Optional[threading.Event] = None,
    ) -> EnvironmentResult:
        started = time.monotonic()
        base_context = build_context(environment.as_dict(), self.config.base_env)
        global_env = {k: render(v, base_context) for k, v in self.global_env.items()}
        context = build_context(environment.as_dict(), {**self.config.base_env, **global_env})

        if _cancelled(cancel_event):
            logger.info(f"[{environment.key}] cancelled before start")
            return EnvironmentResult(
                environment=environment,
                outcomes=tuple(_skipped(render(s.name, context), s) for s in steps),
                status="cancelled",
                duration_s=time.monotonic() - started,
            )

        try:
            workspace = provision_workspace(
                self.config.workspace_root, environment, retry=self.config.provision_retry
            )
        except InfrastructureError as exc:
            logger.error(f"[{environment.key}] {exc}")
            return EnvironmentResult(
                environment=environment,
                outcomes=(),
                status="infrastructure_failed",
                duration_s=time.monotonic() - started,
                error_kind=type(exc).__name__,
                error_message=str(exc),
            )

        logger.info(f"[{environment.key}] workspace {workspace}")
        process_env = self._process_env(environment, workspace, global_env)

        try:
            outcomes = self._run_steps(environment, steps, workspace, process_env, context, cancel_event)
        finally:
            if not self.config.keep_workspaces:
                discard_workspace(workspace)

        status = _environment_status(outcomes)
        logger.info(f"[{environment.key}] finished: {status}")
        return EnvironmentResult(
            environment=environment,
            outcomes=tuple(outcomes),
            status=status,
            duration_s=time.monotonic() - started,
        )

    def _process_env(self, environment: Environment, workspace: Path, global_env: Mapping[str, str]) -> Dict[str, str]:
        env = dict(self.config.base_env)
        env.update(global_env)
        for axis, value in environment.axes:
            env[axis_env_name(axis)] = value
        env["MATRIXCI_WORKSPACE"] = str(workspace)
        env["MATRIXCI_ENVIRONMENT"] = environment.key
        return env

    def _run_steps(
        self,
        environment: Environment,
        steps: Sequence[Step],
        workspace: Path,
        process_env: Mapping[str, str],
        context: Mapping[str, Mapping[str, str]],
        cancel_event: Optional[threading.Event],
    ) -> List[StepOutcome]:
        outcomes: List[StepOutcome] = []

        for i, step in enumerate(steps):
            if _cancelled(cancel_event):
                remaining = steps[i:]
                logger.info(f"[{environment.key}] cancelled, skipping {len(remaining)} step(s)")
                outcomes.extend(_skipped(render(s.name, context), s) for s in remaining)
                break

            outcome = self._run_step(environment, step, workspace, process_env, context)
            outcomes.append(outcome)

            if outcome.failed and not step.continue_on_failure:
                logger.info(f"[{environment.key}] step '{outcome.step_name}' failed, stopping")
                break

        return outcomes

    def _run_step(
        self,
        environment: Environment,
        step: Step,
        workspace: Path,
        process_env: Mapping[str, str],
        context: Mapping[str, Mapping[str, str]],
    ) -> StepOutcome:
        name = render(step.name, context)
        try:
            argv = build_argv(step, context)
        except ConfigError as exc:
            logger.error(f"[{environment.key}] {exc}")
            return StepOutcome(
                step_name=name,
                status="failed",
                exit_code=None,
                output="",
                duration_s=0.0,
                continue_on_failure=step.continue_on_failure,
                error_kind=type(exc).__name__,
                error_message=str(exc),
            )
        env = dict(process_env)
        env.update({k: render(v, context) for k, v in step.env.items()})
        cwd = workspace / render(step.working_directory, context) if step.working_directory else workspace
        timeout_s = step.timeout_s if step.timeout_s is not None else self.config.default_timeout_s

        logger.info(f"[{environment.key}] step '{name}'")
        started = time.monotonic()
        try:
            output = execute_step(name, argv, cwd=cwd, env=env, timeout_s=timeout_s)
        except StepTimeoutError as exc:
            return StepOutcome(
                step_name=name,
                status="timed_out",
                exit_code=None,
                output=exc.output,
                duration_s=time.monotonic() - started,
                continue_on_failure=step.continue_on_failure,
                error_kind=type(exc).__name__,
                error_message=str(exc),
            )
        except StepExecutionError as exc:
            return StepOutcome(
                step_name=name,
                status="failed",
                exit_code=exc.exit_code,
                output=exc.output,
                duration_s=time.monotonic() - started,
                continue_on_failure=step.continue_on_failure,
                error_kind=type(exc).__name__,
                error_message=str(exc),
            )

        return StepOutcome(
            step_name=name,
            status="passed",
            exit_code=0,
            output=output,
            duration_s=time.monotonic() - started,
            continue_on_failure=step.continue_on_failure,
        )


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _skipped(name: str, step: Step) -> StepOutcome:
    return StepOutcome(
        step_name=name,
        status="skipped",
        exit_code=None,
        output="",
        duration_s=0.0,
        continue_on_failure=step.continue_on_failure,
    )


def _environment_status(outcomes: Sequence[StepOutcome]) -> EnvironmentStatus:
    if any(o.failed for o in outcomes):
        return "failed"
    if any(o.status == "skipped" for o in outcomes):
        return "cancelled"
    return "passed"

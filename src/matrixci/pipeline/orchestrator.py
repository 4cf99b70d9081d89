from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Collection, Dict, List, Mapping, Optional, Sequence

from matrixci.errors import ConfigError
from matrixci.pipeline.aggregate import PipelineReport, aggregate
from matrixci.pipeline.expressions import check_references
from matrixci.pipeline.job_runner import JobRunner, RunnerConfig
from matrixci.pipeline.matrix import AxisSet, Environment, expand, select, select_keys
from matrixci.pipeline.models import EnvironmentResult, Step

logger = logging.getLogger(__name__)

ResultCallback = Callable[[EnvironmentResult], None]


def validate_steps(
    steps: Sequence[Step],
    *,
    axes: Collection[str],
    global_env: Mapping[str, str],
    base_env: Mapping[str, str],
) -> None:
    """Reject step lists that cannot run, before anything is executed."""

    if not steps:
        raise ConfigError("pipeline declares no steps")

    names = [s.name for s in steps]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigError(f"Duplicate step names: {dupes}")

    check_references(global_env.values(), axes=axes, env_names=set(base_env), where="env")

    known_env = set(base_env) | set(global_env)
    for step in steps:
        texts: List[str] = [step.name]
        texts.extend(step.command if isinstance(step.command, tuple) else [step.command])
        texts.extend(step.env.values())
        if step.working_directory:
            texts.append(step.working_directory)
        check_references(texts, axes=axes, env_names=known_env, where=f"step '{step.name}'")


class Orchestrator:
    """Runs a step list across every environment of a matrix.

    One JobRunner per environment is dispatched on a thread pool bounded by
    `config.concurrency` (None means one worker per environment). With
    fail_fast, the first failed environment sets a shared cancel event;
    runners stop before their next step and queued runners never start.
    """

    def __init__(self, config: RunnerConfig, *, on_result: Optional[ResultCallback] = None) -> None:
        self.config = config
        self.on_result = on_result

    def plan(
        self,
        axes: AxisSet,
        steps: Sequence[Step],
        *,
        exclude: Optional[Sequence[Mapping[str, str]]] = None,
        include: Optional[Sequence[Mapping[str, str]]] = None,
        selectors: Sequence[str] = (),
        only_keys: Optional[Collection[str]] = None,
        global_env: Optional[Mapping[str, str]] = None,
    ) -> List[Environment]:
        """Validate inputs and return the environments that would run."""

        environments = expand(axes, exclude=exclude, include=include)
        validate_steps(
            steps,
            axes=list(axes),
            global_env=global_env or {},
            base_env=self.config.base_env,
        )
        environments = select(environments, selectors)
        if only_keys is not None:
            environments = select_keys(environments, only_keys)
            if not environments:
                raise ConfigError("no environments left to run")
        return environments

    def execute(
        self,
        axes: AxisSet,
        steps: Sequence[Step],
        fail_fast: bool = False,
        *,
        exclude: Optional[Sequence[Mapping[str, str]]] = None,
        include: Optional[Sequence[Mapping[str, str]]] = None,
        selectors: Sequence[str] = (),
        only_keys: Optional[Collection[str]] = None,
        global_env: Optional[Mapping[str, str]] = None,
    ) -> PipelineReport:
        environments = self.plan(
            axes,
            steps,
            exclude=exclude,
            include=include,
            selectors=selectors,
            only_keys=only_keys,
            global_env=global_env,
        )
        results = self.run_environments(environments, steps, fail_fast=fail_fast, global_env=global_env)
        return aggregate(results)

    def run_environments(
        self,
        environments: Sequence[Environment],
        steps: Sequence[Step],
        *,
        fail_fast: bool = False,
        global_env: Optional[Mapping[str, str]] = None,
    ) -> List[EnvironmentResult]:
        runner = JobRunner(self.config, global_env=global_env)
        cancel_event = threading.Event()
        workers = self._resolve_workers(len(environments))

        logger.info(
            f"dispatching {len(environments)} environment(s) on {workers} worker(s), fail_fast={fail_fast}"
        )

        results: List[EnvironmentResult] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="matrixci") as pool:
            futures: Dict = {
                pool.submit(runner.run, env, steps, cancel_event): env for env in environments
            }
            for fut in as_completed(futures):
                result = fut.result()
                results.append(result)

                if fail_fast and self._triggers_cancel(result) and not cancel_event.is_set():
                    logger.warning(f"[{result.environment.key}] {result.status}; cancelling remaining environments")
                    cancel_event.set()

                if self.on_result is not None:
                    self.on_result(result)

        return results

    def _resolve_workers(self, count: int) -> int:
        if self.config.concurrency is None:
            return max(1, count)
        return max(1, min(self.config.concurrency, count))

    def _triggers_cancel(self, result: EnvironmentResult) -> bool:
        if result.status == "failed":
            return True
        return result.status == "infrastructure_failed" and self.config.cancel_on_infrastructure_error


def execute(
    axes: AxisSet,
    steps: Sequence[Step],
    fail_fast: bool = False,
    *,
    config: RunnerConfig,
    **kwargs,
) -> PipelineReport:
    """Single entry point for trigger adapters."""

    return Orchestrator(config).execute(axes, steps, fail_fast, **kwargs)

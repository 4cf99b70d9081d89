from __future__ import annotations

from dataclasses import replace

import pytest
from helpers import py_step

from matrixci.errors import ConfigError
from matrixci.pipeline.matrix import Environment
from matrixci.pipeline.models import EnvironmentResult, Step
from matrixci.pipeline.orchestrator import Orchestrator, execute

FAIL_ON_FAST_FAIL = (
    "import os, sys, time\n"
    "if os.environ['MATRIX_OS'] == 'fast-fail':\n"
    "    sys.exit(1)\n"
    "time.sleep(2.0)\n"
)


def _ci_steps():
    return [py_step(name, f"print('{name}')") for name in ["checkout", "setup", "test", "lint", "fmt-check"]]


def test_end_to_end_three_os_all_green(runner_config) -> None:
    report = Orchestrator(runner_config).execute({"os": ["linux", "windows", "macos"]}, _ci_steps())

    assert report.overall_success is True
    assert [r.environment.key for r in report.results] == ["os=linux", "os=windows", "os=macos"]
    for result in report.results:
        assert result.status == "passed"
        assert len(result.outcomes) == 5
        assert all(o.status == "passed" for o in result.outcomes)
    assert report.counts() == {"passed": 3, "failed": 0, "cancelled": 0, "infrastructure_failed": 0}


def test_fail_fast_skips_unstarted_steps(runner_config) -> None:
    steps = [py_step("first", FAIL_ON_FAST_FAIL), py_step("second", "pass"), py_step("third", "pass")]

    report = Orchestrator(runner_config).execute({"os": ["fast-fail", "slow"]}, steps, fail_fast=True)

    by_key = {r.environment.key: r for r in report.results}
    failed, slow = by_key["os=fast-fail"], by_key["os=slow"]

    assert failed.status == "failed"
    assert [o.step_name for o in failed.outcomes] == ["first"]

    # the step already in progress completes, the rest are skipped
    assert slow.outcomes[0].status == "passed"
    assert [o.status for o in slow.outcomes[1:]] == ["skipped", "skipped"]
    assert slow.status == "cancelled"

    assert report.overall_success is False
    assert report.cancelled == (slow,)


def test_without_fail_fast_other_environments_complete(runner_config) -> None:
    steps = [py_step("first", FAIL_ON_FAST_FAIL), py_step("second", "pass"), py_step("third", "pass")]

    report = Orchestrator(runner_config).execute({"os": ["fast-fail", "slow"]}, steps, fail_fast=False)

    slow = report.by_environment[Environment(axes=(("os", "slow"),))]
    assert [o.status for o in slow.outcomes] == ["passed", "passed", "passed"]
    assert slow.status == "passed"
    assert report.overall_success is False
    assert report.counts()["failed"] == 1


def test_fail_fast_queued_environments_never_start(runner_config) -> None:
    config = replace(runner_config, concurrency=1)
    steps = [py_step("first", FAIL_ON_FAST_FAIL), py_step("second", "pass")]

    report = Orchestrator(config).execute({"os": ["fast-fail", "queued", "last"]}, steps, fail_fast=True)

    by_key = {r.environment.key: r for r in report.results}
    assert by_key["os=fast-fail"].status == "failed"
    # the single worker may already hold "queued" when cancellation lands, never "last"
    assert by_key["os=queued"].status == "cancelled"
    assert [o.status for o in by_key["os=last"].outcomes] == ["skipped", "skipped"]
    assert by_key["os=last"].status == "cancelled"
    assert report.counts() == {"passed": 0, "failed": 1, "cancelled": 2, "infrastructure_failed": 0}


def test_concurrency_bound_keeps_expansion_order(runner_config) -> None:
    config = replace(runner_config, concurrency=1)
    axes = {"os": ["linux", "windows"], "toolchain": ["stable", "nightly"]}

    report = Orchestrator(config).execute(axes, [py_step("only", "pass")])

    assert [r.environment.index for r in report.results] == [0, 1, 2, 3]
    assert report.overall_success is True


def test_selectors_and_only_keys_limit_environments(runner_config) -> None:
    axes = {"os": ["linux", "windows", "macos"]}
    orchestrator = Orchestrator(runner_config)

    report = orchestrator.execute(axes, [py_step("s", "pass")], selectors=["os=windows"])
    assert [r.environment.key for r in report.results] == ["os=windows"]

    report = orchestrator.execute(axes, [py_step("s", "pass")], only_keys={"os=macos", "os=linux"})
    assert [r.environment.key for r in report.results] == ["os=linux", "os=macos"]

    with pytest.raises(ConfigError):
        orchestrator.execute(axes, [py_step("s", "pass")], only_keys={"os=beos"})


def test_global_env_reaches_steps(runner_config) -> None:
    steps = [py_step("env", "import os; print(os.environ['RUST_BACKTRACE'])")]

    report = Orchestrator(runner_config).execute({"os": ["linux"]}, steps, global_env={"RUST_BACKTRACE": "1"})

    assert report.results[0].outcomes[0].output.strip() == "1"


def test_on_result_called_once_per_environment(runner_config) -> None:
    seen = []
    orchestrator = Orchestrator(runner_config, on_result=lambda r: seen.append(r.environment.key))

    orchestrator.execute({"os": ["a", "b", "c"]}, [py_step("s", "pass")])

    assert sorted(seen) == ["os=a", "os=b", "os=c"]


@pytest.mark.parametrize(
    "axes, steps, message",
    [
        ({"os": ["linux"]}, [], "no steps"),
        ({"os": []}, [Step(name="s", command=("true",))], "no values"),
        ({"os": ["linux"]}, [Step(name="s", command=("true",)), Step(name="s", command=("true",))], "Duplicate"),
        ({"os": ["linux"]}, [Step(name="s", command="echo ${{ matrix.arch }}")], "unknown matrix axis"),
        ({"os": ["linux"]}, [Step(name="s", command="echo ${{ env.NOPE_NOT_SET_ANYWHERE }}")], "unknown env"),
        ({"os": ["linux"]}, [Step(name="s", command="echo ${{ secrets.TOKEN }}")], "unsupported"),
    ],
)
def test_config_errors_before_execution(runner_config, axes, steps, message) -> None:
    with pytest.raises(ConfigError, match=message):
        Orchestrator(runner_config).execute(axes, steps)

    assert not runner_config.workspace_root.exists()


def test_infrastructure_failure_cancels_only_when_configured(runner_config) -> None:
    env = Environment(axes=(("os", "linux"),))
    infra = EnvironmentResult(environment=env, outcomes=(), status="infrastructure_failed")
    failed = EnvironmentResult(environment=env, outcomes=(), status="failed")

    assert Orchestrator(runner_config)._triggers_cancel(failed) is True
    assert Orchestrator(runner_config)._triggers_cancel(infra) is False
    assert Orchestrator(replace(runner_config, cancel_on_infrastructure_error=True))._triggers_cancel(infra) is True


def test_module_level_execute(runner_config) -> None:
    report = execute({"os": ["linux"]}, [py_step("s", "pass")], config=runner_config)

    assert report.overall_success is True

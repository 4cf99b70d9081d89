from __future__ import annotations

import os
import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import typer

from matrixci.config import Settings, load_settings
from matrixci.errors import ConfigError
from matrixci.logging_utils import (
    JsonlLogger,
    configure_logging,
    default_log_path,
    new_run_context,
    run_summary_event,
)
from matrixci.pipeline import (
    EnvironmentResult,
    Orchestrator,
    PipelineReport,
    RunnerConfig,
    load_pipeline,
    resolve_steps,
)
from matrixci.pipeline.expressions import build_context, render
from matrixci.pipeline.job_runner import build_argv
from matrixci.report import render_summary, write_report_artifacts
from matrixci.retry_utils import RetryConfig
from matrixci.status import failed_environment_keys, load_run_status, merge_run_status, save_run_status

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

# Kept when the host environment is not inherited, so executables stay resolvable.
_MINIMAL_HOST_VARS = ("PATH", "HOME", "SYSTEMROOT", "COMSPEC", "PATHEXT", "TEMP", "TMP", "TMPDIR")

app = typer.Typer(add_completion=False, help="matrixci - run a step pipeline across an environment matrix")


def _ensure_dirs(settings: Settings) -> None:
    settings.paths.logs_dir.mkdir(parents=True, exist_ok=True)
    settings.paths.reports_dir.mkdir(parents=True, exist_ok=True)


def _host_env(settings: Settings) -> Dict[str, str]:
    # Snapshot once; runners never read os.environ themselves.
    if settings.inherit_host_env:
        return dict(os.environ)
    return {k: os.environ[k] for k in _MINIMAL_HOST_VARS if k in os.environ}


def _runner_config(settings: Settings, *, concurrency: Optional[int], keep_workspaces: bool) -> RunnerConfig:
    return RunnerConfig(
        workspace_root=settings.paths.workspace_root,
        base_env=_host_env(settings),
        default_timeout_s=settings.default_step_timeout_s,
        keep_workspaces=keep_workspaces or settings.keep_workspaces,
        concurrency=concurrency,
        cancel_on_infrastructure_error=settings.cancel_on_infrastructure_error,
        provision_retry=RetryConfig(max_attempts=settings.provision_max_attempts),
    )


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        exists=True,
        dir_okay=False,
        file_okay=True,
        readable=True,
        help="Path to YAML settings (optional)",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level for stderr"),
) -> None:
    """Load settings and store them in Typer context."""

    try:
        configure_logging(log_level)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--log-level")
    try:
        settings = load_settings(config)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    _ensure_dirs(settings)
    ctx.obj = {"settings": settings}


def _log_environment_result(logger: JsonlLogger, result: EnvironmentResult) -> None:
    event = {
        "event": "environment_result",
        "environment": result.environment.key,
        "status": result.status,
        "duration_s": result.duration_s,
        "steps": [{"name": o.step_name, "status": o.status, "exit_code": o.exit_code} for o in result.outcomes],
    }

    failure = result.first_failure
    if failure is not None:
        event["failed_step"] = failure.step_name
        event["error_type"] = failure.error_kind
        event["error_message"] = failure.error_message
    elif result.error_kind:
        event["error_type"] = result.error_kind
        event["error_message"] = result.error_message

    logger.log(event)


def _persist_run_status(
    *,
    logger: JsonlLogger,
    status_path: Path,
    report: PipelineReport,
    pipeline_name: str,
) -> dict:
    updated_entries = 0
    persisted = False

    try:
        existing = load_run_status(status_path)
        merge_result = merge_run_status(
            existing=existing,
            report=report,
            run_at_utc=datetime.now(timezone.utc),
            pipeline=pipeline_name,
        )
        save_run_status(status_path, merge_result.merged)
        updated_entries = merge_result.updated_entries
        persisted = True

        logger.log(
            {
                "event": "status_saved",
                "path": str(status_path),
                "updated_entries": updated_entries,
            }
        )
    except (OSError, ConfigError) as exc:
        logger.log(
            {
                "event": "status_save_failed",
                "path": str(status_path),
                "error_type": type(exc).__name__,
                "error_message": str(exc),
            }
        )

    return {
        "status_entries_updated": updated_entries,
        "status_path": str(status_path),
        "status_persisted": persisted,
    }


@app.command()
def run(
    ctx: typer.Context,
    pipeline_file: Path = typer.Argument(..., dir_okay=False, help="Pipeline YAML file"),
    fail_fast: Optional[bool] = typer.Option(
        None, "--fail-fast/--no-fail-fast", help="Cancel remaining environments after the first failure"
    ),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1, help="Max parallel environments"),
    only_env: Optional[List[str]] = typer.Option(
        None, "--only-env", help="Run only AXIS=VALUE[,AXIS=VALUE] (repeatable)"
    ),
    rerun_failed: bool = typer.Option(
        False, "--rerun-failed", help="Run only environments whose last recorded run did not pass"
    ),
    keep_workspaces: bool = typer.Option(False, "--keep-workspaces", help="Do not delete workspaces"),
    artifacts: bool = typer.Option(True, "--artifacts/--no-artifacts", help="Write report artifacts"),
) -> None:
    """Run a pipeline across its matrix. Exit 0 on success, 1 on failure, 2 on config errors."""

    settings: Settings = ctx.obj["settings"]
    run_ctx = new_run_context()
    logger = JsonlLogger(
        default_log_path(settings.paths.logs_dir, now_utc=run_ctx.started_at_utc), run_id=run_ctx.run_id
    )

    logger.log(
        {
            "event": "command_start",
            "command": "run",
            "pipeline_file": str(pipeline_file),
            "only_env": only_env or [],
            "rerun_failed": rerun_failed,
        }
    )

    try:
        loaded = load_pipeline(pipeline_file)
        definition = loaded.definition
        steps = resolve_steps(definition, settings.actions)

        only_keys: Optional[List[str]] = None
        if rerun_failed:
            only_keys = failed_environment_keys(load_run_status(settings.paths.status_file))
            if not only_keys:
                typer.echo("No failed environments recorded; nothing to re-run.")
                logger.log({"event": "nothing_to_rerun"})
                raise typer.Exit(code=EXIT_OK)

        effective_fail_fast = fail_fast if fail_fast is not None else definition.strategy.fail_fast
        effective_concurrency = concurrency or definition.strategy.max_parallel or settings.default_concurrency

        logger.log(
            {
                "event": "pipeline_loaded",
                "pipeline": definition.name,
                "path": str(loaded.path),
                "axes": definition.strategy.matrix.axes,
                "steps": [s.name for s in steps],
                "fail_fast": effective_fail_fast,
                "concurrency": effective_concurrency,
            }
        )

        orchestrator = Orchestrator(
            _runner_config(settings, concurrency=effective_concurrency, keep_workspaces=keep_workspaces),
            on_result=lambda result: _log_environment_result(logger, result),
        )
        report = orchestrator.execute(
            definition.strategy.matrix.axes,
            steps,
            effective_fail_fast,
            exclude=definition.strategy.matrix.exclude,
            include=definition.strategy.matrix.include,
            selectors=only_env or (),
            only_keys=only_keys,
            global_env=definition.env,
        )
    except ConfigError as exc:
        logger.log(
            {
                "event": "config_error",
                "error_type": type(exc).__name__,
                "error_message": str(exc),
            }
        )
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    typer.echo(render_summary(report, tail_lines=settings.output_tail_lines), nl=False)

    status_meta = _persist_run_status(
        logger=logger,
        status_path=settings.paths.status_file,
        report=report,
        pipeline_name=definition.name,
    )

    if artifacts:
        paths = write_report_artifacts(
            report=report,
            reports_dir=settings.paths.reports_dir,
            run_ctx=run_ctx,
            pipeline_name=definition.name,
            tail_lines=settings.output_tail_lines,
        )
        logger.log(
            {
                "event": "artifacts_written",
                **{k: str(v) for k, v in paths.items()},
            }
        )

    summary = run_summary_event(
        ctx=run_ctx, status_counts=report.counts(), overall_success=report.overall_success
    )
    summary.update(status_meta)
    logger.log(summary)

    raise typer.Exit(code=EXIT_OK if report.overall_success else EXIT_FAILED)


@app.command()
def plan(
    ctx: typer.Context,
    pipeline_file: Path = typer.Argument(..., dir_okay=False, help="Pipeline YAML file"),
    only_env: Optional[List[str]] = typer.Option(
        None, "--only-env", help="Show only AXIS=VALUE[,AXIS=VALUE] (repeatable)"
    ),
) -> None:
    """Show the environments and rendered commands without running anything."""

    settings: Settings = ctx.obj["settings"]
    try:
        definition = load_pipeline(pipeline_file).definition
        steps = resolve_steps(definition, settings.actions)
        config = _runner_config(settings, concurrency=None, keep_workspaces=False)
        environments = Orchestrator(config).plan(
            definition.strategy.matrix.axes,
            steps,
            exclude=definition.strategy.matrix.exclude,
            include=definition.strategy.matrix.include,
            selectors=only_env or (),
            global_env=definition.env,
        )
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    typer.echo(f"{definition.name}: {len(environments)} environment(s), {len(steps)} step(s)")
    for env in environments:
        base_context = build_context(env.as_dict(), config.base_env)
        global_env = {k: render(v, base_context) for k, v in definition.env.items()}
        context = build_context(env.as_dict(), {**config.base_env, **global_env})

        typer.echo(f"\n[{env.key}]")
        for position, step in enumerate(steps, start=1):
            flag = " (continue-on-failure)" if step.continue_on_failure else ""
            typer.echo(f"  {position}. {render(step.name, context)}{flag}")
            try:
                typer.echo(f"     $ {shlex.join(build_argv(step, context))}")
            except ConfigError as exc:
                typer.echo(f"     ! {exc}")


@app.command()
def status(ctx: typer.Context) -> None:
    """Print the recorded status of every environment."""

    settings: Settings = ctx.obj["settings"]
    try:
        status_file = load_run_status(settings.paths.status_file)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    if not status_file.environments:
        typer.echo("No runs recorded.")
        return

    typer.echo(f"{status_file.pipeline or 'pipeline'} (updated {status_file.updated_at})")
    for key in sorted(status_file.environments):
        entry = status_file.environments[key]
        line = f"  {entry.status:<22} {key}  last passed: {entry.last_passed or 'never'}"
        if entry.last_failed_step:
            line += f"  failed step: {entry.last_failed_step}"
        typer.echo(line)


if __name__ == "__main__":
    app()

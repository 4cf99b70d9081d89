from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from matrixci.errors import ConfigError
from matrixci.pipeline.matrix import validate_axes
from matrixci.pipeline.models import Step


def _stringify(value: Any) -> Any:
    # YAML turns `true`/`1` into bool/int; process environments only hold strings.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _stringify_mapping(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _stringify(v) for k, v in value.items()}
    return value


class StepSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)

    # exactly one of run/uses
    run: Optional[Union[str, List[str]]] = Field(default=None)
    uses: Optional[str] = Field(default=None)
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")

    env: Dict[str, str] = Field(default_factory=dict)
    shell: Optional[str] = Field(default=None)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @field_validator("env", "with_", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        return _stringify_mapping(value)

    @field_validator("run", mode="before")
    @classmethod
    def _stringify_argv(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_stringify(v) for v in value]
        return value

    @model_validator(mode="after")
    def _run_xor_uses(self) -> "StepSpec":
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step '{self.name}' must set exactly one of 'run' or 'uses'")
        if isinstance(self.run, list) and not self.run:
            raise ValueError(f"step '{self.name}' has an empty argv")
        if isinstance(self.run, str) and not self.run.strip():
            raise ValueError(f"step '{self.name}' has an empty command")
        if self.with_ and self.uses is None:
            raise ValueError(f"step '{self.name}' sets 'with' without 'uses'")
        return self


class MatrixSpec(BaseModel):
    axes: Dict[str, List[str]]
    exclude: List[Dict[str, str]] = Field(default_factory=list)
    include: List[Dict[str, str]] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _split_axes(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "axes" in data:
            return data
        raw = dict(data)
        exclude = raw.pop("exclude", [])
        include = raw.pop("include", [])
        axes = {
            name: [_stringify(v) for v in values] if isinstance(values, list) else values
            for name, values in raw.items()
        }
        return {
            "axes": axes,
            "exclude": [_stringify_mapping(e) for e in exclude or []],
            "include": [_stringify_mapping(e) for e in include or []],
        }


class StrategySpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    fail_fast: bool = Field(default=False, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)
    matrix: MatrixSpec


class PipelineDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(default="pipeline")

    # Trigger conditions are recorded, never evaluated.
    on: Any = Field(default=None)

    env: Dict[str, str] = Field(default_factory=dict)
    strategy: StrategySpec
    steps: List[StepSpec] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        return _stringify_mapping(value)

    @model_validator(mode="before")
    @classmethod
    def _yaml_on_key(cls, data: Any) -> Any:
        # YAML 1.1 reads a bare `on:` key as boolean True.
        if isinstance(data, dict) and True in data and "on" not in data:
            data = dict(data)
            data["on"] = data.pop(True)
        return data


@dataclass(frozen=True)
class PipelineLoadResult:
    definition: PipelineDefinition
    path: Path


def load_pipeline(path: Path) -> PipelineLoadResult:
    """Load and validate a pipeline file.

    The file is a YAML mapping with keys:
      - name, on (opaque), env
      - strategy: fail-fast, max-parallel, matrix (axes + exclude/include)
      - steps: list[StepSpec]

    Every problem is reported as ConfigError.
    """

    if not path.exists():
        raise ConfigError(f"pipeline file not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        raise ConfigError(f"cannot read pipeline {path}: {exc}") from exc
    try:
        parsed = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in pipeline {path}: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigError("pipeline must be a mapping/object at the top level")

    return PipelineLoadResult(definition=parse_pipeline(parsed), path=path)


def parse_pipeline(data: Mapping[str, Any]) -> PipelineDefinition:
    try:
        definition = PipelineDefinition.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline: {exc}") from exc

    _validate_step_names(definition)
    validate_axes(definition.strategy.matrix.axes)
    return definition


def _validate_step_names(definition: PipelineDefinition) -> None:
    seen: Dict[str, int] = {}
    dup: List[str] = []
    for step in definition.steps:
        seen[step.name] = seen.get(step.name, 0) + 1
        if seen[step.name] == 2:
            dup.append(step.name)
    if dup:
        raise ConfigError(f"Duplicate step names in pipeline: {sorted(dup)}")


def resolve_action(uses: str, actions: Mapping[str, str]) -> str:
    """Map a `uses` reference to its command line.

    An exact `name@ref` entry wins over the bare `name` entry.
    """

    if uses in actions:
        return actions[uses]
    bare = uses.split("@", 1)[0]
    if bare in actions:
        return actions[bare]
    raise ConfigError(f"no action registered for '{uses}'")


def input_env_name(name: str) -> str:
    return "INPUT_" + name.replace(" ", "_").replace("-", "_").upper()


def resolve_steps(definition: PipelineDefinition, actions: Mapping[str, str]) -> Tuple[Step, ...]:
    """Turn step specs into runnable Steps (action references resolved)."""

    steps: List[Step] = []
    for step_spec in definition.steps:
        env: Dict[str, str] = {}
        if step_spec.uses is not None:
            command: Union[Tuple[str, ...], str] = resolve_action(step_spec.uses, actions)
            env.update({input_env_name(k): v for k, v in step_spec.with_.items()})
        elif isinstance(step_spec.run, list):
            command = tuple(step_spec.run)
        else:
            command = step_spec.run  # type: ignore[assignment]
        env.update(step_spec.env)

        steps.append(
            Step(
                name=step_spec.name,
                command=command,
                continue_on_failure=step_spec.continue_on_error,
                timeout_s=step_spec.timeout_minutes * 60 if step_spec.timeout_minutes is not None else None,
                env=env,
                working_directory=step_spec.working_directory,
                shell=step_spec.shell,
            )
        )
    return tuple(steps)

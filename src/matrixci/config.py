from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from matrixci.errors import ConfigError

# Environment variable -> dotted location inside the settings document.
ENV_OVERRIDES: Dict[str, Tuple[str, ...]] = {
    "MATRIXCI_CONCURRENCY": ("default_concurrency",),
    "MATRIXCI_STEP_TIMEOUT": ("default_step_timeout_s",),
    "MATRIXCI_WORKSPACE_ROOT": ("paths", "workspace_root"),
}


class PathsConfig(BaseModel):
    logs_dir: Path = Field(default=Path("logs"))
    reports_dir: Path = Field(default=Path("reports"))
    workspace_root: Path = Field(default=Path(".matrixci/workspaces"))
    status_file: Path = Field(default=Path(".matrixci/status.json"))


class Settings(BaseModel):
    """Runner settings shared by every pipeline.

    - default_concurrency bounds parallel environments (None = one worker per
      environment). The pipeline's `max-parallel` and the CLI override it.
    - default_step_timeout_s applies to steps without `timeout-minutes`.
    - inherit_host_env decides whether the host environment is the base of
      every step's process environment. It is snapshotted once by the CLI.
    - actions maps `uses` references (with or without `@ref`) to the command
      line that implements them locally.
    """

    default_concurrency: Optional[int] = Field(default=None, ge=1)
    default_step_timeout_s: Optional[float] = Field(default=None, gt=0)

    inherit_host_env: bool = Field(default=True)
    keep_workspaces: bool = Field(default=False)
    cancel_on_infrastructure_error: bool = Field(default=False)

    provision_max_attempts: int = Field(default=3, ge=1)

    # Trailing output lines of a failing step shown in summaries
    output_tail_lines: int = Field(default=20, ge=0)

    actions: Dict[str, str] = Field(default_factory=dict)

    paths: PathsConfig = Field(default_factory=PathsConfig)

    @field_validator("actions")
    @classmethod
    def _actions_have_commands(cls, value: Dict[str, str]) -> Dict[str, str]:
        empty = sorted(name for name, command in value.items() if not command.strip())
        if empty:
            raise ValueError(f"actions without a command: {empty}")
        return value


def load_settings(config_path: Optional[Path]) -> Settings:
    """Build Settings from defaults, the environment and an optional YAML file.

    Later layers win: defaults, then `.env`/process environment (see
    ENV_OVERRIDES), then the YAML file. Only the working directory's `.env`
    is read; variables already set in the process are not overwritten by it.
    """

    load_dotenv(dotenv_path=Path(".env"), override=False)

    document: Dict[str, Any] = Settings().model_dump(mode="python")
    document = _merge(document, _env_layer(os.environ))
    if config_path is not None:
        document = _merge(document, _read_yaml(config_path))

    try:
        return Settings.model_validate(document)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> Dict[str, Any]:
    layer: Dict[str, Any] = {}
    for var, location in ENV_OVERRIDES.items():
        value = (environ.get(var) or "").strip()
        if not value:
            continue
        node = layer
        for part in location[:-1]:
            node = node.setdefault(part, {})
        # pydantic coerces the string to the field's type
        node[location[-1]] = value
    return layer


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(str(path))
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigError(f"{path}: settings must be a mapping at the top level")
    return parsed


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; mappings merge key by key, anything else replaces."""

    out = dict(base)
    for key, value in override.items():
        current = out.get(key)
        out[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return out

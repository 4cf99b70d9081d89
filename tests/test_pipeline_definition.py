from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from matrixci.errors import ConfigError
from matrixci.pipeline.definition import input_env_name, load_pipeline, parse_pipeline, resolve_action, resolve_steps

PIPELINE_YAML = """\
name: CI RS

on: [push]

env:
  CARGO_TERM_VERBOSE: true
  RUST_BACKTRACE: 1

strategy:
  fail-fast: false
  max-parallel: 2
  matrix:
    os: [ubuntu-latest, windows-latest, macos-14]
    rust-toolchain:
      - nightly
    exclude:
      - os: macos-14

steps:
  - name: Get source code
    uses: actions/checkout@v4

  - name: Setup ${{ matrix.rust-toolchain }} rust toolchain
    uses: brndnmtthws/rust-action@v1
    with:
      toolchain: ${{ matrix.rust-toolchain }}
      enable-sccache: true

  - name: Run tests
    run: cargo test
    timeout-minutes: 2

  - name: Lint
    run: [cargo, clippy, --all-targets]
    continue-on-error: true
    env:
      CLIPPY_LEVEL: 3

  - name: Check formatting
    run: cargo fmt --check
    shell: bash
    working-directory: crate
"""

ACTIONS = {
    "actions/checkout": "git clone . work",
    "brndnmtthws/rust-action@v1": "rustup toolchain install ${{ env.INPUT_TOOLCHAIN }}",
}


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "pipeline.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_pipeline_ok(tmp_path: Path) -> None:
    path = _write(tmp_path, PIPELINE_YAML)

    result = load_pipeline(path)
    definition = result.definition

    assert result.path == path
    assert definition.name == "CI RS"
    assert definition.on == ["push"]
    assert definition.env == {"CARGO_TERM_VERBOSE": "true", "RUST_BACKTRACE": "1"}
    assert definition.strategy.fail_fast is False
    assert definition.strategy.max_parallel == 2
    assert definition.strategy.matrix.axes == {
        "os": ["ubuntu-latest", "windows-latest", "macos-14"],
        "rust-toolchain": ["nightly"],
    }
    assert definition.strategy.matrix.exclude == [{"os": "macos-14"}]
    assert [s.name for s in definition.steps][0] == "Get source code"


def test_resolve_steps(tmp_path: Path) -> None:
    definition = load_pipeline(_write(tmp_path, PIPELINE_YAML)).definition

    steps = resolve_steps(definition, ACTIONS)

    checkout, setup, tests, lint, fmt = steps
    assert checkout.command == "git clone . work"
    assert setup.command == "rustup toolchain install ${{ env.INPUT_TOOLCHAIN }}"
    assert setup.env == {"INPUT_TOOLCHAIN": "${{ matrix.rust-toolchain }}", "INPUT_ENABLE_SCCACHE": "true"}
    assert tests.command == "cargo test"
    assert tests.timeout_s == 120
    assert lint.command == ("cargo", "clippy", "--all-targets")
    assert lint.continue_on_failure is True
    assert lint.env == {"CLIPPY_LEVEL": "3"}
    assert fmt.shell == "bash"
    assert fmt.working_directory == "crate"
    assert fmt.continue_on_failure is False


def test_unregistered_action_is_config_error(tmp_path: Path) -> None:
    definition = load_pipeline(_write(tmp_path, PIPELINE_YAML)).definition

    with pytest.raises(ConfigError, match="actions/checkout@v4"):
        resolve_steps(definition, {})


def test_resolve_action_prefers_exact_ref() -> None:
    actions = {"a/b": "bare", "a/b@v2": "pinned"}

    assert resolve_action("a/b@v2", actions) == "pinned"
    assert resolve_action("a/b@v1", actions) == "bare"
    assert resolve_action("a/b", actions) == "bare"


def test_input_env_name() -> None:
    assert input_env_name("fetch-depth") == "INPUT_FETCH_DEPTH"


def _minimal(**overrides):
    data = {
        "strategy": {"matrix": {"os": ["linux"]}},
        "steps": [{"name": "a", "run": "true"}],
    }
    data.update(overrides)
    return data


def test_defaults() -> None:
    definition = parse_pipeline(_minimal())

    assert definition.name == "pipeline"
    assert definition.strategy.fail_fast is False
    assert definition.strategy.max_parallel is None
    assert definition.env == {}


@pytest.mark.parametrize(
    "data",
    [
        _minimal(steps=[]),
        _minimal(steps=[{"name": "a"}]),
        _minimal(steps=[{"name": "a", "run": "x", "uses": "y"}]),
        _minimal(steps=[{"name": "a", "run": "  "}]),
        _minimal(steps=[{"name": "a", "run": []}]),
        _minimal(steps=[{"name": "a", "run": "x", "with": {"k": "v"}}]),
        _minimal(steps=[{"name": "a", "run": "x"}, {"name": "a", "run": "y"}]),
        _minimal(steps=[{"name": "a", "run": "x", "timeout-minutes": 0}]),
        _minimal(steps=[{"name": "a", "run": "x", "bogus": 1}]),
        _minimal(strategy={"matrix": {"os": []}}),
        _minimal(strategy={"matrix": {"os": ["a", "a"]}}),
        _minimal(strategy={"matrix": {}}),
        _minimal(strategy={"matrix": {"os": ["linux"]}, "max-parallel": 0}),
        {"steps": [{"name": "a", "run": "true"}]},
    ],
)
def test_invalid_pipelines_raise_config_error(data) -> None:
    with pytest.raises(ConfigError):
        parse_pipeline(data)


def test_load_pipeline_rejects_bad_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_pipeline(tmp_path / "missing.yaml")

    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_pipeline(_write(tmp_path, "steps: [unclosed\n"))

    with pytest.raises(ConfigError, match="mapping"):
        load_pipeline(_write(tmp_path, yaml.safe_dump(["a", "b"])))

    undecodable = tmp_path / "latin1.yaml"
    undecodable.write_bytes(b"name: \xff\xfe bad\n")
    with pytest.raises(ConfigError, match="cannot read pipeline"):
        load_pipeline(undecodable)

    with pytest.raises(ConfigError, match="cannot read pipeline"):
        load_pipeline(tmp_path)

"""Pipeline execution (matrix expansion → job runners → aggregation)."""

from matrixci.pipeline.aggregate import PipelineReport, aggregate
from matrixci.pipeline.definition import PipelineDefinition, load_pipeline, resolve_steps
from matrixci.pipeline.job_runner import JobRunner, RunnerConfig
from matrixci.pipeline.matrix import Environment, expand, select
from matrixci.pipeline.models import EnvironmentResult, Step, StepOutcome
from matrixci.pipeline.orchestrator import Orchestrator, execute

__all__ = [
    "Environment",
    "EnvironmentResult",
    "JobRunner",
    "Orchestrator",
    "PipelineDefinition",
    "PipelineReport",
    "RunnerConfig",
    "Step",
    "StepOutcome",
    "aggregate",
    "execute",
    "expand",
    "load_pipeline",
    "resolve_steps",
    "select",
]

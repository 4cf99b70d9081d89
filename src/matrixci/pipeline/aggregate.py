from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Tuple

from matrixci.pipeline.matrix import Environment
from matrixci.pipeline.models import ENVIRONMENT_STATUSES, EnvironmentResult


@dataclass(frozen=True)
class PipelineReport:
    """Final, immutable outcome of one pipeline execution.

    results are ordered by matrix expansion order. Cancelled environments are
    counted separately and do not decide overall_success on their own.
    """

    results: Tuple[EnvironmentResult, ...]
    overall_success: bool
    status_counts: Tuple[Tuple[str, int], ...]

    @property
    def by_environment(self) -> Dict[Environment, EnvironmentResult]:
        return {r.environment: r for r in self.results}

    def counts(self) -> Dict[str, int]:
        return dict(self.status_counts)

    @property
    def cancelled(self) -> Tuple[EnvironmentResult, ...]:
        return tuple(r for r in self.results if r.status == "cancelled")

    @property
    def failed(self) -> Tuple[EnvironmentResult, ...]:
        return tuple(r for r in self.results if r.status in ("failed", "infrastructure_failed"))


def aggregate(results: Iterable[EnvironmentResult]) -> PipelineReport:
    """Fold per-environment results into a PipelineReport.

    Pure: the same results always give an equal report, whatever order they
    arrive in.
    """

    ordered = tuple(sorted(results, key=lambda r: (r.environment.index, r.environment.key)))

    counts = {status: 0 for status in ENVIRONMENT_STATUSES}
    for result in ordered:
        counts[result.status] += 1

    decided = [r for r in ordered if r.status != "cancelled"]
    overall_success = bool(decided) and all(r.success for r in decided)

    return PipelineReport(
        results=ordered,
        overall_success=overall_success,
        status_counts=tuple(counts.items()),
    )

"""Exception taxonomy shared by every pipewright component.

The CLI boundary in :mod:`pipewright.main` maps these onto process exit codes.
Components raise them directly; none of them is retried by the core.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pipewright.domain.models import PromotionResult


class PipewrightError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(PipewrightError, ValueError):
    """Invalid pipeline definition, trigger parameters, or configuration.

    Always raised before any stage runs.
    """


class CycleError(ConfigurationError):
    """Stage dependency graph contains at least one cycle.

    ``cycles`` holds closed paths such as ``("a", "b", "a")``.
    """

    def __init__(self, cycles: Sequence[Sequence[str]], *, through_gates: Sequence[str] = ()) -> None:
        self.cycles: tuple[tuple[str, ...], ...] = tuple(tuple(cycle) for cycle in cycles)
        self.through_gates: tuple[str, ...] = tuple(through_gates)
        rendered = "; ".join(" -> ".join(cycle) for cycle in self.cycles) or "unknown"
        message = f"stage graph contains cycle(s): {rendered}"
        if self.through_gates:
            message += f" (through gate(s): {', '.join(self.through_gates)})"
        super().__init__(message)


class StageExecutionFailure(PipewrightError):
    """A stage invocation raised, timed out, or returned an invalid result.

    Never escapes the scheduler; it is normalized into a failure StageResult.
    """

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"stage {stage!r} failed: {message}")


class GateBlocked(PipewrightError):
    """A blocking quality gate rejected a run or an artifact promotion."""

    def __init__(self, gate: str, message: str | None = None) -> None:
        self.gate = gate
        super().__init__(message or f"quality gate {gate!r} blocked")


class DeploymentFailed(PipewrightError):
    """Health checks never passed; the environment has been rolled back."""

    def __init__(self, environment: str, message: str, result: PromotionResult | None = None) -> None:
        self.environment = environment
        self.result = result
        super().__init__(f"deployment to {environment!r} failed: {message}")


class EnvironmentBusy(PipewrightError):
    """Another promotion currently holds the environment lock."""

    def __init__(self, environment: str) -> None:
        self.environment = environment
        super().__init__(f"environment {environment!r} has a promotion in progress")


class PromotionRejected(PipewrightError):
    """Promotion preconditions (ordering or platform completeness) were not met."""


class NotFoundError(PipewrightError, LookupError):
    """Requested run, artifact, or environment does not exist."""


__all__ = [
    "ConfigurationError",
    "CycleError",
    "DeploymentFailed",
    "EnvironmentBusy",
    "GateBlocked",
    "NotFoundError",
    "PipewrightError",
    "PromotionRejected",
    "StageExecutionFailure",
]

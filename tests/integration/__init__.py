"""Shared pipeline builders for integration tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from pipewright.control_plane.invokers import InvokerRegistry, StageContext
from pipewright.domain.models import (
    GateCriterion,
    PipelineDefinition,
    QualityGate,
    Stage,
    StageOutput,
    StageResult,
)


def build_definition(*, line_rate_floor: float = 0.8) -> PipelineDefinition:
    return PipelineDefinition(
        name="web",
        stages=(
            Stage(name="lint", capability="analysis"),
            Stage(name="unit", capability="test", depends_on=("lint",)),
            Stage(name="build", capability="build", depends_on=("unit",), artifact="web"),
        ),
        gates=(
            QualityGate(
                name="coverage",
                stages=("unit",),
                criteria=(GateCriterion("unit", "line_rate", ">=", line_rate_floor),),
            ),
        ),
    )


class ScriptedStages:
    """Invoker routing whose per-stage behavior the test controls."""

    def __init__(
        self,
        *,
        line_rate: float = 0.9,
        failing: frozenset[str] = frozenset(),
        blocking: Mapping[str, asyncio.Event] | None = None,
        metrics: Mapping[str, Mapping[str, float]] | None = None,
    ) -> None:
        self.line_rate = line_rate
        self.failing = failing
        self.blocking = dict(blocking or {})
        self.metrics = {stage: dict(values) for stage, values in (metrics or {}).items()}
        self.started: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []

    def registry(self) -> InvokerRegistry:
        return InvokerRegistry(default=self.invoke)

    async def invoke(self, stage: Stage, context: StageContext) -> StageResult:
        self.calls.append(stage.name)
        self.started.setdefault(stage.name, asyncio.Event()).set()
        gate = self.blocking.get(stage.name)
        if gate is not None:
            await gate.wait()
        if stage.name in self.failing:
            return StageResult.failure(stage.name, f"{stage.name} exploded")
        if stage.name in self.metrics:
            return StageResult.success(stage.name, metrics=self.metrics[stage.name])
        if stage.name == "unit":
            return StageResult.success("unit", metrics={"line_rate": self.line_rate, "failed": 0})
        if stage.name == "build":
            return StageResult.success(
                "build",
                outputs=(
                    StageOutput(platform="linux", content_ref=f"sha256:{context.run_id}-linux"),
                    StageOutput(platform="darwin", content_ref=f"sha256:{context.run_id}-darwin"),
                ),
            )
        return StageResult.success(stage.name)

    async def wait_started(self, stage: str, timeout: float = 5.0) -> None:
        event = self.started.setdefault(stage, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout=timeout)


__all__ = ["ScriptedStages", "build_definition"]

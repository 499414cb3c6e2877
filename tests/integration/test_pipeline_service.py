"""End-to-end runs through PipelineService against a real state DB."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from pipewright.control_plane import PipelineService
from pipewright.domain.events import EventType
from pipewright.domain.models import (
    EnvironmentStatus,
    GateCriterion,
    GateOutcome,
    PipelineDefinition,
    QualityGate,
    RunStatus,
    Stage,
    StageStatus,
)
from pipewright.errors import NotFoundError, PromotionRejected
from pipewright.planning.triggers import TriggerEvent

from . import ScriptedStages, build_definition

_PUSH_MAIN = TriggerEvent(kind="push", branch="main", ref="a1b2c3")


@pytest.mark.asyncio
async def test_successful_run_registers_artifacts_and_persists(config: dict[str, Any]) -> None:
    stages = ScriptedStages()

    with PipelineService(config, invokers=stages.registry()) as service:
        outcome = await service.run(_PUSH_MAIN, build_definition())
        stored = service.status()
        history = service.history()
        events = service.events.replay(correlation_id=outcome.run.id)

    assert outcome.status is RunStatus.SUCCEEDED
    assert stages.calls == ["lint", "unit", "build"]
    assert sorted(artifact.platform for artifact in outcome.artifacts) == ["darwin", "linux"]
    assert {artifact.version for artifact in outcome.artifacts} == {"1.0.1"}
    assert stored.id == outcome.run.id
    assert stored.status is RunStatus.SUCCEEDED
    assert stored.results["unit"].metrics["line_rate"] == 0.9
    assert stored.gate_evaluations["coverage"].clears_promotion
    assert [run.id for run in history] == [outcome.run.id]
    types = [event.event_type for event in events]
    assert types[0] is EventType.RUN_STARTED
    assert types[-1] is EventType.RUN_SUCCEEDED
    assert types.count(EventType.ARTIFACT_REGISTERED) == 2


@pytest.mark.asyncio
async def test_blocking_gate_fails_run_without_artifacts(config: dict[str, Any]) -> None:
    stages = ScriptedStages(line_rate=0.5)

    with PipelineService(config, invokers=stages.registry()) as service:
        outcome = await service.run(_PUSH_MAIN, build_definition())
        stored = service.status(outcome.run.id)

    assert outcome.status is RunStatus.FAILED
    assert outcome.artifacts == ()
    assert stored.blocked_by == "coverage"
    assert stored.results["build"].status is StageStatus.CANCELLED
    assert stored.results["build"].detail == "blocked by gate 'coverage'"
    assert "build" not in stages.calls


@pytest.mark.asyncio
async def test_failed_stage_fails_the_run(config: dict[str, Any]) -> None:
    stages = ScriptedStages(failing=frozenset({"lint"}))

    with PipelineService(config, invokers=stages.registry()) as service:
        outcome = await service.run(_PUSH_MAIN, build_definition())

    assert outcome.status is RunStatus.FAILED
    assert outcome.run.results["lint"].detail == "lint exploded"
    assert outcome.run.results["unit"].detail == "upstream stage 'lint' ended failure"


@pytest.mark.asyncio
async def test_pull_request_excludes_build(config: dict[str, Any]) -> None:
    stages = ScriptedStages()

    with PipelineService(config, invokers=stages.registry()) as service:
        plan = service.plan(TriggerEvent(kind="pull_request", branch="feature/x"), build_definition())
        outcome = await service.execute(plan)

    assert plan.excluded == ("build",)
    assert outcome.status is RunStatus.SUCCEEDED
    assert stages.calls == ["lint", "unit"]
    assert outcome.artifacts == ()


@pytest.mark.asyncio
async def test_cancel_from_another_service_instance(config: dict[str, Any]) -> None:
    release = asyncio.Event()
    stages = ScriptedStages(blocking={"unit": release})

    with PipelineService(config, invokers=stages.registry()) as runner, PipelineService(config) as operator:
        plan = runner.plan(_PUSH_MAIN, build_definition())
        task = asyncio.create_task(runner.execute(plan))
        await stages.wait_started("unit")

        assert operator.cancel(plan.run.id) is True
        outcome = await asyncio.wait_for(task, timeout=5)

        assert operator.cancel(plan.run.id) is False
        stored = operator.status(plan.run.id)

    assert outcome.status is RunStatus.CANCELLED
    assert stored.status is RunStatus.CANCELLED
    assert stored.results["lint"].status is StageStatus.SUCCESS
    assert stored.results["unit"].status is StageStatus.CANCELLED
    assert stored.results["build"].status is StageStatus.CANCELLED
    assert stored.results["build"].detail == "cancel requested"


@pytest.mark.asyncio
async def test_in_process_cancel_is_immediate(config: dict[str, Any]) -> None:
    release = asyncio.Event()
    stages = ScriptedStages(blocking={"lint": release})

    with PipelineService(config, invokers=stages.registry()) as service:
        plan = service.plan(_PUSH_MAIN, build_definition())
        task = asyncio.create_task(service.execute(plan))
        await stages.wait_started("lint")

        assert service.cancel(plan.run.id) is True
        outcome = await asyncio.wait_for(task, timeout=5)

    assert outcome.status is RunStatus.CANCELLED
    assert set(outcome.run.results) == {"lint", "unit", "build"}


@pytest.mark.asyncio
async def test_run_then_promote_through_staging_to_production(config: dict[str, Any]) -> None:
    stages = ScriptedStages()

    with PipelineService(config, invokers=stages.registry()) as service:
        outcome = await service.run(_PUSH_MAIN, build_definition())
        version = outcome.artifacts[0].version

        with pytest.raises(PromotionRejected, match="has not been healthy in 'staging'"):
            await service.deployments.promote("production", "web", version)
        staged = await service.deployments.promote("staging", "web")
        produced = await service.deployments.promote("production", "web", version)
        history = service.deployments.history()

    assert staged.status is EnvironmentStatus.HEALTHY
    assert staged.version == version
    assert produced.status is EnvironmentStatus.HEALTHY
    assert sorted(record.environment for record in history) == ["production", "staging"]


def _skip_tests_definition() -> PipelineDefinition:
    return PipelineDefinition(
        name="web",
        stages=(
            Stage(name="lint", capability="analysis"),
            Stage(name="sast", capability="scan"),
            Stage(name="unit", capability="test", depends_on=("lint",)),
            Stage(name="build", capability="build", depends_on=("unit", "sast"), artifact="web"),
        ),
        gates=(
            QualityGate(
                name="coverage",
                stages=("unit",),
                criteria=(GateCriterion("unit", "line_rate", ">=", 0.8),),
            ),
            QualityGate(
                name="sast-clean",
                stages=("sast",),
                criteria=(GateCriterion("sast", "high", "==", 0),),
            ),
        ),
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(("high", "expected"), [(0, RunStatus.SUCCEEDED), (2, RunStatus.FAILED)])
async def test_manual_skip_tests_still_evaluates_other_gates(
    config: dict[str, Any], high: int, expected: RunStatus
) -> None:
    stages = ScriptedStages(metrics={"sast": {"high": high}})
    event = TriggerEvent(
        kind="manual", branch="main", manual_parameters={"environment": "staging", "skip_tests": True}
    )

    with PipelineService(config, invokers=stages.registry()) as service:
        outcome = await service.run(event, _skip_tests_definition())
        stored = service.status(outcome.run.id)

    assert outcome.status is expected
    assert "unit" not in stages.calls
    assert stored.results["unit"].status is StageStatus.SKIPPED
    assert stored.results["unit"].detail == "skipped by run parameters"
    assert stored.gate_evaluations["coverage"].outcome is GateOutcome.SKIPPED
    build = stored.results["build"]
    if high:
        assert stored.gate_evaluations["sast-clean"].outcome is GateOutcome.BLOCK
        assert stored.blocked_by == "sast-clean"
        assert build.status is StageStatus.CANCELLED
        assert build.detail == "blocked by gate 'sast-clean'"
        assert outcome.artifacts == ()
    else:
        assert stored.gate_evaluations["sast-clean"].outcome is GateOutcome.PASS
        assert stored.blocked_by is None
        assert build.status is StageStatus.SUCCESS
        assert {artifact.version for artifact in outcome.artifacts} == {"1.0.1"}


def test_status_without_runs(config: dict[str, Any]) -> None:
    with PipelineService(config) as service, pytest.raises(NotFoundError, match="no runs recorded yet"):
        service.status()

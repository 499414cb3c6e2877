"""Unit tests for the execution scheduler: ordering, gates, failures and cancellation."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

import pytest

from pipewright.control_plane.invokers import InvokerRegistry, StageContext
from pipewright.control_plane.scheduler import ExecutionScheduler
from pipewright.domain.events import EventType
from pipewright.domain.ids import generate_run_id
from pipewright.domain.models import (
    GateCriterion,
    GateEvaluation,
    GateOutcome,
    PipelineDefinition,
    PipelineRun,
    QualityGate,
    RunStatus,
    Stage,
    StageResult,
    StageStatus,
)
from pipewright.errors import ConfigurationError
from pipewright.utils.concurrency import CancellationToken


class _ScriptedInvoker:
    """Succeeds every stage after a short delay unless told otherwise."""

    def __init__(
        self,
        *,
        metrics: Mapping[str, Mapping[str, float]] | None = None,
        fail: tuple[str, ...] = (),
        delays: Mapping[str, float] | None = None,
    ) -> None:
        self.metrics = dict(metrics or {})
        self.fail = fail
        self.delays = dict(delays or {})
        self.calls: list[str] = []
        self.contexts: dict[str, StageContext] = {}
        self.started: dict[str, asyncio.Event] = {}
        self.active = 0
        self.peak = 0

    def started_event(self, stage: str) -> asyncio.Event:
        return self.started.setdefault(stage, asyncio.Event())

    async def invoke(self, stage: Stage, context: StageContext) -> StageResult:
        self.calls.append(stage.name)
        self.contexts[stage.name] = context
        self.started_event(stage.name).set()
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delays.get(stage.name, 0.01))
        finally:
            self.active -= 1
        if stage.name in self.fail:
            return StageResult.failure(stage.name, "exit code 1")
        return StageResult.success(stage.name, metrics=self.metrics.get(stage.name, {}))


class _ListRecorder:
    def __init__(self) -> None:
        self.statuses: list[RunStatus] = []
        self.results: list[str] = []
        self.gates: list[str] = []

    def record_run(self, run: PipelineRun) -> None:
        self.statuses.append(RunStatus(run.status))

    def record_result(self, run: PipelineRun, result: StageResult) -> None:
        self.results.append(result.stage)

    def record_gate(self, run: PipelineRun, evaluation: GateEvaluation) -> None:
        self.gates.append(evaluation.gate)


def _definition(*stages: Stage, gates: tuple[QualityGate, ...] = ()) -> PipelineDefinition:
    return PipelineDefinition(name="svc", stages=stages, gates=gates)


def _run_for(definition: PipelineDefinition) -> PipelineRun:
    return PipelineRun(
        id=generate_run_id(),
        pipeline=definition.name,
        trigger="push",
        branch="main",
        stages=tuple(stage.name for stage in definition.stages),
    )


def _scheduler(invoker: object, **kwargs: object) -> ExecutionScheduler:
    return ExecutionScheduler(InvokerRegistry(default=invoker), **kwargs)  # type: ignore[arg-type]


def _linear() -> PipelineDefinition:
    return _definition(
        Stage(name="lint", capability="analysis"),
        Stage(name="unit", capability="test", depends_on=("lint",)),
        Stage(name="sast", capability="scan"),
        Stage(name="build", capability="build", depends_on=("unit", "sast")),
    )


@pytest.mark.asyncio
async def test_runs_every_stage_after_its_dependencies() -> None:
    definition = _linear()
    run = _run_for(definition)
    invoker = _ScriptedInvoker()
    scheduler = _scheduler(invoker)

    finished = await scheduler.execute(run, definition)

    assert finished is run
    assert run.status is RunStatus.SUCCEEDED
    assert run.started_at is not None and run.finished_at is not None
    assert set(invoker.calls) == {"lint", "unit", "sast", "build"}
    assert invoker.calls.index("lint") < invoker.calls.index("unit") < invoker.calls.index("build")
    assert invoker.calls.index("sast") < invoker.calls.index("build")
    assert all(result.status is StageStatus.SUCCESS for result in run.results.values())
    assert all(result.started_at is not None for result in run.results.values())

    events = [event.event_type for event in scheduler.events.replay(correlation_id=run.id)]
    assert events[0] is EventType.RUN_STARTED
    assert events[-1] is EventType.RUN_SUCCEEDED
    assert events.count(EventType.STAGE_STARTED) == 4
    assert events.count(EventType.STAGE_FINISHED) == 4


@pytest.mark.asyncio
async def test_independent_stages_run_concurrently_up_to_the_limit() -> None:
    definition = _definition(*(Stage(name=f"s{i}", capability="test") for i in range(5)))
    invoker = _ScriptedInvoker(delays={f"s{i}": 0.05 for i in range(5)})

    run = await _scheduler(invoker, max_concurrency=2).execute(_run_for(definition), definition)

    assert run.status is RunStatus.SUCCEEDED
    assert invoker.peak == 2
    assert sorted(invoker.calls) == ["s0", "s1", "s2", "s3", "s4"]


@pytest.mark.asyncio
async def test_failure_cancels_dependents_but_not_independent_stages() -> None:
    definition = _definition(
        Stage(name="lint", capability="analysis"),
        Stage(name="unit", capability="test", depends_on=("lint",)),
        Stage(name="build", capability="build", depends_on=("unit",)),
        Stage(name="package", capability="package", depends_on=("build",)),
        Stage(name="sast", capability="scan", depends_on=("lint",)),
    )
    invoker = _ScriptedInvoker(fail=("unit",), delays={"sast": 0.05})

    run = await _scheduler(invoker).execute(_run_for(definition), definition)

    assert run.status is RunStatus.FAILED
    assert run.results["unit"].status is StageStatus.FAILURE
    assert run.results["build"].status is StageStatus.CANCELLED
    assert run.results["build"].detail == "upstream stage 'unit' ended failure"
    assert run.results["package"].detail == "upstream stage 'build' ended cancelled"
    assert run.results["sast"].status is StageStatus.SUCCESS
    assert "build" not in invoker.calls
    assert "package" not in invoker.calls


@pytest.mark.asyncio
async def test_optional_failure_does_not_fail_the_run() -> None:
    definition = _definition(
        Stage(name="lint", capability="analysis"),
        Stage(name="perf", capability="verify", policy="optional"),
        Stage(name="report", capability="verify", depends_on=("perf",), policy="optional"),
        Stage(name="build", capability="build", depends_on=("lint",)),
    )
    invoker = _ScriptedInvoker(fail=("perf",))

    run = await _scheduler(invoker).execute(_run_for(definition), definition)

    assert run.status is RunStatus.SUCCEEDED
    assert run.results["perf"].status is StageStatus.FAILURE
    assert run.results["report"].status is StageStatus.CANCELLED
    assert run.results["build"].status is StageStatus.SUCCESS


@pytest.mark.asyncio
async def test_blocking_gate_stops_guarded_stages_and_fails_the_run() -> None:
    gate = QualityGate(
        name="coverage",
        stages=("unit",),
        criteria=(GateCriterion("unit", "line_rate", ">=", 0.8),),
    )
    definition = _definition(
        Stage(name="unit", capability="test"),
        Stage(name="build", capability="build", depends_on=("unit",)),
        Stage(name="sast", capability="scan"),
        gates=(gate,),
    )
    invoker = _ScriptedInvoker(metrics={"unit": {"line_rate": 0.42}}, delays={"sast": 0.05})
    recorder = _ListRecorder()
    scheduler = _scheduler(invoker, recorder=recorder)

    run = await scheduler.execute(_run_for(definition), definition)

    assert run.status is RunStatus.FAILED
    assert run.blocked_by == "coverage"
    assert run.gate_evaluations["coverage"].outcome is GateOutcome.BLOCK
    assert run.results["build"].status is StageStatus.CANCELLED
    assert run.results["build"].detail == "blocked by gate 'coverage'"
    assert run.results["sast"].status is StageStatus.SUCCESS
    assert "build" not in invoker.calls
    assert recorder.gates == ["coverage"]
    blocked = scheduler.events.replay(event_type=EventType.GATE_BLOCKED)
    assert [event.payload["gate"] for event in blocked] == ["coverage"]


@pytest.mark.asyncio
async def test_guarded_stage_waits_for_gate_even_without_dependency() -> None:
    gate = QualityGate(
        name="sast-clean",
        stages=("sast",),
        criteria=(GateCriterion("sast", "high", "==", 0),),
    )
    definition = _definition(
        Stage(name="sast", capability="scan"),
        Stage(name="deploy", capability="deploy", gates=("sast-clean",)),
        gates=(gate,),
    )
    invoker = _ScriptedInvoker(metrics={"sast": {"high": 0}}, delays={"sast": 0.05})

    run = await _scheduler(invoker).execute(_run_for(definition), definition)

    assert run.status is RunStatus.SUCCEEDED
    assert invoker.calls == ["sast", "deploy"]


@pytest.mark.asyncio
async def test_warning_gate_lets_the_run_continue() -> None:
    gate = QualityGate(
        name="coverage",
        stages=("unit",),
        criteria=(GateCriterion("unit", "line_rate", ">=", 0.8),),
        action="warn",
    )
    definition = _definition(
        Stage(name="unit", capability="test"),
        Stage(name="build", capability="build", depends_on=("unit",)),
        gates=(gate,),
    )
    invoker = _ScriptedInvoker(metrics={"unit": {"line_rate": 0.42}})

    run = await _scheduler(invoker).execute(_run_for(definition), definition)

    assert run.status is RunStatus.SUCCEEDED
    assert run.blocked_by is None
    assert run.gate_evaluations["coverage"].outcome is GateOutcome.WARN
    assert run.results["build"].status is StageStatus.SUCCESS


@pytest.mark.asyncio
async def test_skip_if_flag_stage_is_recorded_skipped_without_invocation() -> None:
    definition = _definition(
        Stage(name="unit", capability="test", policy="skip_if_flag"),
        Stage(name="build", capability="build", depends_on=("unit",)),
    )
    registry = InvokerRegistry()
    invoker = _ScriptedInvoker()
    registry.register_stage("build", invoker)

    run = await ExecutionScheduler(registry).execute(_run_for(definition), definition)

    assert run.status is RunStatus.SUCCEEDED
    assert run.results["unit"].status is StageStatus.SKIPPED
    assert invoker.calls == ["build"]


@pytest.mark.asyncio
async def test_stage_timeout_is_a_failure() -> None:
    definition = _definition(Stage(name="e2e", capability="verify", timeout_seconds=0.05))
    invoker = _ScriptedInvoker(delays={"e2e": 5.0})

    run = await _scheduler(invoker).execute(_run_for(definition), definition)

    assert run.status is RunStatus.FAILED
    assert run.results["e2e"].status is StageStatus.FAILURE
    assert run.results["e2e"].detail == "timed out after 0.05 seconds"


@pytest.mark.asyncio
async def test_scheduler_default_timeout_applies_without_stage_timeout() -> None:
    definition = _definition(Stage(name="e2e", capability="verify"))
    invoker = _ScriptedInvoker(delays={"e2e": 5.0})

    run = await _scheduler(invoker, stage_timeout_seconds=0.05).execute(_run_for(definition), definition)

    assert run.results["e2e"].detail == "timed out after 0.05 seconds"


@pytest.mark.asyncio
async def test_raising_invoker_becomes_a_stage_failure() -> None:
    async def _explode(stage: Stage, context: StageContext) -> StageResult:
        raise RuntimeError("runner vanished")

    definition = _definition(
        Stage(name="build", capability="build"),
        Stage(name="package", capability="package", depends_on=("build",)),
    )

    run = await _scheduler(_explode).execute(_run_for(definition), definition)

    assert run.status is RunStatus.FAILED
    assert run.results["build"].detail == "stage 'build' failed: RuntimeError: runner vanished"
    assert run.results["package"].status is StageStatus.CANCELLED


@pytest.mark.asyncio
async def test_invalid_invoker_results_are_failures() -> None:
    async def _wrong_stage(stage: Stage, context: StageContext) -> StageResult:
        return StageResult.success("other")

    async def _not_a_result(stage: Stage, context: StageContext) -> object:
        return {"status": "success"}

    async def _claims_cancelled(stage: Stage, context: StageContext) -> StageResult:
        return StageResult.cancelled(stage.name)

    registry = InvokerRegistry()
    registry.register_stage("a", _wrong_stage)
    registry.register_stage("b", _not_a_result)  # type: ignore[arg-type]
    registry.register_stage("c", _claims_cancelled)
    definition = _definition(
        Stage(name="a", capability="build"),
        Stage(name="b", capability="build"),
        Stage(name="c", capability="build"),
    )

    run = await ExecutionScheduler(registry).execute(_run_for(definition), definition)

    assert run.results["a"].detail == "stage 'a' failed: invoker returned a result for stage 'other'"
    assert run.results["b"].detail == "stage 'b' failed: invoker returned dict, not StageResult"
    assert run.results["c"].detail == "stage 'c' failed: invoker reported status cancelled"
    assert all(result.status is StageStatus.FAILURE for result in run.results.values())


@pytest.mark.asyncio
async def test_cancellation_keeps_completed_results_and_cancels_the_rest() -> None:
    definition = _definition(
        Stage(name="lint", capability="analysis"),
        Stage(name="unit", capability="test", depends_on=("lint",)),
        Stage(name="build", capability="build", depends_on=("unit",)),
    )
    invoker = _ScriptedInvoker(delays={"unit": 30.0})
    token = CancellationToken()
    recorder = _ListRecorder()
    scheduler = _scheduler(invoker, recorder=recorder)
    run = _run_for(definition)

    task = asyncio.create_task(scheduler.execute(run, definition, cancel_token=token))
    await asyncio.wait_for(invoker.started_event("unit").wait(), timeout=5)
    token.cancel("operator abort")
    await asyncio.wait_for(task, timeout=5)

    assert run.status is RunStatus.CANCELLED
    assert run.results["lint"].status is StageStatus.SUCCESS
    assert run.results["unit"].status is StageStatus.CANCELLED
    assert run.results["unit"].detail == "operator abort"
    assert run.results["build"].status is StageStatus.CANCELLED
    assert "build" not in invoker.calls
    assert recorder.statuses == [RunStatus.RUNNING, RunStatus.CANCELLED]
    assert recorder.results == ["lint", "unit", "build"]
    assert scheduler.events.replay(event_type=EventType.RUN_CANCELLED)


@pytest.mark.asyncio
async def test_context_carries_run_parameters_and_upstream_results() -> None:
    definition = _linear()
    run = _run_for(definition)
    run.parameters = {"environment": "staging", "skip_tests": False}
    invoker = _ScriptedInvoker(metrics={"unit": {"failed": 0}})

    await _scheduler(invoker).execute(run, definition)

    context = invoker.contexts["build"]
    assert context.run_id == run.id
    assert context.branch == "main"
    assert context.parameters == {"environment": "staging", "skip_tests": False}
    assert set(context.upstream) == {"lint", "unit", "sast"}
    assert context.upstream["unit"].metrics == {"failed": 0}
    assert invoker.contexts["lint"].upstream == {}


@pytest.mark.asyncio
async def test_unreachable_stages_are_cancelled_instead_of_hanging() -> None:
    # lint waits on a gate bound to unit, and unit depends on lint.
    gate = QualityGate(
        name="unit-clean",
        stages=("unit",),
        criteria=(GateCriterion("unit", "failed", "==", 0),),
        guards=("lint",),
    )
    definition = _definition(
        Stage(name="lint", capability="analysis"),
        Stage(name="unit", capability="test", depends_on=("lint",)),
        gates=(gate,),
    )
    invoker = _ScriptedInvoker()

    run = await asyncio.wait_for(_scheduler(invoker).execute(_run_for(definition), definition), timeout=5)

    assert run.status is RunStatus.FAILED
    assert invoker.calls == []
    assert run.results["lint"].detail == "stage never became ready"


@pytest.mark.asyncio
async def test_execute_rejects_mismatched_or_started_runs() -> None:
    definition = _linear()
    scheduler = _scheduler(_ScriptedInvoker())

    mismatched = _run_for(_definition(Stage(name="lint", capability="analysis")))
    with pytest.raises(ConfigurationError, match="do not match the pipeline graph"):
        await scheduler.execute(mismatched, definition)

    started = _run_for(definition)
    started.status = RunStatus.RUNNING
    with pytest.raises(ConfigurationError, match="only pending runs can execute"):
        await scheduler.execute(started, definition)


@pytest.mark.asyncio
async def test_missing_invoker_fails_before_any_stage_starts() -> None:
    definition = _linear()
    run = _run_for(definition)

    with pytest.raises(ConfigurationError, match="no invoker registered for stage 'lint'"):
        await ExecutionScheduler(InvokerRegistry()).execute(run, definition)

    assert run.status is RunStatus.PENDING
    assert run.results == {}


def test_constructor_validates_limits() -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        ExecutionScheduler(InvokerRegistry(), max_concurrency=0)
    with pytest.raises(ValueError, match="stage_timeout_seconds"):
        ExecutionScheduler(InvokerRegistry(), stage_timeout_seconds=0)


def test_from_config_treats_zero_timeout_as_unbounded() -> None:
    config = {
        "scheduler": {"max_concurrency": 3, "stage_timeout_seconds": 0.0},
        "deployment": {"warn_gates_block_promotion": True},
    }

    scheduler = ExecutionScheduler.from_config(config, InvokerRegistry())

    assert scheduler._max_concurrency == 3
    assert scheduler._stage_timeout_seconds is None
    assert scheduler._warn_gates_block_promotion is True

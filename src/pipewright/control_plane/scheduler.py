"""Dependency-aware asyncio scheduler that drives one PipelineRun to completion.

The control loop is single-threaded: only the loop records StageResults and
gate evaluations, so a run's state never has concurrent writers. Invocations
run as tasks bounded by ``max_concurrency``; each completion is recorded, due
gates are evaluated, and newly ready stages are dispatched in declaration
order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

import structlog

from pipewright.control_plane.invokers import InvokerRegistry, StageContext
from pipewright.domain.events import EventType
from pipewright.domain.models import (
    ExecutionPolicy,
    GateEvaluation,
    GateOutcome,
    PipelineDefinition,
    PipelineRun,
    RunStatus,
    Stage,
    StageResult,
    StageStatus,
    utc_now,
)
from pipewright.errors import ConfigurationError, StageExecutionFailure
from pipewright.observability.events import EventBus
from pipewright.observability.logging import correlation_scope
from pipewright.planning.stage_graph import StageGraph
from pipewright.utils.concurrency import CancellationToken, run_with_timeout
from pipewright.verification_plane.quality_gate import QualityGateEvaluator

_TERMINAL_OK = frozenset({StageStatus.SUCCESS, StageStatus.SKIPPED})
_ACCEPTED_INVOKER_STATUSES = frozenset({StageStatus.SUCCESS, StageStatus.FAILURE, StageStatus.SKIPPED})


class RunRecorder(Protocol):
    """Persistence hooks called by the scheduler, always from the control loop."""

    def record_run(self, run: PipelineRun) -> None: ...

    def record_result(self, run: PipelineRun, result: StageResult) -> None: ...

    def record_gate(self, run: PipelineRun, evaluation: GateEvaluation) -> None: ...


class _NullRecorder:
    def record_run(self, run: PipelineRun) -> None:
        return None

    def record_result(self, run: PipelineRun, result: StageResult) -> None:
        return None

    def record_gate(self, run: PipelineRun, evaluation: GateEvaluation) -> None:
        return None


class ExecutionScheduler:
    """Runs ready stages concurrently, honoring dependencies, gates and cancellation."""

    def __init__(
        self,
        invokers: InvokerRegistry,
        *,
        max_concurrency: int = 4,
        stage_timeout_seconds: float | None = None,
        warn_gates_block_promotion: bool = False,
        event_bus: EventBus | None = None,
        recorder: RunRecorder | None = None,
        log_dir: Path | None = None,
        logger: Any | None = None,
    ) -> None:
        if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int) or max_concurrency <= 0:
            raise ValueError("max_concurrency must be a positive integer")
        if stage_timeout_seconds is not None and stage_timeout_seconds <= 0:
            raise ValueError("stage_timeout_seconds must be > 0 or None")
        self._invokers = invokers
        self._max_concurrency = max_concurrency
        self._stage_timeout_seconds = stage_timeout_seconds
        self._warn_gates_block_promotion = warn_gates_block_promotion
        self._events = event_bus if event_bus is not None else EventBus()
        self._recorder: RunRecorder = recorder if recorder is not None else _NullRecorder()
        self._log_dir = log_dir
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        invokers: InvokerRegistry,
        **kwargs: Any,
    ) -> ExecutionScheduler:
        scheduler_cfg = config.get("scheduler") or {}
        deployment_cfg = config.get("deployment") or {}
        timeout = float(scheduler_cfg.get("stage_timeout_seconds", 0.0))
        return cls(
            invokers,
            max_concurrency=int(scheduler_cfg.get("max_concurrency", 4)),
            stage_timeout_seconds=timeout if timeout > 0 else None,
            warn_gates_block_promotion=bool(deployment_cfg.get("warn_gates_block_promotion", False)),
            **kwargs,
        )

    @property
    def events(self) -> EventBus:
        return self._events

    async def execute(
        self,
        run: PipelineRun,
        definition: PipelineDefinition,
        *,
        graph: StageGraph | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PipelineRun:
        """Drive ``run`` to a terminal status and return it.

        Stage failures never raise out of here; ``ConfigurationError`` is raised
        only before the first stage starts.
        """
        stage_graph = graph if graph is not None else StageGraph(definition.stages)
        if set(run.stages) != set(stage_graph.names):
            raise ConfigurationError(
                f"run {run.id} stages do not match the pipeline graph: "
                f"{sorted(set(run.stages) ^ set(stage_graph.names))}"
            )
        if run.status is not RunStatus.PENDING:
            raise ConfigurationError(f"run {run.id} is {run.status}; only pending runs can execute")
        self._invokers.validate(
            [stage for stage in stage_graph.stages if stage.policy is not ExecutionPolicy.SKIP_IF_FLAG]
        )
        token = cancel_token if cancel_token is not None else CancellationToken()
        state = _RunState(
            run=run,
            graph=stage_graph,
            gates=QualityGateEvaluator(
                definition,
                stage_graph,
                warn_gates_block_promotion=self._warn_gates_block_promotion,
            ),
            token=token,
        )

        with correlation_scope(run_id=run.id):
            run.status = RunStatus.RUNNING
            run.started_at = utc_now()
            self._recorder.record_run(run)
            self._logger.info("run_started", run_id=run.id, pipeline=run.pipeline, stages=list(run.stages))
            await self._emit(EventType.RUN_STARTED, run, {"pipeline": run.pipeline, "stages": list(run.stages)})

            try:
                await self._loop(state, token)
            finally:
                await self._drain(state)

            if token.is_cancelled:
                await self._cancel_remaining(state, token.reason or "run cancelled")
                run.status = RunStatus.CANCELLED
            elif run.blocked_by is not None or any(
                self._required_not_ok(state.graph.stage(name), result)
                for name, result in run.results.items()
            ):
                run.status = RunStatus.FAILED
            else:
                run.status = RunStatus.SUCCEEDED
            run.finished_at = utc_now()
            self._recorder.record_run(run)
            self._logger.info(
                "run_finished", run_id=run.id, status=str(run.status), blocked_by=run.blocked_by
            )
            await self._emit(
                _RUN_TERMINAL_EVENTS[RunStatus(run.status)],
                run,
                {"status": str(run.status), "blocked_by": run.blocked_by},
            )
        return run

    async def _loop(self, state: _RunState, token: CancellationToken) -> None:
        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            while not token.is_cancelled:
                await self._advance(state)
                if not state.in_flight:
                    for name in state.run.pending_stages():
                        if name in state.run.results:
                            continue
                        await self._record(state, StageResult.cancelled(name, "stage never became ready"))
                    return

                done, _ = await asyncio.wait(
                    {*state.in_flight, cancel_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if token.is_cancelled:
                    return
                completed = sorted(
                    (task for task in done if task is not cancel_wait),
                    key=lambda task: state.graph.names.index(state.in_flight[task]),
                )
                for task in completed:
                    name = state.in_flight.pop(task)
                    await self._record(state, task.result())
                    self._logger.debug("stage_completed", run_id=state.run.id, stage=name)
        finally:
            cancel_wait.cancel()

    async def _advance(self, state: _RunState) -> None:
        """Resolve every stage decidable without waiting, then dispatch up to the limit."""
        progressed = True
        while progressed:
            progressed = False
            running = set(state.in_flight.values())
            candidates = set(state.run.pending_stages()) - running
            for name in state.graph.ready(set(state.run.results), candidates):
                if name in state.run.results:
                    continue
                stage = state.graph.stage(name)
                blocked_dep = next(
                    (
                        dep
                        for dep in state.graph.dependencies(name)
                        if state.run.results[dep].status not in _TERMINAL_OK
                    ),
                    None,
                )
                if blocked_dep is not None:
                    upstream = state.run.results[blocked_dep].status
                    await self._record(
                        state, StageResult.cancelled(name, f"upstream stage {blocked_dep!r} ended {upstream}")
                    )
                    progressed = True
                    continue

                waiting = state.gates.waiting_on(name)
                if any(gate not in state.run.gate_evaluations for gate in waiting):
                    continue
                blocking = next(
                    (
                        gate
                        for gate in waiting
                        if state.run.gate_evaluations[gate].outcome is GateOutcome.BLOCK
                    ),
                    None,
                )
                if blocking is not None:
                    await self._record(state, StageResult.cancelled(name, f"blocked by gate {blocking!r}"))
                    progressed = True
                    continue

                if stage.policy is ExecutionPolicy.SKIP_IF_FLAG:
                    await self._record(state, StageResult.skipped(name, "skipped by run parameters"))
                    progressed = True
                    continue

                if len(state.in_flight) >= self._max_concurrency:
                    continue
                await self._dispatch(state, stage)

    async def _dispatch(self, state: _RunState, stage: Stage) -> None:
        run = state.run
        context = StageContext(
            run_id=run.id,
            pipeline=run.pipeline,
            branch=run.branch,
            ref=run.ref,
            environment=run.environment,
            parameters=dict(run.parameters),
            upstream={
                dep: run.results[dep]
                for dep in state.graph.dependencies(stage.name, transitive=True)
                if dep in run.results
            },
            cancel_token=state.token,
            log_dir=self._log_dir,
        )
        task = asyncio.ensure_future(self._invoke(stage, context))
        state.in_flight[task] = stage.name
        self._logger.info("stage_dispatched", run_id=run.id, stage=stage.name, in_flight=len(state.in_flight))
        await self._emit(EventType.STAGE_STARTED, run, {"stage": stage.name})

    async def _invoke(self, stage: Stage, context: StageContext) -> StageResult:
        started_at = utc_now()
        timeout = stage.timeout_seconds or self._stage_timeout_seconds
        with correlation_scope(stage=stage.name):
            try:
                invoker = self._invokers.resolve(stage)
                result = await run_with_timeout(invoker.invoke(stage, context), timeout)
                _check_result(stage, result)
            except TimeoutError:
                return StageResult.failure(
                    stage.name,
                    f"timed out after {timeout} seconds",
                    started_at=started_at,
                    finished_at=utc_now(),
                )
            except StageExecutionFailure as exc:
                return StageResult.failure(stage.name, str(exc), started_at=started_at, finished_at=utc_now())
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - any invoker error is a plain stage failure
                failure = StageExecutionFailure(stage.name, f"{exc.__class__.__name__}: {exc}")
                return StageResult.failure(
                    stage.name, str(failure), started_at=started_at, finished_at=utc_now()
                )
        if result.started_at is None or result.finished_at is None:
            result = replace(
                result,
                started_at=result.started_at or started_at,
                finished_at=result.finished_at or utc_now(),
            )
        return result

    async def _record(self, state: _RunState, result: StageResult) -> None:
        run = state.run
        run.record_result(result)
        self._recorder.record_result(run, result)
        self._logger.info(
            "stage_finished",
            run_id=run.id,
            stage=result.stage,
            status=str(result.status),
            detail=result.detail,
        )
        await self._emit(
            EventType.STAGE_FINISHED,
            run,
            {
                "stage": result.stage,
                "status": str(result.status),
                "detail": result.detail,
                "metrics": dict(result.metrics),
            },
        )
        await self._evaluate_due_gates(state)

    async def _evaluate_due_gates(self, state: _RunState) -> None:
        run = state.run
        for gate in state.gates.due(run.results, run.gate_evaluations):
            evaluation = state.gates.evaluate(gate, run.results)
            run.record_gate(evaluation)
            self._recorder.record_gate(run, evaluation)
            payload = evaluation.to_dict()
            await self._emit(EventType.GATE_EVALUATED, run, payload)
            if evaluation.outcome is not GateOutcome.BLOCK:
                continue
            if run.blocked_by is None:
                run.blocked_by = gate.name
            self._logger.warning(
                "gate_blocked", run_id=run.id, gate=gate.name, violations=list(evaluation.violations)
            )
            await self._emit(EventType.GATE_BLOCKED, run, payload)
            for stage in evaluation.cancelled_stages:
                if stage not in run.results:
                    await self._record(state, StageResult.cancelled(stage, f"blocked by gate {gate.name!r}"))

    async def _cancel_remaining(self, state: _RunState, reason: str) -> None:
        for name in state.run.pending_stages():
            state.run.record_result(StageResult.cancelled(name, reason))
            self._recorder.record_result(state.run, state.run.results[name])
            await self._emit(
                EventType.STAGE_FINISHED,
                state.run,
                {"stage": name, "status": StageStatus.CANCELLED.value, "detail": reason, "metrics": {}},
            )
        self._logger.info("run_cancelled", run_id=state.run.id, reason=reason)

    async def _drain(self, state: _RunState) -> None:
        """Cancel outstanding invocations; their late results are discarded."""
        if not state.in_flight:
            return
        tasks = list(state.in_flight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        state.in_flight.clear()

    def _required_not_ok(self, stage: Stage, result: StageResult) -> bool:
        return stage.policy is ExecutionPolicy.REQUIRED and result.status not in _TERMINAL_OK

    async def _emit(self, event_type: EventType, run: PipelineRun, payload: Mapping[str, Any]) -> None:
        await self._events.emit_async(event_type, {"run_id": run.id, **payload}, correlation_id=run.id)


class _RunState:
    __slots__ = ("run", "graph", "gates", "token", "in_flight")

    def __init__(
        self,
        *,
        run: PipelineRun,
        graph: StageGraph,
        gates: QualityGateEvaluator,
        token: CancellationToken,
    ) -> None:
        self.run = run
        self.graph = graph
        self.gates = gates
        self.token = token
        self.in_flight: dict[asyncio.Future[StageResult], str] = {}


_RUN_TERMINAL_EVENTS: Mapping[RunStatus, EventType] = {
    RunStatus.SUCCEEDED: EventType.RUN_SUCCEEDED,
    RunStatus.FAILED: EventType.RUN_FAILED,
    RunStatus.CANCELLED: EventType.RUN_CANCELLED,
}


def _check_result(stage: Stage, result: object) -> None:
    if not isinstance(result, StageResult):
        raise StageExecutionFailure(stage.name, f"invoker returned {type(result).__name__}, not StageResult")
    if result.stage != stage.name:
        raise StageExecutionFailure(stage.name, f"invoker returned a result for stage {result.stage!r}")
    if result.status not in _ACCEPTED_INVOKER_STATUSES:
        raise StageExecutionFailure(stage.name, f"invoker reported status {result.status}")


__all__ = ["ExecutionScheduler", "RunRecorder"]

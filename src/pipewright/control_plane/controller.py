"""Pipeline service: trigger -> persisted run -> scheduled execution -> artifacts.

``PipelineService`` is the single entry point the CLI (and embedding code) uses.
It owns the state DB, the artifact registry and the deployment controller, and
acts as the scheduler's ``RunRecorder`` so every StageResult and gate evaluation
is durable the moment it is recorded.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from pipewright.config.schema import default_config
from pipewright.control_plane.invokers import InvokerRegistry
from pipewright.control_plane.scheduler import ExecutionScheduler
from pipewright.domain.models import (
    Artifact,
    ExecutionPolicy,
    GateEvaluation,
    PipelineDefinition,
    PipelineRun,
    RunStatus,
    StageResult,
    StageStatus,
)
from pipewright.errors import NotFoundError
from pipewright.observability.events import EventBus
from pipewright.persistence.repositories import GateEvaluationRepo, RunRepo, StageResultRepo
from pipewright.persistence.state_db import StateDB
from pipewright.planning.triggers import TriggerEvaluator, TriggerEvent, TriggerPlan
from pipewright.release_plane.deployment import DeploymentController
from pipewright.release_plane.health import Deployer, HealthProbe
from pipewright.release_plane.registry import ArtifactRegistry
from pipewright.utils.concurrency import CancellationToken

_CANCEL_REQUESTED_REASON: Final[str] = "cancel requested"


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Terminal run plus the artifacts it registered."""

    run: PipelineRun
    artifacts: tuple[Artifact, ...] = ()

    @property
    def status(self) -> RunStatus:
        return RunStatus(self.run.status)


class PipelineService:
    """Runs pipelines and serves run/artifact/environment queries over one state DB."""

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        *,
        invokers: InvokerRegistry | None = None,
        db: StateDB | None = None,
        event_bus: EventBus | None = None,
        deployer: Deployer | None = None,
        probe: HealthProbe | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config: Mapping[str, Any] = config if config is not None else default_config()
        paths = self._config.get("paths") or {}
        self._db = (
            db if db is not None else StateDB(str(paths.get("state_db", "state/pipewright.sqlite")))
        )
        self._invokers = invokers if invokers is not None else InvokerRegistry()
        self._events = event_bus if event_bus is not None else EventBus()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._runs = RunRepo(self._db)
        self._stage_results = StageResultRepo(self._db)
        self._gate_evaluations = GateEvaluationRepo(self._db)
        self._triggers = TriggerEvaluator(self._config, logger=self._logger)
        self._registry = ArtifactRegistry.from_config(self._config, self._db, event_bus=self._events)
        self._deployments = DeploymentController.from_config(
            self._config,
            self._db,
            self._registry,
            deployer=deployer,
            probe=probe,
            event_bus=self._events,
        )

        scheduler_cfg = self._config.get("scheduler") or {}
        self._cancel_poll_seconds = float(scheduler_cfg.get("cancel_poll_seconds", 0.5))
        observability_cfg = self._config.get("observability") or {}
        log_dir = observability_cfg.get("log_dir")
        self._log_dir = Path(log_dir) if isinstance(log_dir, str) else None

        self._definitions: dict[str, PipelineDefinition] = {}
        self._registered: dict[str, list[Artifact]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._started = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> PipelineService:
        if not self._started:
            self._deployments.start()
            self._started = True
        return self

    def close(self) -> None:
        if self._started:
            self._deployments.close()
            self._started = False

    def __enter__(self) -> PipelineService:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def config(self) -> Mapping[str, Any]:
        return self._config

    @property
    def db(self) -> StateDB:
        return self._db

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def invokers(self) -> InvokerRegistry:
        return self._invokers

    @property
    def registry(self) -> ArtifactRegistry:
        return self._registry

    @property
    def deployments(self) -> DeploymentController:
        self.start()
        return self._deployments

    # ------------------------------------------------------------------
    # runs
    # ------------------------------------------------------------------

    def plan(self, event: TriggerEvent, definition: PipelineDefinition) -> TriggerPlan:
        """Evaluate ``event`` and persist the resulting pending run."""
        plan = self._triggers.evaluate(event, definition)
        self._invokers.validate(
            [stage for stage in plan.graph.stages if stage.policy is not ExecutionPolicy.SKIP_IF_FLAG]
        )
        self._runs.save(plan.run)
        return plan

    async def execute(
        self, plan: TriggerPlan, *, cancel_token: CancellationToken | None = None
    ) -> RunOutcome:
        run = plan.run
        token = cancel_token if cancel_token is not None else CancellationToken()
        self._definitions[run.id] = plan.definition
        self._registered[run.id] = []
        self._tokens[run.id] = token
        scheduler = ExecutionScheduler.from_config(
            self._config,
            self._invokers,
            event_bus=self._events,
            recorder=self,
            log_dir=self._log_dir,
        )
        watcher = asyncio.ensure_future(self._watch_cancel_requests(run.id, token))
        try:
            finished = await scheduler.execute(run, plan.definition, graph=plan.graph, cancel_token=token)
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            self._definitions.pop(run.id, None)
            self._tokens.pop(run.id, None)
        return RunOutcome(run=finished, artifacts=tuple(self._registered.pop(run.id, ())))

    async def run(
        self,
        event: TriggerEvent,
        definition: PipelineDefinition,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> RunOutcome:
        return await self.execute(self.plan(event, definition), cancel_token=cancel_token)

    def status(self, run_id: str | None = None) -> PipelineRun:
        """Snapshot of ``run_id``, or of the most recently created run."""
        if run_id is not None:
            return self._runs.require(run_id)
        latest = self._runs.latest()
        if latest is None:
            raise NotFoundError("no runs recorded yet")
        return latest

    def history(
        self, *, status: RunStatus | None = None, limit: int = 20, offset: int = 0
    ) -> list[PipelineRun]:
        return self._runs.list(status=status, limit=limit, offset=offset)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; returns False when the run is already terminal.

        The executing process observes the request within ``cancel_poll_seconds``;
        a run executing in this process is cancelled immediately.
        """
        requested = self._runs.request_cancel(run_id)
        token = self._tokens.get(run_id)
        if requested and token is not None:
            token.cancel(_CANCEL_REQUESTED_REASON)
        self._logger.info("run_cancel_requested", run_id=run_id, accepted=requested)
        return requested

    async def _watch_cancel_requests(self, run_id: str, token: CancellationToken) -> None:
        while not token.is_cancelled:
            if self._runs.cancel_requested(run_id):
                self._logger.info("run_cancel_observed", run_id=run_id)
                token.cancel(_CANCEL_REQUESTED_REASON)
                return
            await asyncio.sleep(self._cancel_poll_seconds)

    # ------------------------------------------------------------------
    # RunRecorder
    # ------------------------------------------------------------------

    def record_run(self, run: PipelineRun) -> None:
        self._runs.save(run)

    def record_result(self, run: PipelineRun, result: StageResult) -> None:
        self._stage_results.add(run.id, result)
        if result.status is StageStatus.SUCCESS and result.outputs:
            self._register_outputs(run, result)

    def record_gate(self, run: PipelineRun, evaluation: GateEvaluation) -> None:
        self._gate_evaluations.add(run.id, evaluation)

    def _register_outputs(self, run: PipelineRun, result: StageResult) -> None:
        definition = self._definitions.get(run.id)
        if definition is None:
            return
        artifact_name = definition.stage(result.stage).artifact
        if artifact_name is None:
            self._logger.debug("stage_outputs_ignored", run_id=run.id, stage=result.stage)
            return
        for output in result.outputs:
            try:
                artifact = self._registry.register(
                    name=artifact_name,
                    lineage=run.branch,
                    stage=result.stage,
                    platform=output.platform,
                    content_ref=output.content_ref,
                    run_id=run.id,
                )
            except ValueError as exc:
                self._logger.error(
                    "artifact_registration_rejected",
                    run_id=run.id,
                    stage=result.stage,
                    platform=output.platform,
                    error=str(exc),
                )
                continue
            self._registered.setdefault(run.id, []).append(artifact)


__all__ = ["PipelineService", "RunOutcome"]

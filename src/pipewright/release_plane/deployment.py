"""
pipewright - environment/deployment controller.

Purpose
- Promote a registered ``name@version`` group into a named environment, verify
  it with bounded health checks, and roll back automatically when it never
  becomes healthy.

State machine (per environment)
    idle -> deploying -> healthy | degraded
    degraded -> rolled_back -> idle (reset)
    healthy | rolled_back -> deploying (next promotion)

Preconditions, checked in order under the environment lock
1. the artifact group exists                          (NotFoundError)
2. every required platform is present                  (PromotionRejected)
3. the producing run cleared its promotion gates       (GateBlocked)
4. production only: the version was healthy in staging (PromotionRejected,
   bypassed by ``override``)

Environment states are loaded by ``start()``, saved on every transition and
flushed again by ``close()``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, NoReturn

import structlog

from pipewright.constants import LATEST_VERSION
from pipewright.domain.events import EventType
from pipewright.domain.ids import generate_promotion_id
from pipewright.domain.models import (
    ENVIRONMENT_TRANSITIONS,
    Artifact,
    EnvironmentState,
    EnvironmentStatus,
    HealthCheckResult,
    PromotionOutcome,
    PromotionRecord,
    PromotionResult,
)
from pipewright.errors import (
    ConfigurationError,
    DeploymentFailed,
    EnvironmentBusy,
    GateBlocked,
    NotFoundError,
    PromotionRejected,
)
from pipewright.observability.events import EventBus
from pipewright.observability.logging import correlation_scope
from pipewright.persistence.repositories import EnvironmentRepo, PromotionRepo, RunRepo
from pipewright.persistence.state_db import StateDB
from pipewright.release_plane.health import (
    AcceptingHealthProbe,
    Deployer,
    HealthOutcome,
    HealthPolicy,
    HealthPoller,
    HealthProbe,
    LedgerDeployer,
)
from pipewright.release_plane.registry import ArtifactRegistry
from pipewright.utils.concurrency import CancellationToken


class DeploymentController:
    """Owns every EnvironmentState; the only component that mutates them."""

    def __init__(
        self,
        db: StateDB,
        registry: ArtifactRegistry,
        *,
        environments: Iterable[str] = ("staging", "production"),
        staging: str = "staging",
        production: str = "production",
        required_platforms: Iterable[str] = (),
        health_policy: HealthPolicy | None = None,
        deployer: Deployer | None = None,
        probe: HealthProbe | None = None,
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._environment_names = tuple(dict.fromkeys(environments))
        if staging not in self._environment_names or production not in self._environment_names:
            raise ConfigurationError("staging and production must both be listed in environments")
        self._staging = staging
        self._production = production
        self._required_platforms = frozenset(required_platforms)
        self._registry = registry
        self._env_repo = EnvironmentRepo(db)
        self._promotion_repo = PromotionRepo(db)
        self._run_repo = RunRepo(db)
        self._deployer: Deployer = deployer if deployer is not None else LedgerDeployer()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._poller = HealthPoller(
            probe if probe is not None else AcceptingHealthProbe(),
            health_policy or HealthPolicy(),
            logger=self._logger,
        )
        self._events = event_bus if event_bus is not None else EventBus()
        self._states: dict[str, EnvironmentState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        db: StateDB,
        registry: ArtifactRegistry,
        **kwargs: Any,
    ) -> DeploymentController:
        section = config.get("deployment") or {}
        policy = HealthPolicy(
            attempts=int(section.get("health_check_attempts", 5)),
            initial_backoff_seconds=float(section.get("health_check_initial_backoff_seconds", 1.0)),
            max_backoff_seconds=float(section.get("health_check_max_backoff_seconds", 30.0)),
            timeout_seconds=float(section.get("health_check_timeout_seconds", 300.0)),
        )
        return cls(
            db,
            registry,
            environments=tuple(section.get("environments", ("staging", "production"))),
            staging=str(section.get("staging", "staging")),
            production=str(section.get("production", "production")),
            required_platforms=tuple(section.get("required_platforms", ())),
            health_policy=policy,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Load persisted environment states; unknown environments start idle.

        A state left in ``deploying`` or ``degraded`` belongs to a promotion that
        was interrupted by a crash. It is moved to ``rolled_back``, keeping the
        artifact that was live before that promotion.
        """
        for name in self._environment_names:
            state = self._env_repo.get(name)
            if state is None:
                state = EnvironmentState(name=name)
                self._env_repo.save(state)
            elif state.status in (EnvironmentStatus.DEPLOYING, EnvironmentStatus.DEGRADED):
                self._reconcile_interrupted(state)
            self._states[name] = state
            self._locks.setdefault(name, asyncio.Lock())
        self._started = True
        self._logger.debug("deployment_controller_started", environments=list(self._environment_names))

    def close(self) -> None:
        if not self._started:
            return
        for state in self._states.values():
            self._env_repo.save(state)
        self._started = False

    def __enter__(self) -> DeploymentController:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @property
    def environments(self) -> tuple[str, ...]:
        return self._environment_names

    def state(self, environment: str) -> EnvironmentState:
        self._require_started()
        try:
            return self._states[environment]
        except KeyError:
            raise NotFoundError(f"unknown environment {environment!r}") from None

    def states(self) -> list[EnvironmentState]:
        self._require_started()
        return [self._states[name] for name in self._environment_names]

    def history(self, environment: str | None = None, *, limit: int = 50) -> list[PromotionRecord]:
        if environment is not None:
            self.state(environment)
        return self._promotion_repo.list(environment=environment, limit=limit)

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    async def promote(
        self,
        environment: str,
        name: str,
        version: str = LATEST_VERSION,
        *,
        override: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> PromotionResult:
        """Deploy ``name@version`` to ``environment`` and wait until it is healthy.

        Raises ``DeploymentFailed`` after rolling back when health checks never
        pass. A fired ``cancel_token`` during health polling is handled the same
        way: the environment is rolled back before the error surfaces.
        """
        state = self.state(environment)
        lock = self._locks[environment]
        if lock.locked():
            raise EnvironmentBusy(environment)
        async with lock:
            with correlation_scope(environment=environment):
                if EnvironmentStatus.DEPLOYING not in ENVIRONMENT_TRANSITIONS[state.status]:
                    raise PromotionRejected(
                        f"environment {environment!r} is {state.status}; it cannot take a promotion"
                    )
                artifacts = self._registry.group(name, version)
                resolved = artifacts[0].version
                self._check_preconditions(environment, name, resolved, artifacts, override=override)
                return await self._deploy(state, name, resolved, artifacts, override, cancel_token)

    def reset(self, environment: str) -> EnvironmentState:
        """Return a rolled-back environment to idle."""
        state = self.state(environment)
        if self._locks[environment].locked():
            raise EnvironmentBusy(environment)
        if state.status is not EnvironmentStatus.ROLLED_BACK:
            raise PromotionRejected(
                f"environment {environment!r} is {state.status}; only rolled_back environments can be reset"
            )
        state.transition(EnvironmentStatus.IDLE)
        self._env_repo.save(state)
        self._logger.info("environment_reset", environment=environment)
        return state

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _check_preconditions(
        self,
        environment: str,
        name: str,
        version: str,
        artifacts: Sequence[Artifact],
        *,
        override: bool,
    ) -> None:
        missing = sorted(self._required_platforms - {artifact.platform for artifact in artifacts})
        if missing:
            raise PromotionRejected(
                f"{name}@{version} is missing required platform(s): {', '.join(missing)}"
            )

        for run_id in sorted({artifact.run_id for artifact in artifacts}):
            run = self._run_repo.get(run_id)
            if run is None:
                raise PromotionRejected(f"{name}@{version} was produced by unknown run {run_id}")
            if run.blocked_by is not None:
                raise GateBlocked(
                    run.blocked_by,
                    f"{name}@{version} was produced by run {run_id}, blocked by gate {run.blocked_by!r}",
                )
            for evaluation in run.gate_evaluations.values():
                if not evaluation.clears_promotion:
                    raise GateBlocked(
                        evaluation.gate,
                        f"gate {evaluation.gate!r} ended {evaluation.outcome} for run {run_id}; "
                        f"{name}@{version} cannot be promoted",
                    )

        if environment == self._production and not override:
            if not self._promotion_repo.has_outcome(self._staging, name, version, PromotionOutcome.HEALTHY):
                raise PromotionRejected(
                    f"{name}@{version} has not been healthy in {self._staging!r}; "
                    "promote it there first or pass override"
                )

    async def _deploy(
        self,
        state: EnvironmentState,
        name: str,
        version: str,
        artifacts: Sequence[Artifact],
        override: bool,
        cancel_token: CancellationToken | None,
    ) -> PromotionResult:
        environment = state.name
        promotion_id = generate_promotion_id()
        prior_name, prior_version = state.artifact_name, state.deployed_version

        state.transition(EnvironmentStatus.DEPLOYING)
        self._env_repo.save(state)
        self._logger.info(
            "deployment_started",
            environment=environment,
            artifact=f"{name}@{version}",
            prior=_label(prior_name, prior_version),
            override=override,
        )
        await self._emit(
            EventType.DEPLOYMENT_STARTED,
            promotion_id,
            {"environment": environment, "artifact_name": name, "version": version, "override": override},
        )

        try:
            await self._deployer.deploy(environment, artifacts)
            outcome = await self._poller.poll(environment, version, cancel_token)
        except asyncio.CancelledError:
            if cancel_token is None or not cancel_token.is_cancelled:
                raise
            outcome = HealthOutcome(healthy=False, attempts=0, last=None, detail="promotion cancelled")
        except Exception as exc:  # noqa: BLE001 - deployer errors end in rollback
            outcome = HealthOutcome(
                healthy=False,
                attempts=0,
                last=None,
                detail=f"deploy raised {exc.__class__.__name__}: {exc}",
            )

        if outcome.healthy:
            state.transition(EnvironmentStatus.HEALTHY)
            state.previous_artifact_name = prior_name
            state.previous_version = prior_version
            state.deployed_version = version
            state.artifact_name = name
            state.last_health = outcome.last
            self._env_repo.save(state)
            self._record(promotion_id, environment, name, version, PromotionOutcome.HEALTHY, override, None)
            result = PromotionResult(
                promotion_id=promotion_id,
                environment=environment,
                artifact_name=name,
                version=version,
                status=EnvironmentStatus.HEALTHY,
                health=outcome.last,
                attempts=outcome.attempts,
            )
            self._logger.info(
                "deployment_healthy",
                environment=environment,
                artifact=f"{name}@{version}",
                attempts=outcome.attempts,
            )
            await self._emit(EventType.DEPLOYMENT_HEALTHY, promotion_id, result.to_dict())
            return result

        await self._rollback(state, promotion_id, name, version, (prior_name, prior_version), override, outcome)

    async def _rollback(
        self,
        state: EnvironmentState,
        promotion_id: str,
        name: str,
        version: str,
        prior: tuple[str | None, str | None],
        override: bool,
        outcome: HealthOutcome,
    ) -> NoReturn:
        """Move a failed promotion through degraded to rolled_back, then raise.

        The environment always ends ``rolled_back``. When the deployer cannot
        restore the prior artifact, what is live is unknown: the state records no
        artifact and the restore error joins the failure detail.
        """
        environment = state.name
        prior_name, prior_version = prior
        state.transition(EnvironmentStatus.DEGRADED)
        state.last_health = outcome.last or HealthCheckResult(
            healthy=False, version=version, attempt=outcome.attempts, detail=outcome.detail
        )
        self._env_repo.save(state)
        self._logger.warning(
            "deployment_degraded",
            environment=environment,
            artifact=f"{name}@{version}",
            detail=outcome.detail,
            restoring=_label(prior_name, prior_version),
        )

        detail = outcome.detail
        restore_error: Exception | None = None
        try:
            await self._deployer.restore(environment, prior_name, prior_version)
        except Exception as exc:  # noqa: BLE001 - the environment must still leave degraded
            restore_error = exc
            prior_name = prior_version = None
            detail = f"{outcome.detail}; restore raised {exc.__class__.__name__}: {exc}"
            self._logger.error(
                "deployment_restore_failed",
                environment=environment,
                artifact=f"{name}@{version}",
                error=f"{exc.__class__.__name__}: {exc}",
            )

        state.transition(EnvironmentStatus.ROLLED_BACK)
        state.artifact_name = prior_name
        state.deployed_version = prior_version
        self._env_repo.save(state)
        self._record(promotion_id, environment, name, version, PromotionOutcome.ROLLED_BACK, override, detail)
        result = PromotionResult(
            promotion_id=promotion_id,
            environment=environment,
            artifact_name=name,
            version=version,
            status=EnvironmentStatus.ROLLED_BACK,
            health=state.last_health,
            attempts=outcome.attempts,
            restored_version=prior_version,
            restored_artifact_name=prior_name,
        )
        await self._emit(EventType.DEPLOYMENT_ROLLED_BACK, promotion_id, result.to_dict())
        raise DeploymentFailed(environment, detail, result) from restore_error

    def _reconcile_interrupted(self, state: EnvironmentState) -> None:
        interrupted = state.status
        if state.status is EnvironmentStatus.DEPLOYING:
            state.transition(EnvironmentStatus.DEGRADED)
        state.transition(EnvironmentStatus.ROLLED_BACK)
        self._env_repo.save(state)
        self._logger.warning(
            "environment_reconciled",
            environment=state.name,
            interrupted=str(interrupted),
            live=_label(state.artifact_name, state.deployed_version),
        )

    def _record(
        self,
        promotion_id: str,
        environment: str,
        name: str,
        version: str,
        outcome: PromotionOutcome,
        override: bool,
        detail: str | None,
    ) -> None:
        self._promotion_repo.add(
            PromotionRecord(
                id=promotion_id,
                environment=environment,
                artifact_name=name,
                version=version,
                outcome=outcome,
                override=override,
                detail=detail,
            )
        )

    async def _emit(self, event_type: EventType, promotion_id: str, payload: Mapping[str, Any]) -> None:
        await self._events.emit_async(
            event_type, {"promotion_id": promotion_id, **payload}, correlation_id=promotion_id
        )

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("DeploymentController.start() must be called first")


def _label(name: str | None, version: str | None) -> str | None:
    if name is None:
        return None
    return f"{name}@{version}" if version is not None else name


__all__ = ["DeploymentController"]

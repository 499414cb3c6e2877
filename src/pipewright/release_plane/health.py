"""Deployment and health-check boundaries plus the bounded health poller."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

from pipewright.domain.models import Artifact, HealthCheckResult
from pipewright.utils.concurrency import (
    CancellationToken,
    backoff_delays,
    run_with_timeout,
    sleep_or_cancel,
)


@runtime_checkable
class Deployer(Protocol):
    """Pushes an artifact group to an environment, or restores a prior version.

    ``restore`` receives the artifact name and version that were live before the
    failed promotion; both are ``None`` when the environment held nothing.
    """

    async def deploy(self, environment: str, artifacts: Sequence[Artifact]) -> None: ...

    async def restore(self, environment: str, name: str | None, version: str | None) -> None: ...


@runtime_checkable
class HealthProbe(Protocol):
    """One health check against ``environment`` expecting ``version`` to be live."""

    async def check(self, environment: str, version: str, attempt: int) -> HealthCheckResult: ...


@dataclass(slots=True)
class LedgerDeployer:
    """Deployer that only records what would have been rolled out.

    Used when no deployment hooks are configured, so promotions still move the
    environment state machine and the promotion history.
    """

    deployed: dict[str, tuple[str, str | None]] = field(default_factory=dict)

    async def deploy(self, environment: str, artifacts: Sequence[Artifact]) -> None:
        first = artifacts[0]
        self.deployed[environment] = (first.name, first.version)

    async def restore(self, environment: str, name: str | None, version: str | None) -> None:
        if name is None:
            self.deployed.pop(environment, None)
            return
        self.deployed[environment] = (name, version)


class AcceptingHealthProbe:
    """Reports the expected version as healthy on the first attempt."""

    async def check(self, environment: str, version: str, attempt: int) -> HealthCheckResult:
        return HealthCheckResult(healthy=True, version=version, attempt=attempt, detail="accepted")


@dataclass(frozen=True, slots=True)
class HealthPolicy:
    attempts: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    timeout_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.initial_backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff seconds must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class HealthOutcome:
    healthy: bool
    attempts: int
    last: HealthCheckResult | None
    detail: str


class HealthPoller:
    """Polls a probe with exponential backoff until healthy, exhausted, or timed out.

    A probe that raises counts as one unhealthy attempt. A report for a version
    other than the one just deployed is never accepted as healthy.
    """

    def __init__(self, probe: HealthProbe, policy: HealthPolicy, *, logger: Any | None = None) -> None:
        self._probe = probe
        self._policy = policy
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def poll(
        self,
        environment: str,
        version: str,
        cancel_token: CancellationToken | None = None,
    ) -> HealthOutcome:
        """Raises ``asyncio.CancelledError`` when ``cancel_token`` fires mid-poll."""
        token = cancel_token if cancel_token is not None else CancellationToken()
        state: dict[str, Any] = {"attempts": 0, "last": None}
        try:
            return await run_with_timeout(
                self._poll(environment, version, token, state),
                self._policy.timeout_seconds,
                token,
            )
        except TimeoutError:
            self._logger.warning(
                "health_check_timed_out",
                environment=environment,
                version=version,
                attempts=state["attempts"],
            )
            return HealthOutcome(
                healthy=False,
                attempts=state["attempts"],
                last=state["last"],
                detail=f"health checks timed out after {self._policy.timeout_seconds} seconds",
            )

    async def _poll(
        self,
        environment: str,
        version: str,
        token: CancellationToken,
        state: dict[str, Any],
    ) -> HealthOutcome:
        delays = backoff_delays(self._policy.initial_backoff_seconds, self._policy.max_backoff_seconds)
        detail = "no health checks performed"
        for attempt in range(1, self._policy.attempts + 1):
            token.raise_if_cancelled()
            state["attempts"] = attempt
            try:
                result = await self._probe.check(environment, version, attempt)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - probe errors are unhealthy attempts
                result = HealthCheckResult(
                    healthy=False,
                    version=version,
                    attempt=attempt,
                    detail=f"probe raised {exc.__class__.__name__}: {exc}",
                )
            state["last"] = result
            if result.healthy and result.version == version:
                self._logger.info(
                    "health_check_passed", environment=environment, version=version, attempt=attempt
                )
                return HealthOutcome(healthy=True, attempts=attempt, last=result, detail="healthy")

            detail = result.detail or (
                f"reported version {result.version!r}" if result.version != version else "unhealthy"
            )
            self._logger.info(
                "health_check_failed",
                environment=environment,
                version=version,
                attempt=attempt,
                detail=detail,
            )
            if attempt < self._policy.attempts:
                await sleep_or_cancel(next(delays), token)

        return HealthOutcome(
            healthy=False,
            attempts=state["attempts"],
            last=state["last"],
            detail=f"unhealthy after {self._policy.attempts} attempt(s): {detail}",
        )


__all__ = [
    "AcceptingHealthProbe",
    "Deployer",
    "HealthOutcome",
    "HealthPolicy",
    "HealthPoller",
    "HealthProbe",
    "LedgerDeployer",
]

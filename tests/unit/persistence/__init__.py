"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from pipewright.domain import ids
from pipewright.domain.models import (
    GateAction,
    GateEvaluation,
    GateOutcome,
    PipelineRun,
    PromotionOutcome,
    PromotionRecord,
    RunStatus,
    StageResult,
    TriggerKind,
)

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def make_run(
    seed: int,
    *,
    status: RunStatus = RunStatus.RUNNING,
    stages: tuple[str, ...] = ("lint", "unit", "build"),
) -> PipelineRun:
    return PipelineRun(
        id=ids.generate_run_id(timestamp_ms=1_700_000_000_000 + seed),
        pipeline="svc",
        trigger=TriggerKind.PUSH,
        branch="main",
        ref=f"{seed:040x}",
        environment="staging",
        parameters={"skip_tests": False},
        status=status,
        stages=stages,
        created_at=fixed_now(seed),
        started_at=fixed_now(seed),
    )


def make_gate_evaluation(gate: str, *, seed: int = 0, outcome: GateOutcome = GateOutcome.PASS) -> GateEvaluation:
    return GateEvaluation(
        gate=gate,
        action=GateAction.BLOCK,
        outcome=outcome,
        violations=() if outcome is GateOutcome.PASS else ("unit.line_rate=0.5 < 0.8",),
        evaluated_at=fixed_now(seed),
    )


def make_promotion(
    seed: int,
    *,
    environment: str = "staging",
    version: str = "1.0.1",
    outcome: PromotionOutcome = PromotionOutcome.HEALTHY,
) -> PromotionRecord:
    return PromotionRecord(
        id=ids.generate_prefixed_id(ids.PROMOTION_ID_PREFIX, timestamp_ms=1_700_000_000_000 + seed),
        environment=environment,
        artifact_name="web",
        version=version,
        outcome=outcome,
        created_at=fixed_now(seed),
    )


def make_result(stage: str, **kwargs: object) -> StageResult:
    return StageResult.success(stage, metrics={"duration_ms": 12}, **kwargs)


__all__ = [
    "fixed_now",
    "make_gate_evaluation",
    "make_promotion",
    "make_result",
    "make_run",
]

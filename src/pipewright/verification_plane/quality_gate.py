"""
pipewright - quality gate evaluation.

Purpose
- Evaluate each QualityGate exactly once per run, after all of its bound stages
  have a recorded StageResult.
- Derive which stages a gate guards: they may not start before the gate is
  evaluated, and they are cancelled when it blocks.

A gate guards the transitive dependents of its bound stages, any stage that
names the gate in ``Stage.gates`` or ``QualityGate.guards``, and the transitive
dependents of those. A gate bound to a skipped stage is itself skipped.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import structlog

from pipewright.domain.models import (
    GateAction,
    GateEvaluation,
    GateOutcome,
    MetricValue,
    PipelineDefinition,
    QualityGate,
    StageResult,
    StageStatus,
)
from pipewright.planning.stage_graph import StageGraph


class QualityGateEvaluator:
    """Pure evaluation of gates over recorded stage metrics."""

    def __init__(
        self,
        definition: PipelineDefinition,
        graph: StageGraph | None = None,
        *,
        warn_gates_block_promotion: bool = False,
        logger: Any | None = None,
    ) -> None:
        self._graph = graph if graph is not None else StageGraph(definition.stages)
        self._gates: dict[str, QualityGate] = {gate.name: gate for gate in definition.gates}
        self._warn_gates_block_promotion = warn_gates_block_promotion
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._guarded: dict[str, tuple[str, ...]] = {
            gate.name: self._compute_guarded(gate) for gate in definition.gates
        }
        self._waiting: dict[str, tuple[str, ...]] = {name: () for name in self._graph.names}
        for gate_name, guarded in self._guarded.items():
            for stage in guarded:
                self._waiting[stage] = (*self._waiting[stage], gate_name)

    @property
    def gates(self) -> tuple[QualityGate, ...]:
        return tuple(self._gates.values())

    def gate(self, name: str) -> QualityGate:
        try:
            return self._gates[name]
        except KeyError:
            raise KeyError(f"unknown gate: {name}") from None

    def guarded(self, gate_name: str) -> tuple[str, ...]:
        """Stages held back by ``gate_name``, in declaration order."""
        self.gate(gate_name)
        return self._guarded[gate_name]

    def waiting_on(self, stage: str) -> tuple[str, ...]:
        """Gates that must be evaluated before ``stage`` may start."""
        return self._waiting.get(stage, ())

    def due(
        self,
        results: Mapping[str, StageResult],
        evaluated: Mapping[str, GateEvaluation],
    ) -> tuple[QualityGate, ...]:
        """Unevaluated gates whose bound stages all have results, in declaration order."""
        return tuple(
            gate
            for gate in self._gates.values()
            if gate.name not in evaluated and all(stage in results for stage in gate.stages)
        )

    def evaluate(self, gate: QualityGate, results: Mapping[str, StageResult]) -> GateEvaluation:
        """Evaluate ``gate`` against the recorded results of its bound stages."""
        missing = [stage for stage in gate.stages if stage not in results]
        if missing:
            raise ValueError(f"gate {gate.name!r} evaluated before stages completed: {missing}")

        action = GateAction(gate.action)
        blocks_promotion = (
            True
            if action is GateAction.BLOCK
            else (
                gate.blocks_promotion
                if gate.blocks_promotion is not None
                else self._warn_gates_block_promotion
            )
        )

        skipped = [stage for stage in gate.stages if results[stage].status is StageStatus.SKIPPED]
        if skipped:
            evaluation = GateEvaluation(
                gate=gate.name,
                action=action,
                outcome=GateOutcome.SKIPPED,
                violations=tuple(f"{stage} skipped" for stage in skipped),
                blocks_promotion=blocks_promotion,
            )
            self._log(evaluation)
            return evaluation

        metrics = _metrics_view(gate, results)
        violations = [
            violation
            for violation in (criterion.violation(metrics) for criterion in gate.criteria)
            if violation is not None
        ]
        if gate.predicate is not None:
            predicate_violation = _run_predicate(gate, metrics)
            if predicate_violation is not None:
                violations.append(predicate_violation)

        if not violations:
            outcome = GateOutcome.PASS
        elif action is GateAction.BLOCK:
            outcome = GateOutcome.BLOCK
        else:
            outcome = GateOutcome.WARN

        cancelled = (
            tuple(stage for stage in self._guarded[gate.name] if stage not in results)
            if outcome is GateOutcome.BLOCK and gate.name in self._guarded
            else ()
        )
        evaluation = GateEvaluation(
            gate=gate.name,
            action=action,
            outcome=outcome,
            violations=tuple(violations),
            cancelled_stages=cancelled,
            blocks_promotion=blocks_promotion,
        )
        self._log(evaluation)
        return evaluation

    def _compute_guarded(self, gate: QualityGate) -> tuple[str, ...]:
        roots = set(gate.guards)
        roots.update(stage.name for stage in self._graph.stages if gate.name in stage.gates)
        guarded = set(roots)
        guarded.update(self._graph.downstream_of(gate.stages))
        guarded.update(self._graph.downstream_of(roots))
        guarded.difference_update(gate.stages)
        return tuple(name for name in self._graph.names if name in guarded)

    def _log(self, evaluation: GateEvaluation) -> None:
        self._logger.info(
            "gate_evaluated",
            gate=evaluation.gate,
            outcome=str(evaluation.outcome),
            violations=list(evaluation.violations),
            cancelled_stages=list(evaluation.cancelled_stages),
        )


def _metrics_view(
    gate: QualityGate, results: Mapping[str, StageResult]
) -> Mapping[str, Mapping[str, MetricValue]]:
    return MappingProxyType(
        {stage: MappingProxyType(dict(results[stage].metrics)) for stage in gate.stages}
    )


def _run_predicate(gate: QualityGate, metrics: Mapping[str, Mapping[str, MetricValue]]) -> str | None:
    assert gate.predicate is not None
    try:
        verdict = gate.predicate(metrics)
    except Exception as exc:  # noqa: BLE001 - a raising predicate counts as a violation
        return f"predicate raised {exc.__class__.__name__}: {exc}"
    if verdict is None or verdict is True:
        return None
    if verdict is False:
        return "predicate not satisfied"
    return str(verdict)


__all__ = ["QualityGateEvaluator"]

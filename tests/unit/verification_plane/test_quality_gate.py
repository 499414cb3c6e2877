"""Unit tests for quality gate evaluation and guarded-stage derivation."""

from __future__ import annotations

import pytest

from pipewright.domain.models import (
    GateAction,
    GateCriterion,
    GateOutcome,
    PipelineDefinition,
    QualityGate,
    Stage,
    StageResult,
)
from pipewright.verification_plane.quality_gate import QualityGateEvaluator


def _definition(*gates: QualityGate) -> PipelineDefinition:
    return PipelineDefinition(
        name="svc",
        stages=(
            Stage(name="lint", capability="analysis"),
            Stage(name="unit", capability="test", depends_on=("lint",)),
            Stage(name="sast", capability="scan"),
            Stage(name="build", capability="build", depends_on=("unit",)),
            Stage(name="package", capability="package", depends_on=("build",)),
            Stage(name="smoke", capability="verify", gates=("sast-clean",)),
        ),
        gates=gates,
    )


def _coverage_gate(**overrides: object) -> QualityGate:
    fields: dict[str, object] = {
        "name": "coverage",
        "stages": ("unit",),
        "criteria": (GateCriterion("unit", "line_rate", ">=", 0.8),),
    }
    fields.update(overrides)
    return QualityGate(**fields)  # type: ignore[arg-type]


def _sast_gate() -> QualityGate:
    return QualityGate(
        name="sast-clean",
        stages=("sast",),
        criteria=(GateCriterion("sast", "high", "==", 0),),
    )


def test_guarded_stages_cover_dependents_and_explicit_waiters() -> None:
    evaluator = QualityGateEvaluator(_definition(_coverage_gate(guards=("sast",)), _sast_gate()))

    assert evaluator.guarded("coverage") == ("sast", "build", "package")
    assert evaluator.guarded("sast-clean") == ("smoke",)
    assert evaluator.waiting_on("build") == ("coverage",)
    assert evaluator.waiting_on("sast") == ("coverage",)
    assert evaluator.waiting_on("smoke") == ("sast-clean",)
    assert evaluator.waiting_on("lint") == ()


def test_gate_is_due_only_after_all_bound_stages_have_results() -> None:
    gate = QualityGate(
        name="both",
        stages=("unit", "sast"),
        criteria=(GateCriterion("unit", "failed", "==", 0), GateCriterion("sast", "high", "==", 0)),
    )
    evaluator = QualityGateEvaluator(_definition(gate, _sast_gate()))
    unit = StageResult.success("unit", metrics={"failed": 0})

    assert [g.name for g in evaluator.due({"unit": unit}, {})] == []

    results = {"unit": unit, "sast": StageResult.success("sast", metrics={"high": 0})}
    assert [g.name for g in evaluator.due(results, {})] == ["both", "sast-clean"]

    evaluation = evaluator.evaluate(evaluator.gate("both"), results)
    assert [g.name for g in evaluator.due(results, {"both": evaluation})] == ["sast-clean"]


def test_passing_gate() -> None:
    evaluator = QualityGateEvaluator(_definition(_coverage_gate()))
    results = {"unit": StageResult.success("unit", metrics={"line_rate": 0.91})}

    evaluation = evaluator.evaluate(evaluator.gate("coverage"), results)

    assert evaluation.outcome is GateOutcome.PASS
    assert evaluation.violations == ()
    assert evaluation.cancelled_stages == ()
    assert evaluation.clears_promotion


def test_blocking_gate_cancels_guarded_stages_without_results() -> None:
    evaluator = QualityGateEvaluator(_definition(_coverage_gate()))
    results = {
        "lint": StageResult.success("lint"),
        "unit": StageResult.success("unit", metrics={"line_rate": 0.5}),
    }

    evaluation = evaluator.evaluate(evaluator.gate("coverage"), results)

    assert evaluation.outcome is GateOutcome.BLOCK
    assert evaluation.action is GateAction.BLOCK
    assert evaluation.violations == ("unit.line_rate=0.5 violates >= 0.8",)
    assert evaluation.cancelled_stages == ("build", "package")
    assert evaluation.blocks_promotion
    assert not evaluation.clears_promotion


def test_missing_metric_is_a_violation() -> None:
    evaluator = QualityGateEvaluator(_definition(_coverage_gate()))

    evaluation = evaluator.evaluate(evaluator.gate("coverage"), {"unit": StageResult.success("unit")})

    assert evaluation.outcome is GateOutcome.BLOCK
    assert evaluation.violations == ("unit.line_rate missing",)


def test_warn_gate_records_violation_without_cancelling() -> None:
    evaluator = QualityGateEvaluator(_definition(_coverage_gate(action="warn")))
    results = {"unit": StageResult.success("unit", metrics={"line_rate": 0.5})}

    evaluation = evaluator.evaluate(evaluator.gate("coverage"), results)

    assert evaluation.outcome is GateOutcome.WARN
    assert evaluation.cancelled_stages == ()
    assert not evaluation.blocks_promotion
    assert evaluation.clears_promotion


@pytest.mark.parametrize(
    ("gate_flag", "config_flag", "expected"),
    [
        (None, False, False),
        (None, True, True),
        (True, False, True),
        (False, True, False),
    ],
)
def test_warn_gate_promotion_blocking_follows_gate_then_config(
    gate_flag: bool | None, config_flag: bool, expected: bool
) -> None:
    evaluator = QualityGateEvaluator(
        _definition(_coverage_gate(action="warn", blocks_promotion=gate_flag)),
        warn_gates_block_promotion=config_flag,
    )
    results = {"unit": StageResult.success("unit", metrics={"line_rate": 0.5})}

    evaluation = evaluator.evaluate(evaluator.gate("coverage"), results)

    assert evaluation.blocks_promotion is expected
    assert evaluation.clears_promotion is not expected


def test_gate_bound_to_skipped_stage_is_skipped() -> None:
    evaluator = QualityGateEvaluator(_definition(_coverage_gate()))

    evaluation = evaluator.evaluate(evaluator.gate("coverage"), {"unit": StageResult.skipped("unit")})

    assert evaluation.outcome is GateOutcome.SKIPPED
    assert evaluation.violations == ("unit skipped",)
    assert evaluation.clears_promotion


def test_predicate_verdicts() -> None:
    def _no_regressions(metrics):
        return metrics["unit"].get("regressions", 0) == 0 or "regressions detected"

    def _raises(metrics):
        raise RuntimeError("bad input")

    passing = QualityGate(name="p", stages=("unit",), predicate=_no_regressions)
    failing = QualityGate(name="f", stages=("unit",), predicate=_raises, action="warn")
    evaluator = QualityGateEvaluator(_definition(passing, failing))

    clean = {"unit": StageResult.success("unit", metrics={"regressions": 0})}
    dirty = {"unit": StageResult.success("unit", metrics={"regressions": 2})}

    assert evaluator.evaluate(passing, clean).outcome is GateOutcome.PASS
    assert evaluator.evaluate(passing, dirty).violations == ("regressions detected",)
    raised = evaluator.evaluate(failing, clean)
    assert raised.outcome is GateOutcome.WARN
    assert raised.violations == ("predicate raised RuntimeError: bad input",)


def test_evaluating_before_bound_stages_finish_is_an_error() -> None:
    evaluator = QualityGateEvaluator(_definition(_coverage_gate()))

    with pytest.raises(ValueError, match="evaluated before stages completed"):
        evaluator.evaluate(evaluator.gate("coverage"), {})
    with pytest.raises(KeyError):
        evaluator.gate("missing")


def test_gate_definition_validation() -> None:
    with pytest.raises(ValueError, match="needs at least one criterion or a predicate"):
        QualityGate(name="empty", stages=("unit",))
    with pytest.raises(ValueError, match="is not bound"):
        QualityGate(name="g", stages=("unit",), criteria=(GateCriterion("lint", "warnings", "<", 1),))
    with pytest.raises(ValueError, match="invalid operator"):
        GateCriterion("unit", "failed", "=~", 0)

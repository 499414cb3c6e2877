"""Repository round-trips, ordering, cancellation flags and append-only history."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from pipewright.domain.ids import generate_run_id
from pipewright.domain.models import (
    EnvironmentState,
    EnvironmentStatus,
    GateOutcome,
    HealthCheckResult,
    PromotionOutcome,
    RunStatus,
    StageOutput,
    StageResult,
    StageStatus,
)
from pipewright.errors import NotFoundError
from pipewright.persistence.repositories import (
    EnvironmentRepo,
    GateEvaluationRepo,
    PromotionRepo,
    RunRepo,
    StageResultRepo,
)

from . import fixed_now, make_gate_evaluation, make_promotion, make_result, make_run

if TYPE_CHECKING:
    from pipewright.persistence.state_db import StateDB


def test_run_round_trip_reassembles_results_and_gates(state_db: StateDB) -> None:
    runs = RunRepo(state_db)
    run = runs.save(make_run(1))
    StageResultRepo(state_db).add(
        run.id,
        StageResult.success(
            "build",
            metrics={"line_rate": 0.91},
            outputs=(StageOutput(platform="linux", content_ref="sha256:abc"),),
            started_at=fixed_now(1),
            finished_at=fixed_now(2),
        ),
    )
    StageResultRepo(state_db).add(run.id, StageResult.failure("unit", "2 tests failed"))
    GateEvaluationRepo(state_db).add(run.id, make_gate_evaluation("coverage", seed=3))

    run.status = RunStatus.FAILED
    run.finished_at = fixed_now(5)
    runs.save(run)
    loaded = runs.require(run.id)

    assert loaded.status is RunStatus.FAILED
    assert loaded.stages == ("lint", "unit", "build")
    assert loaded.parameters == {"skip_tests": False}
    assert loaded.created_at == fixed_now(1)
    assert loaded.finished_at == fixed_now(5)
    assert set(loaded.results) == {"build", "unit"}
    assert loaded.results["build"].metrics["line_rate"] == 0.91
    assert loaded.results["build"].outputs[0].content_ref == "sha256:abc"
    assert loaded.results["unit"].status is StageStatus.FAILURE
    assert loaded.results["unit"].detail == "2 tests failed"
    assert loaded.gate_evaluations["coverage"].outcome is GateOutcome.PASS


def test_missing_run_lookups(state_db: StateDB) -> None:
    runs = RunRepo(state_db)
    missing = generate_run_id()

    assert runs.get(missing) is None
    assert runs.latest() is None
    with pytest.raises(NotFoundError, match="run not found"):
        runs.require(missing)
    with pytest.raises(ValueError):
        runs.get("not-a-run-id")


def test_list_is_newest_first_and_filters_by_status(state_db: StateDB) -> None:
    runs = RunRepo(state_db)
    oldest = runs.save(make_run(10, status=RunStatus.SUCCEEDED))
    middle = runs.save(make_run(20, status=RunStatus.FAILED))
    newest = runs.save(make_run(30, status=RunStatus.SUCCEEDED))

    assert [run.id for run in runs.list()] == [newest.id, middle.id, oldest.id]
    assert [run.id for run in runs.list(status="succeeded")] == [newest.id, oldest.id]
    assert [run.id for run in runs.list(limit=1, offset=1)] == [middle.id]
    assert runs.latest() is not None and runs.latest().id == newest.id  # type: ignore[union-attr]
    with pytest.raises(ValueError, match="limit"):
        runs.list(limit=0)
    with pytest.raises(ValueError, match="offset"):
        runs.list(offset=-1)


def test_cancel_flag_only_applies_to_active_runs(state_db: StateDB) -> None:
    runs = RunRepo(state_db)
    active = runs.save(make_run(1, status=RunStatus.RUNNING))
    finished = runs.save(make_run(2, status=RunStatus.SUCCEEDED))

    assert not runs.cancel_requested(active.id)
    assert runs.request_cancel(active.id) is True
    assert runs.cancel_requested(active.id)
    assert runs.request_cancel(finished.id) is False
    assert not runs.cancel_requested(finished.id)
    with pytest.raises(NotFoundError):
        runs.request_cancel(generate_run_id())


def test_cancel_flag_survives_header_updates(state_db: StateDB) -> None:
    runs = RunRepo(state_db)
    run = runs.save(make_run(1))
    runs.request_cancel(run.id)

    run.status = RunStatus.CANCELLED
    runs.save(run)

    assert runs.cancel_requested(run.id)


def test_stage_results_and_gates_are_recorded_once(state_db: StateDB) -> None:
    run = RunRepo(state_db).save(make_run(1))
    results = StageResultRepo(state_db)
    gates = GateEvaluationRepo(state_db)
    results.add(run.id, make_result("lint"))
    gates.add(run.id, make_gate_evaluation("coverage", outcome=GateOutcome.BLOCK))

    with pytest.raises(ValueError, match="stage result for 'lint' in run .* already recorded"):
        results.add(run.id, make_result("lint"))
    with pytest.raises(ValueError, match="gate 'coverage' already evaluated"):
        gates.add(run.id, make_gate_evaluation("coverage"))

    assert list(results.list_for_run(run.id)) == ["lint"]
    assert gates.list_for_run(run.id)["coverage"].outcome is GateOutcome.BLOCK


def test_environment_state_upsert(state_db: StateDB) -> None:
    environments = EnvironmentRepo(state_db)
    environments.save(EnvironmentState(name="staging"))
    environments.save(EnvironmentState(name="production"))

    state = EnvironmentState(
        name="staging",
        status=EnvironmentStatus.HEALTHY,
        artifact_name="web",
        deployed_version="1.0.2",
        previous_version="1.0.1",
        last_health=HealthCheckResult(healthy=True, version="1.0.2", attempt=2),
    )
    environments.save(state)
    loaded = environments.get("staging")

    assert loaded is not None
    assert loaded.status is EnvironmentStatus.HEALTHY
    assert (loaded.deployed_version, loaded.previous_version) == ("1.0.2", "1.0.1")
    assert loaded.last_health is not None and loaded.last_health.attempt == 2
    assert [env.name for env in environments.list()] == ["production", "staging"]
    assert environments.get("qa") is None


def test_promotion_history_is_append_only_and_newest_first(state_db: StateDB) -> None:
    promotions = PromotionRepo(state_db)
    first = promotions.add(make_promotion(1, version="1.0.1"))
    second = promotions.add(
        make_promotion(2, version="1.0.2", outcome=PromotionOutcome.ROLLED_BACK)
    )
    promotions.add(make_promotion(3, environment="production", version="1.0.1"))

    assert promotions.has_outcome("staging", "web", "1.0.1", PromotionOutcome.HEALTHY)
    assert not promotions.has_outcome("staging", "web", "1.0.2", PromotionOutcome.HEALTHY)
    assert [record.id for record in promotions.list(environment="staging")] == [second.id, first.id]
    assert len(promotions.list()) == 3
    with pytest.raises(ValueError, match="already recorded"):
        promotions.add(first)

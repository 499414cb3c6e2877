"""
pipewright - repositories over the state DB.

Purpose
- Read and write domain aggregates (runs, stage results, gate evaluations,
  artifacts, environment states, promotions) as canonical JSON payloads with a
  handful of indexed columns for the queries the engine and CLI need.

Stage results, gate evaluations, artifacts and promotions are append-only; a
second write for the same key surfaces as ``ValueError``. Runs and environment
states are upserted.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from datetime import datetime
from typing import Final, cast

from pipewright.domain import ids
from pipewright.domain.models import (
    Artifact,
    EnvironmentState,
    GateEvaluation,
    PipelineRun,
    PromotionOutcome,
    PromotionRecord,
    RunStatus,
    StageResult,
    datetime_to_iso8601z,
)
from pipewright.errors import NotFoundError
from pipewright.persistence.state_db import RowValue, SQLParams, StateDB, canonical_json, utc_now_iso

_MAX_PAGE_SIZE: Final[int] = 1_000

_ACTIVE_RUN_STATUSES: Final[tuple[str, ...]] = (RunStatus.PENDING.value, RunStatus.RUNNING.value)


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class RunRepo(_BaseRepo):
    """Run headers plus the cross-process cancellation flag.

    ``get`` reassembles the full run from its header and the append-only
    stage-result and gate-evaluation rows.
    """

    def save(self, run: PipelineRun) -> PipelineRun:
        payload = run.to_dict()
        payload.pop("results", None)
        payload.pop("gate_evaluations", None)
        self._db.execute(
            """
            INSERT INTO runs (
                id,
                pipeline,
                trigger_kind,
                branch,
                environment,
                status,
                blocked_by,
                created_at,
                started_at,
                finished_at,
                updated_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status=excluded.status,
                blocked_by=excluded.blocked_by,
                started_at=excluded.started_at,
                finished_at=excluded.finished_at,
                updated_at=excluded.updated_at,
                payload_json=excluded.payload_json
            """,
            (
                run.id,
                run.pipeline,
                str(run.trigger),
                run.branch,
                run.environment,
                str(run.status),
                run.blocked_by,
                datetime_to_iso8601z(run.created_at),
                _optional_iso(run.started_at),
                _optional_iso(run.finished_at),
                utc_now_iso(),
                canonical_json(payload),
            ),
        )
        return run

    def get(self, run_id: str) -> PipelineRun | None:
        ids.validate_run_id(run_id)
        with self._db.connection() as conn:
            row = self._db.query_one("SELECT payload_json FROM runs WHERE id = ?", (run_id,), conn=conn)
            if row is None:
                return None
            payload = _load_json_object(_row_text(row, "payload_json", "runs.payload_json"), "runs")
            result_rows = self._db.query_all(
                "SELECT stage, payload_json FROM stage_results WHERE run_id = ? ORDER BY recorded_at, stage",
                (run_id,),
                conn=conn,
            )
            gate_rows = self._db.query_all(
                "SELECT gate, payload_json FROM gate_evaluations WHERE run_id = ? "
                "ORDER BY evaluated_at, gate",
                (run_id,),
                conn=conn,
            )
        payload["results"] = {
            _row_text(item, "stage", "stage_results.stage"): _load_json_object(
                _row_text(item, "payload_json", "stage_results.payload_json"), "stage_results"
            )
            for item in result_rows
        }
        payload["gate_evaluations"] = {
            _row_text(item, "gate", "gate_evaluations.gate"): _load_json_object(
                _row_text(item, "payload_json", "gate_evaluations.payload_json"), "gate_evaluations"
            )
            for item in gate_rows
        }
        return PipelineRun.from_dict(payload)

    def require(self, run_id: str) -> PipelineRun:
        run = self.get(run_id)
        if run is None:
            raise NotFoundError(f"run not found: {run_id}")
        return run

    def list(
        self,
        *,
        status: RunStatus | str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[PipelineRun]:
        """Most recent first."""
        self._validate_page(limit, offset)
        sql = "SELECT id FROM runs"
        params: list[object] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(RunStatus(str(status)).value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        runs: list[PipelineRun] = []
        for row in rows:
            run = self.get(_row_text(row, "id", "runs.id"))
            if run is not None:
                runs.append(run)
        return runs

    def latest(self) -> PipelineRun | None:
        found = self.list(limit=1)
        return found[0] if found else None

    def request_cancel(self, run_id: str) -> bool:
        """Flag an active run for cancellation; ``False`` when it already finished."""
        ids.validate_run_id(run_id)
        with self._db.transaction() as conn:
            row = self._db.query_one("SELECT status FROM runs WHERE id = ?", (run_id,), conn=conn)
            if row is None:
                raise NotFoundError(f"run not found: {run_id}")
            if row["status"] not in _ACTIVE_RUN_STATUSES:
                return False
            self._db.execute(
                "UPDATE runs SET cancel_requested = 1, updated_at = ? WHERE id = ?",
                (utc_now_iso(), run_id),
                conn=conn,
            )
        return True

    def cancel_requested(self, run_id: str) -> bool:
        row = self._db.query_one("SELECT cancel_requested FROM runs WHERE id = ?", (run_id,))
        return row is not None and row["cancel_requested"] == 1


class StageResultRepo(_BaseRepo):
    """Append-only StageResult rows keyed by (run, stage)."""

    def add(self, run_id: str, result: StageResult) -> StageResult:
        ids.validate_run_id(run_id)
        try:
            self._db.execute(
                """
                INSERT INTO stage_results (run_id, stage, status, recorded_at, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (run_id, result.stage, str(result.status), utc_now_iso(), result.to_json()),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(
                f"stage result for {result.stage!r} in run {run_id} already recorded"
            ) from exc
        return result

    def list_for_run(self, run_id: str) -> dict[str, StageResult]:
        rows = self._db.query_all(
            "SELECT payload_json FROM stage_results WHERE run_id = ? ORDER BY recorded_at, stage",
            (run_id,),
        )
        results = (
            StageResult.from_json(_row_text(row, "payload_json", "stage_results.payload_json"))
            for row in rows
        )
        return {result.stage: result for result in results}


class GateEvaluationRepo(_BaseRepo):
    """Append-only gate evaluations keyed by (run, gate)."""

    def add(self, run_id: str, evaluation: GateEvaluation) -> GateEvaluation:
        ids.validate_run_id(run_id)
        try:
            self._db.execute(
                """
                INSERT INTO gate_evaluations (run_id, gate, outcome, evaluated_at, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    evaluation.gate,
                    str(evaluation.outcome),
                    datetime_to_iso8601z(evaluation.evaluated_at),
                    evaluation.to_json(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"gate {evaluation.gate!r} already evaluated for run {run_id}") from exc
        return evaluation

    def list_for_run(self, run_id: str) -> dict[str, GateEvaluation]:
        rows = self._db.query_all(
            "SELECT payload_json FROM gate_evaluations WHERE run_id = ? ORDER BY evaluated_at, gate",
            (run_id,),
        )
        evaluations = (
            GateEvaluation.from_json(_row_text(row, "payload_json", "gate_evaluations.payload_json"))
            for row in rows
        )
        return {evaluation.gate: evaluation for evaluation in evaluations}


class ArtifactRepo(_BaseRepo):
    """Append-only artifact rows.

    Methods accept ``conn`` so the registry can read the lineage head and insert
    the next version inside one immediate transaction.
    """

    def add(self, artifact: Artifact, *, conn: sqlite3.Connection | None = None) -> Artifact:
        try:
            self._db.execute(
                """
                INSERT INTO artifacts (
                    id, name, lineage, sequence, version, platform,
                    content_ref, stage, run_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact.id,
                    artifact.name,
                    artifact.lineage,
                    artifact.sequence,
                    artifact.version,
                    artifact.platform,
                    artifact.content_ref,
                    artifact.stage,
                    artifact.run_id,
                    datetime_to_iso8601z(artifact.created_at),
                ),
                conn=conn,
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(
                f"artifact {artifact.group_key} for platform {artifact.platform!r} already registered"
            ) from exc
        return artifact

    def max_sequence(self, name: str, lineage: str, *, conn: sqlite3.Connection | None = None) -> int:
        row = self._db.query_one(
            "SELECT COALESCE(MAX(sequence), 0) AS head FROM artifacts WHERE name = ? AND lineage = ?",
            (name, lineage),
            conn=conn,
        )
        head = 0 if row is None else row["head"]
        return head if isinstance(head, int) else 0

    def sequence_for_run(
        self,
        name: str,
        lineage: str,
        run_id: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> tuple[int, str] | None:
        row = self._db.query_one(
            """
            SELECT sequence, version FROM artifacts
            WHERE name = ? AND lineage = ? AND run_id = ?
            ORDER BY sequence DESC LIMIT 1
            """,
            (name, lineage, run_id),
            conn=conn,
        )
        if row is None:
            return None
        return cast("int", row["sequence"]), _row_text(row, "version", "artifacts.version")

    def get(self, name: str, version: str, platform: str) -> Artifact | None:
        row = self._db.query_one(
            "SELECT * FROM artifacts WHERE name = ? AND version = ? AND platform = ?",
            (name, version, platform),
        )
        return None if row is None else _artifact_from_row(row)

    def group(self, name: str, version: str) -> list[Artifact]:
        rows = self._db.query_all(
            "SELECT * FROM artifacts WHERE name = ? AND version = ? ORDER BY platform",
            (name, version),
        )
        return [_artifact_from_row(row) for row in rows]

    def latest(
        self,
        name: str,
        *,
        lineage: str | None = None,
        platform: str | None = None,
    ) -> Artifact | None:
        """Highest sequence within ``lineage``; most recent registration otherwise."""
        sql = "SELECT * FROM artifacts WHERE name = ?"
        params: list[object] = [name]
        if lineage is not None:
            sql += " AND lineage = ?"
            params.append(lineage)
        if platform is not None:
            sql += " AND platform = ?"
            params.append(platform)
        if lineage is not None:
            sql += " ORDER BY sequence DESC, platform ASC LIMIT 1"
        else:
            sql += " ORDER BY created_at DESC, sequence DESC, platform ASC LIMIT 1"
        row = self._db.query_one(sql, cast("SQLParams", tuple(params)))
        return None if row is None else _artifact_from_row(row)

    def list(
        self,
        *,
        name: str | None = None,
        lineage: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Artifact]:
        self._validate_page(limit, offset)
        clauses: list[str] = []
        params: list[object] = []
        if name is not None:
            clauses.append("name = ?")
            params.append(name)
        if lineage is not None:
            clauses.append("lineage = ?")
            params.append(lineage)
        sql = "SELECT * FROM artifacts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY name ASC, lineage ASC, sequence DESC, platform ASC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [_artifact_from_row(row) for row in rows]

    def list_for_run(self, run_id: str) -> list[Artifact]:
        rows = self._db.query_all(
            "SELECT * FROM artifacts WHERE run_id = ? ORDER BY name, platform", (run_id,)
        )
        return [_artifact_from_row(row) for row in rows]


class EnvironmentRepo(_BaseRepo):
    """Upserted EnvironmentState rows keyed by environment name."""

    def save(self, state: EnvironmentState) -> EnvironmentState:
        self._db.execute(
            """
            INSERT INTO environment_states (
                name, status, artifact_name, deployed_version, previous_version,
                updated_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                status=excluded.status,
                artifact_name=excluded.artifact_name,
                deployed_version=excluded.deployed_version,
                previous_version=excluded.previous_version,
                updated_at=excluded.updated_at,
                payload_json=excluded.payload_json
            """,
            (
                state.name,
                str(state.status),
                state.artifact_name,
                state.deployed_version,
                state.previous_version,
                datetime_to_iso8601z(state.updated_at),
                state.to_json(),
            ),
        )
        return state

    def get(self, name: str) -> EnvironmentState | None:
        row = self._db.query_one(
            "SELECT payload_json FROM environment_states WHERE name = ?", (name,)
        )
        if row is None:
            return None
        return EnvironmentState.from_json(
            _row_text(row, "payload_json", "environment_states.payload_json")
        )

    def list(self) -> list[EnvironmentState]:
        rows = self._db.query_all("SELECT payload_json FROM environment_states ORDER BY name")
        return [
            EnvironmentState.from_json(
                _row_text(row, "payload_json", "environment_states.payload_json")
            )
            for row in rows
        ]


class PromotionRepo(_BaseRepo):
    """Append-only promotion history."""

    def add(self, record: PromotionRecord) -> PromotionRecord:
        try:
            self._db.execute(
                """
                INSERT INTO promotions (
                    id, environment, artifact_name, version, outcome, override,
                    created_at, payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.environment,
                    record.artifact_name,
                    record.version,
                    str(record.outcome),
                    1 if record.override else 0,
                    datetime_to_iso8601z(record.created_at),
                    record.to_json(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"promotion {record.id} already recorded") from exc
        return record

    def has_outcome(
        self,
        environment: str,
        artifact_name: str,
        version: str,
        outcome: PromotionOutcome,
    ) -> bool:
        row = self._db.query_one(
            """
            SELECT 1 AS found FROM promotions
            WHERE environment = ? AND artifact_name = ? AND version = ? AND outcome = ?
            LIMIT 1
            """,
            (environment, artifact_name, version, outcome.value),
        )
        return row is not None

    def list(
        self,
        *,
        environment: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PromotionRecord]:
        """Most recent first."""
        self._validate_page(limit, offset)
        sql = "SELECT payload_json FROM promotions"
        params: list[object] = []
        if environment is not None:
            sql += " WHERE environment = ?"
            params.append(environment)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [
            PromotionRecord.from_json(_row_text(row, "payload_json", "promotions.payload_json"))
            for row in rows
        ]


def _artifact_from_row(row: Mapping[str, RowValue]) -> Artifact:
    return Artifact.from_dict(
        {
            "id": row["id"],
            "name": row["name"],
            "lineage": row["lineage"],
            "sequence": row["sequence"],
            "version": row["version"],
            "platform": row["platform"],
            "content_ref": row["content_ref"],
            "stage": row["stage"],
            "run_id": row["run_id"],
            "created_at": row["created_at"],
        }
    )


def _optional_iso(value: datetime | None) -> str | None:
    return None if value is None else datetime_to_iso8601z(value)


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _load_json_object(payload: str, path: str) -> dict[str, object]:
    try:
        loaded = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON ({exc})") from exc
    if not isinstance(loaded, dict):
        raise ValueError(f"{path}: JSON root must be object")
    return {str(key): value for key, value in loaded.items()}


__all__ = [
    "ArtifactRepo",
    "EnvironmentRepo",
    "GateEvaluationRepo",
    "PromotionRepo",
    "RunRepo",
    "StageResultRepo",
]

"""State DB migration, backup, integrity and append-only enforcement tests."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

import pytest

from pipewright.constants import STATE_DB_SCHEMA_VERSION
from pipewright.persistence.repositories import RunRepo, StageResultRepo
from pipewright.persistence.state_db import StateDB, StateDBMigrationError

from . import make_result, make_run

if TYPE_CHECKING:
    from pathlib import Path


def test_migration_is_idempotent_and_creates_tables(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "pipewright.sqlite")

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.schema_version() == STATE_DB_SCHEMA_VERSION

    tables = {
        str(row["name"])
        for row in db.query_all("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {
        "schema_versions",
        "runs",
        "stage_results",
        "gate_evaluations",
        "artifacts",
        "environment_states",
        "promotions",
    } <= tables
    history = db.schema_history()
    assert [record.version for record in history] == list(range(1, STATE_DB_SCHEMA_VERSION + 1))


@pytest.mark.asyncio
async def test_migrate_async_matches_sync(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "pipewright.sqlite")

    assert await db.migrate_async() == STATE_DB_SCHEMA_VERSION


def test_checksum_mismatch_is_rejected(state_db: StateDB) -> None:
    state_db.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("f" * 64,))

    with pytest.raises(StateDBMigrationError, match="checksum mismatch"):
        state_db.migrate()


def test_newer_schema_is_rejected(state_db: StateDB) -> None:
    state_db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "future", "0" * 64, "2030-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer than supported"):
        state_db.migrate()


def test_integrity_check_and_backup(state_db: StateDB, tmp_path: Path) -> None:
    run = RunRepo(state_db).save(make_run(1))

    assert state_db.integrity_check() == ()
    destination = state_db.backup(tmp_path / "backups" / "snapshot.sqlite")

    restored = StateDB(destination)
    assert restored.migrate() == STATE_DB_SCHEMA_VERSION
    assert RunRepo(restored).require(run.id).id == run.id
    with pytest.raises(ValueError, match="max_errors"):
        state_db.integrity_check(max_errors=0)


def test_stage_results_are_append_only(state_db: StateDB) -> None:
    run = RunRepo(state_db).save(make_run(2))
    StageResultRepo(state_db).add(run.id, make_result("lint"))

    with pytest.raises(sqlite3.IntegrityError, match="stage_results is append-only"):
        state_db.execute("UPDATE stage_results SET status = 'failure' WHERE run_id = ?", (run.id,))
    with pytest.raises(sqlite3.IntegrityError, match="stage_results is append-only"):
        state_db.execute("DELETE FROM stage_results WHERE run_id = ?", (run.id,))

    assert StageResultRepo(state_db).list_for_run(run.id)["lint"].succeeded


def test_transaction_rolls_back_on_error(state_db: StateDB) -> None:
    run = make_run(3)

    with pytest.raises(RuntimeError), state_db.transaction() as conn:
        state_db.execute(
            "INSERT INTO runs (id, pipeline, trigger_kind, branch, status, created_at, updated_at, payload_json) "
            "VALUES (?, 'svc', 'push', 'main', 'running', ?, ?, '{}')",
            (run.id, "2026-02-01T12:00:00Z", "2026-02-01T12:00:00Z"),
            conn=conn,
        )
        raise RuntimeError("abort")

    assert state_db.query_one("SELECT id FROM runs WHERE id = ?", (run.id,)) is None

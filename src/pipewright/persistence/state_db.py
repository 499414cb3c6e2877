"""
pipewright - SQLite state database.

Purpose
- Own the schema (checksummed, idempotent migrations) and connection lifecycle
  for runs, stage results, gate evaluations, artifacts, environment states and
  promotion history.

Connections are short-lived and opened per operation in WAL mode, so a
``status`` or ``cancel`` issued from another process never waits behind a
long-lived lock held by a running pipeline. Busy errors are retried with
bounded exponential backoff; stage results, gate evaluations, artifacts and
promotions are append-only at the SQL level.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from pipewright.constants import STATE_DB_SCHEMA_VERSION
from pipewright.domain.models import (
    EnvironmentStatus,
    GateOutcome,
    PromotionOutcome,
    RunStatus,
    StageStatus,
    TriggerKind,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: type[object]) -> str:
    return ",".join(f"'{item.value}'" for item in sorted(values, key=lambda item: item.value))  # type: ignore[attr-defined]


def _append_only(table: str) -> tuple[str, str]:
    return (
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_append_only_update
        BEFORE UPDATE ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_append_only_delete
        BEFORE DELETE ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
    )


_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        pipeline TEXT NOT NULL,
        trigger_kind TEXT NOT NULL CHECK (trigger_kind IN ({_sql_enum(TriggerKind)})),
        branch TEXT NOT NULL,
        environment TEXT,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(RunStatus)})),
        blocked_by TEXT,
        cancel_requested INTEGER NOT NULL DEFAULT 0 CHECK (cancel_requested IN (0, 1)),
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS stage_results (
        run_id TEXT NOT NULL,
        stage TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(StageStatus)})),
        recorded_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        PRIMARY KEY (run_id, stage),
        FOREIGN KEY(run_id) REFERENCES runs(id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS gate_evaluations (
        run_id TEXT NOT NULL,
        gate TEXT NOT NULL,
        outcome TEXT NOT NULL CHECK (outcome IN ({_sql_enum(GateOutcome)})),
        evaluated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        PRIMARY KEY (run_id, gate),
        FOREIGN KEY(run_id) REFERENCES runs(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        lineage TEXT NOT NULL,
        sequence INTEGER NOT NULL CHECK (sequence >= 1),
        version TEXT NOT NULL,
        platform TEXT NOT NULL,
        content_ref TEXT NOT NULL,
        stage TEXT NOT NULL,
        run_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (name, version, platform)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS environment_states (
        name TEXT PRIMARY KEY,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(EnvironmentStatus)})),
        artifact_name TEXT,
        deployed_version TEXT,
        previous_version TEXT,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS promotions (
        id TEXT PRIMARY KEY,
        environment TEXT NOT NULL,
        artifact_name TEXT NOT NULL,
        version TEXT NOT NULL,
        outcome TEXT NOT NULL CHECK (outcome IN ({_sql_enum(PromotionOutcome)})),
        override INTEGER NOT NULL CHECK (override IN (0, 1)),
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    *_append_only("stage_results"),
    *_append_only("gate_evaluations"),
    *_append_only("artifacts"),
    *_append_only("promotions"),
    "CREATE INDEX IF NOT EXISTS idx_runs_created ON runs(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_artifacts_lineage ON artifacts(name, lineage, sequence DESC)",
    "CREATE INDEX IF NOT EXISTS idx_artifacts_run ON artifacts(run_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_promotions_lookup
    ON promotions(environment, artifact_name, version, outcome)
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="pipeline_state_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "pipeline_state_schema", _MIGRATION_0001_STATEMENTS),
    ),
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)
_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence errors."""


class StateDBBusyError(StateDBError):
    """Bounded busy retries were exhausted."""


class StateDBMigrationError(StateDBError):
    """Migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported possible corruption."""


class StateDB:
    """SQLite state DB with deterministic migrations and retrying helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0 or busy_retry_limit < 0 or busy_retry_backoff_ms < 0:
            raise ValueError("busy timeout, retry limit and backoff must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured connection (autocommit; transactions are explicit)."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None or str(journal_row[0]).lower() != "wal":
            conn.close()
            raise StateDBError(f"unable to enable WAL journal mode for {self._path}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Atomic transaction; nested calls on the same connection use savepoints."""
        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate) as tx:
                yield tx
            return

        if conn.in_transaction:
            self._savepoint_counter += 1
            savepoint = f"sp_{self._savepoint_counter}"
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn, f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback to savepoint"
                )
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
                raise
            self._execute_with_retry(
                conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
            )
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except BaseException:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return the schema version."""
        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            applied = self._load_applied_migrations(conn)
            current = max(applied, default=0)
            if current > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this version of pipewright "
                    f"(db={current}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration checksum mismatch for version {migration.version}: "
                            f"db={record.checksum} code={migration.checksum}"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute_with_retry(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )
            return self.schema_version(conn=conn)

    async def migrate_async(self) -> int:
        return await asyncio.to_thread(self.migrate)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        value = 0 if row is None else row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return list(self._load_applied_migrations(conn).values())

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return the affected row count."""
        if conn is not None:
            return self._execute_with_retry(conn, sql, params, operation="execute statement").rowcount
        with self.transaction() as tx:
            return self._execute_with_retry(tx, sql, params, operation="execute statement").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]
        with self.connection() as owned:
            cursor = self._execute_with_retry(owned, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        if conn is not None:
            row = self._execute_with_retry(conn, sql, params, operation="query one").fetchone()
            return None if row is None else dict(row)
        with self.connection() as owned:
            row = self._execute_with_retry(owned, sql, params, operation="query one").fetchone()
            return None if row is None else dict(row)

    def backup(self, destination: str | Path) -> Path:
        """Consistent snapshot through the SQLite backup API."""
        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        target = sqlite3.connect(destination_path, isolation_level=None)
        try:
            with self.connection() as source:
                source.backup(target)
        finally:
            target.close()
        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Integrity-check messages; an empty tuple means OK."""
        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(next(iter(row.values()), "")) for row in rows)
        return () if messages == ("ok",) else messages

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version ASC",
            (),
            operation="load schema_versions",
        )
        return {
            int(row["version"]): MigrationRecord(
                version=int(row["version"]),
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
            for row in cursor.fetchall()
        }

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if _is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        message = str(exc).lower()
        if any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run StateDB.integrity_check() and restore from a backup if needed."
            ) from exc
        if _is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _is_busy_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "utc_now_iso",
]

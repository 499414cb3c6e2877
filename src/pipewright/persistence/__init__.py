"""Persistence layer: SQLite state DB, migrations and repositories."""

from pipewright.persistence.repositories import (
    ArtifactRepo,
    EnvironmentRepo,
    GateEvaluationRepo,
    PromotionRepo,
    RunRepo,
    StageResultRepo,
)
from pipewright.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "ArtifactRepo",
    "EnvironmentRepo",
    "GateEvaluationRepo",
    "PromotionRepo",
    "RunRepo",
    "StageResultRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]

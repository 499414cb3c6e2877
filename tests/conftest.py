"""Shared fixtures: an isolated config and state DB per test."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from pipewright.config.schema import default_config, merge_config
from pipewright.persistence.state_db import StateDB

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def config(tmp_path: Path) -> dict[str, Any]:
    """Defaults with state and logs under ``tmp_path`` and zero health backoff."""
    return merge_config(
        default_config(),
        {
            "scheduler": {"cancel_poll_seconds": 0.05},
            "deployment": {
                "health_check_attempts": 3,
                "health_check_initial_backoff_seconds": 0.0,
                "health_check_max_backoff_seconds": 0.0,
                "health_check_timeout_seconds": 5.0,
            },
            "paths": {"state_db": str(tmp_path / "state" / "pipewright.sqlite")},
            "observability": {"log_dir": str(tmp_path / "logs")},
        },
    )


@pytest.fixture
def state_db(tmp_path: Path) -> StateDB:
    db = StateDB(tmp_path / "state" / "pipewright.sqlite")
    db.migrate()
    return db

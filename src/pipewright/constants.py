"""Stable constants shared across pipewright components."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Closed set of environments a manual dispatch may target.
MANUAL_ENVIRONMENTS: Final[tuple[str, ...]] = ("staging", "production")

# Parameters accepted by a manual dispatch.
MANUAL_PARAMETERS: Final[frozenset[str]] = frozenset({"environment", "skip_tests"})

LATEST_VERSION: Final[str] = "latest"
DEFAULT_PLATFORM: Final[str] = "any"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_PLATFORM",
    "LATEST_VERSION",
    "MANUAL_ENVIRONMENTS",
    "MANUAL_PARAMETERS",
    "STATE_DB_SCHEMA_VERSION",
]

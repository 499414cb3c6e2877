"""
pipewright - pipeline orchestration engine

Package root. Only the version string lives here; components are imported
from their submodules, so importing the package loads no config, configures
no logging and opens no database.
"""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = ["__version__"]

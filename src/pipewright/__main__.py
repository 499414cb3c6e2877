"""Module entrypoint for ``python -m pipewright``."""

from __future__ import annotations

from pipewright.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())

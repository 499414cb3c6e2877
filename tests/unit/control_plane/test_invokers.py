"""Unit tests for invoker routing and the subprocess-backed CommandInvoker."""

from __future__ import annotations

import hashlib
import json
import sys
from typing import TYPE_CHECKING

import pytest

from pipewright.control_plane.invokers import (
    CommandInvoker,
    FunctionInvoker,
    InvokerRegistry,
    StageContext,
    StageInvoker,
)
from pipewright.domain.ids import generate_run_id
from pipewright.domain.models import Stage, StageResult, StageStatus
from pipewright.errors import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path


def _context(log_dir: Path | None = None) -> StageContext:
    return StageContext(
        run_id=generate_run_id(),
        pipeline="svc",
        branch="main",
        environment="staging",
        log_dir=log_dir,
    )


def _python_stage(name: str, code: str, **options: object) -> Stage:
    return Stage(
        name=name,
        capability="build",
        options={"argv": [sys.executable, "-c", code], **options},
    )


async def _ok(stage: Stage, context: StageContext) -> StageResult:
    return StageResult.success(stage.name)


def test_registry_prefers_stage_then_capability_then_default() -> None:
    by_stage = FunctionInvoker(_ok)
    by_capability = FunctionInvoker(_ok)
    fallback = FunctionInvoker(_ok)
    registry = InvokerRegistry(default=fallback)
    registry.register_stage("unit", by_stage)
    registry.register_capability("test", by_capability)

    assert registry.resolve(Stage(name="unit", capability="test")) is by_stage
    assert registry.resolve(Stage(name="e2e", capability="test")) is by_capability
    assert registry.resolve(Stage(name="build", capability="build")) is fallback


def test_registry_wraps_plain_coroutine_functions() -> None:
    registry = InvokerRegistry()
    registry.register_stage("unit", _ok)

    invoker = registry.resolve(Stage(name="unit", capability="test"))

    assert isinstance(invoker, FunctionInvoker)
    assert isinstance(invoker, StageInvoker)


def test_registry_without_route_is_configuration_error() -> None:
    registry = InvokerRegistry()
    registry.register_capability("test", _ok)

    registry.validate([Stage(name="unit", capability="test")])
    with pytest.raises(ConfigurationError, match="no invoker registered for stage 'build'"):
        registry.validate([Stage(name="unit", capability="test"), Stage(name="build", capability="build")])


def test_registry_rejects_non_invokers() -> None:
    with pytest.raises(ValueError, match="invoker must implement invoke"):
        InvokerRegistry().register_stage("unit", 42)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_command_success_collects_metrics_outputs_and_log(tmp_path: Path) -> None:
    code = (
        "import json, os, pathlib;"
        "pathlib.Path('metrics.json').write_text(json.dumps({'line_rate': 0.93, 'failed': 0}));"
        "pathlib.Path('app-linux.tar').write_bytes(b'linux-bits');"
        "print('built', os.environ['PIPEWRIGHT_STAGE'], os.environ['PIPEWRIGHT_ENVIRONMENT'])"
    )
    stage = _python_stage(
        "build",
        code,
        cwd=str(tmp_path),
        metrics_file="metrics.json",
        outputs={"linux": "app-linux.tar"},
    )
    context = _context(tmp_path / "logs")

    result = await CommandInvoker().invoke(stage, context)

    assert result.status is StageStatus.SUCCESS
    assert result.metrics["line_rate"] == 0.93
    assert result.metrics["failed"] == 0
    assert result.metrics["exit_code"] == 0
    assert "duration_ms" in result.metrics
    expected = hashlib.sha256(b"linux-bits").hexdigest()
    assert [(o.platform, o.content_ref) for o in result.outputs] == [("linux", f"sha256:{expected}")]
    assert result.log_ref is not None
    log_text = (tmp_path / "logs" / context.run_id / "build.log").read_text(encoding="utf-8")
    assert "built build staging" in log_text


@pytest.mark.asyncio
async def test_command_nonzero_exit_is_failure_with_stderr_tail() -> None:
    stage = _python_stage("unit", "import sys; sys.stderr.write('2 tests failed'); sys.exit(3)")

    result = await CommandInvoker().invoke(stage, _context())

    assert result.status is StageStatus.FAILURE
    assert result.detail == "2 tests failed"
    assert result.metrics["exit_code"] == 3
    assert result.log_ref is None


@pytest.mark.asyncio
async def test_command_allowed_exit_codes() -> None:
    stage = _python_stage("lint", "import sys; sys.exit(1)", allowed_exit_codes=[0, 1])

    result = await CommandInvoker().invoke(stage, _context())

    assert result.status is StageStatus.SUCCESS
    assert result.metrics["exit_code"] == 1


@pytest.mark.asyncio
async def test_command_timeout_is_failure() -> None:
    stage = _python_stage("e2e", "import time; time.sleep(10)", timeout_seconds=0.2)

    result = await CommandInvoker().invoke(stage, _context())

    assert result.status is StageStatus.FAILURE
    assert result.detail == "command timed out after 0.200s"
    assert "exit_code" not in result.metrics


@pytest.mark.asyncio
async def test_missing_executable_is_failure(tmp_path: Path) -> None:
    stage = Stage(
        name="build",
        capability="build",
        options={"argv": [str(tmp_path / "no-such-binary")]},
    )

    result = await CommandInvoker().invoke(stage, _context())

    assert result.status is StageStatus.FAILURE
    assert result.detail
    assert "exit_code" not in result.metrics


@pytest.mark.asyncio
async def test_invalid_metrics_file_is_failure(tmp_path: Path) -> None:
    (tmp_path / "metrics.json").write_text(json.dumps({"coverage": "high"}), encoding="utf-8")
    stage = _python_stage("unit", "pass", cwd=str(tmp_path), metrics_file="metrics.json")

    result = await CommandInvoker().invoke(stage, _context())

    assert result.status is StageStatus.FAILURE
    assert "must be a finite number or boolean" in (result.detail or "")


@pytest.mark.asyncio
async def test_missing_output_is_failure(tmp_path: Path) -> None:
    stage = _python_stage("build", "pass", cwd=str(tmp_path), outputs={"linux": "app.tar"})

    result = await CommandInvoker().invoke(stage, _context())

    assert result.status is StageStatus.FAILURE
    assert "output for platform 'linux' not produced" in (result.detail or "")


@pytest.mark.asyncio
async def test_command_string_is_split_like_a_shell() -> None:
    stage = Stage(
        name="lint",
        capability="analysis",
        options={"command": f"{sys.executable} -c 'import sys; sys.exit(0)'"},
    )

    result = await CommandInvoker().invoke(stage, _context())

    assert result.status is StageStatus.SUCCESS


@pytest.mark.asyncio
async def test_stage_without_command_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="need options.argv or options.command"):
        await CommandInvoker().invoke(Stage(name="lint", capability="analysis"), _context())
    with pytest.raises(ConfigurationError, match="allowed_exit_codes must be a non-empty list"):
        await CommandInvoker().invoke(_python_stage("lint", "pass", allowed_exit_codes=[]), _context())

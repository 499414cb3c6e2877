"""
pipewright - stage invocation boundary.

Purpose
- Route a Stage to the external collaborator that executes it and normalize
  the outcome into a StageResult.

The scheduler only sees :class:`StageInvoker`. Invokers are looked up by stage
name first, then by capability tag, then the registry default. The built-in
:class:`CommandInvoker` runs ``stage.options["argv"]`` (or ``"command"``) as a
subprocess and reads gate metrics from an optional JSON metrics file.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import os
import shlex
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from pipewright.domain.models import (
    JSONValue,
    MetricValue,
    Stage,
    StageCapability,
    StageOutput,
    StageResult,
    utc_now,
)
from pipewright.errors import ConfigurationError
from pipewright.utils.concurrency import CancellationToken

_MAX_DETAIL_CHARS = 2_000


@dataclass(slots=True)
class StageContext:
    """Read-only view of the run handed to an invoker."""

    run_id: str
    pipeline: str
    branch: str
    ref: str | None = None
    environment: str | None = None
    parameters: Mapping[str, JSONValue] = field(default_factory=dict)
    upstream: Mapping[str, StageResult] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    log_dir: Path | None = None


@runtime_checkable
class StageInvoker(Protocol):
    """Executes one stage; must return a StageResult for ``stage.name``."""

    async def invoke(self, stage: Stage, context: StageContext) -> StageResult: ...


InvokeFunction = Callable[[Stage, StageContext], Awaitable[StageResult]]


class FunctionInvoker:
    """Adapts a plain coroutine function to :class:`StageInvoker`."""

    def __init__(self, function: InvokeFunction) -> None:
        if not callable(function):
            raise ValueError("function must be callable")
        self._function = function

    async def invoke(self, stage: Stage, context: StageContext) -> StageResult:
        return await self._function(stage, context)

    def __repr__(self) -> str:
        return f"FunctionInvoker({getattr(self._function, '__name__', self._function)!r})"


class InvokerRegistry:
    """Stage-name and capability routing to invokers."""

    def __init__(self, *, default: StageInvoker | InvokeFunction | None = None) -> None:
        self._by_stage: dict[str, StageInvoker] = {}
        self._by_capability: dict[StageCapability, StageInvoker] = {}
        self._default = _coerce_invoker(default) if default is not None else None

    def register_stage(self, stage_name: str, invoker: StageInvoker | InvokeFunction) -> None:
        self._by_stage[stage_name] = _coerce_invoker(invoker)

    def register_capability(
        self,
        capability: StageCapability | str,
        invoker: StageInvoker | InvokeFunction,
    ) -> None:
        self._by_capability[StageCapability(capability)] = _coerce_invoker(invoker)

    def set_default(self, invoker: StageInvoker | InvokeFunction) -> None:
        self._default = _coerce_invoker(invoker)

    def resolve(self, stage: Stage) -> StageInvoker:
        invoker = self._by_stage.get(stage.name)
        if invoker is None:
            invoker = self._by_capability.get(StageCapability(stage.capability))
        if invoker is None:
            invoker = self._default
        if invoker is None:
            raise ConfigurationError(
                f"no invoker registered for stage {stage.name!r} (capability {stage.capability})"
            )
        return invoker

    def validate(self, stages: Sequence[Stage]) -> None:
        """Fail fast when any stage has no route."""
        for stage in stages:
            self.resolve(stage)


def _coerce_invoker(value: StageInvoker | InvokeFunction) -> StageInvoker:
    if isinstance(value, StageInvoker):
        return value
    if callable(value):
        return FunctionInvoker(value)
    raise ValueError(f"invoker must implement invoke() or be callable, got {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class CommandOutcome:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0


class CommandInvoker:
    """Runs a stage as a local subprocess.

    Recognized ``stage.options``:

    - ``argv`` (list of str) or ``command`` (shell-like string, split with shlex)
    - ``cwd``, ``env`` (mapping), ``timeout_seconds``
    - ``allowed_exit_codes`` (default ``[0]``)
    - ``metrics_file``: JSON object of metrics written by the command
    - ``outputs``: mapping of platform to produced file; recorded as
      ``sha256:<digest>`` content references
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = None,
        max_output_chars: int = 200_000,
        logger: Any | None = None,
    ) -> None:
        if default_timeout_seconds is not None and default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_chars = max_output_chars
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def invoke(self, stage: Stage, context: StageContext) -> StageResult:
        started_at = utc_now()
        options = stage.options
        argv = _command_argv(stage)
        cwd = Path(str(options["cwd"])) if options.get("cwd") else None
        allowed = _allowed_exit_codes(options.get("allowed_exit_codes", [0]), stage.name)
        timeout = _optional_positive(options.get("timeout_seconds"), stage.name) or self._default_timeout_seconds

        env = dict(os.environ)
        env.update({str(key): str(value) for key, value in dict(options.get("env") or {}).items()})
        env.update(
            {
                "PIPEWRIGHT_RUN_ID": context.run_id,
                "PIPEWRIGHT_PIPELINE": context.pipeline,
                "PIPEWRIGHT_STAGE": stage.name,
                "PIPEWRIGHT_BRANCH": context.branch,
                "PIPEWRIGHT_ENVIRONMENT": context.environment or "",
            }
        )

        outcome = await self._run(argv, cwd=cwd, env=env, timeout_seconds=timeout)
        log_ref = self._write_log(stage, context, outcome)
        self._logger.info(
            "command_finished",
            stage=stage.name,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            duration_ms=outcome.duration_ms,
        )

        metrics: dict[str, MetricValue] = {"duration_ms": outcome.duration_ms}
        if outcome.exit_code is not None:
            metrics["exit_code"] = outcome.exit_code

        if outcome.timed_out or outcome.error is not None or outcome.exit_code not in allowed:
            detail = outcome.error or _tail(outcome.stderr) or f"exit code {outcome.exit_code}"
            return StageResult.failure(
                stage.name,
                detail,
                metrics=metrics,
                log_ref=log_ref,
                started_at=started_at,
                finished_at=utc_now(),
            )

        try:
            metrics.update(_read_metrics(options.get("metrics_file"), cwd))
            outputs = _collect_outputs(options.get("outputs"), cwd)
        except ValueError as exc:
            return StageResult.failure(
                stage.name, str(exc), metrics=metrics, log_ref=log_ref, started_at=started_at, finished_at=utc_now()
            )
        return StageResult.success(
            stage.name,
            metrics=metrics,
            log_ref=log_ref,
            outputs=outputs,
            started_at=started_at,
            finished_at=utc_now(),
        )

    async def _run(
        self,
        argv: tuple[str, ...],
        *,
        cwd: Path | None,
        env: Mapping[str, str],
        timeout_seconds: float | None,
    ) -> CommandOutcome:
        started_ns = time.monotonic_ns()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=dict(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandOutcome(argv, None, "", "", _elapsed_ms(started_ns), error=str(exc))

        try:
            if timeout_seconds is None:
                stdout, stderr = await process.communicate()
            else:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
        except TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            stdout, stderr = await process.communicate()
            return CommandOutcome(
                argv,
                None,
                self._text(stdout),
                self._text(stderr),
                _elapsed_ms(started_ns),
                timed_out=True,
                error=f"command timed out after {timeout_seconds:.3f}s",
            )
        except asyncio.CancelledError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.communicate()
            raise

        return CommandOutcome(
            argv,
            process.returncode,
            self._text(stdout),
            self._text(stderr),
            _elapsed_ms(started_ns),
        )

    def _text(self, raw: bytes) -> str:
        text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n").replace("\r", "\n")
        if len(text) <= self._max_output_chars:
            return text
        omitted = len(text) - self._max_output_chars
        return f"{text[: self._max_output_chars]}\n...[truncated {omitted} chars]"

    def _write_log(self, stage: Stage, context: StageContext, outcome: CommandOutcome) -> str | None:
        if context.log_dir is None:
            return None
        path = context.log_dir / context.run_id / f"{stage.name}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            f"$ {shlex.join(outcome.argv)}\n"
            f"--- stdout ---\n{outcome.stdout}\n"
            f"--- stderr ---\n{outcome.stderr}\n"
            f"--- exit={outcome.exit_code} timed_out={outcome.timed_out} ---\n",
            encoding="utf-8",
        )
        return path.as_posix()


def _command_argv(stage: Stage) -> tuple[str, ...]:
    argv = stage.options.get("argv")
    command = stage.options.get("command")
    if argv is not None:
        if isinstance(argv, str) or not isinstance(argv, Sequence) or not argv:
            raise ConfigurationError(f"stage {stage.name!r}: options.argv must be a non-empty list")
        return tuple(str(item) for item in argv)
    if isinstance(command, str) and command.strip():
        return tuple(shlex.split(command))
    raise ConfigurationError(f"stage {stage.name!r}: command stages need options.argv or options.command")


def _allowed_exit_codes(value: object, stage: str) -> frozenset[int]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence) or not value:
        raise ConfigurationError(f"stage {stage!r}: allowed_exit_codes must be a non-empty list")
    codes = frozenset(value)
    if any(isinstance(code, bool) or not isinstance(code, int) for code in codes):
        raise ConfigurationError(f"stage {stage!r}: allowed_exit_codes must contain integers")
    return codes


def _optional_positive(value: object, stage: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"stage {stage!r}: timeout_seconds must be > 0")
    return float(value)


def _read_metrics(raw_path: object, cwd: Path | None) -> dict[str, MetricValue]:
    if raw_path is None:
        return {}
    path = _resolve(raw_path, cwd)
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValueError(f"metrics file not written: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"metrics file {path} is not valid JSON: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ValueError(f"metrics file {path} must hold a JSON object")
    metrics: dict[str, MetricValue] = {}
    for key, value in loaded.items():
        if isinstance(value, bool) or (isinstance(value, (int, float)) and math.isfinite(value)):
            metrics[str(key)] = value
        else:
            raise ValueError(f"metric {key!r} in {path} must be a finite number or boolean")
    return metrics


def _collect_outputs(raw: object, cwd: Path | None) -> tuple[StageOutput, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise ValueError("options.outputs must map platform to file path")
    outputs: list[StageOutput] = []
    for platform in sorted(raw):
        path = _resolve(raw[platform], cwd)
        if not path.is_file():
            raise ValueError(f"output for platform {platform!r} not produced: {path}")
        outputs.append(StageOutput(platform=str(platform), content_ref=f"sha256:{_sha256_file(path)}"))
    return tuple(outputs)


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65_536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _resolve(raw: object, cwd: Path | None) -> Path:
    path = Path(str(raw)).expanduser()
    if not path.is_absolute() and cwd is not None:
        path = cwd / path
    return path


def _tail(text: str) -> str:
    stripped = text.strip()
    return stripped[-_MAX_DETAIL_CHARS:] if stripped else ""


def _elapsed_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


__all__ = [
    "CommandInvoker",
    "CommandOutcome",
    "FunctionInvoker",
    "InvokeFunction",
    "InvokerRegistry",
    "StageContext",
    "StageInvoker",
]

"""Command-line interface router for pipewright."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import importlib
import json
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from pipewright.config import dump_effective_config, load_config, redact_config
from pipewright.constants import LATEST_VERSION, MANUAL_ENVIRONMENTS
from pipewright.control_plane import CommandInvoker, InvokerRegistry, PipelineService, RunOutcome
from pipewright.domain.models import (
    Artifact,
    EnvironmentState,
    PipelineDefinition,
    PipelineRun,
    PromotionRecord,
    PromotionResult,
    RunStatus,
    TriggerKind,
)
from pipewright.errors import ConfigurationError, DeploymentFailed
from pipewright.observability.logging import setup_logging, shutdown_logging
from pipewright.planning import TriggerEvent, TriggerPlan
from pipewright.release_plane import Deployer, HealthProbe
from pipewright.ui.render import CLIRenderer, create_renderer
from pipewright.utils.concurrency import CancellationToken

RUN_EXIT_CODES: Final[Mapping[RunStatus, int]] = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELLED: 2,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="pipewright",
        description=(
            "pipewright - CI/CD pipeline orchestration.\n\n"
            "Common workflows:\n"
            "  pipewright run --pipeline ci:pipeline --environment staging\n"
            "  pipewright status                 Show the latest run\n"
            "  pipewright cancel RUN_ID          Request cancellation of a run\n"
            "  pipewright promote production app --version 1.0.4\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to pipewright TOML config (default: ./pipewright.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value by dotted key, e.g. scheduler.max_concurrency=2.",
    )
    common.add_argument("--verbose", "-v", action="store_true", default=False, help="Show detailed output.")
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser("run", parents=[common], help="Trigger and execute a pipeline run.")
    run_parser.add_argument(
        "--pipeline",
        required=True,
        metavar="MODULE:FACTORY",
        help="Pipeline definition factory, e.g. ci.pipelines:build_pipeline.",
    )
    run_parser.add_argument(
        "--trigger",
        choices=[kind.value for kind in TriggerKind],
        default=TriggerKind.MANUAL.value,
        help="Trigger kind (default: manual).",
    )
    run_parser.add_argument("--environment", choices=MANUAL_ENVIRONMENTS, default=None)
    run_parser.add_argument("--skip-tests", action="store_true", default=False)
    run_parser.add_argument("--branch", default="main", help="Branch the run builds (default: main).")
    run_parser.add_argument("--ref", default=None, help="Commit or tag the run builds.")
    run_parser.set_defaults(handler=_cmd_run)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser("status", parents=[common], help="Show one run (default: latest).")
    status_parser.add_argument("run_id", nargs="?", default=None)
    status_parser.set_defaults(handler=_cmd_status)

    # history -------------------------------------------------------------
    history_parser = subparsers.add_parser("history", parents=[common], help="List recent runs.")
    history_parser.add_argument("--status", choices=[status.value for status in RunStatus], default=None)
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.set_defaults(handler=_cmd_history)

    # cancel --------------------------------------------------------------
    cancel_parser = subparsers.add_parser("cancel", parents=[common], help="Request cancellation of a run.")
    cancel_parser.add_argument("run_id")
    cancel_parser.set_defaults(handler=_cmd_cancel)

    # promote -------------------------------------------------------------
    promote_parser = subparsers.add_parser(
        "promote", parents=[common], help="Deploy an artifact version to an environment."
    )
    promote_parser.add_argument("environment")
    promote_parser.add_argument("artifact")
    promote_parser.add_argument("--version", default=LATEST_VERSION)
    promote_parser.add_argument(
        "--override",
        action="store_true",
        default=False,
        help="Skip the staging-before-production check.",
    )
    promote_parser.add_argument(
        "--hooks",
        default=None,
        metavar="MODULE:FACTORY",
        help="Factory returning (deployer, health_probe); default records state only.",
    )
    promote_parser.set_defaults(handler=_cmd_promote)

    # artifacts -----------------------------------------------------------
    artifacts_parser = subparsers.add_parser("artifacts", parents=[common], help="List registered artifacts.")
    artifacts_parser.add_argument("name", nargs="?", default=None)
    artifacts_parser.add_argument("--version", default=None, help="Show every platform of one version.")
    artifacts_parser.add_argument("--lineage", default=None)
    artifacts_parser.add_argument("--limit", type=int, default=50)
    artifacts_parser.set_defaults(handler=_cmd_artifacts)

    # environments --------------------------------------------------------
    env_parser = subparsers.add_parser(
        "environments", parents=[common], help="Show, reset, or list promotions of environments."
    )
    env_parser.add_argument("action", nargs="?", choices=("list", "reset", "history"), default="list")
    env_parser.add_argument("environment", nargs="?", default=None)
    env_parser.add_argument("--limit", type=int, default=20)
    env_parser.set_defaults(handler=_cmd_environments)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser("config", parents=[common], help="Show the effective config.")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    try:
        namespace = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse usage errors are configuration errors for this CLI.
        return 0 if exc.code in (0, None) else 3
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 3

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition, invokers = _load_pipeline(args.pipeline)
    kind = TriggerKind(args.trigger)

    manual_parameters: dict[str, object] = {}
    if args.environment is not None:
        manual_parameters["environment"] = args.environment
    if args.skip_tests:
        manual_parameters["skip_tests"] = True
    event = TriggerEvent(kind=kind, branch=args.branch, ref=args.ref, manual_parameters=manual_parameters)

    with PipelineService(config, invokers=invokers) as service:
        plan = service.plan(event, definition)
        handle = setup_logging(config.get("observability"), run_id=plan.run.id)
        try:
            outcome = asyncio.run(_execute_with_signals(service, plan))
        finally:
            shutdown_logging(handle)

    run = outcome.run
    exit_code = RUN_EXIT_CODES[RunStatus(run.status)]
    if args.json:
        _emit_json(
            {
                "command": "run",
                "run": run.to_dict(),
                "artifacts": [artifact.to_dict() for artifact in outcome.artifacts],
                "excluded": list(plan.excluded),
                "exit_code": exit_code,
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    _render_run(renderer, run)
    if plan.excluded:
        renderer.kv("Excluded stages", ", ".join(plan.excluded))
    if outcome.artifacts:
        _render_artifacts(renderer, outcome.artifacts, title="Registered artifacts")
    renderer.next_steps([f"pipewright status {run.id}"])
    return exit_code


async def _execute_with_signals(service: PipelineService, plan: TriggerPlan) -> RunOutcome:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
            installed.append(sig)
    try:
        return await service.execute(plan, cancel_token=token)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with PipelineService(config) as service:
        run = service.status(args.run_id)
        artifacts = service.registry.for_run(run.id)

    if args.json:
        _emit_json(
            {
                "command": "status",
                "run": run.to_dict(),
                "artifacts": [artifact.to_dict() for artifact in artifacts],
            }
        )
        return 0

    renderer = _get_renderer(args)
    _render_run(renderer, run)
    if artifacts:
        _render_artifacts(renderer, artifacts, title="Artifacts")
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    status = RunStatus(args.status) if args.status is not None else None
    with PipelineService(config) as service:
        runs = service.history(status=status, limit=_positive_limit(args.limit))

    if args.json:
        _emit_json({"command": "history", "runs": [_run_summary(run) for run in runs]})
        return 0

    renderer = _get_renderer(args)
    if not runs:
        renderer.text("No runs recorded.")
        return 0
    renderer.table(
        ["Run", "Pipeline", "Trigger", "Branch", "Status", "Created"],
        [
            [
                run.id,
                run.pipeline,
                str(run.trigger),
                run.branch,
                str(run.status),
                run.created_at.isoformat(timespec="seconds"),
            ]
            for run in runs
        ],
        status_column=4,
    )
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with PipelineService(config) as service:
        accepted = service.cancel(args.run_id)

    if args.json:
        _emit_json({"command": "cancel", "run_id": args.run_id, "accepted": accepted})
    else:
        renderer = _get_renderer(args)
        if accepted:
            renderer.text(f"Cancellation requested for {args.run_id}")
        else:
            renderer.text(f"Run {args.run_id} already finished; nothing to cancel")
    return 0 if accepted else 1


def _cmd_promote(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    deployer, probe = _load_hooks(args.hooks)
    with PipelineService(config, deployer=deployer, probe=probe) as service:
        try:
            result = asyncio.run(
                service.deployments.promote(
                    args.environment,
                    args.artifact,
                    args.version,
                    override=args.override,
                )
            )
        except DeploymentFailed as exc:
            if exc.result is None:
                raise
            _report_promotion(args, exc.result, error=str(exc))
            return 1

    _report_promotion(args, result, error=None)
    return 0


def _report_promotion(args: argparse.Namespace, result: PromotionResult, *, error: str | None) -> None:
    if args.json:
        _emit_json({"command": "promote", "promotion": result.to_dict(), "error": error})
        return
    renderer = _get_renderer(args)
    renderer.kv("Promotion", result.promotion_id)
    renderer.kv("Artifact", f"{result.artifact_name}@{result.version}")
    renderer.kv("Environment", result.environment)
    renderer.status("Status", str(result.status))
    renderer.kv("Health checks", result.attempts)
    if result.restored_artifact_name is not None or error is not None:
        renderer.kv("Restored", _artifact_label(result.restored_artifact_name, result.restored_version))
    if error is not None:
        renderer.warning(error)


def _cmd_artifacts(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with PipelineService(config) as service:
        if args.version is not None:
            if args.name is None:
                raise CLIError("--version requires an artifact name", exit_code=3)
            artifacts = service.registry.group(args.name, args.version)
        else:
            artifacts = service.registry.list(
                name=args.name, lineage=args.lineage, limit=_positive_limit(args.limit)
            )

    if args.json:
        _emit_json({"command": "artifacts", "artifacts": [artifact.to_dict() for artifact in artifacts]})
        return 0

    renderer = _get_renderer(args)
    if not artifacts:
        renderer.text("No artifacts registered.")
        return 0
    _render_artifacts(renderer, artifacts, title=None)
    return 0


def _cmd_environments(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with PipelineService(config) as service:
        deployments = service.deployments
        if args.action == "reset":
            if args.environment is None:
                raise CLIError("environments reset requires an environment name", exit_code=3)
            state = deployments.reset(args.environment)
            if args.json:
                _emit_json({"command": "environments", "action": "reset", "environment": state.to_dict()})
            else:
                _get_renderer(args).text(f"Environment {state.name} reset to {state.status}")
            return 0
        if args.action == "history":
            records = deployments.history(args.environment, limit=_positive_limit(args.limit))
            if args.json:
                _emit_json(
                    {
                        "command": "environments",
                        "action": "history",
                        "promotions": [record.to_dict() for record in records],
                    }
                )
            else:
                _render_promotions(_get_renderer(args), records)
            return 0
        states = (
            [deployments.state(args.environment)] if args.environment is not None else deployments.states()
        )

    if args.json:
        _emit_json(
            {
                "command": "environments",
                "action": "list",
                "environments": [state.to_dict() for state in states],
            }
        )
        return 0
    _render_environments(_get_renderer(args), states)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        _emit_json({"command": "config", "active_profile": args.profile, "config": redact_config(config)})
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(args.no_color), verbose=bool(args.verbose))


def _render_run(renderer: CLIRenderer, run: PipelineRun) -> None:
    renderer.kv("Run ID", run.id)
    renderer.kv("Pipeline", run.pipeline)
    renderer.kv("Trigger", f"{run.trigger} on {run.branch}" + (f" ({run.ref})" if run.ref else ""))
    if run.environment is not None:
        renderer.kv("Environment", run.environment)
    renderer.status("Status", str(run.status))
    if run.blocked_by is not None:
        renderer.kv("Blocked by", run.blocked_by)

    rows: list[list[str]] = []
    for name in run.stages:
        result = run.results.get(name)
        if result is None:
            rows.append([name, "pending", ""])
            continue
        detail = result.detail or ""
        if renderer.verbose and result.metrics:
            detail = (detail + " " if detail else "") + json.dumps(dict(result.metrics), sort_keys=True)
        rows.append([name, str(result.status), detail])
    renderer.table(["Stage", "Status", "Detail"], rows, title="Stages", status_column=1)

    if run.gate_evaluations:
        renderer.table(
            ["Gate", "Outcome", "Violations"],
            [
                [evaluation.gate, str(evaluation.outcome), "; ".join(evaluation.violations)]
                for evaluation in run.gate_evaluations.values()
            ],
            title="Quality gates",
            status_column=1,
        )


def _render_artifacts(renderer: CLIRenderer, artifacts: Sequence[Artifact], *, title: str | None) -> None:
    renderer.table(
        ["Artifact", "Version", "Platform", "Lineage", "Stage", "Run", "Content"],
        [
            [
                artifact.name,
                artifact.version,
                artifact.platform,
                artifact.lineage,
                artifact.stage,
                artifact.run_id,
                artifact.content_ref,
            ]
            for artifact in artifacts
        ],
        title=title,
    )


def _render_environments(renderer: CLIRenderer, states: Sequence[EnvironmentState]) -> None:
    renderer.table(
        ["Environment", "Status", "Artifact", "Deployed", "Previous", "Updated"],
        [
            [
                state.name,
                str(state.status),
                state.artifact_name or "-",
                state.deployed_version or "-",
                _artifact_label(state.previous_artifact_name, state.previous_version),
                state.updated_at.isoformat(timespec="seconds"),
            ]
            for state in states
        ],
        status_column=1,
    )


def _artifact_label(name: str | None, version: str | None) -> str:
    if version is None:
        return name or "-"
    return f"{name}@{version}" if name else version


def _render_promotions(renderer: CLIRenderer, records: Sequence[PromotionRecord]) -> None:
    if not records:
        renderer.text("No promotions recorded.")
        return
    renderer.table(
        ["Promotion", "Environment", "Artifact", "Outcome", "Override", "Created"],
        [
            [
                record.id,
                record.environment,
                f"{record.artifact_name}@{record.version}",
                str(record.outcome),
                "yes" if record.override else "no",
                record.created_at.isoformat(timespec="seconds"),
            ]
            for record in records
        ],
        status_column=3,
    )


def _run_summary(run: PipelineRun) -> dict[str, object]:
    return {
        "id": run.id,
        "pipeline": run.pipeline,
        "trigger": str(run.trigger),
        "branch": run.branch,
        "status": str(run.status),
        "blocked_by": run.blocked_by,
        "created_at": run.created_at.isoformat(),
    }


# ---------------------------------------------------------------------------
# Helpers - config, pipeline loading
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    for item in args.overrides:
        key, sep, value = str(item).partition("=")
        if not sep or not key.strip():
            raise CLIError(f"invalid --set value {item!r}; expected KEY=VALUE", exit_code=3)
        overrides[key.strip()] = _parse_override_value(value)
    return load_config(args.config_path, profile=args.profile, cli_overrides=overrides)


def _load_pipeline(target: str) -> tuple[PipelineDefinition, InvokerRegistry]:
    """Resolve ``module:factory`` into a definition and its invoker routing.

    The factory may return a PipelineDefinition (every stage then runs through
    ``CommandInvoker``) or a ``(PipelineDefinition, InvokerRegistry)`` pair.
    """
    loaded = _load_object(target, "--pipeline")
    produced = loaded() if callable(loaded) else loaded
    if isinstance(produced, PipelineDefinition):
        return produced, InvokerRegistry(default=CommandInvoker())
    if (
        isinstance(produced, tuple)
        and len(produced) == 2
        and isinstance(produced[0], PipelineDefinition)
        and isinstance(produced[1], InvokerRegistry)
    ):
        return produced[0], produced[1]
    raise ConfigurationError(
        f"{target} must produce a PipelineDefinition or (PipelineDefinition, InvokerRegistry)"
    )


def _load_hooks(target: str | None) -> tuple[Deployer | None, HealthProbe | None]:
    if target is None:
        return None, None
    loaded = _load_object(target, "--hooks")
    produced = loaded() if callable(loaded) else loaded
    if (
        isinstance(produced, tuple)
        and len(produced) == 2
        and isinstance(produced[0], Deployer)
        and isinstance(produced[1], HealthProbe)
    ):
        return produced[0], produced[1]
    raise ConfigurationError(f"{target} must produce a (Deployer, HealthProbe) pair")


def _load_object(target: str, option: str) -> object:
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(f"{option} expects MODULE:ATTRIBUTE, got {target!r}")
    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import {module_name!r} for {option}: {exc}") from exc
    found: object = module
    for part in attribute.split("."):
        try:
            found = getattr(found, part)
        except AttributeError as exc:
            raise ConfigurationError(f"{module_name!r} has no attribute {attribute!r}") from exc
    return found


def _parse_override_value(raw: str) -> object:
    """JSON literals (numbers, booleans, lists) are decoded; anything else stays text."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _positive_limit(value: int) -> int:
    if value <= 0:
        raise CLIError("--limit must be > 0", exit_code=3)
    return value


__all__ = ["CLIError", "RUN_EXIT_CODES", "build_parser", "run_cli"]

"""
pipewright - trigger evaluation.

Purpose
- Decide which variant of a pipeline runs for an incoming event and produce the
  pending PipelineRun together with the effective stage set.

Rules
- push to a protected branch enables every stage.
- push to any other branch enables only the configured feature-branch
  capabilities (analysis/scan/test by default).
- pull_request enables analysis, quality and test capabilities; deploy stages
  are never enabled for pull requests.
- manual dispatch requires an environment from a closed enumeration and may set
  ``skip_tests``; test stages then stay in the run with policy ``skip_if_flag``.

Execution policy is resolved here, once: the scheduler only ever sees
``required``/``optional`` (run) or ``skip_if_flag`` (record as skipped).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Final

import structlog

from pipewright.config.schema import default_config
from pipewright.constants import MANUAL_ENVIRONMENTS, MANUAL_PARAMETERS
from pipewright.domain.ids import generate_run_id
from pipewright.domain.models import (
    ExecutionPolicy,
    JSONValue,
    PipelineDefinition,
    PipelineRun,
    QualityGate,
    RunStatus,
    Stage,
    StageCapability,
    TriggerKind,
)
from pipewright.errors import ConfigurationError, CycleError
from pipewright.planning.stage_graph import StageGraph

DEFAULT_SKIP_FLAG: Final[str] = "skip_tests"


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """Event descriptor delivered by a webhook receiver or the CLI."""

    kind: TriggerKind | str
    branch: str
    ref: str | None = None
    manual_parameters: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TriggerPlan:
    """Outcome of trigger evaluation.

    ``definition`` holds only the enabled stages, with edges to excluded stages
    dropped and policies resolved, plus the gates that can still be evaluated.
    """

    run: PipelineRun
    definition: PipelineDefinition
    graph: StageGraph
    excluded: tuple[str, ...] = ()
    dropped_gates: tuple[str, ...] = ()

    @property
    def enabled(self) -> tuple[str, ...]:
        return self.graph.names


class TriggerEvaluator:
    """Maps a TriggerEvent onto a PipelineRun and its enabled stage subset."""

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        section = dict((config or default_config()).get("triggers") or {})
        defaults = default_config()["triggers"]
        self._protected = frozenset(section.get("protected_branches", defaults["protected_branches"]))
        self._feature_capabilities = frozenset(
            StageCapability(item)
            for item in section.get("feature_branch_capabilities", defaults["feature_branch_capabilities"])
        )
        self._pull_request_capabilities = frozenset(
            StageCapability(item)
            for item in section.get("pull_request_capabilities", defaults["pull_request_capabilities"])
        ) - {StageCapability.DEPLOY}
        self._branch_environments: dict[str, str] = dict(
            section.get("branch_environments", defaults["branch_environments"])
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def evaluate(self, event: TriggerEvent, definition: PipelineDefinition) -> TriggerPlan:
        """Build the pending run for ``event``.

        Raises ``ConfigurationError`` (including ``CycleError``) for invalid
        parameters or an invalid pipeline definition; nothing has run yet.
        """
        validate_definition(definition)
        kind = _parse_kind(event.kind)
        branch = (event.branch or "").strip()
        if not branch:
            raise ConfigurationError("trigger event requires a branch")

        environment: str | None
        parameters: dict[str, JSONValue]
        if kind is TriggerKind.MANUAL:
            environment, parameters = _validate_manual_parameters(event.manual_parameters)
        else:
            if event.manual_parameters:
                raise ConfigurationError(
                    f"{kind.value} events do not accept parameters: {sorted(event.manual_parameters)}"
                )
            parameters = {}
            environment = (
                self._branch_environments.get(branch)
                if kind is TriggerKind.PUSH and branch in self._protected
                else None
            )

        enabled_stages: list[Stage] = []
        excluded: list[str] = []
        for stage in definition.stages:
            if stage.enabled and self._is_enabled(kind, branch, stage):
                enabled_stages.append(stage)
            else:
                excluded.append(stage.name)

        enabled_names = {stage.name for stage in enabled_stages}
        gates: list[QualityGate] = []
        dropped_gates: list[str] = []
        for gate in definition.gates:
            if set(gate.stages) <= enabled_names:
                gates.append(replace(gate, guards=tuple(s for s in gate.guards if s in enabled_names)))
            else:
                dropped_gates.append(gate.name)
        gate_names = {gate.name for gate in gates}

        effective = tuple(
            replace(
                stage,
                depends_on=tuple(dep for dep in stage.depends_on if dep in enabled_names),
                gates=tuple(gate for gate in stage.gates if gate in gate_names),
                policy=_resolve_policy(stage, parameters),
            )
            for stage in enabled_stages
        )
        effective_definition = PipelineDefinition(name=definition.name, stages=effective, gates=tuple(gates))
        graph = StageGraph(effective)

        run = PipelineRun(
            id=generate_run_id(),
            pipeline=definition.name,
            trigger=kind,
            branch=branch,
            ref=event.ref,
            environment=environment,
            parameters=parameters,
            status=RunStatus.PENDING,
            stages=graph.names,
        )
        self._logger.info(
            "trigger_evaluated",
            run_id=run.id,
            trigger=kind.value,
            branch=branch,
            environment=environment,
            enabled=list(graph.names),
            excluded=excluded,
            dropped_gates=dropped_gates,
        )
        return TriggerPlan(
            run=run,
            definition=effective_definition,
            graph=graph,
            excluded=tuple(excluded),
            dropped_gates=tuple(dropped_gates),
        )

    def _is_enabled(self, kind: TriggerKind, branch: str, stage: Stage) -> bool:
        capability = StageCapability(stage.capability)
        if kind is TriggerKind.MANUAL:
            return True
        if kind is TriggerKind.PULL_REQUEST:
            return capability in self._pull_request_capabilities
        if branch in self._protected:
            return True
        return capability in self._feature_capabilities


def validate_definition(definition: PipelineDefinition) -> StageGraph:
    """Validate the full definition: graph shape plus gate references."""
    graph = StageGraph(definition.stages)
    gate_names = {gate.name for gate in definition.gates}
    for gate in definition.gates:
        for stage_name in (*gate.stages, *gate.guards):
            if stage_name not in graph:
                raise ConfigurationError(f"gate {gate.name!r} references unknown stage {stage_name!r}")
    for stage in definition.stages:
        for gate_name in stage.gates:
            if gate_name not in gate_names:
                raise ConfigurationError(f"stage {stage.name!r} waits on unknown gate {gate_name!r}")
    _reject_gate_cycles(definition, graph)
    return graph


def _reject_gate_cycles(definition: PipelineDefinition, graph: StageGraph) -> None:
    """Stages held back by a gate wait on its bound stages; those waits must stay acyclic."""
    waits: dict[str, list[str]] = {stage.name: list(stage.depends_on) for stage in definition.stages}
    edge_gates: dict[tuple[str, str], set[str]] = {}
    for gate in definition.gates:
        roots = set(gate.guards)
        roots.update(stage.name for stage in definition.stages if gate.name in stage.gates)
        held = roots | set(graph.downstream_of(gate.stages)) | set(graph.downstream_of(roots))
        held.difference_update(gate.stages)
        for waiter in held:
            for bound in gate.stages:
                waits[waiter].append(bound)
                edge_gates.setdefault((bound, waiter), set()).add(gate.name)
    if not edge_gates:
        return
    try:
        StageGraph(
            replace(stage, depends_on=tuple(dict.fromkeys(waits[stage.name])))
            for stage in definition.stages
        )
    except CycleError as exc:
        through = sorted(
            {
                gate
                for cycle in exc.cycles
                for edge in zip(cycle, cycle[1:])
                for gate in edge_gates.get(edge, ())
            }
        )
        raise CycleError(exc.cycles, through_gates=through) from None


def _parse_kind(value: TriggerKind | str) -> TriggerKind:
    try:
        return TriggerKind(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in TriggerKind)
        raise ConfigurationError(f"unknown trigger kind {value!r}; expected one of: {allowed}") from exc


def _validate_manual_parameters(raw: Mapping[str, object]) -> tuple[str, dict[str, JSONValue]]:
    unknown = sorted(set(raw) - MANUAL_PARAMETERS)
    if unknown:
        raise ConfigurationError(f"unknown manual parameter(s): {', '.join(unknown)}")

    environment = raw.get("environment")
    if environment is None:
        raise ConfigurationError("manual dispatch requires an explicit environment")
    if not isinstance(environment, str) or environment not in MANUAL_ENVIRONMENTS:
        allowed = ", ".join(MANUAL_ENVIRONMENTS)
        raise ConfigurationError(f"unknown environment {environment!r}; expected one of: {allowed}")

    skip_tests = raw.get("skip_tests", False)
    if not isinstance(skip_tests, bool):
        raise ConfigurationError("skip_tests must be a boolean")
    return environment, {"environment": environment, "skip_tests": skip_tests}


def _resolve_policy(stage: Stage, parameters: Mapping[str, JSONValue]) -> ExecutionPolicy:
    policy = ExecutionPolicy(stage.policy)
    if StageCapability(stage.capability) is StageCapability.TEST and parameters.get(DEFAULT_SKIP_FLAG) is True:
        return ExecutionPolicy.SKIP_IF_FLAG
    if policy is ExecutionPolicy.SKIP_IF_FLAG:
        flag = stage.options.get("flag", DEFAULT_SKIP_FLAG)
        # Declared skip_if_flag stages run as required unless their flag is set.
        return ExecutionPolicy.SKIP_IF_FLAG if parameters.get(str(flag)) is True else ExecutionPolicy.REQUIRED
    return policy


__all__ = [
    "DEFAULT_SKIP_FLAG",
    "TriggerEvaluator",
    "TriggerEvent",
    "TriggerPlan",
    "validate_definition",
]

"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from pipewright.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
MetricValue = int | float | bool
Metrics = Mapping[str, MetricValue]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_NAME = 128


class TriggerKind(StrEnum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES


_TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})


class StageStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class StageCapability(StrEnum):
    ANALYSIS = "analysis"
    SCAN = "scan"
    QUALITY = "quality"
    TEST = "test"
    BUILD = "build"
    PACKAGE = "package"
    DEPLOY = "deploy"
    VERIFY = "verify"


class ExecutionPolicy(StrEnum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    SKIP_IF_FLAG = "skip_if_flag"


class GateAction(StrEnum):
    BLOCK = "block"
    WARN = "warn"


class GateOutcome(StrEnum):
    PASS = "pass"
    WARN = "warn"
    BLOCK = "block"
    SKIPPED = "skipped"


class EnvironmentStatus(StrEnum):
    IDLE = "idle"
    DEPLOYING = "deploying"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ROLLED_BACK = "rolled_back"


class PromotionOutcome(StrEnum):
    HEALTHY = "healthy"
    ROLLED_BACK = "rolled_back"


# Allowed EnvironmentState transitions. ``rolled_back`` returns to ``idle`` via reset
# and, like ``healthy``, may start the next deployment directly.
ENVIRONMENT_TRANSITIONS: Mapping[EnvironmentStatus, frozenset[EnvironmentStatus]] = {
    EnvironmentStatus.IDLE: frozenset({EnvironmentStatus.DEPLOYING}),
    EnvironmentStatus.DEPLOYING: frozenset({EnvironmentStatus.HEALTHY, EnvironmentStatus.DEGRADED}),
    EnvironmentStatus.HEALTHY: frozenset({EnvironmentStatus.DEPLOYING}),
    EnvironmentStatus.DEGRADED: frozenset({EnvironmentStatus.ROLLED_BACK}),
    EnvironmentStatus.ROLLED_BACK: frozenset({EnvironmentStatus.IDLE, EnvironmentStatus.DEPLOYING}),
}


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Stage:
    """One node of the pipeline graph.

    ``gates`` names quality gates this stage explicitly waits on, in addition to
    gates bound to any of its upstream stages. ``artifact`` names the registry
    entry that successful build outputs are recorded under. ``options`` carries
    opaque invoker settings (for example the command line of a command stage).
    """

    name: str
    capability: StageCapability | str
    depends_on: tuple[str, ...] = ()
    policy: ExecutionPolicy | str = ExecutionPolicy.REQUIRED
    gates: tuple[str, ...] = ()
    artifact: str | None = None
    timeout_seconds: float | None = None
    enabled: bool = True
    options: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        path = f"Stage[{self.name!r}]"
        object.__setattr__(self, "name", _as_str(self.name, f"{path}.name", max_len=_MAX_NAME))
        object.__setattr__(
            self, "capability", _as_enum(StageCapability, self.capability, f"{path}.capability")
        )
        object.__setattr__(self, "policy", _as_enum(ExecutionPolicy, self.policy, f"{path}.policy"))
        object.__setattr__(
            self, "depends_on", _as_str_tuple(self.depends_on, f"{path}.depends_on", unique=True)
        )
        object.__setattr__(self, "gates", _as_str_tuple(self.gates, f"{path}.gates", unique=True))
        if self.name in self.depends_on:
            _fail(f"{path}.depends_on", "stage cannot depend on itself")
        if self.artifact is not None:
            object.__setattr__(
                self, "artifact", _as_str(self.artifact, f"{path}.artifact", max_len=_MAX_NAME)
            )
        if self.timeout_seconds is not None:
            timeout = _as_float(self.timeout_seconds, f"{path}.timeout_seconds")
            if timeout <= 0:
                _fail(f"{path}.timeout_seconds", "must be > 0")
            object.__setattr__(self, "timeout_seconds", timeout)
        _as_bool(self.enabled, f"{path}.enabled")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "capability": str(self.capability),
            "depends_on": list(self.depends_on),
            "policy": str(self.policy),
            "gates": list(self.gates),
            "artifact": self.artifact,
            "timeout_seconds": self.timeout_seconds,
            "enabled": self.enabled,
        }


_OPERATORS: Mapping[str, Callable[[object, object], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True, slots=True)
class GateCriterion:
    """``<stage>.<metric> <op> <threshold>`` over one recorded StageResult."""

    stage: str
    metric: str
    op: str
    threshold: MetricValue

    def __post_init__(self) -> None:
        _as_str(self.stage, "GateCriterion.stage", max_len=_MAX_NAME)
        _as_str(self.metric, "GateCriterion.metric", max_len=_MAX_NAME)
        if self.op not in _OPERATORS:
            allowed = ", ".join(_OPERATORS)
            _fail("GateCriterion.op", f"invalid operator {self.op!r}; expected one of: {allowed}")
        _as_metric(self.threshold, "GateCriterion.threshold")

    def violation(self, metrics_by_stage: Mapping[str, Metrics]) -> str | None:
        """Return a human-readable violation, or ``None`` when satisfied."""
        metrics = metrics_by_stage.get(self.stage)
        if metrics is None or self.metric not in metrics:
            return f"{self.stage}.{self.metric} missing"
        actual = metrics[self.metric]
        if _OPERATORS[self.op](actual, self.threshold):
            return None
        return f"{self.stage}.{self.metric}={actual!r} violates {self.op} {self.threshold!r}"

    def describe(self) -> str:
        return f"{self.stage}.{self.metric} {self.op} {self.threshold!r}"


GatePredicate = Callable[[Mapping[str, Metrics]], bool | str | None]


@dataclass(frozen=True, slots=True)
class QualityGate:
    """Named predicate over the metrics of its bound stages.

    ``predicate`` receives ``{stage_name: metrics}`` for the bound stages and
    returns ``True``/``None`` when satisfied, or ``False``/a message otherwise.
    ``guards`` lists stages that must wait for the gate even though they are not
    downstream of a bound stage.
    """

    name: str
    stages: tuple[str, ...]
    criteria: tuple[GateCriterion, ...] = ()
    predicate: GatePredicate | None = None
    action: GateAction | str = GateAction.BLOCK
    blocks_promotion: bool | None = None
    guards: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        path = f"QualityGate[{self.name!r}]"
        object.__setattr__(self, "name", _as_str(self.name, f"{path}.name", max_len=_MAX_NAME))
        object.__setattr__(
            self, "stages", _as_str_tuple(self.stages, f"{path}.stages", unique=True, allow_empty=False)
        )
        object.__setattr__(self, "guards", _as_str_tuple(self.guards, f"{path}.guards", unique=True))
        object.__setattr__(self, "criteria", tuple(self.criteria))
        object.__setattr__(self, "action", _as_enum(GateAction, self.action, f"{path}.action"))
        for criterion in self.criteria:
            if criterion.stage not in self.stages:
                _fail(f"{path}.criteria", f"criterion stage {criterion.stage!r} is not bound")
        if not self.criteria and self.predicate is None:
            _fail(path, "gate needs at least one criterion or a predicate")
        if self.predicate is not None and not callable(self.predicate):
            _fail(f"{path}.predicate", "must be callable")


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """The stages and gates of one pipeline, as built by user code."""

    name: str
    stages: tuple[Stage, ...]
    gates: tuple[QualityGate, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "PipelineDefinition.name"))
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "gates", tuple(self.gates))
        for index, stage in enumerate(self.stages):
            if not isinstance(stage, Stage):
                _fail(f"PipelineDefinition.stages[{index}]", "must be Stage")
        for index, gate in enumerate(self.gates):
            if not isinstance(gate, QualityGate):
                _fail(f"PipelineDefinition.gates[{index}]", "must be QualityGate")
        gate_names = [gate.name for gate in self.gates]
        if len(set(gate_names)) != len(gate_names):
            _fail("PipelineDefinition.gates", "contains duplicate gate names")

    def stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StageOutput(CanonicalModel):
    """A build output produced by a stage, one per platform."""

    platform: str
    content_ref: str

    def __post_init__(self) -> None:
        _as_str(self.platform, "StageOutput.platform", max_len=_MAX_NAME)
        _as_str(self.content_ref, "StageOutput.content_ref")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageOutput:
        parsed = _expect_object(data, "StageOutput", required={"platform", "content_ref"})
        return cls(platform=cast("str", parsed["platform"]), content_ref=cast("str", parsed["content_ref"]))


@dataclass(frozen=True, slots=True)
class StageResult(CanonicalModel):
    stage: str
    status: StageStatus | str
    metrics: Mapping[str, MetricValue] = field(default_factory=dict)
    log_ref: str | None = None
    detail: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    outputs: tuple[StageOutput, ...] = ()

    def __post_init__(self) -> None:
        path = f"StageResult[{self.stage!r}]"
        _as_str(self.stage, f"{path}.stage", max_len=_MAX_NAME)
        object.__setattr__(self, "status", _as_enum(StageStatus, self.status, f"{path}.status"))
        object.__setattr__(self, "metrics", _as_metrics(self.metrics, f"{path}.metrics"))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        platforms = [output.platform for output in self.outputs]
        if len(platforms) != len(set(platforms)):
            _fail(f"{path}.outputs", "platforms must be unique")
        for name in ("started_at", "finished_at"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _as_datetime(value, f"{path}.{name}"))
        if (
            self.started_at is not None
            and self.finished_at is not None
            and self.finished_at < self.started_at
        ):
            _fail(f"{path}.finished_at", "must be >= started_at")

    @property
    def succeeded(self) -> bool:
        return self.status is StageStatus.SUCCESS

    @classmethod
    def success(cls, stage: str, **kwargs: object) -> StageResult:
        return cls(stage=stage, status=StageStatus.SUCCESS, **kwargs)  # type: ignore[arg-type]

    @classmethod
    def failure(cls, stage: str, detail: str, **kwargs: object) -> StageResult:
        return cls(stage=stage, status=StageStatus.FAILURE, detail=detail, **kwargs)  # type: ignore[arg-type]

    @classmethod
    def skipped(cls, stage: str, detail: str | None = None) -> StageResult:
        now = utc_now()
        return cls(stage=stage, status=StageStatus.SKIPPED, detail=detail, started_at=now, finished_at=now)

    @classmethod
    def cancelled(cls, stage: str, detail: str | None = None) -> StageResult:
        now = utc_now()
        return cls(stage=stage, status=StageStatus.CANCELLED, detail=detail, finished_at=now)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageResult:
        parsed = _expect_object(
            data,
            "StageResult",
            required={"stage", "status"},
            optional={"metrics", "log_ref", "detail", "started_at", "finished_at", "outputs"},
        )
        outputs_raw = parsed.get("outputs") or []
        if not isinstance(outputs_raw, list):
            _fail("StageResult.outputs", "expected array")
        return cls(
            stage=_as_str(parsed["stage"], "StageResult.stage"),
            status=_as_enum(StageStatus, parsed["status"], "StageResult.status"),
            metrics=_as_metrics(parsed.get("metrics") or {}, "StageResult.metrics"),
            log_ref=_as_optional_str(parsed.get("log_ref"), "StageResult.log_ref"),
            detail=_as_optional_str(parsed.get("detail"), "StageResult.detail"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "StageResult.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "StageResult.finished_at"),
            outputs=tuple(StageOutput.from_dict(cast("Mapping[str, object]", item)) for item in outputs_raw),
        )


@dataclass(frozen=True, slots=True)
class GateEvaluation(CanonicalModel):
    gate: str
    action: GateAction | str
    outcome: GateOutcome | str
    violations: tuple[str, ...] = ()
    cancelled_stages: tuple[str, ...] = ()
    blocks_promotion: bool = False
    evaluated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", _as_enum(GateAction, self.action, "GateEvaluation.action"))
        object.__setattr__(
            self, "outcome", _as_enum(GateOutcome, self.outcome, "GateEvaluation.outcome")
        )
        object.__setattr__(self, "violations", tuple(self.violations))
        object.__setattr__(self, "cancelled_stages", tuple(self.cancelled_stages))
        object.__setattr__(
            self, "evaluated_at", _as_datetime(self.evaluated_at, "GateEvaluation.evaluated_at")
        )

    @property
    def clears_promotion(self) -> bool:
        if self.outcome is GateOutcome.BLOCK:
            return False
        return not (self.outcome is GateOutcome.WARN and self.blocks_promotion)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GateEvaluation:
        parsed = _expect_object(
            data,
            "GateEvaluation",
            required={"gate", "action", "outcome", "evaluated_at"},
            optional={"violations", "cancelled_stages", "blocks_promotion"},
        )
        return cls(
            gate=_as_str(parsed["gate"], "GateEvaluation.gate"),
            action=_as_enum(GateAction, parsed["action"], "GateEvaluation.action"),
            outcome=_as_enum(GateOutcome, parsed["outcome"], "GateEvaluation.outcome"),
            violations=_as_str_tuple(parsed.get("violations", ()), "GateEvaluation.violations"),
            cancelled_stages=_as_str_tuple(
                parsed.get("cancelled_stages", ()), "GateEvaluation.cancelled_stages"
            ),
            blocks_promotion=_as_bool(
                parsed.get("blocks_promotion", False), "GateEvaluation.blocks_promotion"
            ),
            evaluated_at=_as_datetime(parsed["evaluated_at"], "GateEvaluation.evaluated_at"),
        )


@dataclass(slots=True)
class PipelineRun(CanonicalModel):
    """One execution of a pipeline.

    Mutated only by the scheduler while ``running``. ``results`` is write-once per
    stage: :meth:`record_result` rejects a second result for the same stage.
    """

    id: str
    pipeline: str
    trigger: TriggerKind | str
    branch: str
    ref: str | None = None
    environment: str | None = None
    parameters: dict[str, JSONValue] = field(default_factory=dict)
    status: RunStatus | str = RunStatus.PENDING
    stages: tuple[str, ...] = ()
    results: dict[str, StageResult] = field(default_factory=dict)
    gate_evaluations: dict[str, GateEvaluation] = field(default_factory=dict)
    blocked_by: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_run_id(self.id)
        except ValueError as exc:
            _fail("PipelineRun.id", str(exc))
        self.pipeline = _as_str(self.pipeline, "PipelineRun.pipeline")
        self.trigger = _as_enum(TriggerKind, self.trigger, "PipelineRun.trigger")
        self.branch = _as_str(self.branch, "PipelineRun.branch")
        self.ref = _as_optional_str(self.ref, "PipelineRun.ref")
        self.environment = _as_optional_str(self.environment, "PipelineRun.environment")
        self.status = _as_enum(RunStatus, self.status, "PipelineRun.status")
        self.stages = _as_str_tuple(self.stages, "PipelineRun.stages", unique=True)
        self.created_at = _as_datetime(self.created_at, "PipelineRun.created_at")
        self.started_at = _as_optional_datetime(self.started_at, "PipelineRun.started_at")
        self.finished_at = _as_optional_datetime(self.finished_at, "PipelineRun.finished_at")

    @property
    def is_terminal(self) -> bool:
        return cast("RunStatus", self.status).is_terminal

    def record_result(self, result: StageResult) -> None:
        if result.stage not in self.stages:
            _fail("PipelineRun.results", f"stage {result.stage!r} is not part of run {self.id}")
        if result.stage in self.results:
            _fail("PipelineRun.results", f"result for stage {result.stage!r} already recorded")
        self.results[result.stage] = result

    def record_gate(self, evaluation: GateEvaluation) -> None:
        if evaluation.gate in self.gate_evaluations:
            _fail("PipelineRun.gate_evaluations", f"gate {evaluation.gate!r} already evaluated")
        self.gate_evaluations[evaluation.gate] = evaluation

    def pending_stages(self) -> tuple[str, ...]:
        return tuple(name for name in self.stages if name not in self.results)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineRun:
        parsed = _expect_object(
            data,
            "PipelineRun",
            required={"id", "pipeline", "trigger", "branch", "status", "created_at"},
            optional={
                "ref",
                "environment",
                "parameters",
                "stages",
                "results",
                "gate_evaluations",
                "blocked_by",
                "started_at",
                "finished_at",
            },
        )
        results_raw = parsed.get("results") or {}
        gates_raw = parsed.get("gate_evaluations") or {}
        if not isinstance(results_raw, Mapping) or not isinstance(gates_raw, Mapping):
            _fail("PipelineRun", "results and gate_evaluations must be objects")
        parameters = parsed.get("parameters") or {}
        if not isinstance(parameters, dict):
            _fail("PipelineRun.parameters", "expected object")
        return cls(
            id=cast("str", parsed["id"]),
            pipeline=cast("str", parsed["pipeline"]),
            trigger=cast("str", parsed["trigger"]),
            branch=cast("str", parsed["branch"]),
            ref=cast("str | None", parsed.get("ref")),
            environment=cast("str | None", parsed.get("environment")),
            parameters=cast("dict[str, JSONValue]", parameters),
            status=cast("str", parsed["status"]),
            stages=_as_str_tuple(parsed.get("stages", ()), "PipelineRun.stages", unique=True),
            results={
                str(name): StageResult.from_dict(cast("Mapping[str, object]", item))
                for name, item in results_raw.items()
            },
            gate_evaluations={
                str(name): GateEvaluation.from_dict(cast("Mapping[str, object]", item))
                for name, item in gates_raw.items()
            },
            blocked_by=_as_optional_str(parsed.get("blocked_by"), "PipelineRun.blocked_by"),
            created_at=_as_datetime(parsed["created_at"], "PipelineRun.created_at"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "PipelineRun.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "PipelineRun.finished_at"),
        )


# ---------------------------------------------------------------------------
# Release state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Artifact(CanonicalModel):
    id: str
    name: str
    lineage: str
    sequence: int
    version: str
    platform: str
    content_ref: str
    stage: str
    run_id: str
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_prefixed_id(self.id, domain_ids.ARTIFACT_ID_PREFIX)
        except ValueError as exc:
            _fail("Artifact.id", str(exc))
        _as_str(self.name, "Artifact.name", max_len=_MAX_NAME)
        _as_str(self.lineage, "Artifact.lineage")
        _as_int(self.sequence, "Artifact.sequence", minimum=1)
        _as_str(self.version, "Artifact.version", max_len=_MAX_NAME)
        _as_str(self.platform, "Artifact.platform", max_len=_MAX_NAME)
        _as_str(self.content_ref, "Artifact.content_ref")
        _as_str(self.stage, "Artifact.stage", max_len=_MAX_NAME)
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "Artifact.created_at"))

    @property
    def group_key(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Artifact:
        parsed = _expect_object(
            data,
            "Artifact",
            required={
                "id",
                "name",
                "lineage",
                "sequence",
                "version",
                "platform",
                "content_ref",
                "stage",
                "run_id",
                "created_at",
            },
        )
        return cls(
            id=_as_str(parsed["id"], "Artifact.id"),
            name=_as_str(parsed["name"], "Artifact.name"),
            lineage=_as_str(parsed["lineage"], "Artifact.lineage"),
            sequence=_as_int(parsed["sequence"], "Artifact.sequence", minimum=1),
            version=_as_str(parsed["version"], "Artifact.version"),
            platform=_as_str(parsed["platform"], "Artifact.platform"),
            content_ref=_as_str(parsed["content_ref"], "Artifact.content_ref"),
            stage=_as_str(parsed["stage"], "Artifact.stage"),
            run_id=_as_str(parsed["run_id"], "Artifact.run_id"),
            created_at=_as_datetime(parsed["created_at"], "Artifact.created_at"),
        )


@dataclass(frozen=True, slots=True)
class HealthCheckResult(CanonicalModel):
    healthy: bool
    version: str
    attempt: int
    detail: str | None = None
    checked_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        _as_bool(self.healthy, "HealthCheckResult.healthy")
        _as_str(self.version, "HealthCheckResult.version")
        _as_int(self.attempt, "HealthCheckResult.attempt", minimum=0)
        object.__setattr__(
            self, "checked_at", _as_datetime(self.checked_at, "HealthCheckResult.checked_at")
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> HealthCheckResult:
        parsed = _expect_object(
            data,
            "HealthCheckResult",
            required={"healthy", "version", "attempt", "checked_at"},
            optional={"detail"},
        )
        return cls(
            healthy=_as_bool(parsed["healthy"], "HealthCheckResult.healthy"),
            version=_as_str(parsed["version"], "HealthCheckResult.version"),
            attempt=_as_int(parsed["attempt"], "HealthCheckResult.attempt", minimum=0),
            detail=_as_optional_str(parsed.get("detail"), "HealthCheckResult.detail"),
            checked_at=_as_datetime(parsed["checked_at"], "HealthCheckResult.checked_at"),
        )


@dataclass(slots=True)
class EnvironmentState(CanonicalModel):
    """Deployment state of one named environment; survives restarts."""

    name: str
    status: EnvironmentStatus | str = EnvironmentStatus.IDLE
    artifact_name: str | None = None
    deployed_version: str | None = None
    previous_version: str | None = None
    previous_artifact_name: str | None = None
    last_health: HealthCheckResult | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.name = _as_str(self.name, "EnvironmentState.name", max_len=_MAX_NAME)
        self.status = _as_enum(EnvironmentStatus, self.status, "EnvironmentState.status")
        self.updated_at = _as_datetime(self.updated_at, "EnvironmentState.updated_at")

    def transition(self, target: EnvironmentStatus) -> None:
        current = cast("EnvironmentStatus", self.status)
        if target not in ENVIRONMENT_TRANSITIONS[current]:
            _fail(
                "EnvironmentState.status",
                f"illegal transition {current.value} -> {target.value} for {self.name!r}",
            )
        self.status = target
        self.updated_at = utc_now()

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> EnvironmentState:
        parsed = _expect_object(
            data,
            "EnvironmentState",
            required={"name", "status", "updated_at"},
            optional={
                "artifact_name",
                "deployed_version",
                "previous_version",
                "previous_artifact_name",
                "last_health",
            },
        )
        health_raw = parsed.get("last_health")
        return cls(
            name=_as_str(parsed["name"], "EnvironmentState.name"),
            status=_as_enum(EnvironmentStatus, parsed["status"], "EnvironmentState.status"),
            artifact_name=_as_optional_str(parsed.get("artifact_name"), "EnvironmentState.artifact_name"),
            deployed_version=_as_optional_str(
                parsed.get("deployed_version"), "EnvironmentState.deployed_version"
            ),
            previous_version=_as_optional_str(
                parsed.get("previous_version"), "EnvironmentState.previous_version"
            ),
            previous_artifact_name=_as_optional_str(
                parsed.get("previous_artifact_name"), "EnvironmentState.previous_artifact_name"
            ),
            last_health=(
                HealthCheckResult.from_dict(cast("Mapping[str, object]", health_raw))
                if health_raw is not None
                else None
            ),
            updated_at=_as_datetime(parsed["updated_at"], "EnvironmentState.updated_at"),
        )


@dataclass(frozen=True, slots=True)
class PromotionRecord(CanonicalModel):
    """Append-only history entry for one completed promotion attempt."""

    id: str
    environment: str
    artifact_name: str
    version: str
    outcome: PromotionOutcome | str
    override: bool = False
    detail: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_prefixed_id(self.id, domain_ids.PROMOTION_ID_PREFIX)
        except ValueError as exc:
            _fail("PromotionRecord.id", str(exc))
        object.__setattr__(
            self, "outcome", _as_enum(PromotionOutcome, self.outcome, "PromotionRecord.outcome")
        )
        object.__setattr__(
            self, "created_at", _as_datetime(self.created_at, "PromotionRecord.created_at")
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PromotionRecord:
        parsed = _expect_object(
            data,
            "PromotionRecord",
            required={"id", "environment", "artifact_name", "version", "outcome", "created_at"},
            optional={"override", "detail"},
        )
        return cls(
            id=_as_str(parsed["id"], "PromotionRecord.id"),
            environment=_as_str(parsed["environment"], "PromotionRecord.environment"),
            artifact_name=_as_str(parsed["artifact_name"], "PromotionRecord.artifact_name"),
            version=_as_str(parsed["version"], "PromotionRecord.version"),
            outcome=_as_enum(PromotionOutcome, parsed["outcome"], "PromotionRecord.outcome"),
            override=_as_bool(parsed.get("override", False), "PromotionRecord.override"),
            detail=_as_optional_str(parsed.get("detail"), "PromotionRecord.detail"),
            created_at=_as_datetime(parsed["created_at"], "PromotionRecord.created_at"),
        )


@dataclass(frozen=True, slots=True)
class PromotionResult(CanonicalModel):
    promotion_id: str
    environment: str
    artifact_name: str
    version: str
    status: EnvironmentStatus
    health: HealthCheckResult | None
    attempts: int
    restored_version: str | None = None
    restored_artifact_name: str | None = None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed = {str(key): item for key, item in value.items()}
    unknown = sorted(set(parsed) - required - (optional or set()))
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(required - set(parsed))
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be non-empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    return parsed


def _as_metric(value: object, path: str) -> MetricValue:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    return _as_float(value, path)


def _as_metrics(value: object, path: str) -> dict[str, MetricValue]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return {
        _as_str(key, f"{path}.<key>", max_len=_MAX_NAME): _as_metric(item, f"{path}.{key}")
        for key, item in value.items()
    }


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    unique: bool = False,
    allow_empty: bool = True,
) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    if not allow_empty and not value:
        _fail(path, "must not be empty")
    parsed = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(value))
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return cast("str", value.value)
    if isinstance(value, datetime):
        return datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialize_value(item, f"{path}.{key}") for key, item in value.items()}
    if is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: _serialize_value(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "ENVIRONMENT_TRANSITIONS",
    "Artifact",
    "CanonicalModel",
    "EnvironmentState",
    "EnvironmentStatus",
    "ExecutionPolicy",
    "GateAction",
    "GateCriterion",
    "GateEvaluation",
    "GateOutcome",
    "GatePredicate",
    "HealthCheckResult",
    "JSONValue",
    "MetricValue",
    "Metrics",
    "PipelineDefinition",
    "PipelineRun",
    "PromotionOutcome",
    "PromotionRecord",
    "PromotionResult",
    "QualityGate",
    "RunStatus",
    "Stage",
    "StageCapability",
    "StageOutput",
    "StageResult",
    "StageStatus",
    "TriggerKind",
    "canonical_json",
    "datetime_to_iso8601z",
    "utc_now",
]

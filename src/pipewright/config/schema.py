"""
pipewright - configuration schema and validation.

Purpose
- Define the authoritative configuration defaults and strict validation rules.
- Provide profile overlays, deterministic deep-merge and redaction helpers.

Validation reports every problem at once as structured issues
(dotted field path + message) instead of failing on the first one.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from pipewright.constants import CONFIG_SCHEMA_VERSION
from pipewright.domain.models import StageCapability
from pipewright.errors import ConfigurationError

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "fast")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_VERSION_BASE_PATTERN = re.compile(r"^\d+\.\d+$")
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passwd",
    "credential",
    "api_key",
    "private_key",
)
_CAPABILITIES: Final[tuple[str, ...]] = tuple(item.value for item in StageCapability)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class SchedulerConfig(TypedDict):
    max_concurrency: int
    stage_timeout_seconds: float
    cancel_poll_seconds: float


class TriggersConfig(TypedDict):
    protected_branches: list[str]
    feature_branch_capabilities: list[str]
    pull_request_capabilities: list[str]
    branch_environments: dict[str, str]


class ArtifactsConfig(TypedDict):
    version_base: str
    release_lineages: list[str]


class DeploymentConfig(TypedDict):
    environments: list[str]
    staging: str
    production: str
    health_check_attempts: int
    health_check_initial_backoff_seconds: float
    health_check_max_backoff_seconds: float
    health_check_timeout_seconds: float
    required_platforms: list[str]
    warn_gates_block_promotion: bool


class PathsConfig(TypedDict):
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool


class PipewrightConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerConfig
    triggers: TriggersConfig
    artifacts: ArtifactsConfig
    deployment: DeploymentConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, object]]


DEFAULT_CONFIG: Final[PipewrightConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "scheduler": {
        "max_concurrency": 4,
        "stage_timeout_seconds": 0.0,
        "cancel_poll_seconds": 0.5,
    },
    "triggers": {
        "protected_branches": ["main", "develop"],
        "feature_branch_capabilities": ["analysis", "scan", "test"],
        "pull_request_capabilities": ["analysis", "scan", "quality", "test"],
        "branch_environments": {"develop": "staging", "main": "production"},
    },
    "artifacts": {
        "version_base": "1.0",
        "release_lineages": ["main"],
    },
    "deployment": {
        "environments": ["staging", "production"],
        "staging": "staging",
        "production": "production",
        "health_check_attempts": 5,
        "health_check_initial_backoff_seconds": 1.0,
        "health_check_max_backoff_seconds": 30.0,
        "health_check_timeout_seconds": 300.0,
        "required_platforms": [],
        "warn_gates_block_promotion": False,
    },
    "paths": {
        "state_db": "state/pipewright.sqlite",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "logs/",
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "deployment": {"health_check_attempts": 10, "warn_gates_block_promotion": True},
        },
        "fast": {
            "scheduler": {"max_concurrency": 8},
            "deployment": {"health_check_attempts": 3, "health_check_max_backoff_seconds": 5.0},
        },
    },
}


# Field rules per section: (kind, option). Kinds map to the _as_* helpers below.
_FieldRule = tuple[str, object]
_SECTION_RULES: Final[dict[str, dict[str, _FieldRule]]] = {
    "meta": {
        "schema_version": ("int", 1),
    },
    "scheduler": {
        "max_concurrency": ("int", 1),
        "stage_timeout_seconds": ("float", 0.0),
        "cancel_poll_seconds": ("positive_float", None),
    },
    "triggers": {
        "protected_branches": ("name_list", None),
        "feature_branch_capabilities": ("enum_list", _CAPABILITIES),
        "pull_request_capabilities": ("enum_list", _CAPABILITIES),
        "branch_environments": ("name_map", None),
    },
    "artifacts": {
        "version_base": ("version_base", None),
        "release_lineages": ("name_list", None),
    },
    "deployment": {
        "environments": ("name_list", None),
        "staging": ("name", None),
        "production": ("name", None),
        "health_check_attempts": ("int", 1),
        "health_check_initial_backoff_seconds": ("float", 0.0),
        "health_check_max_backoff_seconds": ("float", 0.0),
        "health_check_timeout_seconds": ("positive_float", None),
        "required_platforms": ("name_list", None),
        "warn_gates_block_promotion": ("bool", None),
    },
    "paths": {
        "state_db": ("path", None),
    },
    "observability": {
        "log_level": ("enum", ("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_format": ("enum", ("json", "text")),
        "log_dir": ("path", None),
        "redact_secrets": ("bool", None),
    },
}
_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(_SECTION_RULES) - {"meta"}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ConfigurationError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered or 'unknown validation failure'}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> PipewrightConfig:
    """Deep copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade pipewright.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the pipewright runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; lists and scalars replace."""
    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""
    materialized = copy.deepcopy(dict(config))
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles = materialized.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a full config document and return structured issues."""
    issues = _IssueCollector()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {type(config).__name__}")
        return ConfigValidationResult(config=None, issues=issues.items())

    allowed = set(_SECTION_RULES) | {"profiles"}
    _reject_unknown_keys(config, allowed, "", issues)

    out: dict[str, Any] = {}
    for section, rules in _SECTION_RULES.items():
        raw = config.get(section)
        if raw is None:
            issues.add(section, "missing required section")
            continue
        out[section] = _validate_section(raw, section, rules, issues, partial=False)

    profiles_raw = config.get("profiles", {})
    out["profiles"] = _validate_profiles(profiles_raw, issues)

    if "meta" in out and out["meta"].get("schema_version") not in (None, ConfigSchemaVersion):
        issues.add("meta.schema_version", migration_guidance(out["meta"]["schema_version"]))
    _validate_cross_fields(out, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=out, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Redacted copy for logs and ``pipewright config`` output."""
    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_section(
    raw: object,
    path: str,
    rules: Mapping[str, _FieldRule],
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        issues.add(path, f"expected object, got {type(raw).__name__}")
        return {}
    _reject_unknown_keys(raw, set(rules), path, issues)
    out: dict[str, Any] = {}
    for key, (kind, option) in rules.items():
        field_path = f"{path}.{key}"
        if key not in raw:
            if not partial:
                issues.add(field_path, "missing required field")
            continue
        parsed = _coerce_field(raw[key], field_path, kind, option, issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _coerce_field(
    value: object,
    path: str,
    kind: str,
    option: object,
    issues: _IssueCollector,
) -> object | None:
    if kind == "int":
        return _as_int(value, path, issues, minimum=option if isinstance(option, int) else None)
    if kind == "float":
        return _as_float(value, path, issues, minimum=option if isinstance(option, float) else None)
    if kind == "positive_float":
        parsed = _as_float(value, path, issues)
        if parsed is not None and parsed <= 0:
            issues.add(path, "must be > 0")
            return None
        return parsed
    if kind == "bool":
        if isinstance(value, bool):
            return value
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None
    if kind == "enum":
        return _as_enum(value, path, issues, allowed_values=option)  # type: ignore[arg-type]
    if kind == "name":
        return _as_name(value, path, issues)
    if kind == "path":
        parsed_path = _as_str(value, path, issues)
        if parsed_path is not None and "\x00" in parsed_path:
            issues.add(path, "must not contain NUL bytes")
            return None
        return parsed_path
    if kind == "version_base":
        parsed_base = _as_str(value, path, issues)
        if parsed_base is not None and not _VERSION_BASE_PATTERN.fullmatch(parsed_base):
            issues.add(path, "must look like MAJOR.MINOR (example: 1.0)")
            return None
        return parsed_base
    if kind in {"name_list", "enum_list"}:
        if not isinstance(value, (list, tuple)):
            issues.add(path, f"expected array, got {type(value).__name__}")
            return None
        items: list[str] = []
        for index, item in enumerate(value):
            item_path = f"{path}[{index}]"
            parsed_item = (
                _as_enum(item, item_path, issues, allowed_values=option)  # type: ignore[arg-type]
                if kind == "enum_list"
                else _as_name(item, item_path, issues)
            )
            if parsed_item is not None:
                items.append(parsed_item)
        if len(set(items)) != len(items):
            issues.add(path, "contains duplicate values")
            return None
        return items
    if kind == "name_map":
        if not isinstance(value, Mapping):
            issues.add(path, f"expected object, got {type(value).__name__}")
            return None
        mapped: dict[str, str] = {}
        for key in sorted(value):
            parsed_value = _as_name(value[key], f"{path}.{key}", issues)
            if parsed_value is not None:
                mapped[str(key)] = parsed_value
        return mapped
    raise AssertionError(f"unhandled field kind {kind!r}")


def _validate_profiles(raw: object, issues: _IssueCollector) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        issues.add("profiles", f"expected object, got {type(raw).__name__}")
        return {}
    out: dict[str, Any] = {}
    for name in sorted(raw):
        path = f"profiles.{name}"
        if not _PROFILE_NAME_PATTERN.fullmatch(str(name)):
            issues.add(path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = raw[name]
        if not isinstance(overlay, Mapping):
            issues.add(path, "profile overlay must be an object")
            continue
        _reject_unknown_keys(overlay, set(_OVERLAY_SECTIONS), path, issues)
        out[name] = {
            section: _validate_section(
                overlay[section], f"{path}.{section}", _SECTION_RULES[section], issues, partial=True
            )
            for section in sorted(_OVERLAY_SECTIONS)
            if section in overlay
        }
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    deployment = config.get("deployment") or {}
    environments = set(deployment.get("environments", ()))
    for key in ("staging", "production"):
        name = deployment.get(key)
        if name is not None and environments and name not in environments:
            issues.add(f"deployment.{key}", f"{name!r} is not listed in deployment.environments")
    if deployment.get("staging") is not None and deployment.get("staging") == deployment.get(
        "production"
    ):
        issues.add("deployment.production", "must differ from deployment.staging")
    initial = deployment.get("health_check_initial_backoff_seconds")
    maximum = deployment.get("health_check_max_backoff_seconds")
    if initial is not None and maximum is not None and maximum < initial:
        issues.add(
            "deployment.health_check_max_backoff_seconds",
            "must be >= deployment.health_check_initial_backoff_seconds",
        )

    triggers = config.get("triggers") or {}
    for branch, environment in sorted((triggers.get("branch_environments") or {}).items()):
        if environments and environment not in environments:
            issues.add(
                f"triggers.branch_environments.{branch}",
                f"{environment!r} is not listed in deployment.environments",
            )
    if "protected_branches" in triggers and not triggers["protected_branches"]:
        issues.add("triggers.protected_branches", "must not be empty")

    # Release lineages share the unsuffixed version space.
    lineages = (config.get("artifacts") or {}).get("release_lineages") or ()
    if len(set(lineages)) > 1:
        issues.add("artifacts.release_lineages", "must name at most one branch")


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and not _NAME_PATTERN.fullmatch(parsed):
        issues.add(path, f"invalid name {parsed!r}")
        return None
    return parsed


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(str(item) for item in payload):
        if key in allowed:
            continue
        key_path = f"{path}.{key}" if path else key
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in pipewright.toml")
        else:
            issues.add(key_path, "unknown field")


def _looks_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(dict(value) if isinstance(value, Mapping) else value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(str(key)) else _redact_value(value[key], str(key))
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "PipewrightConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]

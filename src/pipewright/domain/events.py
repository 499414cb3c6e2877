"""Lifecycle event envelope published on the in-process event bus."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from pipewright.domain import ids
from pipewright.domain.models import (
    JSONValue,
    _as_datetime,
    _as_enum,
    _as_optional_str,
    _expect_object,
    datetime_to_iso8601z,
    utc_now,
)

if TYPE_CHECKING:
    from enum import StrEnum
else:
    from pipewright.domain.models import StrEnum

_SENSITIVE_KEY_TERMS = ("secret", "password", "token", "credential", "api_key")
_REDACTED_VALUE = "***REDACTED***"


class EventType(StrEnum):
    """Lifecycle events emitted by the engine."""

    RUN_STARTED = "RunStarted"
    RUN_SUCCEEDED = "RunSucceeded"
    RUN_FAILED = "RunFailed"
    RUN_CANCELLED = "RunCancelled"

    STAGE_STARTED = "StageStarted"
    STAGE_FINISHED = "StageFinished"

    GATE_EVALUATED = "GateEvaluated"
    GATE_BLOCKED = "GateBlocked"

    ARTIFACT_REGISTERED = "ArtifactRegistered"

    DEPLOYMENT_STARTED = "DeploymentStarted"
    DEPLOYMENT_HEALTHY = "DeploymentHealthy"
    DEPLOYMENT_ROLLED_BACK = "DeploymentRolledBack"


@dataclass(slots=True)
class PipelineEvent:
    """Serializable event envelope; ``correlation_id`` is usually the run id."""

    event_type: EventType | str
    payload: dict[str, JSONValue] = field(default_factory=dict)
    correlation_id: str | None = None
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        ids.validate_prefixed_id(self.event_id, ids.EVENT_ID_PREFIX)
        self.event_type = _as_enum(EventType, self.event_type, "PipelineEvent.event_type")
        self.timestamp = _as_datetime(self.timestamp, "PipelineEvent.timestamp")
        self.correlation_id = _as_optional_str(self.correlation_id, "PipelineEvent.correlation_id")
        json.dumps(self.payload)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": str(self.event_type),
            "timestamp": datetime_to_iso8601z(self.timestamp),
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineEvent:
        parsed = _expect_object(
            data,
            "PipelineEvent",
            required={"event_id", "event_type", "timestamp", "payload"},
            optional={"correlation_id"},
        )
        payload = parsed["payload"]
        if not isinstance(payload, dict):
            raise ValueError("PipelineEvent.payload: expected object")
        return cls(
            event_id=str(parsed["event_id"]),
            event_type=str(parsed["event_type"]),
            timestamp=_as_datetime(parsed["timestamp"], "PipelineEvent.timestamp"),
            correlation_id=_as_optional_str(parsed.get("correlation_id"), "PipelineEvent.correlation_id"),
            payload=payload,
        )


def redact_sensitive(event: PipelineEvent) -> PipelineEvent:
    """Return a copy of ``event`` with sensitive payload keys deeply redacted."""
    redacted = _redact_value(event.payload, key_context=None)
    assert isinstance(redacted, dict)
    return PipelineEvent(
        event_type=event.event_type,
        payload=redacted,
        correlation_id=event.correlation_id,
        event_id=event.event_id,
        timestamp=event.timestamp,
    )


def _redact_value(value: JSONValue, key_context: str | None) -> JSONValue:
    if key_context is not None and any(term in key_context.lower() for term in _SENSITIVE_KEY_TERMS):
        return _REDACTED_VALUE
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


__all__ = ["EventType", "PipelineEvent", "redact_sensitive"]

"""
pipewright - artifact & version registry.

Purpose
- Assign strictly increasing, never reused versions to build outputs within a
  lineage (branch), and resolve them back for promotion.

Version scheme
- The release lineage (``artifacts.release_lineages``, default ``main``; at
  most one): ``{version_base}.{sequence}``, e.g. ``1.0.7``.
- Any other lineage: ``{version_base}.{sequence}-{lineage slug}``, e.g.
  ``1.0.3-feature-login``.

Registrations from the same run and lineage share one version, so every
platform built by a run lands in the same ``name@version`` group.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Mapping
from typing import Any, Final

import structlog

from pipewright.constants import DEFAULT_PLATFORM, LATEST_VERSION
from pipewright.domain.events import EventType
from pipewright.domain.ids import generate_artifact_id
from pipewright.domain.models import Artifact
from pipewright.errors import ConfigurationError, NotFoundError
from pipewright.observability.events import EventBus
from pipewright.persistence.repositories import ArtifactRepo
from pipewright.persistence.state_db import StateDB

_SLUG_INVALID: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")
_MAX_SLUG: Final[int] = 40


def lineage_slug(lineage: str) -> str:
    """Lower-case, dash-separated rendering of a branch name for version suffixes."""
    slug = _SLUG_INVALID.sub("-", lineage.lower()).strip("-")
    return slug[:_MAX_SLUG].rstrip("-") or "branch"


class ArtifactRegistry:
    """Registers artifacts and resolves ``name@version`` groups."""

    def __init__(
        self,
        db: StateDB,
        *,
        version_base: str = "1.0",
        release_lineages: Iterable[str] = ("main",),
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._repo = ArtifactRepo(db)
        self._version_base = version_base
        self._release_lineages = frozenset(release_lineages)
        if len(self._release_lineages) > 1:
            raise ConfigurationError(
                f"release lineages {sorted(self._release_lineages)} would assign the same versions; "
                "configure at most one"
            )
        self._events = event_bus
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], db: StateDB, **kwargs: Any) -> ArtifactRegistry:
        section = config.get("artifacts") or {}
        return cls(
            db,
            version_base=str(section.get("version_base", "1.0")),
            release_lineages=tuple(section.get("release_lineages", ("main",))),
            **kwargs,
        )

    def format_version(self, lineage: str, sequence: int) -> str:
        if sequence <= 0:
            raise ValueError("sequence must be >= 1")
        base = f"{self._version_base}.{sequence}"
        if lineage in self._release_lineages:
            return base
        return f"{base}-{lineage_slug(lineage)}"

    def register(
        self,
        *,
        name: str,
        lineage: str,
        stage: str,
        platform: str = DEFAULT_PLATFORM,
        content_ref: str,
        run_id: str,
    ) -> Artifact:
        """Record one build output and return it with its assigned version.

        A second platform from the same run joins the run's existing version; a
        duplicate ``(name, version, platform)`` raises ``ValueError``.
        """
        if not lineage.strip():
            raise ValueError("lineage must be a non-empty branch name")
        # The thread lock serializes in-process callers; the immediate transaction
        # and the unique index serialize across processes sharing the DB file.
        with self._lock, self._db.transaction(immediate=True) as conn:
            existing = self._repo.sequence_for_run(name, lineage, run_id, conn=conn)
            if existing is not None:
                sequence, version = existing
            else:
                sequence = self._repo.max_sequence(name, lineage, conn=conn) + 1
                version = self.format_version(lineage, sequence)
            artifact = Artifact(
                id=generate_artifact_id(),
                name=name,
                lineage=lineage,
                sequence=sequence,
                version=version,
                platform=platform,
                content_ref=content_ref,
                stage=stage,
                run_id=run_id,
            )
            self._repo.add(artifact, conn=conn)

        self._logger.info(
            "artifact_registered",
            artifact=artifact.group_key,
            platform=platform,
            lineage=lineage,
            sequence=sequence,
            run_id=run_id,
        )
        if self._events is not None:
            self._events.emit(
                EventType.ARTIFACT_REGISTERED,
                artifact.to_dict(),
                correlation_id=run_id,
            )
        return artifact

    def resolve(
        self,
        name: str,
        version: str = LATEST_VERSION,
        *,
        platform: str | None = None,
        lineage: str | None = None,
    ) -> Artifact:
        """Return one artifact; raises ``NotFoundError`` when nothing matches."""
        if version == LATEST_VERSION:
            found = self._repo.latest(name, lineage=lineage, platform=platform)
        elif platform is not None:
            found = self._repo.get(name, version, platform)
        else:
            group = self._repo.group(name, version)
            found = group[0] if group else None
        if found is not None and lineage is not None and found.lineage != lineage:
            found = None
        if found is None:
            target = f"{name}@{version}"
            if platform is not None:
                target += f" ({platform})"
            if lineage is not None:
                target += f" on lineage {lineage!r}"
            raise NotFoundError(f"artifact {target} not found")
        return found

    def group(self, name: str, version: str = LATEST_VERSION) -> list[Artifact]:
        """All platforms of ``name@version``; ``latest`` resolves the version first."""
        if version == LATEST_VERSION:
            version = self.resolve(name).version
        artifacts = self._repo.group(name, version)
        if not artifacts:
            raise NotFoundError(f"artifact {name}@{version} not found")
        return artifacts

    def latest(self, name: str, *, lineage: str | None = None) -> Artifact | None:
        return self._repo.latest(name, lineage=lineage)

    def list(
        self,
        *,
        name: str | None = None,
        lineage: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Artifact]:
        return self._repo.list(name=name, lineage=lineage, limit=limit, offset=offset)

    def for_run(self, run_id: str) -> list[Artifact]:
        return self._repo.list_for_run(run_id)


__all__ = ["ArtifactRegistry", "lineage_slug"]

"""Release-plane public API: artifact versions and environment promotion."""

from pipewright.release_plane.deployment import DeploymentController
from pipewright.release_plane.health import (
    AcceptingHealthProbe,
    Deployer,
    HealthPolicy,
    HealthPoller,
    HealthProbe,
    LedgerDeployer,
)
from pipewright.release_plane.registry import ArtifactRegistry, lineage_slug

__all__ = [
    "AcceptingHealthProbe",
    "ArtifactRegistry",
    "Deployer",
    "DeploymentController",
    "HealthPolicy",
    "HealthPoller",
    "HealthProbe",
    "LedgerDeployer",
    "lineage_slug",
]

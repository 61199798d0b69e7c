from __future__ import annotations

from .base import (
    TERMINAL_STATES,
    DisposalPolicy,
    Fallback,
    ManagedResource,
    ManagedService,
    ResourceState,
    ServiceEndpoint,
)
from .docker import (
    ContainerService,
    ContainerSpec,
    DockerCli,
    DockerNetwork,
    DockerVolume,
    remove_stale_resources,
    with_image_tag,
)
from .process import ProcessService, ProcessSpec

__all__ = [
    "TERMINAL_STATES",
    "ContainerService",
    "ContainerSpec",
    "DisposalPolicy",
    "DockerCli",
    "DockerNetwork",
    "DockerVolume",
    "Fallback",
    "ManagedResource",
    "ManagedService",
    "ProcessService",
    "ProcessSpec",
    "ResourceState",
    "ServiceEndpoint",
    "remove_stale_resources",
    "with_image_tag",
]

"""
Image build engine.

Status checks and builds for the local, persistent daemon and isolated
builder modes, plus the pieces they share: registry probes, context sync
and the sidecar handshake for ephemeral builder pods.
"""

from .context_sync import ContextSync
from .dispatcher import BuildDispatcher, build_module, get_build_status
from .local_docker import LocalDockerBuilder
from .registry_probe import (
    DaemonManifestProbe,
    LocalManifestProbe,
    RegistryProbe,
    SkopeoPodProbe,
)
from .sidecar import SidecarProtocol

__all__ = [
    # Dispatch
    "BuildDispatcher",
    "build_module",
    "get_build_status",
    # Docker operations
    "LocalDockerBuilder",
    # Registry probes
    "RegistryProbe",
    "LocalManifestProbe",
    "DaemonManifestProbe",
    "SkopeoPodProbe",
    # Cluster plumbing
    "ContextSync",
    "SidecarProtocol",
]

"""
Build configuration models.

Module and provider configuration arrive already validated from the
configuration layer; these models only give them a typed shape and the
derived values the build engine needs (image ids, flags, namespaces).
"""

import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import (
    DEFAULT_BUILD_TIMEOUT,
    IN_CLUSTER_REGISTRY_HOSTNAME,
    IN_CLUSTER_REGISTRY_SERVICE,
)


class BuildMode(str, Enum):
    """Where and how image builds execute."""

    LOCAL = "local"
    REMOTE_PERSISTENT_DAEMON = "remote-persistent-daemon"
    REMOTE_ISOLATED_BUILDER = "remote-isolated-builder"

    @property
    def is_remote(self) -> bool:
        return self is not BuildMode.LOCAL


class ClusterType(str, Enum):
    """Cluster flavor, relevant for loading locally built images."""

    GENERIC = "generic"
    KIND = "kind"
    MICROK8S = "microk8s"


class RegistryConfig(BaseModel):
    """Deployment registry reference."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    namespace: str = Field(default="_", description="Repository prefix")

    @property
    def is_local_hostname(self) -> bool:
        host = self.hostname.split(":")[0]
        return host == "localhost" or host.startswith("127.")

    @property
    def is_in_cluster(self) -> bool:
        """True for the unauthenticated in-cluster registry (no TLS)."""
        return self.hostname == IN_CLUSTER_REGISTRY_HOSTNAME


class ResourceSpec(BaseModel):
    """CPU in millicpu, memory in megabytes."""

    cpu: int = Field(gt=0)
    memory: int = Field(gt=0)

    def to_kubernetes(self) -> Dict[str, str]:
        return {"cpu": f"{self.cpu}m", "memory": f"{self.memory}Mi"}


class BuilderResources(BaseModel):
    """Resource limits and requests for the isolated builder container."""

    limits: ResourceSpec = Field(
        default_factory=lambda: ResourceSpec(cpu=4000, memory=8192)
    )
    requests: ResourceSpec = Field(
        default_factory=lambda: ResourceSpec(cpu=200, memory=512)
    )


class ProviderConfig(BaseModel):
    """Cluster provider configuration relevant to image builds."""

    model_config = ConfigDict(frozen=True)

    build_mode: BuildMode = BuildMode.LOCAL
    deployment_registry: Optional[RegistryConfig] = None
    cluster_type: ClusterType = ClusterType.GENERIC
    kind_cluster_name: str = "kind"
    builder_resources: BuilderResources = Field(default_factory=BuilderResources)
    system_namespace: str = "cluster-build-system"
    app_namespace: str = "default"
    kube_context: Optional[str] = None
    enable_buildkit: bool = False

    @property
    def uses_in_cluster_registry(self) -> bool:
        return (
            self.deployment_registry is not None
            and self.deployment_registry.is_in_cluster
        )

    @property
    def registry_proxy_hostname(self) -> str:
        """In-cluster registry service, as seen from pods in the system namespace."""
        return (
            f"{IN_CLUSTER_REGISTRY_SERVICE}.{self.system_namespace}.svc.cluster.local"
        )

    @classmethod
    def from_environment(cls) -> "ProviderConfig":
        """
        Create provider config from environment variables.

        Environment variables:
            CLUSTER_BUILD_MODE: local | remote-persistent-daemon | remote-isolated-builder
            CLUSTER_BUILD_REGISTRY_HOSTNAME: Deployment registry hostname
            CLUSTER_BUILD_REGISTRY_NAMESPACE: Repository prefix (default "_")
            CLUSTER_BUILD_CLUSTER_TYPE: generic | kind | microk8s
            CLUSTER_BUILD_KIND_CLUSTER: kind cluster name (default "kind")
            CLUSTER_BUILD_SYSTEM_NAMESPACE: Namespace of the build services
            CLUSTER_BUILD_APP_NAMESPACE: Namespace of the project
            CLUSTER_BUILD_KUBE_CONTEXT: kubectl context to use
            CLUSTER_BUILD_ENABLE_BUILDKIT: Use BuildKit in the docker daemon (true/false)

        Returns:
            ProviderConfig instance
        """
        registry = None
        hostname = os.getenv("CLUSTER_BUILD_REGISTRY_HOSTNAME")
        if hostname:
            registry = RegistryConfig(
                hostname=hostname,
                namespace=os.getenv("CLUSTER_BUILD_REGISTRY_NAMESPACE", "_"),
            )

        values = {
            "build_mode": os.getenv("CLUSTER_BUILD_MODE", BuildMode.LOCAL.value),
            "deployment_registry": registry,
            "cluster_type": os.getenv(
                "CLUSTER_BUILD_CLUSTER_TYPE", ClusterType.GENERIC.value
            ),
            "kind_cluster_name": os.getenv("CLUSTER_BUILD_KIND_CLUSTER", "kind"),
            "kube_context": os.getenv("CLUSTER_BUILD_KUBE_CONTEXT") or None,
            "enable_buildkit": os.getenv(
                "CLUSTER_BUILD_ENABLE_BUILDKIT", "false"
            ).lower()
            in ("true", "1", "yes"),
        }
        for field, env_var in (
            ("system_namespace", "CLUSTER_BUILD_SYSTEM_NAMESPACE"),
            ("app_namespace", "CLUSTER_BUILD_APP_NAMESPACE"),
        ):
            if value := os.getenv(env_var):
                values[field] = value

        return cls(**values)


class Module(BaseModel):
    """A single buildable unit. Immutable for the duration of a build."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    version: str
    dockerfile: Optional[str] = None
    target: Optional[str] = None
    image: Optional[str] = None
    build_args: Dict[str, str] = Field(default_factory=dict)
    extra_flags: List[str] = Field(default_factory=list)
    include: Optional[List[str]] = None
    build_timeout: int = Field(default=DEFAULT_BUILD_TIMEOUT, gt=0)

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: Path) -> Path:
        """Relative paths are rejected"""
        if not value.is_absolute():
            raise ValueError(f"Module path must be absolute: {value}")
        return value

    @property
    def dockerfile_name(self) -> str:
        return self.dockerfile or "Dockerfile"

    def has_dockerfile(self) -> bool:
        """Check if the module has a Dockerfile to build."""
        return (self.path / self.dockerfile_name).is_file()

    @property
    def image_name(self) -> str:
        """Repository name without tag, from ``image`` when set."""
        if self.image:
            name = self.image.rsplit("/", 1)[-1]
            return name.split(":", 1)[0]
        return self.name

    @property
    def local_image_id(self) -> str:
        return f"{self.image_name}:{self.version}"

    def deployment_image_id(self, registry: RegistryConfig) -> str:
        """Full image reference in the deployment registry."""
        return f"{registry.hostname}/{registry.namespace}/{self.image_name}:{self.version}"

    def build_flags(self) -> List[str]:
        """Flags shared by docker build and the kaniko executor."""
        flags: List[str] = []
        for key, value in self.build_args.items():
            flags += ["--build-arg", f"{key}={value}"]
        if self.target:
            flags += ["--target", self.target]
        flags += self.extra_flags
        return flags

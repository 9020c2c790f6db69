"""
Per-mode status and build handlers.

Status handlers answer "is the image already where it needs to be?".
Build handlers produce the image: locally, inside the shared docker daemon
pod, or with kaniko in an ephemeral pod.

The docker daemon pod is shared by every build routed to it and nothing
here serializes access to it; concurrent builds may interleave inside the
daemon. Kaniko builds get their own pod each.
"""

import logging
import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from kubernetes import client

from cluster_build.config import (
    BuildMode,
    ClusterType,
    Module,
    ProviderConfig,
    RegistryConfig,
)
from cluster_build.constants import (
    BUILD_STAGING_MOUNT,
    BUILD_SYNC_VOLUME,
    DOCKER_AUTH_SECRET,
    DOCKER_DAEMON_CONTAINER,
    KANIKO_IMAGE,
    PUSH_TIMEOUT,
)
from cluster_build.core.utils.output import OutputSink
from cluster_build.core.utils.process import run_command
from cluster_build.exceptions import (
    BuildError,
    BuildTimeoutError,
    ConfigInvariantError,
)
from cluster_build.kube.api import KubeApi
from cluster_build.kube.exec import exec_in_pod
from cluster_build.kube.pod_runner import PodRunner, make_pod_name
from cluster_build.models import BuildResult, BuildStatus

from .cluster import build_sync_volume, docker_auth_volume, get_builder_pod
from .context_sync import ContextSync
from .local_docker import LocalDockerBuilder
from .registry_probe import DaemonManifestProbe, LocalManifestProbe, SkopeoPodProbe
from .sidecar import tool_pod_spec

log = logging.getLogger(__name__)

KANIKO_CONTAINER = "kaniko"


@dataclass
class BuildContext:
    """Collaborators shared by the handlers of one dispatcher."""

    working_copy_id: str
    run: Callable = run_command
    api_factory: Callable[[ProviderConfig], KubeApi] = KubeApi.from_provider
    context_sync_factory: Callable[[KubeApi, str], ContextSync] = ContextSync
    api: Optional[KubeApi] = None
    local: LocalDockerBuilder = field(init=False)

    def __post_init__(self):
        self.local = LocalDockerBuilder(run=self.run)

    def get_api(self, provider: ProviderConfig) -> KubeApi:
        """Kubernetes API client, created on first use."""
        if self.api is None:
            self.api = self.api_factory(provider)
        return self.api


def require_registry(provider: ProviderConfig) -> RegistryConfig:
    registry = provider.deployment_registry
    if registry is None:
        # Validated when the provider is configured, so this is an internal error
        raise ConfigInvariantError(
            "Expected configured deployment registry for remote build",
            {"build_mode": provider.build_mode.value},
        )
    return registry


# Status handlers


async def local_status(
    ctx: BuildContext, module: Module, provider: ProviderConfig
) -> BuildStatus:
    registry = provider.deployment_registry

    if registry is not None:
        probe = LocalManifestProbe(run=ctx.run)
        res = await probe.probe(
            module.deployment_image_id(registry), insecure=registry.is_local_hostname
        )
        return BuildStatus(ready=res.present)

    if provider.cluster_type is ClusterType.MICROK8S:
        ready = await ctx.local.microk8s_image_exists(module.local_image_id)
        return BuildStatus(ready=ready)

    return BuildStatus(ready=await ctx.local.image_exists(module.local_image_id))


async def daemon_status(
    ctx: BuildContext, module: Module, provider: ProviderConfig
) -> BuildStatus:
    registry = require_registry(provider)
    probe = DaemonManifestProbe(ctx.get_api(provider), provider)
    res = await probe.probe(
        module.deployment_image_id(registry), insecure=registry.is_local_hostname
    )
    return BuildStatus(ready=res.present)


async def isolated_builder_status(
    ctx: BuildContext, module: Module, provider: ProviderConfig
) -> BuildStatus:
    registry = require_registry(provider)
    probe = SkopeoPodProbe(ctx.get_api(provider), provider, module.name)
    res = await probe.probe(
        module.deployment_image_id(registry),
        insecure=provider.uses_in_cluster_registry,
    )
    return BuildStatus(ready=res.present)


# Build handlers


async def local_build(
    ctx: BuildContext,
    module: Module,
    provider: ProviderConfig,
    sink: Optional[OutputSink] = None,
) -> BuildResult:
    result = await ctx.local.build(module, sink=sink)
    registry = provider.deployment_registry

    if registry is None:
        if provider.cluster_type is ClusterType.KIND:
            await ctx.local.load_into_kind(
                module.local_image_id, provider.kind_cluster_name
            )
        elif provider.cluster_type is ClusterType.MICROK8S:
            await ctx.local.load_into_microk8s(module.local_image_id)
        return result

    remote_id = module.deployment_image_id(registry)
    await ctx.local.tag(module.local_image_id, remote_id)
    await ctx.local.push(remote_id)

    result.details = {"identifier": remote_id}
    return result


async def remote_build(
    ctx: BuildContext,
    module: Module,
    provider: ProviderConfig,
    sink: Optional[OutputSink] = None,
) -> BuildResult:
    """Sync the context, then build with the daemon or kaniko per build mode."""
    registry = require_registry(provider)
    api = ctx.get_api(provider)

    log.info(f"Syncing sources of {module.name} to cluster...")
    context_sync = ctx.context_sync_factory(api, ctx.working_copy_id)
    await context_sync.sync(module, provider)

    context_path = context_sync.remote_context_path(module)
    deployment_image_id = module.deployment_image_id(registry)

    log.info(f"Building image {deployment_image_id}...")
    if provider.build_mode is BuildMode.REMOTE_PERSISTENT_DAEMON:
        build_log = await build_in_daemon(
            api, module, provider, context_path, deployment_image_id, sink
        )
    else:
        build_log = await build_with_kaniko(
            api, module, provider, context_path, deployment_image_id, sink
        )

    log.debug(build_log)

    return BuildResult(
        build_log=build_log,
        fetched=False,
        fresh=True,
        version=module.version,
        details={"identifier": deployment_image_id},
    )


def daemon_build_args(
    module: Module,
    provider: ProviderConfig,
    context_path: str,
    deployment_image_id: str,
) -> List[str]:
    args = [
        "docker",
        "build",
        "-t",
        deployment_image_id,
        "-f",
        posixpath.join(context_path, module.dockerfile_name),
        *module.build_flags(),
        context_path,
    ]
    if provider.enable_buildkit:
        args = ["/bin/sh", "-c", "DOCKER_BUILDKIT=1 " + shlex.join(args)]
    return args


async def build_in_daemon(
    api: KubeApi,
    module: Module,
    provider: ProviderConfig,
    context_path: str,
    deployment_image_id: str,
    sink: Optional[OutputSink] = None,
) -> str:
    """Build and push inside the docker daemon pod. Returns the cumulative log."""
    pod = await get_builder_pod(api, provider)

    args = daemon_build_args(module, provider, context_path, deployment_image_id)
    build_res = await exec_in_pod(
        api, pod, DOCKER_DAEMON_CONTAINER, args, timeout=module.build_timeout, sink=sink
    )
    build_log = build_res.output

    if build_res.exit_code != 0:
        raise BuildError(
            f"Failed building module {module.name}:\n\n{build_log}",
            {"build_log": build_log, "command": args},
        )

    log.info(f"Pushing image {deployment_image_id} to registry...")
    push_args = ["/bin/sh", "-c", shlex.join(["docker", "push", deployment_image_id])]
    try:
        push_res = await exec_in_pod(
            api, pod, DOCKER_DAEMON_CONTAINER, push_args, timeout=PUSH_TIMEOUT, sink=sink
        )
    except BuildTimeoutError as e:
        e.add_context(build_log=build_log + e.detail.get("output", ""))
        raise
    build_log += push_res.output

    if push_res.exit_code != 0:
        raise BuildError(
            f"Failed pushing image {deployment_image_id}:\n\n{build_log}",
            {"build_log": build_log, "command": push_args},
        )

    return build_log


def kaniko_args(
    module: Module,
    provider: ProviderConfig,
    context_path: str,
    deployment_image_id: str,
) -> List[str]:
    args = [
        "--context",
        f"dir://{context_path}",
        "--dockerfile",
        module.dockerfile_name,
        "--destination",
        deployment_image_id,
        "--cache=true",
    ]
    if provider.uses_in_cluster_registry:
        # The in-cluster registry is not exposed, so it does not serve TLS
        args.append("--insecure")
    return args + module.build_flags()


def kaniko_pod_spec(
    module: Module, provider: ProviderConfig, command: List[str]
) -> client.V1PodSpec:
    resources = provider.builder_resources
    container = client.V1Container(
        name=KANIKO_CONTAINER,
        image=KANIKO_IMAGE,
        volume_mounts=[
            client.V1VolumeMount(name=BUILD_SYNC_VOLUME, mount_path=BUILD_STAGING_MOUNT),
            client.V1VolumeMount(
                name=DOCKER_AUTH_SECRET, mount_path="/kaniko/.docker", read_only=True
            ),
        ],
        resources=client.V1ResourceRequirements(
            limits=resources.limits.to_kubernetes(),
            requests=resources.requests.to_kubernetes(),
        ),
    )
    proxy_to = (
        provider.registry_proxy_hostname if provider.uses_in_cluster_registry else None
    )
    return tool_pod_spec(
        container,
        command,
        timeout=module.build_timeout,
        registry_hostname=proxy_to,
        volumes=[build_sync_volume(), docker_auth_volume()],
    )


async def build_with_kaniko(
    api: KubeApi,
    module: Module,
    provider: ProviderConfig,
    context_path: str,
    deployment_image_id: str,
    sink: Optional[OutputSink] = None,
) -> str:
    """Build and push with kaniko in an ephemeral pod. Returns the pod log."""
    command = ["/kaniko/executor"] + kaniko_args(
        module, provider, context_path, deployment_image_id
    )
    runner = PodRunner(
        api=api,
        namespace=provider.system_namespace,
        pod_name=make_pod_name("kaniko", provider.app_namespace, module.name),
        spec=kaniko_pod_spec(module, provider, command),
        primary_container=KANIKO_CONTAINER,
    )
    res = await runner.run(timeout=module.build_timeout, sink=sink)

    if res.timed_out:
        raise BuildTimeoutError(
            f"Building module {module.name} timed out after {module.build_timeout}s",
            {"build_log": res.combined_log},
        )
    if not res.success:
        raise BuildError(
            f"Failed building module {module.name}:\n\n{res.combined_log}",
            {"build_log": res.combined_log},
        )

    return res.combined_log

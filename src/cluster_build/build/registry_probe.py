"""
Registry probes: does an image reference already exist in its registry?

The inspection tools exit non-zero both when the image is missing and when
the registry cannot be reached. Only a non-zero exit whose output contains
the tool's "absent" marker counts as missing; anything else is an error,
so outages are never reported as missing images.

The markers are tied to the output of specific docker and skopeo
versions. A tool upgrade that changes the wording turns "absent" into
``RemoteCommandError``.
"""

import logging
import os
import shlex
from abc import ABC, abstractmethod
from typing import Callable, List

from kubernetes import client

from cluster_build.config import ProviderConfig
from cluster_build.constants import (
    DOCKER_ABSENT_MARKER,
    DOCKER_DAEMON_CONTAINER,
    DOCKER_AUTH_SECRET,
    MANIFEST_PROBE_TIMEOUT,
    SKOPEO_ABSENT_MARKER,
    SKOPEO_COMMAND_TIMEOUT,
    SKOPEO_IMAGE,
    SKOPEO_POD_TIMEOUT,
)
from cluster_build.core.utils.process import run_command
from cluster_build.exceptions import BuildTimeoutError, RemoteCommandError
from cluster_build.kube.api import KubeApi
from cluster_build.kube.exec import exec_in_pod
from cluster_build.kube.pod_runner import PodRunner, make_pod_name
from cluster_build.models import ProbeResult

from .cluster import docker_auth_volume, get_builder_pod
from .sidecar import tool_pod_spec

log = logging.getLogger(__name__)


def classify_probe_output(
    exit_code: int, output: str, absent_marker: str, command: List[str]
) -> ProbeResult:
    """
    Map an inspection tool's exit code and output to a probe result.

    Raises:
        RemoteCommandError: Non-zero exit without the absent marker
    """
    if exit_code == 0:
        return ProbeResult(present=True)
    if absent_marker in output:
        log.debug(f"Image not found in registry ({absent_marker!r})")
        return ProbeResult(present=False)
    raise RemoteCommandError(
        f"Unable to query registry for image status: {output}",
        {"command": command, "exit_code": exit_code, "output": output},
    )


def manifest_inspect_args(image_reference: str, insecure: bool) -> List[str]:
    args = ["manifest", "inspect", image_reference]
    if insecure:
        args.append("--insecure")
    return args


class RegistryProbe(ABC):
    """Checks a registry for an image reference."""

    absent_marker: str

    @abstractmethod
    async def probe(self, image_reference: str, insecure: bool) -> ProbeResult:
        """
        Args:
            image_reference: Full image reference including registry and tag
            insecure: Skip TLS for registries that do not serve it

        Returns:
            ProbeResult

        Raises:
            RemoteCommandError: If the registry could not be queried
            BuildTimeoutError: If the query did not finish in time
        """
        pass


class LocalManifestProbe(RegistryProbe):
    """``docker manifest inspect`` on the local machine."""

    absent_marker = DOCKER_ABSENT_MARKER

    def __init__(
        self, timeout: float = MANIFEST_PROBE_TIMEOUT, run: Callable = run_command
    ):
        self.timeout = timeout
        self._run = run

    async def probe(self, image_reference: str, insecure: bool) -> ProbeResult:
        args = ["docker"] + manifest_inspect_args(image_reference, insecure)
        env = dict(os.environ, DOCKER_CLI_EXPERIMENTAL="enabled")
        res = await self._run(args, timeout=self.timeout, env=env)
        return classify_probe_output(res.exit_code, res.output, self.absent_marker, args)


class DaemonManifestProbe(RegistryProbe):
    """``docker manifest inspect`` inside the shared docker daemon pod."""

    absent_marker = DOCKER_ABSENT_MARKER

    def __init__(
        self,
        api: KubeApi,
        provider: ProviderConfig,
        timeout: float = MANIFEST_PROBE_TIMEOUT,
    ):
        self.api = api
        self.provider = provider
        self.timeout = timeout

    async def probe(self, image_reference: str, insecure: bool) -> ProbeResult:
        docker_args = manifest_inspect_args(image_reference, insecure)
        args = [
            "/bin/sh",
            "-c",
            "DOCKER_CLI_EXPERIMENTAL=enabled docker " + shlex.join(docker_args),
        ]
        pod = await get_builder_pod(self.api, self.provider)
        res = await exec_in_pod(
            self.api, pod, DOCKER_DAEMON_CONTAINER, args, timeout=self.timeout
        )
        return classify_probe_output(res.exit_code, res.stderr, self.absent_marker, args)


class SkopeoPodProbe(RegistryProbe):
    """``skopeo inspect`` in an ephemeral pod in the system namespace."""

    absent_marker = SKOPEO_ABSENT_MARKER
    container_name = "skopeo"

    def __init__(
        self,
        api: KubeApi,
        provider: ProviderConfig,
        module_name: str,
        timeout: float = SKOPEO_POD_TIMEOUT,
    ):
        self.api = api
        self.provider = provider
        self.module_name = module_name
        self.timeout = timeout

    def command(self, image_reference: str, insecure: bool) -> List[str]:
        command = ["skopeo", f"--command-timeout={SKOPEO_COMMAND_TIMEOUT}", "inspect", "--raw"]
        if insecure:
            command.append("--tls-verify=false")
        command.append(f"docker://{image_reference}")
        return command

    def pod_spec(self, command: List[str]) -> client.V1PodSpec:
        container = client.V1Container(
            name=self.container_name,
            image=SKOPEO_IMAGE,
            volume_mounts=[
                client.V1VolumeMount(
                    name=DOCKER_AUTH_SECRET, mount_path="/root/.docker", read_only=True
                )
            ],
        )
        # The in-cluster registry is only reachable through the proxy
        proxy_to = (
            self.provider.registry_proxy_hostname
            if self.provider.uses_in_cluster_registry
            else None
        )
        return tool_pod_spec(
            container,
            command,
            timeout=self.timeout,
            registry_hostname=proxy_to,
            volumes=[docker_auth_volume()],
        )

    async def probe(self, image_reference: str, insecure: bool) -> ProbeResult:
        command = self.command(image_reference, insecure)
        runner = PodRunner(
            api=self.api,
            namespace=self.provider.system_namespace,
            pod_name=make_pod_name(
                "skopeo", self.provider.app_namespace, self.module_name
            ),
            spec=self.pod_spec(command),
            primary_container=self.container_name,
        )
        # The skopeo command timeout should kick in before the pod timeout
        res = await runner.run(timeout=self.timeout)

        if res.timed_out:
            raise BuildTimeoutError(
                f"Registry query for {image_reference} timed out after {self.timeout}s",
                {"command": command, "output": res.combined_log},
            )

        return classify_probe_output(
            0 if res.success else 1, res.combined_log, self.absent_marker, command
        )

"""
File-flag handshake between containers of one ephemeral pod.

Containers in a pod start in no particular order, but a builder that pushes
to the in-cluster registry needs the registry proxy to be listening before
its first request, and the proxy must stop once the builder is done or the
pod never terminates. The containers share an ``emptyDir`` volume and signal
each other by creating marker files in it:

1. The support container waits for the proxy process, then creates
   ``proxy-started``.
2. The primary container waits for ``proxy-started``, runs its tool, then
   creates ``done`` and exits with the tool's exit code.
3. The support container waits for ``done`` and stops the proxy.

All containers of a pod share a node and the volume, so file visibility is
enough. Every wait is bounded by a poll count derived from the pod timeout;
a container that gives up still lets the others terminate.
"""

import copy
import math
import posixpath
import shlex
from typing import List, Optional

from kubernetes import client

from cluster_build.constants import (
    COMMS_MOUNT,
    MARKER_POLL_INTERVAL,
    PROXY_IMAGE,
    REGISTRY_PORT,
    SUPPORT_IMAGE,
)

COMMS_VOLUME = "comms"
PROXY_CONTAINER = "proxy"
SUPPORT_CONTAINER = "support"

READY_MARKER = "proxy-started"
DONE_MARKER = "done"


class SidecarProtocol:
    """Generates the handshake scripts and the containers that run them."""

    def __init__(
        self,
        max_polls: int,
        comms_dir: str = COMMS_MOUNT,
        poll_interval: float = MARKER_POLL_INTERVAL,
        proxy_ready_check: str = "pidof socat > /dev/null",
        proxy_stop: str = "killall socat",
    ):
        if max_polls < 1:
            raise ValueError(f"max_polls must be >= 1, got {max_polls}")
        self.max_polls = max_polls
        self.comms_dir = comms_dir
        self.poll_interval = poll_interval
        self.proxy_ready_check = proxy_ready_check
        self.proxy_stop = proxy_stop

    @classmethod
    def for_timeout(cls, timeout: float, **kwargs) -> "SidecarProtocol":
        """Bound every wait by the pod's overall timeout."""
        interval = kwargs.get("poll_interval", MARKER_POLL_INTERVAL)
        return cls(max_polls=max(1, math.ceil(timeout / interval)), **kwargs)

    def marker(self, name: str) -> str:
        return posixpath.join(self.comms_dir, name)

    def _wait(self, condition: str, what: str, give_up: str) -> str:
        return "\n".join(
            [
                "n=0",
                f"until {condition}; do",
                "  n=$((n + 1))",
                f'  if [ "$n" -gt {self.max_polls} ]; then',
                f'    echo "gave up waiting for {what} after {self.max_polls} polls" >&2',
                f"    {give_up}",
                "  fi",
                f"  sleep {self.poll_interval:g}",
                "done",
            ]
        )

    def primary_script(self, command: List[str]) -> str:
        """Wait for the proxy, run ``command``, signal completion."""
        ready = shlex.quote(self.marker(READY_MARKER))
        done = shlex.quote(self.marker(DONE_MARKER))
        return "\n".join(
            [
                self._wait(f"[ -f {ready} ]", READY_MARKER, f"touch {done}; exit 1"),
                shlex.join(command),
                "exitcode=$?",
                f"touch {done}",
                "exit $exitcode",
            ]
        )

    def support_script(self) -> str:
        """Signal proxy readiness, then stop the proxy once the primary is done."""
        ready = shlex.quote(self.marker(READY_MARKER))
        done = shlex.quote(self.marker(DONE_MARKER))
        return "\n".join(
            [
                self._wait(self.proxy_ready_check, "the proxy", "exit 1"),
                f"touch {ready}",
                self._wait(
                    f"[ -f {done} ]", DONE_MARKER, f"{self.proxy_stop}; exit 1"
                ),
                self.proxy_stop,
                "exit 0",
            ]
        )

    def _comms_mount(self) -> client.V1VolumeMount:
        return client.V1VolumeMount(name=COMMS_VOLUME, mount_path=self.comms_dir)

    def proxy_container(self, registry_hostname: str) -> client.V1Container:
        return client.V1Container(
            name=PROXY_CONTAINER,
            image=PROXY_IMAGE,
            command=[
                "/bin/sh",
                "-c",
                f"socat TCP-LISTEN:{REGISTRY_PORT},fork "
                f"TCP:{registry_hostname}:{REGISTRY_PORT} || exit 0",
            ],
            ports=[
                client.V1ContainerPort(
                    name="proxy", container_port=REGISTRY_PORT, protocol="TCP"
                )
            ],
            readiness_probe=client.V1Probe(
                tcp_socket=client.V1TCPSocketAction(port=REGISTRY_PORT)
            ),
        )

    def support_container(self) -> client.V1Container:
        return client.V1Container(
            name=SUPPORT_CONTAINER,
            image=SUPPORT_IMAGE,
            command=["sh", "-c", self.support_script()],
            volume_mounts=[self._comms_mount()],
        )

    def pod_spec(
        self,
        primary: client.V1Container,
        command: List[str],
        registry_hostname: str,
        volumes: Optional[List[client.V1Volume]] = None,
    ) -> client.V1PodSpec:
        """
        Pod spec running ``command`` in ``primary`` behind the registry proxy.

        The pod shares its process namespace so the support container can
        see and stop the proxy process.
        """
        primary = client.V1Container(
            name=primary.name,
            image=primary.image,
            command=["sh", "-c", self.primary_script(command)],
            volume_mounts=list(primary.volume_mounts or []) + [self._comms_mount()],
            resources=primary.resources,
            env=primary.env,
        )
        return client.V1PodSpec(
            share_process_namespace=True,
            containers=[
                primary,
                self.proxy_container(registry_hostname),
                self.support_container(),
            ],
            volumes=list(volumes or [])
            + [client.V1Volume(name=COMMS_VOLUME, empty_dir=client.V1EmptyDirVolumeSource())],
        )


def tool_pod_spec(
    container: client.V1Container,
    command: List[str],
    timeout: float,
    registry_hostname: Optional[str] = None,
    volumes: Optional[List[client.V1Volume]] = None,
) -> client.V1PodSpec:
    """
    Pod spec running ``command`` in ``container``.

    With ``registry_hostname`` the command runs behind the registry proxy,
    synchronized through the handshake; without it the command runs directly.
    """
    if registry_hostname is not None:
        protocol = SidecarProtocol.for_timeout(timeout)
        return protocol.pod_spec(container, command, registry_hostname, volumes=volumes)

    container = copy.copy(container)
    container.command = command
    return client.V1PodSpec(containers=[container], volumes=list(volumes or []))

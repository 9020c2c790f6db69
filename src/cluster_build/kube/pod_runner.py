"""
Ephemeral pod execution.

Runs a short-lived, multi-container pod to completion and always deletes
it afterwards, so repeated builds never accumulate orphaned pods.
"""

import asyncio
import copy
import logging
import re
from typing import Dict, List, Optional
from uuid import uuid4

from kubernetes import client

from cluster_build.constants import POD_POLL_INTERVAL
from cluster_build.core.utils.output import OutputSink
from cluster_build.models import PodRunResult

from .api import KubeApi, KubeApiError

log = logging.getLogger(__name__)

_TERMINAL_PHASES = ("Succeeded", "Failed")


def make_pod_name(kind: str, namespace: str, module_name: str) -> str:
    """Unique, DNS-1123 compliant pod name."""
    suffix = uuid4().hex[:8]
    base = re.sub(r"[^a-z0-9-]+", "-", f"{kind}-{namespace}-{module_name}".lower())
    base = base[: 63 - len(suffix) - 1].strip("-")
    return f"{base}-{suffix}"


class PodRunner:
    """Create a pod, wait for it to terminate, collect logs, delete it."""

    def __init__(
        self,
        api: KubeApi,
        namespace: str,
        pod_name: str,
        spec: client.V1PodSpec,
        primary_container: str,
        labels: Optional[Dict[str, str]] = None,
        poll_interval: float = POD_POLL_INTERVAL,
    ):
        container_names = [c.name for c in spec.containers]
        if primary_container not in container_names:
            raise ValueError(
                f"Primary container {primary_container!r} not in pod spec "
                f"(containers: {container_names})"
            )

        self.api = api
        self.namespace = namespace
        self.pod_name = pod_name
        self.spec = spec
        self.primary_container = primary_container
        self.labels = labels or {}
        self.poll_interval = poll_interval
        self._output_offset = 0

    def _manifest(self, interactive: bool) -> client.V1Pod:
        spec = copy.deepcopy(self.spec)
        spec.restart_policy = "Never"
        if interactive:
            for container in spec.containers:
                if container.name == self.primary_container:
                    container.stdin = True
                    container.tty = True

        return client.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=client.V1ObjectMeta(
                name=self.pod_name,
                namespace=self.namespace,
                labels={"app.kubernetes.io/managed-by": "cluster-build", **self.labels},
            ),
            spec=spec,
        )

    async def run(
        self,
        timeout: float,
        interactive: bool = False,
        sink: Optional[OutputSink] = None,
    ) -> PodRunResult:
        """
        Run the pod to completion.

        Args:
            timeout: Seconds to wait for all containers to terminate
            interactive: Allocate stdin and a TTY for the primary container
            sink: Receives primary container output while the pod runs

        Returns:
            PodRunResult. ``success`` reflects the primary container's exit
            code only; a timeout is a failure with the logs available so far.
        """
        manifest = self._manifest(interactive)
        log.debug(f"Creating pod {self.namespace}/{self.pod_name}")
        await self.api.create_pod(self.namespace, manifest)

        try:
            pod = await self._wait_for_termination(timeout, sink)
            timed_out = pod is None
            if timed_out:
                log.warning(
                    f"Pod {self.namespace}/{self.pod_name} did not finish within {timeout}s"
                )
            elif sink is not None:
                await self._forward_output(sink)

            combined_log = await self._collect_logs()
        finally:
            await self._delete()

        exit_code = None if timed_out else self._primary_exit_code(pod)
        log.debug(
            f"Pod {self.pod_name}: primary container {self.primary_container} "
            f"exit code {exit_code}"
        )

        return PodRunResult(
            success=exit_code == 0,
            combined_log=combined_log,
            timed_out=timed_out,
        )

    async def _wait_for_termination(
        self, timeout: float, sink: Optional[OutputSink]
    ) -> Optional[client.V1Pod]:
        """The terminated pod, or None once the timeout elapses."""
        # Bounds a hung status or log call as well as a pod that never finishes
        try:
            return await asyncio.wait_for(self._poll(sink), timeout)
        except asyncio.TimeoutError:
            return None

    async def _poll(self, sink: Optional[OutputSink]) -> client.V1Pod:
        while True:
            pod = await self.api.read_pod(self.namespace, self.pod_name)
            if self._is_terminated(pod):
                return pod

            if sink is not None:
                await self._forward_output(sink)

            await asyncio.sleep(self.poll_interval)

    def _is_terminated(self, pod: client.V1Pod) -> bool:
        status = pod.status
        if status is None:
            return False
        if status.phase in _TERMINAL_PHASES:
            return True

        statuses = status.container_statuses or []
        if len(statuses) < len(self.spec.containers):
            return False
        return all(s.state is not None and s.state.terminated for s in statuses)

    def _primary_exit_code(self, pod: client.V1Pod) -> Optional[int]:
        for status in pod.status.container_statuses or []:
            if status.name == self.primary_container:
                if status.state is not None and status.state.terminated:
                    return status.state.terminated.exit_code
        return None

    async def _read_log(self, container: str) -> str:
        try:
            return await self.api.read_pod_log(
                self.namespace, self.pod_name, container
            )
        except KubeApiError as e:
            # 400 while the container has not started yet
            if e.status in (400, 404):
                return ""
            raise

    async def _forward_output(self, sink: OutputSink) -> None:
        output = await self._read_log(self.primary_container)
        if len(output) > self._output_offset:
            sink.write(output[self._output_offset :])
            self._output_offset = len(output)

    async def _collect_logs(self) -> str:
        logs: List[str] = []
        for container in self.spec.containers:
            logs.append(await self._read_log(container.name))
        return "".join(logs)

    async def _delete(self) -> None:
        log.debug(f"Deleting pod {self.namespace}/{self.pod_name}")
        try:
            await self.api.delete_pod(self.namespace, self.pod_name)
        except KubeApiError as e:
            if not e.not_found:
                raise

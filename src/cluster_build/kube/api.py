"""
Async adapter over the Kubernetes Python client.

The client is blocking, so every call runs in a worker thread. API and
connection failures surface as ``KubeApiError`` (a ``TransportError``)
carrying the HTTP status when there is one.
"""

import asyncio
import logging
import threading
from typing import Callable, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream as k8s_stream
from urllib3.exceptions import HTTPError
from websocket import WebSocketException

from cluster_build.config import ProviderConfig
from cluster_build.constants import KUBE_REQUEST_TIMEOUT
from cluster_build.exceptions import TransportError
from cluster_build.models import ExecResult, PodHandle

log = logging.getLogger(__name__)


class KubeApiError(TransportError):
    """Kubernetes API call failed."""

    def __init__(self, message: str, status: Optional[int] = None, detail=None):
        super().__init__(message, detail)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404


def _wrap_error(action: str, e: Exception) -> KubeApiError:
    if isinstance(e, ApiException):
        return KubeApiError(
            f"Kubernetes API error while {action}: {e.status} {e.reason}",
            status=e.status,
            detail={"body": e.body},
        )
    return KubeApiError(f"Connection error while {action}: {e}")


class KubeApi:
    """Pod operations used by the build engine."""

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        request_timeout: float = KUBE_REQUEST_TIMEOUT,
    ):
        self.request_timeout = request_timeout
        # REST and streaming calls need separate ApiClient instances: the
        # stream helper patches the client it is given to use websockets.
        self._rest_api_client = api_client or client.ApiClient()
        self._stream_api_client = client.ApiClient(
            configuration=self._rest_api_client.configuration
        )
        self._core_api = client.CoreV1Api(api_client=self._rest_api_client)
        self._apps_api = client.AppsV1Api(api_client=self._rest_api_client)
        self._stream_core_api = client.CoreV1Api(api_client=self._stream_api_client)

    @classmethod
    def from_provider(cls, provider: ProviderConfig) -> "KubeApi":
        """Load in-cluster configuration, falling back to kubeconfig."""
        try:
            config.load_incluster_config()
            log.debug("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                config.load_kube_config(context=provider.kube_context)
                log.debug(
                    f"Loaded kubeconfig (context: {provider.kube_context or 'current'})"
                )
            except config.ConfigException as e:
                raise TransportError(
                    f"Failed to load Kubernetes configuration: {e}"
                ) from e
        return cls()

    async def _call(self, action: str, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(
                fn, *args, _request_timeout=self.request_timeout, **kwargs
            )
        except (ApiException, HTTPError, OSError) as e:
            raise _wrap_error(action, e) from e

    async def create_pod(self, namespace: str, pod: client.V1Pod) -> client.V1Pod:
        return await self._call(
            f"creating pod {pod.metadata.name}",
            self._core_api.create_namespaced_pod,
            namespace=namespace,
            body=pod,
        )

    async def read_pod(self, namespace: str, name: str) -> client.V1Pod:
        return await self._call(
            f"reading pod {name}",
            self._core_api.read_namespaced_pod,
            name=name,
            namespace=namespace,
        )

    async def delete_pod(self, namespace: str, name: str) -> None:
        await self._call(
            f"deleting pod {name}",
            self._core_api.delete_namespaced_pod,
            name=name,
            namespace=namespace,
            grace_period_seconds=0,
        )

    async def read_pod_log(self, namespace: str, name: str, container: str) -> str:
        logs = await self._call(
            f"reading logs of {name}/{container}",
            self._core_api.read_namespaced_pod_log,
            name=name,
            namespace=namespace,
            container=container,
        )
        return logs or ""

    async def get_running_pod_in_deployment(
        self, namespace: str, deployment_name: str
    ) -> Optional[PodHandle]:
        """Find a running pod backing a deployment, or None."""
        try:
            deployment = await self._call(
                f"reading deployment {deployment_name}",
                self._apps_api.read_namespaced_deployment,
                name=deployment_name,
                namespace=namespace,
            )
        except KubeApiError as e:
            if e.not_found:
                return None
            raise

        match_labels = deployment.spec.selector.match_labels or {}
        selector = ",".join(f"{k}={v}" for k, v in sorted(match_labels.items()))
        pods = await self._call(
            f"listing pods of {deployment_name}",
            self._core_api.list_namespaced_pod,
            namespace=namespace,
            label_selector=selector,
        )

        for pod in pods.items:
            if pod.status.phase == "Running" and not pod.metadata.deletion_timestamp:
                return PodHandle(namespace=namespace, name=pod.metadata.name)
        return None

    async def exec_command(
        self,
        pod: PodHandle,
        container: str,
        command: List[str],
        on_output: Callable[[str], None],
        stop_event: threading.Event,
    ) -> ExecResult:
        """Run a command in a container through the exec websocket.

        Output is passed to ``on_output`` as it arrives. Setting
        ``stop_event`` closes the connection; the remote process is not
        signalled.
        """
        try:
            return await asyncio.to_thread(
                self._exec_blocking, pod, container, command, on_output, stop_event
            )
        except (ApiException, HTTPError, OSError, WebSocketException) as e:
            raise _wrap_error(f"executing in {pod}", e) from e

    def _exec_blocking(
        self,
        pod: PodHandle,
        container: str,
        command: List[str],
        on_output: Callable[[str], None],
        stop_event: threading.Event,
    ) -> ExecResult:
        resp = k8s_stream(
            self._stream_core_api.connect_get_namespaced_pod_exec,
            name=pod.name,
            namespace=pod.namespace,
            container=container,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )

        stdout: List[str] = []
        stderr: List[str] = []

        def drain() -> None:
            if resp.peek_stdout():
                out = resp.read_stdout()
                stdout.append(out)
                on_output(out)
            if resp.peek_stderr():
                err = resp.read_stderr()
                stderr.append(err)
                on_output(err)

        try:
            while resp.is_open() and not stop_event.is_set():
                resp.update(timeout=1)
                drain()
            drain()

            if stop_event.is_set():
                return ExecResult(-1, "".join(stdout), "".join(stderr), command)

            try:
                exit_code = resp.returncode
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise TransportError(
                    f"Could not read exit status of command in {pod}",
                    {"command": command, "stderr": "".join(stderr)},
                ) from e
        finally:
            resp.close()

        return ExecResult(
            exit_code=exit_code if exit_code is not None else -1,
            stdout="".join(stdout),
            stderr="".join(stderr),
            command=command,
        )

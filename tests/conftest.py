"""
Test configuration and fixtures for cluster-build tests.

Provides shared fixtures for:
- Module and provider configurations
- A recording fake of the Kubernetes API adapter
- A recording fake of the local command runner
- A fake port-forward tunnel
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest

from cluster_build.config import (
    BuildMode,
    ClusterType,
    Module,
    ProviderConfig,
    RegistryConfig,
)
from cluster_build.kube.api import KubeApiError
from cluster_build.kube.port_forward import PortForward
from cluster_build.models import ExecResult, PodHandle

SYSTEM_NAMESPACE = "cluster-build-system"
TUNNEL_PORT = 40873


def container_state(exit_code: Optional[int]) -> SimpleNamespace:
    terminated = None if exit_code is None else SimpleNamespace(exit_code=exit_code)
    return SimpleNamespace(terminated=terminated)


def pod_status(phase: str, exit_codes: Dict[str, Optional[int]]) -> SimpleNamespace:
    """Build an object shaped like a V1Pod as far as the pod runner reads it."""
    return SimpleNamespace(
        status=SimpleNamespace(
            phase=phase,
            container_statuses=[
                SimpleNamespace(name=name, state=container_state(code))
                for name, code in exit_codes.items()
            ],
        )
    )


class FakeKubeApi:
    """Records pod operations and answers from canned state.

    Pods created through ``create_pod`` terminate on first read with the
    exit codes in ``exit_codes`` (default 0), unless ``never_terminates``
    is set.
    """

    def __init__(self):
        self.running: Dict[str, PodHandle] = {
            "docker-daemon": PodHandle(SYSTEM_NAMESPACE, "docker-daemon-7f9c"),
            "build-sync": PodHandle(SYSTEM_NAMESPACE, "build-sync-2b1d"),
        }
        self.exit_codes: Dict[str, int] = {}
        self.logs: Dict[str, str] = {}
        self.never_terminates = False
        self.read_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.exec_results: List = []

        self.created: List = []
        self.deleted: List[tuple] = []
        self.lookups: List[tuple] = []
        self.execs: List[SimpleNamespace] = []

    # Deployments

    async def get_running_pod_in_deployment(self, namespace, deployment_name):
        self.lookups.append((namespace, deployment_name))
        return self.running.get(deployment_name)

    # Pods

    async def create_pod(self, namespace, pod):
        self.created.append(pod)
        return pod

    @property
    def created_pod(self):
        assert len(self.created) == 1, f"expected one pod, got {len(self.created)}"
        return self.created[0]

    async def read_pod(self, namespace, name):
        if self.read_error is not None:
            raise self.read_error
        containers = [c.name for c in self.created[-1].spec.containers]
        if self.never_terminates:
            return pod_status("Running", {c: None for c in containers})
        codes = {c: self.exit_codes.get(c, 0) for c in containers}
        phase = "Succeeded" if all(code == 0 for code in codes.values()) else "Failed"
        return pod_status(phase, codes)

    async def read_pod_log(self, namespace, name, container):
        return self.logs.get(container, "")

    async def delete_pod(self, namespace, name):
        self.deleted.append((namespace, name))
        if self.delete_error is not None:
            raise self.delete_error

    # Exec

    async def exec_command(self, pod, container, command, on_output, stop_event):
        self.execs.append(
            SimpleNamespace(
                pod=pod, container=container, command=command, stop_event=stop_event
            )
        )
        result = self.exec_results.pop(0) if self.exec_results else ExecResult(0)
        if callable(result):
            return await result(on_output, stop_event)
        for chunk in (result.stdout, result.stderr):
            if chunk:
                on_output(chunk)
        result.command = command
        return result


class FakeRun:
    """Stands in for ``run_command``; answers by argument prefix."""

    def __init__(self):
        self.calls: List[SimpleNamespace] = []
        self._rules: List[tuple] = []

    def on(self, *prefix: str, results=None, hook: Optional[Callable] = None):
        """Answer commands starting with ``prefix`` with ``results`` in order.

        The last result repeats once the list is exhausted. A result may be an
        exception instance, which is raised instead.
        """
        self._rules.append((list(prefix), list(results or [ExecResult(0)]), hook))
        return self

    @property
    def commands(self) -> List[List[str]]:
        return [call.args for call in self.calls]

    def commands_starting_with(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.commands if c[: len(prefix)] == list(prefix)]

    async def __call__(self, args, cwd=None, timeout=None, sink=None, env=None):
        args = list(args)
        self.calls.append(
            SimpleNamespace(args=args, cwd=cwd, timeout=timeout, sink=sink, env=env)
        )
        for prefix, results, hook in self._rules:
            if args[: len(prefix)] != prefix:
                continue
            if hook is not None:
                hook(args)
            result = results.pop(0) if len(results) > 1 else results[0]
            if isinstance(result, Exception):
                raise result
            if sink is not None and result.output:
                sink.write(result.output)
            return ExecResult(result.exit_code, result.stdout, result.stderr, args)
        return ExecResult(0, command=args)


class FakeTunnel:
    """Stands in for ``port_forward``."""

    def __init__(self, local_port: int = TUNNEL_PORT):
        self.local_port = local_port
        self.opened: List[tuple] = []
        self.closed = 0

    @asynccontextmanager
    async def __call__(self, namespace, target, port, kube_context=None):
        self.opened.append((namespace, target, port, kube_context))
        try:
            yield PortForward(namespace, target, port, self.local_port)
        finally:
            self.closed += 1


def api_error(status: int) -> KubeApiError:
    return KubeApiError(f"HTTP {status}", status=status)


async def hang_forever(on_output, stop_event):
    """Exec behaviour of a command that never finishes."""
    on_output("partial output\n")
    await asyncio.sleep(3600)


@pytest.fixture(autouse=True)
def plain_output(monkeypatch: pytest.MonkeyPatch):
    """Keep Rich status lines out of test runs."""
    monkeypatch.delenv("CLUSTER_BUILD_RICH_UI", raising=False)


@pytest.fixture
def module_dir(tmp_path: Path) -> Path:
    """Module directory with a Dockerfile and a couple of sources."""
    path = tmp_path / "api"
    path.mkdir()
    (path / "Dockerfile").write_text("FROM busybox\nCOPY . /app\n")
    (path / "main.py").write_text("print('hello')\n")
    return path


@pytest.fixture
def module(module_dir: Path) -> Module:
    return Module(name="api", path=module_dir, version="v-1a2b3c")


@pytest.fixture
def module_without_dockerfile(tmp_path: Path) -> Module:
    path = tmp_path / "redis"
    path.mkdir()
    return Module(name="redis", path=path, version="v-9f8e7d", image="redis:7")


@pytest.fixture
def registry() -> RegistryConfig:
    return RegistryConfig(hostname="registry.example.com", namespace="team")


@pytest.fixture
def in_cluster_registry() -> RegistryConfig:
    return RegistryConfig(hostname="127.0.0.1:5000")


@pytest.fixture
def local_provider() -> ProviderConfig:
    return ProviderConfig(build_mode=BuildMode.LOCAL)


@pytest.fixture
def kind_provider() -> ProviderConfig:
    return ProviderConfig(
        build_mode=BuildMode.LOCAL,
        cluster_type=ClusterType.KIND,
        kind_cluster_name="dev",
    )


@pytest.fixture
def daemon_provider(registry: RegistryConfig) -> ProviderConfig:
    return ProviderConfig(
        build_mode=BuildMode.REMOTE_PERSISTENT_DAEMON,
        deployment_registry=registry,
        system_namespace=SYSTEM_NAMESPACE,
        app_namespace="shop",
        kube_context="dev-cluster",
    )


@pytest.fixture
def isolated_provider(registry: RegistryConfig) -> ProviderConfig:
    return ProviderConfig(
        build_mode=BuildMode.REMOTE_ISOLATED_BUILDER,
        deployment_registry=registry,
        system_namespace=SYSTEM_NAMESPACE,
        app_namespace="shop",
    )


@pytest.fixture
def in_cluster_isolated_provider(in_cluster_registry: RegistryConfig) -> ProviderConfig:
    return ProviderConfig(
        build_mode=BuildMode.REMOTE_ISOLATED_BUILDER,
        deployment_registry=in_cluster_registry,
        system_namespace=SYSTEM_NAMESPACE,
        app_namespace="shop",
    )


@pytest.fixture
def kube_api() -> FakeKubeApi:
    return FakeKubeApi()


@pytest.fixture
def fake_run() -> FakeRun:
    return FakeRun()


@pytest.fixture
def fake_tunnel() -> FakeTunnel:
    return FakeTunnel()

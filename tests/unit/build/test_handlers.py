"""Tests for the per-mode build handlers."""

import pytest

from conftest import SYSTEM_NAMESPACE, hang_forever
from cluster_build.build.context_sync import ContextSync
from cluster_build.build.handlers import (
    BuildContext,
    daemon_build_args,
    kaniko_args,
    local_build,
    local_status,
    remote_build,
)
from cluster_build.config import (
    BuildMode,
    ClusterType,
    Module,
    ProviderConfig,
    RegistryConfig,
)
from cluster_build.exceptions import BuildError, BuildTimeoutError
from cluster_build.models import ExecResult

WORKING_COPY = "wc-42"
CONTEXT_PATH = f"/build-staging/{WORKING_COPY}/api/"
DEPLOY_ID = "registry.example.com/team/api:v-1a2b3c"


@pytest.fixture
def ctx(kube_api, fake_run, fake_tunnel) -> BuildContext:
    return BuildContext(
        working_copy_id=WORKING_COPY,
        run=fake_run,
        api=kube_api,
        context_sync_factory=lambda api, wcid: ContextSync(
            api, wcid, run=fake_run, tunnel=fake_tunnel, min_delay=0
        ),
    )


class TestLocalHandlers:
    @pytest.mark.asyncio
    async def test_status_without_registry_checks_local_images(
        self, ctx, module, local_provider, fake_run
    ):
        status = await local_status(ctx, module, local_provider)

        assert status.ready is True
        assert fake_run.commands == [["docker", "image", "inspect", "api:v-1a2b3c"]]

    @pytest.mark.asyncio
    async def test_status_with_registry_probes_registry(
        self, ctx, module, registry, fake_run
    ):
        provider = ProviderConfig(build_mode=BuildMode.LOCAL, deployment_registry=registry)

        await local_status(ctx, module, provider)

        assert fake_run.commands == [["docker", "manifest", "inspect", DEPLOY_ID]]

    @pytest.mark.asyncio
    async def test_status_on_microk8s(self, ctx, module, fake_run):
        provider = ProviderConfig(cluster_type=ClusterType.MICROK8S)
        fake_run.on("microk8s", results=[ExecResult(0, stdout="")])

        status = await local_status(ctx, module, provider)

        assert status.ready is False

    @pytest.mark.asyncio
    async def test_build_loads_into_kind(self, ctx, module, kind_provider, fake_run):
        result = await local_build(ctx, module, kind_provider)

        assert fake_run.commands[-1] == [
            "kind", "load", "docker-image", "api:v-1a2b3c", "--name", "dev"
        ]
        assert result.fresh is True
        assert result.details is None

    @pytest.mark.asyncio
    async def test_build_pushes_to_registry(self, ctx, module, registry, fake_run):
        provider = ProviderConfig(deployment_registry=registry)

        result = await local_build(ctx, module, provider)

        assert fake_run.commands[1:] == [
            ["docker", "tag", "api:v-1a2b3c", DEPLOY_ID],
            ["docker", "push", DEPLOY_ID],
        ]
        assert result.details == {"identifier": DEPLOY_ID}


class TestPersistentDaemonBuild:
    @pytest.mark.asyncio
    async def test_syncs_builds_and_pushes(
        self, ctx, module, daemon_provider, kube_api, fake_run
    ):
        kube_api.exec_results = [
            ExecResult(0, stdout="Successfully built\n"),
            ExecResult(0, stdout="pushed\n"),
        ]

        result = await remote_build(ctx, module, daemon_provider)

        assert fake_run.commands[0][0] == "rsync"
        build, push = kube_api.execs
        assert build.container == "docker-daemon"
        assert build.command == [
            "docker",
            "build",
            "-t",
            DEPLOY_ID,
            "-f",
            CONTEXT_PATH + "Dockerfile",
            CONTEXT_PATH,
        ]
        assert push.command == ["/bin/sh", "-c", f"docker push {DEPLOY_ID}"]

        assert result.fresh is True
        assert result.fetched is False
        assert result.version == "v-1a2b3c"
        assert result.build_log == "Successfully built\npushed\n"
        assert result.details == {"identifier": DEPLOY_ID}

    @pytest.mark.asyncio
    async def test_build_failure_stops_before_push(
        self, ctx, module, daemon_provider, kube_api
    ):
        kube_api.exec_results = [ExecResult(1, stderr="COPY failed\n")]

        with pytest.raises(BuildError) as exc_info:
            await remote_build(ctx, module, daemon_provider)

        assert exc_info.value.detail["build_log"] == "COPY failed\n"
        assert len(kube_api.execs) == 1

    @pytest.mark.asyncio
    async def test_push_timeout_keeps_build_log(
        self, ctx, module, daemon_provider, kube_api, monkeypatch
    ):
        monkeypatch.setattr("cluster_build.build.handlers.PUSH_TIMEOUT", 0.05)
        kube_api.exec_results = [ExecResult(0, stdout="built\n"), hang_forever]

        with pytest.raises(BuildTimeoutError) as exc_info:
            await remote_build(ctx, module, daemon_provider)

        assert exc_info.value.detail["build_log"] == "built\npartial output\n"

    def test_buildkit_wraps_command(self, module, daemon_provider):
        provider = daemon_provider.model_copy(update={"enable_buildkit": True})

        args = daemon_build_args(module, provider, CONTEXT_PATH, DEPLOY_ID)

        assert args[:2] == ["/bin/sh", "-c"]
        assert args[2].startswith(f"DOCKER_BUILDKIT=1 docker build -t {DEPLOY_ID}")


class TestIsolatedBuilderBuild:
    @pytest.mark.asyncio
    async def test_builds_in_kaniko_pod(
        self, ctx, module, isolated_provider, kube_api, fake_run
    ):
        kube_api.logs = {"kaniko": "Pushed image\n"}

        result = await remote_build(ctx, module, isolated_provider)

        assert fake_run.commands[0][0] == "rsync"
        pod = kube_api.created_pod
        assert pod.metadata.namespace == SYSTEM_NAMESPACE
        assert pod.metadata.name.startswith("kaniko-shop-api-")
        [kaniko] = pod.spec.containers
        assert kaniko.command[0] == "/kaniko/executor"
        assert kaniko.resources.limits == {"cpu": "4000m", "memory": "8192Mi"}
        assert {m.mount_path for m in kaniko.volume_mounts} == {
            "/build-staging",
            "/kaniko/.docker",
        }
        assert kube_api.deleted == [(SYSTEM_NAMESPACE, pod.metadata.name)]

        assert result.build_log == "Pushed image\n"
        assert result.details == {"identifier": DEPLOY_ID}

    @pytest.mark.asyncio
    async def test_kaniko_failure(self, ctx, module, isolated_provider, kube_api):
        kube_api.exit_codes = {"kaniko": 1}
        kube_api.logs = {"kaniko": "error pushing image\n"}

        with pytest.raises(BuildError) as exc_info:
            await remote_build(ctx, module, isolated_provider)

        assert exc_info.value.detail["build_log"] == "error pushing image\n"
        assert len(kube_api.deleted) == 1

    @pytest.mark.asyncio
    async def test_in_cluster_registry_uses_proxy(
        self, ctx, module, in_cluster_isolated_provider, kube_api
    ):
        await remote_build(ctx, module, in_cluster_isolated_provider)

        pod = kube_api.created_pod
        assert [c.name for c in pod.spec.containers] == ["kaniko", "proxy", "support"]
        assert "--insecure" in pod.spec.containers[0].command[2]

    def test_kaniko_args(self, module_dir, isolated_provider):
        module = Module(
            name="api", path=module_dir, version="v1", target="prod", dockerfile="Dockerfile.prod"
        )

        args = kaniko_args(module, isolated_provider, CONTEXT_PATH, DEPLOY_ID)

        assert args == [
            "--context",
            f"dir://{CONTEXT_PATH}",
            "--dockerfile",
            "Dockerfile.prod",
            "--destination",
            DEPLOY_ID,
            "--cache=true",
            "--target",
            "prod",
        ]

    def test_kaniko_args_for_in_cluster_registry(self, module, in_cluster_isolated_provider):
        args = kaniko_args(
            module, in_cluster_isolated_provider, CONTEXT_PATH, "127.0.0.1:5000/_/api:v1"
        )
        assert "--insecure" in args

    def test_external_registry_is_not_in_cluster(self):
        assert not RegistryConfig(hostname="registry.example.com").is_in_cluster

"""Tests for the ephemeral pod runner."""

import asyncio
import re

import pytest
from kubernetes import client

from conftest import api_error
from cluster_build.core.utils.output import CollectingSink
from cluster_build.exceptions import TransportError
from cluster_build.kube.pod_runner import PodRunner, make_pod_name

NAMESPACE = "cluster-build-system"


def three_container_spec() -> client.V1PodSpec:
    return client.V1PodSpec(
        containers=[
            client.V1Container(name="kaniko", image="kaniko"),
            client.V1Container(name="proxy", image="socat"),
            client.V1Container(name="support", image="busybox"),
        ]
    )


def make_runner(api, **kwargs) -> PodRunner:
    return PodRunner(
        api=api,
        namespace=NAMESPACE,
        pod_name="kaniko-shop-api-0a1b2c3d",
        spec=three_container_spec(),
        primary_container="kaniko",
        poll_interval=0.01,
        **kwargs,
    )


class TestPodRunner:
    """Test PodRunner.run."""

    @pytest.mark.asyncio
    async def test_success_collects_logs_and_deletes_pod(self, kube_api):
        kube_api.logs = {"kaniko": "built\n", "proxy": "", "support": "proxy stopped\n"}

        result = await make_runner(kube_api).run(timeout=5)

        assert result.success is True
        assert result.timed_out is False
        assert result.combined_log == "built\nproxy stopped\n"
        assert kube_api.deleted == [(NAMESPACE, "kaniko-shop-api-0a1b2c3d")]

    @pytest.mark.asyncio
    async def test_primary_failure_fails_run(self, kube_api):
        kube_api.exit_codes = {"kaniko": 1}
        kube_api.logs = {"kaniko": "error building image\n"}

        result = await make_runner(kube_api).run(timeout=5)

        assert result.success is False
        assert "error building image" in result.combined_log
        assert len(kube_api.deleted) == 1

    @pytest.mark.asyncio
    async def test_sidecar_failure_does_not_fail_run(self, kube_api):
        kube_api.exit_codes = {"proxy": 137, "support": 1}

        result = await make_runner(kube_api).run(timeout=5)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_timeout_is_failure_and_still_deletes(self, kube_api):
        kube_api.never_terminates = True
        kube_api.logs = {"kaniko": "Step 1/9\n"}

        result = await make_runner(kube_api).run(timeout=0.05)

        assert result.success is False
        assert result.timed_out is True
        assert result.combined_log == "Step 1/9\n"
        assert len(kube_api.deleted) == 1

    @pytest.mark.asyncio
    async def test_hung_status_call_times_out_and_still_deletes(self, kube_api):
        """A status read that never returns is cut off by the run timeout."""

        async def read_pod_hangs(namespace, name):
            await asyncio.sleep(3600)

        kube_api.read_pod = read_pod_hangs
        kube_api.logs = {"kaniko": "Step 1/9\n"}

        result = await asyncio.wait_for(make_runner(kube_api).run(timeout=0.1), 10)

        assert result.timed_out is True
        assert result.success is False
        assert result.combined_log == "Step 1/9\n"
        assert kube_api.deleted == [(NAMESPACE, "kaniko-shop-api-0a1b2c3d")]

    @pytest.mark.asyncio
    async def test_api_error_propagates_and_still_deletes(self, kube_api):
        kube_api.read_error = api_error(500)

        with pytest.raises(TransportError):
            await make_runner(kube_api).run(timeout=5)

        assert len(kube_api.deleted) == 1

    @pytest.mark.asyncio
    async def test_pod_already_gone_on_delete(self, kube_api):
        kube_api.delete_error = api_error(404)

        result = await make_runner(kube_api).run(timeout=5)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_delete_failure_propagates(self, kube_api):
        kube_api.delete_error = api_error(403)

        with pytest.raises(TransportError):
            await make_runner(kube_api).run(timeout=5)

    @pytest.mark.asyncio
    async def test_forwards_primary_output_to_sink(self, kube_api):
        kube_api.logs = {"kaniko": "Step 1/2\nStep 2/2\n", "support": "ignored\n"}
        sink = CollectingSink()

        await make_runner(kube_api).run(timeout=5, sink=sink)

        assert sink.text == "Step 1/2\nStep 2/2\n"

    @pytest.mark.asyncio
    async def test_manifest(self, kube_api):
        runner = make_runner(kube_api, labels={"module": "api"})

        await runner.run(timeout=5, interactive=True)

        pod = kube_api.created_pod
        assert pod.metadata.name == "kaniko-shop-api-0a1b2c3d"
        assert pod.metadata.namespace == NAMESPACE
        assert pod.metadata.labels["module"] == "api"
        assert pod.metadata.labels["app.kubernetes.io/managed-by"] == "cluster-build"
        assert pod.spec.restart_policy == "Never"

        containers = {c.name: c for c in pod.spec.containers}
        assert containers["kaniko"].stdin is True
        assert containers["kaniko"].tty is True
        assert containers["proxy"].stdin is None

        # The runner's own spec is left untouched
        assert runner.spec.restart_policy is None
        assert runner.spec.containers[0].tty is None

    def test_rejects_unknown_primary_container(self, kube_api):
        with pytest.raises(ValueError, match="not in pod spec"):
            PodRunner(
                api=kube_api,
                namespace=NAMESPACE,
                pod_name="x",
                spec=three_container_spec(),
                primary_container="builder",
            )


class TestMakePodName:
    def test_is_dns_compliant_and_bounded(self):
        name = make_pod_name("skopeo", "My_Namespace", "a" * 80)

        assert len(name) <= 63
        assert re.fullmatch(r"[a-z0-9]([a-z0-9-]*[a-z0-9])?", name)
        assert name.startswith("skopeo-my-namespace-")

    def test_is_unique(self):
        names = {make_pod_name("kaniko", "shop", "api") for _ in range(20)}
        assert len(names) == 20

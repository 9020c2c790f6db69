"""In-cluster build services: lookups and shared volumes."""

from kubernetes import client

from cluster_build.config import ProviderConfig
from cluster_build.constants import (
    BUILD_SYNC_DEPLOYMENT,
    BUILD_SYNC_VOLUME,
    DOCKER_AUTH_SECRET,
    DOCKER_DAEMON_DEPLOYMENT,
)
from cluster_build.exceptions import InfrastructureNotFoundError
from cluster_build.kube.api import KubeApi
from cluster_build.models import PodHandle


async def get_running_pod(
    api: KubeApi, namespace: str, deployment_name: str, description: str
) -> PodHandle:
    """
    Look up a running pod of a deployment installed by the provider bootstrap.

    Raises:
        InfrastructureNotFoundError: If the deployment has no running pod
    """
    pod = await api.get_running_pod_in_deployment(namespace, deployment_name)
    if pod is None:
        raise InfrastructureNotFoundError(
            f"Could not find running {description}",
            {"deployment_name": deployment_name, "namespace": namespace},
        )
    return pod


async def get_builder_pod(api: KubeApi, provider: ProviderConfig) -> PodHandle:
    return await get_running_pod(
        api, provider.system_namespace, DOCKER_DAEMON_DEPLOYMENT, "image builder"
    )


async def get_sync_pod(api: KubeApi, provider: ProviderConfig) -> PodHandle:
    return await get_running_pod(
        api, provider.system_namespace, BUILD_SYNC_DEPLOYMENT, "build sync pod"
    )


def docker_auth_volume() -> client.V1Volume:
    """Registry credentials, mounted so builders can pull and push private images."""
    return client.V1Volume(
        name=DOCKER_AUTH_SECRET,
        secret=client.V1SecretVolumeSource(
            secret_name=DOCKER_AUTH_SECRET,
            items=[client.V1KeyToPath(key=".dockerconfigjson", path="config.json")],
        ),
    )


def build_sync_volume() -> client.V1Volume:
    """The staging volume the build sync service writes build contexts to."""
    return client.V1Volume(
        name=BUILD_SYNC_VOLUME,
        persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
            claim_name=BUILD_SYNC_VOLUME
        ),
    )

"""Kubernetes adapters: API calls, remote exec, ephemeral pods and tunnels."""

from .api import KubeApi, KubeApiError
from .exec import exec_in_pod
from .pod_runner import PodRunner, make_pod_name
from .port_forward import PortForward, port_forward

__all__ = [
    "KubeApi",
    "KubeApiError",
    "exec_in_pod",
    "PodRunner",
    "make_pod_name",
    "PortForward",
    "port_forward",
]

"""Run commands inside containers of already-running pods."""

import asyncio
import logging
import shlex
import threading
from typing import List, Optional

from cluster_build.core.utils.output import CollectingSink, OutputSink
from cluster_build.exceptions import BuildTimeoutError
from cluster_build.models import ExecResult, PodHandle

from .api import KubeApi

log = logging.getLogger(__name__)


async def exec_in_pod(
    api: KubeApi,
    pod: PodHandle,
    container: str,
    args: List[str],
    timeout: float,
    sink: Optional[OutputSink] = None,
) -> ExecResult:
    """
    Execute a command in a pod container and wait for it to finish.

    Args:
        api: Kubernetes API adapter
        pod: Target pod
        container: Container name within the pod
        args: Command argument vector
        timeout: Seconds to wait for the command
        sink: Receives output chunks as they arrive

    Returns:
        ExecResult; non-zero exit codes are data, classification is up to the caller

    Raises:
        BuildTimeoutError: If the command did not finish in time. The remote
            process may still be running.
        TransportError: If the pod cannot be reached
    """
    log.debug(f"Running in {pod}/{container}: {shlex.join(args)}")

    collected = CollectingSink(sink)
    stop_event = threading.Event()

    try:
        result = await asyncio.wait_for(
            api.exec_command(pod, container, args, collected.write, stop_event),
            timeout,
        )
    except asyncio.TimeoutError:
        stop_event.set()
        log.warning(f"Command in {pod}/{container} timed out after {timeout}s")
        raise BuildTimeoutError(
            f"Command in {pod} timed out after {timeout}s: {shlex.join(args)}",
            {"command": args, "pod": str(pod), "output": collected.text},
        )

    log.debug(f"Command in {pod}/{container} exited with code {result.exit_code}")
    return result

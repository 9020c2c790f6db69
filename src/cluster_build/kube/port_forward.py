"""
Local TCP tunnels to in-cluster services via ``kubectl port-forward``.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from cluster_build.exceptions import TransportError

log = logging.getLogger(__name__)

_FORWARDING_RE = re.compile(r"Forwarding from 127\.0\.0\.1:(\d+) ->")

FORWARD_START_TIMEOUT = 30


@dataclass
class PortForward:
    """An open tunnel."""

    namespace: str
    target: str
    remote_port: int
    local_port: int


def port_forward_args(
    namespace: str,
    target: str,
    port: int,
    kube_context: Optional[str] = None,
) -> List[str]:
    args = ["kubectl"]
    if kube_context:
        args += ["--context", kube_context]
    # Port 0 lets kubectl pick a free local port
    args += ["port-forward", "--namespace", namespace, target, f"0:{port}"]
    return args


@asynccontextmanager
async def port_forward(
    namespace: str,
    target: str,
    port: int,
    kube_context: Optional[str] = None,
) -> AsyncIterator[PortForward]:
    """
    Open a tunnel to ``target`` (e.g. ``deployment/build-sync``) for the
    duration of the context.

    Raises:
        TransportError: If kubectl exits or does not report a local port in time
    """
    args = port_forward_args(namespace, target, port, kube_context)
    log.debug(f"Opening port-forward to {namespace}/{target}:{port}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise TransportError("kubectl not found on PATH") from e

    try:
        local_port = await asyncio.wait_for(
            _read_local_port(proc), FORWARD_START_TIMEOUT
        )
    except asyncio.TimeoutError:
        await _terminate(proc)
        raise TransportError(
            f"Timed out opening port-forward to {namespace}/{target}:{port}",
            {"command": args},
        )
    except TransportError:
        await _terminate(proc)
        raise

    log.debug(f"Forwarding localhost:{local_port} -> {namespace}/{target}:{port}")
    # kubectl logs every handled connection; keep the pipe from filling up
    drain = asyncio.ensure_future(_drain(proc.stdout))
    try:
        yield PortForward(
            namespace=namespace, target=target, remote_port=port, local_port=local_port
        )
    finally:
        drain.cancel()
        await _terminate(proc)


async def _read_local_port(proc: asyncio.subprocess.Process) -> int:
    while True:
        line = await proc.stdout.readline()
        if not line:
            stderr = (await proc.stderr.read()).decode(errors="replace")
            raise TransportError(
                f"kubectl port-forward exited: {stderr.strip()}",
                {"stderr": stderr},
            )
        match = _FORWARDING_RE.search(line.decode(errors="replace"))
        if match:
            return int(match.group(1))


async def _drain(stream: asyncio.StreamReader) -> None:
    while await stream.readline():
        pass


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.terminate()
        await proc.wait()

"""Local subprocess execution with streaming output and timeouts."""

import asyncio
import codecs
import logging
import shlex
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from cluster_build.exceptions import BuildTimeoutError, ClusterBuildError
from cluster_build.models import ExecResult

from .output import CollectingSink, OutputSink

log = logging.getLogger(__name__)


async def _pump(stream: asyncio.StreamReader, collector: CollectingSink) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        collector.write(decoder.decode(chunk))
    tail = decoder.decode(b"", final=True)
    if tail:
        collector.write(tail)


async def run_command(
    args: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
    sink: Optional[OutputSink] = None,
    env: Optional[Dict[str, str]] = None,
) -> ExecResult:
    """
    Run a local command, capturing stdout and stderr separately.

    Args:
        args: Argument vector
        cwd: Working directory
        timeout: Seconds before the process is killed
        sink: Receives output chunks as they arrive
        env: Full environment for the process (inherits when None)

    Returns:
        ExecResult; a non-zero exit code is returned, not raised

    Raises:
        BuildTimeoutError: If the process did not finish within ``timeout``
        ClusterBuildError: If the executable does not exist
    """
    command = list(args)
    log.debug(f"Running: {shlex.join(command)}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ClusterBuildError(
            f"Command not found: {command[0]}", {"command": command}
        ) from e

    stdout = CollectingSink(sink)
    stderr = CollectingSink(sink)

    async def communicate() -> int:
        await asyncio.gather(_pump(proc.stdout, stdout), _pump(proc.stderr, stderr))
        return await proc.wait()

    try:
        exit_code = await asyncio.wait_for(communicate(), timeout)
    except asyncio.TimeoutError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise BuildTimeoutError(
            f"Command timed out after {timeout}s: {shlex.join(command)}",
            {"command": command, "output": stdout.text + stderr.text},
        )

    return ExecResult(
        exit_code=exit_code,
        stdout=stdout.text,
        stderr=stderr.text,
        command=command,
    )

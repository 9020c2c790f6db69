"""
Build context sync.

Remote builds read their context from a staging volume in the cluster. The
module's sources are pushed to the build sync service (an rsync daemon
writing to that volume) through a port-forward tunnel. The remote copy is
scoped by the caller's working copy id, since the volume is shared by every
user of the cluster.
"""

import logging
import posixpath
import tempfile
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional

from cluster_build.config import Module, ProviderConfig
from cluster_build.constants import (
    BUILD_STAGING_MOUNT,
    BUILD_SYNC_DEPLOYMENT,
    RSYNC_PORT,
    SYNC_MAX_ATTEMPTS,
    SYNC_MIN_BACKOFF,
)
from cluster_build.core.utils.process import run_command
from cluster_build.core.utils.retry import retry_with_backoff
from cluster_build.exceptions import (
    BuildTimeoutError,
    RetryExhaustedError,
    TransportError,
)
from cluster_build.kube.api import KubeApi
from cluster_build.kube.port_forward import port_forward

from .cluster import get_sync_pod

log = logging.getLogger(__name__)


class ContextSync:
    """Push module build contexts to the in-cluster staging volume."""

    def __init__(
        self,
        api: KubeApi,
        working_copy_id: str,
        run: Callable = run_command,
        tunnel: Callable = port_forward,
        max_attempts: int = SYNC_MAX_ATTEMPTS,
        min_delay: float = SYNC_MIN_BACKOFF,
    ):
        self.api = api
        self.working_copy_id = working_copy_id
        self._run = run
        self._tunnel = tunnel
        self.max_attempts = max_attempts
        self.min_delay = min_delay

    def remote_context_path(self, module: Module) -> str:
        """Where the module's context appears inside builder pods."""
        return (
            posixpath.join(BUILD_STAGING_MOUNT, self.working_copy_id, module.name) + "/"
        )

    def include_rules(self, module: Module) -> List[str]:
        """
        Anchored rsync include patterns for the module's include list.

        Parent directories are included so rsync recurses into them, which is
        what lets ``--delete`` reach files that were removed or dropped from
        the list. Directories in the list are included with their contents.
        """
        rules: List[str] = []

        def add(rule: str) -> None:
            if rule not in rules:
                rules.append(rule)

        for entry in module.include or []:
            rel = PurePosixPath(entry.strip("/"))
            if str(rel) in ("", "."):
                continue
            for parent in reversed(rel.parents):
                if str(parent) != ".":
                    add(f"/{parent}/")
            if (module.path / rel).is_dir():
                add(f"/{rel}/***")
            else:
                add(f"/{rel}")
        return rules

    def rsync_args(
        self, module: Module, local_port: int, include_from: Optional[Path] = None
    ) -> List[str]:
        destination = (
            f"rsync://localhost:{local_port}/volume/"
            f"{self.working_copy_id}/{module.name}/"
        )
        args = [
            "rsync",
            "--recursive",
            # Copy symlinks; they are sanitized on the staging side
            "--links",
            "--perms",
            "--times",
            "--compress",
            "--delete",
            # Create the session and module directories on first sync
            "--mkpath",
            "--temp-dir",
            "/tmp",
        ]
        if include_from is not None:
            # Everything outside the include list is removed from the remote copy
            args += [f"--include-from={include_from}", "--exclude=*", "--delete-excluded"]
        args += [f"{module.path}/", destination]
        return args

    async def sync(self, module: Module, provider: ProviderConfig) -> None:
        """
        Mirror the module's sources to the staging volume.

        Each rsync attempt is bounded by the module's build timeout.

        Raises:
            InfrastructureNotFoundError: If no build sync pod is running (not retried)
            TransportError: If the tunnel cannot be opened, or rsync keeps
                failing or timing out after the retry budget
        """
        await get_sync_pod(self.api, provider)

        async with self._tunnel(
            provider.system_namespace,
            f"deployment/{BUILD_SYNC_DEPLOYMENT}",
            RSYNC_PORT,
            provider.kube_context,
        ) as fwd:
            if module.include is None:
                await self._sync_with_retry(module, self.rsync_args(module, fwd.local_port))
                return

            with tempfile.TemporaryDirectory() as tmpdir:
                include_from = Path(tmpdir) / "include-from"
                include_from.write_text(
                    "".join(f"{rule}\n" for rule in self.include_rules(module))
                )
                await self._sync_with_retry(
                    module, self.rsync_args(module, fwd.local_port, include_from)
                )

    async def _sync_with_retry(self, module: Module, args: List[str]) -> None:
        log.debug(f"Syncing {module.path} to {args[-1]}")
        try:
            await retry_with_backoff(
                self._rsync,
                args,
                module.build_timeout,
                max_attempts=self.max_attempts,
                min_delay=self.min_delay,
                retryable_exceptions=(TransportError,),
            )
        except RetryExhaustedError as e:
            cause = e.__cause__
            detail = dict(cause.detail) if isinstance(cause, TransportError) else {}
            detail["attempts"] = self.max_attempts
            raise TransportError(
                f"Failed syncing build context for {module.name} "
                f"after {self.max_attempts} attempts: {cause}",
                detail,
            ) from cause

    async def _rsync(self, args: List[str], timeout: float) -> None:
        try:
            res = await self._run(args, timeout=timeout)
        except BuildTimeoutError as e:
            # Retried like any other transport failure
            raise TransportError(
                f"rsync timed out after {timeout}s",
                {"command": args, "output": e.detail.get("output", "")},
            ) from e
        if res.exit_code != 0:
            raise TransportError(
                f"rsync exited with code {res.exit_code}",
                {"command": args, "output": res.output},
            )

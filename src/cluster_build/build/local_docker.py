"""
Local docker operations.

Handles building images with the local docker CLI, pulling pre-built
images, pushing to a deployment registry and loading images into local
development clusters.
"""

import logging
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

from cluster_build.config import Module
from cluster_build.constants import PUSH_TIMEOUT
from cluster_build.core.utils.output import OutputSink
from cluster_build.core.utils.process import run_command
from cluster_build.exceptions import BuildError
from cluster_build.models import BuildResult, ExecResult

log = logging.getLogger(__name__)


class LocalDockerBuilder:
    """Build and move images with the local docker CLI."""

    def __init__(self, run: Callable = run_command):
        self._run = run

    async def _checked(
        self,
        args: List[str],
        what: str,
        timeout: Optional[float] = None,
        sink: Optional[OutputSink] = None,
        cwd: Optional[Path] = None,
    ) -> ExecResult:
        res = await self._run(args, cwd=cwd, timeout=timeout, sink=sink)
        if res.exit_code != 0:
            log.error(f"{what} failed:")
            log.error(res.stderr)
            raise BuildError(
                f"{what} failed: {res.output}",
                {"command": args, "build_log": res.output},
            )
        return res

    async def image_exists(self, image_id: str) -> bool:
        """Check whether an image exists in the local docker daemon."""
        res = await self._run(["docker", "image", "inspect", image_id])
        return res.exit_code == 0

    async def build(
        self, module: Module, sink: Optional[OutputSink] = None
    ) -> BuildResult:
        """
        Build the module's image locally.

        Raises:
            BuildError: If docker build exits non-zero
            BuildTimeoutError: If the build exceeds the module's build timeout
        """
        image_id = module.local_image_id
        dockerfile = module.path / module.dockerfile_name

        log.info(f"Building Docker image: {image_id}")
        log.debug(f"   Context: {module.path}")

        args = ["docker", "build", "-t", image_id, "-f", str(dockerfile)]
        args += module.build_flags()
        args.append(str(module.path))

        res = await self._checked(
            args,
            f"Building module {module.name}",
            timeout=module.build_timeout,
            sink=sink,
            cwd=module.path,
        )

        log.info(f"Image built successfully: {image_id}")
        return BuildResult(
            build_log=res.output,
            fetched=False,
            fresh=True,
            version=module.version,
        )

    async def fetch(self, module: Module) -> BuildResult:
        """Pull the module's declared image; nothing to do without one."""
        if not module.image:
            log.debug(f"Module {module.name} has no Dockerfile and no image, skipping")
            return BuildResult(version=module.version)

        log.info(f"Pulling image {module.image}")
        res = await self._checked(
            ["docker", "pull", module.image], f"Pulling image {module.image}"
        )
        return BuildResult(
            build_log=res.output, fetched=True, fresh=False, version=module.version
        )

    async def tag(self, source: str, target: str) -> None:
        log.debug(f"Tagging image: {source} -> {target}")
        await self._checked(["docker", "tag", source, target], f"Tagging {source}")

    async def push(self, image: str) -> ExecResult:
        log.info(f"Pushing to registry: {image}")
        return await self._checked(
            ["docker", "push", image], f"Pushing {image}", timeout=PUSH_TIMEOUT
        )

    async def load_into_kind(self, image_id: str, cluster_name: str) -> None:
        log.info(f"Loading image {image_id} into kind cluster {cluster_name}")
        await self._checked(
            ["kind", "load", "docker-image", image_id, "--name", cluster_name],
            f"Loading {image_id} into kind",
        )

    async def load_into_microk8s(self, image_id: str) -> None:
        log.info(f"Loading image {image_id} into microk8s")
        with tempfile.TemporaryDirectory() as tmpdir:
            archive = str(Path(tmpdir) / "image.tar")
            await self._checked(
                ["docker", "save", "-o", archive, image_id], f"Saving {image_id}"
            )
            await self._checked(
                ["microk8s", "ctr", "image", "import", archive],
                f"Importing {image_id} into microk8s",
            )

    async def microk8s_image_exists(self, image_id: str) -> bool:
        res = await self._checked(
            ["microk8s", "ctr", "image", "ls", "-q"], "Listing microk8s images"
        )
        for line in res.stdout.splitlines():
            ref = line.strip()
            if ref == image_id or ref.endswith(f"/{image_id}"):
                return True
        return False

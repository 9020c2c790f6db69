"""
Build mode dispatcher.

Main entry point of the build engine: routes status checks and builds to
the handlers of the provider's build mode.
"""

import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional

from cluster_build.config import BuildMode, Module, ProviderConfig
from cluster_build.core.utils.output import LogSink, OutputSink, StatusLineSink
from cluster_build.core.utils.process import run_command
from cluster_build.core.utils.rich_ui import is_rich_enabled
from cluster_build.exceptions import ClusterBuildError
from cluster_build.kube.api import KubeApi
from cluster_build.models import BuildResult, BuildStatus

from .context_sync import ContextSync
from .handlers import (
    BuildContext,
    daemon_status,
    isolated_builder_status,
    local_build,
    local_status,
    remote_build,
)

log = logging.getLogger(__name__)

StatusHandler = Callable[[BuildContext, Module, ProviderConfig], Awaitable[BuildStatus]]
BuildHandler = Callable[
    [BuildContext, Module, ProviderConfig, Optional[OutputSink]], Awaitable[BuildResult]
]

BUILD_STATUS_HANDLERS: Dict[BuildMode, StatusHandler] = {
    BuildMode.LOCAL: local_status,
    BuildMode.REMOTE_PERSISTENT_DAEMON: daemon_status,
    BuildMode.REMOTE_ISOLATED_BUILDER: isolated_builder_status,
}

# Both remote modes share the sync/build/push flow and differ only in how
# the image gets built and pushed.
BUILD_HANDLERS: Dict[BuildMode, BuildHandler] = {
    BuildMode.LOCAL: local_build,
    BuildMode.REMOTE_PERSISTENT_DAEMON: remote_build,
    BuildMode.REMOTE_ISOLATED_BUILDER: remote_build,
}


def _check_exhaustive(table: Mapping[BuildMode, object], name: str) -> None:
    missing = set(BuildMode) - set(table)
    if missing:
        raise RuntimeError(
            f"{name} has no handler for build modes: "
            f"{sorted(mode.value for mode in missing)}"
        )


_check_exhaustive(BUILD_STATUS_HANDLERS, "BUILD_STATUS_HANDLERS")
_check_exhaustive(BUILD_HANDLERS, "BUILD_HANDLERS")


class BuildDispatcher:
    """
    Decide whether a module's image exists, and build it when asked.

    Both operations resolve only once the underlying work has completed,
    failed or timed out. Repeated calls are not deduplicated.
    """

    def __init__(
        self,
        working_copy_id: str,
        api: Optional[KubeApi] = None,
        run: Callable = run_command,
        api_factory: Callable[[ProviderConfig], KubeApi] = KubeApi.from_provider,
        context_sync_factory: Callable[[KubeApi, str], ContextSync] = ContextSync,
        sink: Optional[OutputSink] = None,
    ):
        """
        Args:
            working_copy_id: Identifies the caller's working copy; scopes the
                remote staging paths so concurrent users do not collide
            api: Kubernetes API adapter (created from the provider on first use)
            run: Local command runner
            api_factory: Creates the API adapter when ``api`` is not given
            context_sync_factory: Creates the context sync for an API adapter
            sink: Receives build output (defaults to a status line or debug log)
        """
        self.ctx = BuildContext(
            working_copy_id=working_copy_id,
            run=run,
            api_factory=api_factory,
            context_sync_factory=context_sync_factory,
            api=api,
        )
        self.sink = sink

    async def get_build_status(
        self, module: Module, provider: ProviderConfig
    ) -> BuildStatus:
        if not module.has_dockerfile():
            # Nothing to build
            return BuildStatus(ready=True)

        handler = BUILD_STATUS_HANDLERS[provider.build_mode]
        try:
            return await handler(self.ctx, module, provider)
        except ClusterBuildError as e:
            e.add_context(module=module.name, build_mode=provider.build_mode.value)
            raise

    async def build(self, module: Module, provider: ProviderConfig) -> BuildResult:
        if not module.has_dockerfile():
            return await self.ctx.local.fetch(module)

        handler = BUILD_HANDLERS[provider.build_mode]
        sink = self.sink
        status_line = log_sink = None
        if sink is None:
            if is_rich_enabled():
                sink = status_line = StatusLineSink(f"Building {module.name}...")
            else:
                sink = log_sink = LogSink(log, prefix=f"[{module.name}] ")

        log.info(f"🔨 Building {module.name} ({provider.build_mode.value})")
        try:
            result = await handler(self.ctx, module, provider, sink)
        except ClusterBuildError as e:
            e.add_context(module=module.name, build_mode=provider.build_mode.value)
            raise
        finally:
            if status_line is not None:
                status_line.close()
            if log_sink is not None:
                log_sink.flush()

        log.info(f"✅ Built {module.name} ({module.version})")
        return result


async def get_build_status(
    module: Module, provider: ProviderConfig, working_copy_id: str
) -> BuildStatus:
    """Convenience function to check a module's build status."""
    return await BuildDispatcher(working_copy_id).get_build_status(module, provider)


async def build_module(
    module: Module, provider: ProviderConfig, working_copy_id: str
) -> BuildResult:
    """
    Convenience function to build a module's image.

    Example:
        >>> provider = ProviderConfig.from_environment()
        >>> result = await build_module(module, provider, working_copy_id="abc123")
        >>> print(result.version)
    """
    return await BuildDispatcher(working_copy_id).build(module, provider)

"""Custom exceptions for cluster_build.

Every error carries a ``detail`` mapping with the diagnostic context
(command, captured output, namespace, ...) so user-visible failures can
always show the log collected up to the point of failure.
"""

from typing import Any, Dict, Optional


class ClusterBuildError(Exception):
    """Base exception for build orchestration errors."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    def add_context(self, **context: Any) -> "ClusterBuildError":
        """Merge extra context into the detail mapping without overwriting."""
        for key, value in context.items():
            self.detail.setdefault(key, value)
        return self

    def __str__(self) -> str:
        return self.message


class ConfigInvariantError(ClusterBuildError):
    """Raised when configuration that should have been validated upstream is missing."""

    pass


class InfrastructureNotFoundError(ClusterBuildError):
    """Raised when an expected in-cluster deployment has no running pod."""

    pass


class RemoteCommandError(ClusterBuildError):
    """Raised when a remote tool exits non-zero for an unrecognised reason."""

    pass


class TransportError(ClusterBuildError):
    """Raised on connection, tunnel or transfer failures."""

    pass


class BuildTimeoutError(ClusterBuildError, TimeoutError):
    """Raised when an operation exceeds its allotted duration.

    The remote process may still be running; callers should treat the
    outcome as indeterminate.
    """

    pass


class BuildError(ClusterBuildError):
    """Raised when an image build or push fails."""

    pass


class RetryExhaustedError(ClusterBuildError):
    """Raised when max retry attempts are exceeded."""

    pass

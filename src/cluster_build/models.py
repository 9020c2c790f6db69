"""Result types produced by the build engine. None of them are persisted here."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class BuildStatus:
    """Whether the module's image already exists where it is needed."""

    ready: bool


@dataclass
class BuildResult:
    """Result of one build call."""

    build_log: str = ""
    fetched: bool = False
    fresh: bool = False
    version: Optional[str] = None
    details: Optional[Dict[str, str]] = None


@dataclass
class ExecResult:
    """Captured result of a command, local or remote."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    command: List[str] = field(default_factory=list)

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


@dataclass
class PodRunResult:
    """Result of an ephemeral pod run."""

    success: bool
    combined_log: str = ""
    timed_out: bool = False


@dataclass
class ProbeResult:
    """Whether an image reference exists in its registry."""

    present: bool


@dataclass(frozen=True)
class PodHandle:
    """Identity of a running pod."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

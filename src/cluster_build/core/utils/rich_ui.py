"""
Rich UI components for log output and build progress display.
"""

import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.status import Status


def is_rich_enabled() -> bool:
    """Check if Rich UI should be enabled based on environment"""
    return os.environ.get("CLUSTER_BUILD_RICH_UI", "false").lower() in (
        "true",
        "1",
        "yes",
    )


_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


class RichLoggingFilter(logging.Filter):
    """Filter to suppress verbose third-party logs when Rich UI is active"""

    def filter(self, record):
        # The kubernetes client and websocket layer log every request at DEBUG/INFO
        if record.levelno <= logging.INFO and record.name.startswith(
            ("urllib3", "kubernetes", "websocket")
        ):
            return False
        if record.levelno <= logging.DEBUG:
            return False
        return True


def get_rich_handler() -> logging.Handler:
    """Get Rich logging handler writing to the shared console"""
    handler = RichHandler(
        console=get_console(),
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.addFilter(RichLoggingFilter())
    return handler


def render_output_line(line: str, max_width: int = 120) -> str:
    """Collapse a raw build output line into something fit for a status line."""
    line = line.replace("\r", "").strip()
    if len(line) > max_width:
        line = line[: max_width - 3] + "..."
    return escape(line)


def start_status(message: str) -> Status:
    """Start a spinner status line on the shared console."""
    status = get_console().status(escape(message), spinner="dots")
    status.start()
    return status

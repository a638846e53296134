from __future__ import annotations

from verifyflow.channels.base import (
    REDACTED,
    TIMEOUT_EXIT_STATUS,
    CommandChannel,
    CommandResult,
    render_script,
)
from verifyflow.channels.docker import DockerChannel
from verifyflow.channels.local import LocalChannel
from verifyflow.channels.ssh import SSHChannel

__all__ = [
    "CommandChannel",
    "CommandResult",
    "DockerChannel",
    "LocalChannel",
    "REDACTED",
    "SSHChannel",
    "TIMEOUT_EXIT_STATUS",
    "render_script",
]

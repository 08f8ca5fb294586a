"""
Configuration file generation for the target system.

This module provides common utilities for writing files into the mounted
target root.
"""
import logging
from typing import Optional, Union

from fortress.utils.command import CommandRunner
from fortress.core.mount import target_path

logger = logging.getLogger('fortress')


def write_target_file(
    target: str,
    path: str,
    content: Union[str, bytes],
    cmd_runner: CommandRunner,
    mode: Optional[int] = None
) -> str:
    """
    Write a file of the installed system, creating parent directories.

    Args:
        target: Target root directory
        path: Absolute path inside the installed system (e.g. /etc/fstab)
        content: File content
        cmd_runner: CommandRunner instance for executing commands
        mode: Optional permission bits

    Returns:
        The host path written
    """
    host_path = target_path(target, path)
    cmd_runner.write_file(host_path, content, mode)
    logger.debug(f"Wrote {path} in target")
    return host_path

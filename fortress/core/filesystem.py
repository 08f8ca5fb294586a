"""
Filesystem creation module.

This module detects and creates the filesystems of an installation: vfat on
the EFI partition, ext4 on boot and on the two encrypted volumes, and the swap
signature.
"""
import logging
import subprocess
from typing import Optional

from fortress.utils.command import CommandRunner
from fortress.core.exceptions import FilesystemError

logger = logging.getLogger('fortress')

MKFS_COMMANDS = {
    "vfat": lambda device, label: ["mkfs.vfat", "-F32", "-n", label, device],
    "ext4": lambda device, label: ["mkfs.ext4", "-F", "-L", label, device],
    "swap": lambda device, label: ["mkswap", "-L", label, device],
}


def filesystem_type(device: str, cmd_runner: CommandRunner) -> Optional[str]:
    """
    Return the filesystem type blkid reports for a device.

    An absent device, or one without a recognised signature, yields None.
    """
    if not cmd_runner.is_block_device(device):
        return None
    result = cmd_runner.query(["blkid", "-o", "value", "-s", "TYPE", device])
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def has_filesystem(device: str, cmd_runner: CommandRunner) -> bool:
    return filesystem_type(device, cmd_runner) is not None


def create_filesystem(filesystem: str, device: str, label: str, cmd_runner: CommandRunner) -> bool:
    """
    Create a filesystem on a device that does not carry one yet.

    Args:
        filesystem: Type of filesystem to create (vfat, ext4, swap)
        device: Device path to create filesystem on
        label: Label for the filesystem
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        True if the filesystem was created, False if one already existed

    Raises:
        FilesystemError: If the type is unsupported or mkfs fails
    """
    if filesystem not in MKFS_COMMANDS:
        raise FilesystemError(f"Unsupported filesystem type: {filesystem}")

    existing = filesystem_type(device, cmd_runner)
    if existing:
        logger.info(f"{device} already has a {existing} filesystem, skipping")
        return False

    try:
        cmd_runner.run(MKFS_COMMANDS[filesystem](device, label))
    except subprocess.CalledProcessError as e:
        raise FilesystemError(f"Failed to create {filesystem} filesystem on {device}: {e}")

    logger.info(f"Created {filesystem} filesystem on {device}")
    return True


def _blkid_value(device: str, tag: str, cmd_runner: CommandRunner) -> str:
    try:
        result = cmd_runner.run(["blkid", "-s", tag, "-o", "value", device])
    except subprocess.CalledProcessError as e:
        raise FilesystemError(f"Could not read {tag} of {device}: {e}")
    value = result.stdout.strip()
    if not value:
        raise FilesystemError(f"{device} has no {tag}")
    return value


def get_uuid(device: str, cmd_runner: CommandRunner) -> str:
    """
    Return the filesystem or LUKS UUID of a device.

    Raises:
        FilesystemError: If blkid reports no UUID
    """
    return _blkid_value(device, "UUID", cmd_runner)


def get_partuuid(device: str, cmd_runner: CommandRunner) -> str:
    """
    Return the GPT partition UUID of a partition.

    Raises:
        FilesystemError: If blkid reports no PARTUUID
    """
    return _blkid_value(device, "PARTUUID", cmd_runner)

"""
Disk information and validation module.

This module provides the TargetDisk identity used throughout a run, together
with functions for querying disk information and enumerating candidate disks.
"""
import os
import logging
from dataclasses import dataclass
from typing import List, Optional

from fortress.utils.command import CommandRunner
from fortress.utils.types import BlockDeviceEntry, DiskInfo, PartitionRole, PARTITION_ORDER
from fortress.utils.format import GIB, TermColors, colorize
from fortress.core.exceptions import DiskNotFoundError

logger = logging.getLogger('fortress')

# Devices tried in order when no disk is given
PREFERRED_DISKS = ("/dev/vda", "/dev/sda", "/dev/nvme0n1")


@dataclass(frozen=True)
class TargetDisk:
    """The block device an installation attempt writes to."""
    path: str
    size_bytes: int = 0
    partition_separator: str = ""

    @classmethod
    def for_path(cls, path: str, size_bytes: int = 0) -> "TargetDisk":
        return cls(path=path, size_bytes=size_bytes, partition_separator=partition_separator_for(path))

    @property
    def size_gib(self) -> float:
        return self.size_bytes / GIB

    def partition_number(self, role: PartitionRole) -> int:
        return PARTITION_ORDER.index(role) + 1

    def partition(self, role: PartitionRole) -> str:
        """Device path of the partition holding a role."""
        return f"{self.path}{self.partition_separator}{self.partition_number(role)}"

    @property
    def last_partition(self) -> str:
        return self.partition(PARTITION_ORDER[-1])


def partition_separator_for(disk: str) -> str:
    """
    Return the token placed between the disk name and a partition number.

    Devices whose name ends in a digit (nvme0n1, mmcblk0, loop0) need a "p"
    separator, SATA/virtio style names (sda, vda) do not.
    """
    name = os.path.basename(disk)
    return "p" if name[-1:].isdigit() else ""


def read_sysfs_value(path: str, cmd_runner: CommandRunner, default: str = "") -> str:
    """
    Safely read a value from sysfs.

    Args:
        path: Path to the sysfs file
        cmd_runner: CommandRunner instance used for file access
        default: Default value if file doesn't exist or can't be read

    Returns:
        Content of the file as string or default
    """
    value = cmd_runner.read_text(path)
    return value.strip() if value is not None else default


def is_disk_available(disk: str, cmd_runner: CommandRunner) -> bool:
    """
    Check if the disk exists and is a whole-disk block device.

    Args:
        disk: Path to the disk device
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        True if disk exists and is a block device, False otherwise
    """
    if not cmd_runner.is_block_device(disk):
        return False

    result = cmd_runner.query(["lsblk", "-dn", "-o", "TYPE", disk])
    if result.returncode != 0:
        # lsblk unavailable: a block device is the best evidence we have
        return True
    return result.stdout.strip().lower() in ("disk", "loop")


def get_disk_size(disk: str, cmd_runner: CommandRunner) -> int:
    """
    Return the capacity of a disk in bytes, or 0 if it cannot be determined.

    Args:
        disk: Path to the disk device
        cmd_runner: CommandRunner instance for executing commands
    """
    result = cmd_runner.query(["blockdev", "--getsize64", disk])
    if result.returncode == 0 and result.stdout.strip().isdigit():
        return int(result.stdout.strip())

    # Fall back to lsblk byte output
    result = cmd_runner.query(["lsblk", "-bdn", "-o", "SIZE", disk])
    if result.returncode == 0 and result.stdout.strip().isdigit():
        return int(result.stdout.strip())

    logger.warning(colorize(f"Could not determine size of {disk}",
                            TermColors.WARNING, cmd_runner.colored_output))
    return 0


def get_disk_info(disk: str, cmd_runner: CommandRunner) -> DiskInfo:
    """
    Get information about the disk.

    Args:
        disk: Path to the disk device
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        DiskInfo object containing disk information

    Raises:
        DiskNotFoundError: If disk is not found
    """
    if not is_disk_available(disk, cmd_runner):
        raise DiskNotFoundError(f"Disk {disk} not found or is not a block device")

    disk_name = os.path.basename(disk)
    size_bytes = get_disk_size(disk, cmd_runner)

    rotational = read_sysfs_value(f"/sys/block/{disk_name}/queue/rotational", cmd_runner, "1")

    result = cmd_runner.query(["lsblk", "-dn", "-o", "MODEL", disk])
    model = result.stdout.strip() if result.returncode == 0 else ""

    return DiskInfo(
        size_bytes=size_bytes,
        size_gib=size_bytes / GIB,
        rotational=rotational == "1",
        nvme="nvme" in disk_name.lower(),
        model=model or "Unknown",
    )


def load_target_disk(disk: str, cmd_runner: CommandRunner) -> TargetDisk:
    """
    Build the TargetDisk for a run.

    A missing device is not an error here: the state detector reports it as
    the NO_DISK phase, so the identity is returned with a zero capacity.
    """
    size_bytes = get_disk_size(disk, cmd_runner) if cmd_runner.is_block_device(disk) else 0
    return TargetDisk.for_path(disk, size_bytes)


def list_disks(cmd_runner: CommandRunner) -> List[BlockDeviceEntry]:
    """
    Enumerate whole-disk block devices.

    Returns:
        List of entries with path, size and model, empty if lsblk fails
    """
    result = cmd_runner.query(["lsblk", "-bdnp", "-o", "NAME,TYPE,SIZE,MODEL"])
    if result.returncode != 0:
        return []

    disks: List[BlockDeviceEntry] = []
    for line in result.stdout.splitlines():
        fields = line.split(None, 3)
        if len(fields) < 3 or fields[1] != "disk":
            continue
        disks.append(BlockDeviceEntry(
            path=fields[0],
            size_bytes=int(fields[2]) if fields[2].isdigit() else 0,
            model=fields[3].strip() if len(fields) > 3 else "",
        ))
    return disks


def auto_select_disk(cmd_runner: CommandRunner, requested: Optional[str] = None) -> Optional[str]:
    """
    Pick the target disk when the operator did not name one explicitly.

    Args:
        cmd_runner: CommandRunner instance for executing commands
        requested: Disk named by the operator, kept as-is when given

    Returns:
        The chosen device path, or None when no candidate exists
    """
    if requested:
        return requested

    for candidate in PREFERRED_DISKS:
        if cmd_runner.is_block_device(candidate):
            logger.info(f"Auto-selected disk {candidate}")
            return candidate

    disks = list_disks(cmd_runner)
    if len(disks) == 1:
        logger.info(f"Auto-selected the only disk present: {disks[0]['path']}")
        return disks[0]["path"]

    return None

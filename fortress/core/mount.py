"""
Filesystem mounting module.

This module handles the mount plan of the target system, swap activation and
the recursive unmount used by teardown.
"""
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Tuple

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.utils.types import MountOptions, PartitionRole
from fortress.core.disk import TargetDisk
from fortress.core.encryption import HOME_MAPPING, ROOT_MAPPING, mapper_path
from fortress.core.exceptions import MountError

logger = logging.getLogger('fortress')

# Options written to the target fstab
MOUNT_OPTIONS: MountOptions = {
    "/": "defaults,noatime",
    "/boot": "defaults,noatime,nodev,nosuid",
    "/boot/efi": "umask=0077,nodev,nosuid,noexec",
    "/home": "defaults,noatime,nodev,nosuid",
}


@dataclass(frozen=True)
class MountEntry:
    """One filesystem of the target, relative to the target root"""
    source: str
    mount_point: str
    fstype: str
    options: str
    passno: int

    def path_under(self, target: str) -> str:
        return target_path(target, self.mount_point)


def target_path(target: str, mount_point: str) -> str:
    """Join a mount point of the installed system onto the target root."""
    if mount_point == "/":
        return target
    return os.path.join(target, mount_point.lstrip("/"))


def build_mount_plan(disk: TargetDisk) -> Tuple[MountEntry, ...]:
    """
    Return the target filesystems in mount order.

    Root comes first, then boot, then the EFI partition inside boot, then
    home; each entry's mount point lives on a filesystem mounted before it.
    """
    return (
        MountEntry(mapper_path(ROOT_MAPPING), "/", "ext4", MOUNT_OPTIONS["/"], 1),
        MountEntry(disk.partition(PartitionRole.BOOT), "/boot", "ext4", MOUNT_OPTIONS["/boot"], 2),
        MountEntry(disk.partition(PartitionRole.EFI), "/boot/efi", "vfat", MOUNT_OPTIONS["/boot/efi"], 2),
        MountEntry(mapper_path(HOME_MAPPING), "/home", "ext4", MOUNT_OPTIONS["/home"], 2),
    )


def is_mounted(path: str, cmd_runner: CommandRunner) -> bool:
    """Return True if path is an active mount point."""
    return cmd_runner.succeeds(["mountpoint", "-q", path])


def mount(source: str, path: str, cmd_runner: CommandRunner,
          options: Optional[str] = None, fstype: Optional[str] = None) -> None:
    """
    Mount a filesystem.

    Raises:
        MountError: If mount command fails
    """
    cmd = ["mount"]
    if fstype:
        cmd += ["-t", fstype]
    if options:
        cmd += ["-o", options]
    cmd += [source, path]

    try:
        cmd_runner.run(cmd)
    except subprocess.CalledProcessError as e:
        raise MountError(f"Failed to mount {source} to {path}: {e}")
    logger.info(colorize(f"Mounted {source} to {path}", TermColors.SUCCESS, cmd_runner.colored_output))


def mount_filesystems(plan: Tuple[MountEntry, ...], target: str, cmd_runner: CommandRunner) -> List[str]:
    """
    Mount every entry of the plan that is not already mounted.

    Args:
        plan: Entries in mount order
        target: Target root directory
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        Paths mounted by this call, in mount order

    Raises:
        MountError: If a filesystem cannot be mounted
    """
    mounted = []
    for entry in plan:
        path = entry.path_under(target)
        if is_mounted(path, cmd_runner):
            logger.debug(f"{path} already mounted")
            continue
        cmd_runner.make_dirs(path)
        mount(entry.source, path, cmd_runner)
        mounted.append(path)

    logger.info(colorize("All filesystems mounted", TermColors.SUCCESS, cmd_runner.colored_output))
    return mounted


def _decode_mount_field(field: str) -> str:
    # /proc/self/mounts escapes whitespace and backslashes as octal
    for code, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(code, char)
    return field


def mounts_under(path: str, cmd_runner: CommandRunner) -> List[str]:
    """
    List active mount points at or below path, deepest first.

    Returns:
        Mount point paths ordered so that each can be unmounted before its parent
    """
    path = os.path.normpath(path)
    table = cmd_runner.read_text("/proc/self/mounts") or ""
    prefix = path.rstrip("/") + "/"
    found = []
    for line in table.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        mount_point = _decode_mount_field(fields[1])
        if (mount_point == path or mount_point.startswith(prefix)) and mount_point not in found:
            found.append(mount_point)
    return sorted(found, key=lambda p: p.count("/"), reverse=True)


def unmount_recursive(path: str, cmd_runner: CommandRunner) -> bool:
    """
    Unmount path and everything mounted below it.

    Falls back to a lazy unmount when a filesystem is busy.

    Returns:
        True if anything was unmounted, False if nothing was mounted

    Raises:
        MountError: If mounts remain after the lazy fallback
    """
    if not mounts_under(path, cmd_runner):
        return False

    if is_mounted(path, cmd_runner):
        try:
            cmd_runner.run(["umount", "-R", path])
        except subprocess.CalledProcessError:
            logger.warning(colorize(f"{path} is busy, falling back to lazy unmount",
                                    TermColors.WARNING, cmd_runner.colored_output))
            cmd_runner.run(["umount", "-R", "-l", path], check=False)

    # Mounts left below an unmounted root, deepest first
    for remaining in mounts_under(path, cmd_runner):
        cmd_runner.run(["umount", "-l", remaining], check=False)

    leftovers = [] if cmd_runner.simulating else mounts_under(path, cmd_runner)
    if leftovers:
        raise MountError(f"Could not unmount: {', '.join(leftovers)}")

    logger.info(f"Unmounted everything under {path}")
    return True


def is_swap_active(device: str, cmd_runner: CommandRunner) -> bool:
    """Return True if device is listed in /proc/swaps."""
    swaps = cmd_runner.read_text("/proc/swaps") or ""
    for line in swaps.splitlines()[1:]:
        fields = line.split()
        if not fields:
            continue
        active = fields[0]
        if active == device or os.path.realpath(active) == os.path.realpath(device):
            return True
    return False


def activate_swap(device: str, cmd_runner: CommandRunner) -> bool:
    """
    Enable swap on a device if it is not already active.

    Returns:
        True if swap was enabled by this call

    Raises:
        MountError: If swapon fails
    """
    if is_swap_active(device, cmd_runner):
        return False
    try:
        cmd_runner.run(["swapon", device])
    except subprocess.CalledProcessError as e:
        raise MountError(f"Failed to activate swap on {device}: {e}")
    logger.info(f"Activated swap on {device}")
    return True


def deactivate_swap(device: str, cmd_runner: CommandRunner) -> bool:
    """
    Disable swap on a device if it is active.

    Returns:
        True if swap was disabled by this call

    Raises:
        MountError: If swapoff fails
    """
    if not is_swap_active(device, cmd_runner):
        return False
    try:
        cmd_runner.run(["swapoff", device])
    except subprocess.CalledProcessError as e:
        raise MountError(f"Failed to deactivate swap on {device}: {e}")
    logger.info(f"Deactivated swap on {device}")
    return True

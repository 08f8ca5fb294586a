"""
fstab generation for the target system.
"""
import logging
from typing import List, Tuple

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.core.disk import TargetDisk
from fortress.core.exceptions import FilesystemError, FstabError
from fortress.core.filesystem import get_uuid
from fortress.core.mount import build_mount_plan
from fortress.config import write_target_file

logger = logging.getLogger('fortress')

# The swap partition is re-encrypted with a random key on every boot
SWAP_MAPPING = "swap"

FstabLine = Tuple[str, str, str, str, int, int]


def render_fstab(lines: List[FstabLine]) -> str:
    """Format fstab entries into aligned columns."""
    rows = ["# <device>  <dir>  <type>  <options>  <dump>  <pass>"]
    for spec, mount_point, fstype, options, dump, passno in lines:
        rows.append(f"{spec:<42} {mount_point:<10} {fstype:<6} {options:<32} {dump} {passno}")
    return "\n".join(rows) + "\n"


def build_fstab_lines(disk: TargetDisk, cmd_runner: CommandRunner) -> List[FstabLine]:
    """
    Collect fstab entries for every filesystem of the mount plan.

    Raises:
        FstabError: If a filesystem UUID cannot be read
    """
    lines: List[FstabLine] = []
    try:
        for entry in build_mount_plan(disk):
            uuid = get_uuid(entry.source, cmd_runner)
            lines.append((f"UUID={uuid}", entry.mount_point, entry.fstype, entry.options, 0, entry.passno))
    except FilesystemError as e:
        raise FstabError(f"Cannot generate fstab: {e}")

    lines.append((f"/dev/mapper/{SWAP_MAPPING}", "none", "swap", "defaults", 0, 0))
    lines.append(("tmpfs", "/tmp", "tmpfs", "defaults,nosuid,nodev", 0, 0))
    return lines


def generate_fstab(disk: TargetDisk, target: str, cmd_runner: CommandRunner) -> str:
    """
    Write /etc/fstab of the target, replacing any previous version.

    Returns:
        Host path of the written file

    Raises:
        FstabError: If the file cannot be generated
    """
    content = render_fstab(build_fstab_lines(disk, cmd_runner))
    try:
        path = write_target_file(target, "/etc/fstab", content, cmd_runner)
    except OSError as e:
        raise FstabError(f"Cannot write fstab: {e}")
    logger.info(colorize("fstab generated", TermColors.SUCCESS, cmd_runner.colored_output))
    return path

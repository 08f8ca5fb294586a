"""
Chroot helpers.

Commands that configure the installed system run inside a chroot of the
target root, which needs the kernel pseudo filesystems bound into it.
"""
import logging
import subprocess
from contextlib import contextmanager
from typing import Iterator, List, Sequence

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.core.exceptions import MountError
from fortress.core.mount import is_mounted, target_path

logger = logging.getLogger('fortress')

# Recursively bound from the host, in mount order
BIND_FILESYSTEMS = ("/dev", "/proc", "/sys")


def chroot_command(target: str, argv: Sequence[str]) -> List[str]:
    """Wrap a command so it runs inside the target root."""
    return ["chroot", target, *argv]


def mount_pseudo_filesystems(target: str, cmd_runner: CommandRunner) -> List[str]:
    """
    Bind /dev, /proc and /sys into the target and mount a tmpfs on /run.

    Args:
        target: Target root, which must already be mounted
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        Paths mounted by this call, in mount order

    Raises:
        MountError: If the target root is not mounted or a mount fails
    """
    if not cmd_runner.simulating and not is_mounted(target, cmd_runner):
        raise MountError(f"Cannot prepare chroot: {target} is not mounted")

    mounted = []
    try:
        for source in BIND_FILESYSTEMS:
            path = target_path(target, source)
            if is_mounted(path, cmd_runner):
                continue
            cmd_runner.make_dirs(path)
            cmd_runner.run(["mount", "--rbind", source, path])
            cmd_runner.run(["mount", "--make-rslave", path])
            mounted.append(path)

        run_path = target_path(target, "/run")
        if not is_mounted(run_path, cmd_runner):
            cmd_runner.make_dirs(run_path)
            cmd_runner.run(["mount", "-t", "tmpfs", "tmpfs", run_path])
            mounted.append(run_path)
    except subprocess.CalledProcessError as e:
        unmount_pseudo_filesystems(mounted, cmd_runner)
        raise MountError(f"Failed to prepare chroot environment: {e}")

    return mounted


def unmount_pseudo_filesystems(paths: Sequence[str], cmd_runner: CommandRunner) -> None:
    """Lazily unmount pseudo filesystems in reverse mount order."""
    for path in reversed(list(paths)):
        try:
            cmd_runner.run(["umount", "-R", "-l", path])
        except subprocess.CalledProcessError as e:
            logger.warning(colorize(f"Could not unmount {path}: {e}",
                                    TermColors.WARNING, cmd_runner.colored_output))


@contextmanager
def chroot_session(target: str, cmd_runner: CommandRunner) -> Iterator[None]:
    """
    Keep the pseudo filesystems mounted for the duration of a block.

    Only filesystems mounted on entry are released on exit, whatever the exit
    path, so a session nested in an already prepared chroot leaves it intact.
    """
    mounted = mount_pseudo_filesystems(target, cmd_runner)

    resolv = target_path(target, "/etc/resolv.conf")
    try:
        cmd_runner.run(["cp", "-L", "/etc/resolv.conf", resolv])
    except subprocess.CalledProcessError:
        logger.warning(colorize("Could not copy resolv.conf into the target",
                                TermColors.WARNING, cmd_runner.colored_output))

    try:
        yield
    finally:
        unmount_pseudo_filesystems(mounted, cmd_runner)

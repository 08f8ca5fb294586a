"""
Base system bootstrap module.

This module installs the Void Linux base packages into the mounted target
root with xbps-install.
"""
import logging
import subprocess
from typing import List

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.utils.types import LibcType
from fortress.core.exceptions import BootstrapError
from fortress.core.mount import target_path

logger = logging.getLogger('fortress')

REPOSITORY_URLS = {
    "glibc": "https://repo-default.voidlinux.org/current",
    "musl": "https://repo-default.voidlinux.org/current/musl",
}

BASE_PACKAGES = [
    "base-system",
    "cryptsetup",
    "grub-x86_64-efi",
    "efibootmgr",
    "dracut",
    "void-repo-nonfree",
]

XBPS_KEYS_DIR = "/var/db/xbps/keys"


def repository_url(libc: LibcType) -> str:
    return REPOSITORY_URLS[libc]


def base_packages(libc: LibcType) -> List[str]:
    """Return the packages to bootstrap, with the locale package matching libc."""
    locales = "musl-locales" if libc == "musl" else "glibc-locales"
    return BASE_PACKAGES + [locales]


def has_base_system(target: str, cmd_runner: CommandRunner) -> bool:
    """
    Return True if the target root holds an installed base system.

    The system binary directory must be populated and /etc must exist.
    """
    if not cmd_runner.path_exists(target_path(target, "/etc")):
        return False
    return bool(cmd_runner.list_dir(target_path(target, "/usr/bin")))


def copy_package_keys(target: str, cmd_runner: CommandRunner) -> None:
    """Copy the live system's trusted repository keys into the target."""
    keys_dir = target_path(target, XBPS_KEYS_DIR)
    cmd_runner.make_dirs(keys_dir)
    try:
        cmd_runner.run(["cp", "-a", f"{XBPS_KEYS_DIR}/.", keys_dir])
    except subprocess.CalledProcessError:
        logger.warning(colorize("Could not copy XBPS keys, xbps-install may ask to trust them",
                                TermColors.WARNING, cmd_runner.colored_output))


def install_base_packages(target: str, repository: str, packages: List[str], cmd_runner: CommandRunner) -> None:
    """
    Install packages into the target root.

    Args:
        target: Mounted target root
        repository: Repository URL
        packages: Package names
        cmd_runner: CommandRunner instance for executing commands

    Raises:
        BootstrapError: If xbps-install fails
    """
    logger.info(f"Installing {len(packages)} base packages from {repository}")
    copy_package_keys(target, cmd_runner)

    try:
        cmd_runner.run(["xbps-install", "-Sy", "-r", target, "-R", repository, *packages])
    except subprocess.CalledProcessError as e:
        raise BootstrapError(f"Bootstrap failed: {e.stderr.strip() if e.stderr else e}")

    logger.info(colorize("Base system installed", TermColors.SUCCESS, cmd_runner.colored_output))

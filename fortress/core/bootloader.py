"""
Bootloader module.

This module installs GRUB for UEFI into the target and generates its
configuration and the initramfs it loads.
"""
import logging
import subprocess
from enum import Enum

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.core.chroot import chroot_command
from fortress.core.exceptions import BootloaderError

logger = logging.getLogger('fortress')

EFI_DIRECTORY = "/boot/efi"
GRUB_CONFIG = "/boot/grub/grub.cfg"


class BootloaderMode(Enum):
    """How GRUB is registered with the firmware"""
    NVRAM = "nvram"          # boot entry written to firmware variables
    REMOVABLE = "removable"  # fallback path EFI/BOOT/BOOTX64.EFI, no NVRAM write


def install_bootloader(target: str, mode: BootloaderMode, bootloader_id: str, cmd_runner: CommandRunner) -> None:
    """
    Run grub-install inside the target.

    Raises:
        BootloaderError: If grub-install fails
    """
    argv = [
        "grub-install",
        "--target=x86_64-efi",
        f"--efi-directory={EFI_DIRECTORY}",
        f"--bootloader-id={bootloader_id}",
    ]
    if mode == BootloaderMode.REMOVABLE:
        argv += ["--removable", "--no-nvram"]

    try:
        cmd_runner.run(chroot_command(target, argv))
    except subprocess.CalledProcessError as e:
        raise BootloaderError(f"grub-install ({mode.value}) failed: {e.stderr.strip() if e.stderr else e}")


def install_bootloader_with_fallback(target: str, bootloader_id: str, cmd_runner: CommandRunner) -> BootloaderMode:
    """
    Install GRUB with an NVRAM entry, falling back to the removable path.

    Returns:
        The mode that succeeded

    Raises:
        BootloaderError: If both modes fail
    """
    try:
        install_bootloader(target, BootloaderMode.NVRAM, bootloader_id, cmd_runner)
        return BootloaderMode.NVRAM
    except BootloaderError as e:
        logger.warning(colorize(f"{e}; retrying as removable media install",
                                TermColors.WARNING, cmd_runner.colored_output))

    install_bootloader(target, BootloaderMode.REMOVABLE, bootloader_id, cmd_runner)
    return BootloaderMode.REMOVABLE


def regenerate_initramfs(target: str, cmd_runner: CommandRunner) -> None:
    """
    Reconfigure all packages so dracut rebuilds the initramfs with crypt support.

    Raises:
        BootloaderError: If xbps-reconfigure fails
    """
    try:
        cmd_runner.run(chroot_command(target, ["xbps-reconfigure", "-fa"]))
    except subprocess.CalledProcessError as e:
        raise BootloaderError(f"Initramfs regeneration failed: {e.stderr.strip() if e.stderr else e}")


def generate_boot_config(target: str, cmd_runner: CommandRunner) -> None:
    """
    Write grub.cfg inside the target.

    Raises:
        BootloaderError: If grub-mkconfig fails
    """
    try:
        cmd_runner.run(chroot_command(target, ["grub-mkconfig", "-o", GRUB_CONFIG]))
    except subprocess.CalledProcessError as e:
        raise BootloaderError(f"grub-mkconfig failed: {e.stderr.strip() if e.stderr else e}")
    logger.info(colorize("Boot configuration generated", TermColors.SUCCESS, cmd_runner.colored_output))

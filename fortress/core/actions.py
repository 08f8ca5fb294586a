"""
Reconciler actions.

Each action moves the machine one step closer to a finished installation.
Every action inspects the current state first and only does the part of its
work that is still missing, so any of them may be repeated after an
interruption.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Tuple

from fortress.utils.format import TermColors, colorize
from fortress.utils.types import PartitionRole
from fortress.utils.validation import require_secret
from fortress.core.bootloader import (
    generate_boot_config, install_bootloader_with_fallback, regenerate_initramfs
)
from fortress.core.bootstrap import base_packages, has_base_system, install_base_packages
from fortress.core.chroot import chroot_session
from fortress.core.context import RunContext
from fortress.core.encryption import (
    add_recovery_key, close_volume, format_volume, is_luks, is_open, open_volume
)
from fortress.core.exceptions import EncryptionError, FilesystemError, MountError
from fortress.core.filesystem import create_filesystem, get_uuid
from fortress.core.mount import activate_swap, deactivate_swap, mount_filesystems, unmount_recursive
from fortress.core.partition import create_partitions
from fortress.config.crypttab import generate_crypttab
from fortress.config.fstab import generate_fstab
from fortress.config.system import (
    ensure_key_file, render_configure_script, run_configure_script,
    set_account_passwords, write_system_files
)

logger = logging.getLogger('fortress')


@dataclass(frozen=True)
class Action:
    """A named reconcile step"""
    name: str
    description: str
    run: Callable[[RunContext], None]

    def __str__(self) -> str:
        return self.name


def _passphrase(ctx: RunContext, role: PartitionRole) -> str:
    return require_secret(ctx.config.passphrase_for(role), f"LUKS passphrase for the {role.value} volume")


def partition_disk(ctx: RunContext) -> None:
    """Write the partition table, unless the partitions already exist."""
    runner = ctx.cmd_runner
    if runner.is_block_device(ctx.disk.last_partition):
        logger.info(f"Partitions already present on {ctx.disk.path}, not repartitioning")
        return

    plan = ctx.partition_plan
    ctx.require_confirmation("Partitioning")
    logger.info(plan.describe())
    create_partitions(ctx.disk, plan, runner)


def format_volumes(ctx: RunContext) -> None:
    """LUKS format the root and home partitions that are not formatted yet."""
    for volume in (ctx.root_volume, ctx.home_volume):
        if is_luks(volume.partition, ctx.cmd_runner):
            logger.info(f"{volume.partition} already LUKS formatted")
            continue
        ctx.require_confirmation(f"LUKS formatting {volume.partition}")
        format_volume(volume, _passphrase(ctx, volume.role), ctx.cmd_runner)


def open_volumes(ctx: RunContext) -> None:
    """Open the mappings of both volumes, root first."""
    runner = ctx.cmd_runner
    for volume in (ctx.root_volume, ctx.home_volume):
        if is_open(volume.name, runner):
            continue
        if open_volume(volume, _passphrase(ctx, volume.role), runner):
            ctx.resources.register(
                f"mapping {volume.name}",
                lambda name=volume.name: close_volume(name, runner)
            )


def create_filesystems(ctx: RunContext) -> None:
    """
    Create the filesystems that do not exist yet.

    The unencrypted EFI, boot and swap regions come first, then the two
    encrypted volumes, which must be open.
    """
    runner = ctx.cmd_runner
    disk = ctx.disk
    create_filesystem("vfat", disk.partition(PartitionRole.EFI), "EFI", runner)
    create_filesystem("ext4", disk.partition(PartitionRole.BOOT), "BOOT", runner)
    create_filesystem("swap", disk.partition(PartitionRole.SWAP), "SWAP", runner)

    for volume, label in ((ctx.root_volume, "ROOT"), (ctx.home_volume, "HOME")):
        if not is_open(volume.name, runner) and not runner.simulating:
            raise FilesystemError(f"Cannot create filesystem: {volume.name} is not open")
        create_filesystem("ext4", volume.mapper_path, label, runner)


def mount_all(ctx: RunContext) -> None:
    """Mount the target filesystems and enable swap for the installation."""
    runner = ctx.cmd_runner
    for path in mount_filesystems(ctx.mount_plan, ctx.target, runner):
        ctx.resources.register(f"mount {path}", lambda path=path: unmount_recursive(path, runner))

    swap = ctx.disk.partition(PartitionRole.SWAP)
    try:
        if activate_swap(swap, runner):
            ctx.resources.register(f"swap {swap}", lambda: deactivate_swap(swap, runner), transient=True)
    except MountError as e:
        logger.warning(colorize(f"{e}; continuing without swap", TermColors.WARNING, runner.colored_output))


def bootstrap(ctx: RunContext) -> None:
    """Install the base packages, completing a partial installation."""
    install_base_packages(ctx.target, ctx.repository, base_packages(ctx.libc), ctx.cmd_runner)


def bootstrap_if_absent(ctx: RunContext) -> None:
    if has_base_system(ctx.target, ctx.cmd_runner):
        logger.info("Base system already installed")
        return
    bootstrap(ctx)


def write_fstab(ctx: RunContext) -> None:
    generate_fstab(ctx.disk, ctx.target, ctx.cmd_runner)


def configure_system(ctx: RunContext) -> None:
    """Write the target's configuration files and run the chroot configuration."""
    config = ctx.config
    runner = ctx.cmd_runner
    root_luks_uuid = get_uuid(ctx.root_volume.partition, runner)

    write_system_files(config.hostname, root_luks_uuid, ctx.target, runner)
    generate_crypttab(ctx.disk, ctx.target, runner)

    script = render_configure_script(config.timezone, config.locale, config.keymap, config.username, ctx.libc)
    with chroot_session(ctx.target, runner):
        run_configure_script(script, ctx.target, runner)
        set_account_passwords(
            {"root": config.root_password, config.username: config.user_password},
            ctx.target,
            runner
        )


def enroll_recovery_key(ctx: RunContext) -> None:
    """
    Add the initramfs key file to the root volume.

    Without the key the system still boots but asks for the passphrase twice,
    so failures only produce a warning.
    """
    runner = ctx.cmd_runner
    key_file = ensure_key_file(ctx.target, runner)
    passphrase = ctx.config.passphrase_for(PartitionRole.ROOT)
    if not passphrase:
        logger.warning(colorize("No LUKS passphrase supplied, key file not enrolled",
                                TermColors.WARNING, runner.colored_output))
        return
    try:
        add_recovery_key(ctx.root_volume.partition, key_file, passphrase, runner)
    except EncryptionError as e:
        logger.warning(colorize(f"Key file not enrolled: {e}", TermColors.WARNING, runner.colored_output))


def install_bootloader(ctx: RunContext) -> None:
    with chroot_session(ctx.target, ctx.cmd_runner):
        mode = install_bootloader_with_fallback(ctx.target, ctx.config.bootloader_id, ctx.cmd_runner)
    logger.info(f"GRUB installed ({mode.value})")


def rebuild_initramfs(ctx: RunContext) -> None:
    with chroot_session(ctx.target, ctx.cmd_runner):
        regenerate_initramfs(ctx.target, ctx.cmd_runner)


def write_boot_config(ctx: RunContext) -> None:
    with chroot_session(ctx.target, ctx.cmd_runner):
        generate_boot_config(ctx.target, ctx.cmd_runner)


PARTITION = Action("partition", "Partitioning disk", partition_disk)
FORMAT_VOLUMES = Action("format-volumes", "Formatting LUKS volumes", format_volumes)
OPEN_VOLUMES = Action("open-volumes", "Opening LUKS volumes", open_volumes)
CREATE_FILESYSTEMS = Action("create-filesystems", "Creating filesystems", create_filesystems)
MOUNT = Action("mount", "Mounting filesystems", mount_all)
BOOTSTRAP = Action("bootstrap", "Installing base system", bootstrap)
BOOTSTRAP_IF_ABSENT = Action("bootstrap-if-absent", "Checking base system", bootstrap_if_absent)
WRITE_FSTAB = Action("write-fstab", "Generating fstab", write_fstab)
CONFIGURE_SYSTEM = Action("configure-system", "Configuring system", configure_system)
ENROLL_RECOVERY_KEY = Action("enroll-key", "Enrolling root key file", enroll_recovery_key)
INSTALL_BOOTLOADER = Action("install-bootloader", "Installing GRUB", install_bootloader)
REGENERATE_INITRAMFS = Action("initramfs", "Regenerating initramfs", rebuild_initramfs)
GENERATE_BOOT_CONFIG = Action("grub-config", "Generating GRUB configuration", write_boot_config)

# The grub.cfg written last marks the installation as configured
CONFIGURE: Tuple[Action, ...] = (
    WRITE_FSTAB,
    CONFIGURE_SYSTEM,
    ENROLL_RECOVERY_KEY,
    INSTALL_BOOTLOADER,
    REGENERATE_INITRAMFS,
    GENERATE_BOOT_CONFIG,
)

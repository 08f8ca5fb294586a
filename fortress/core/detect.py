"""
Installation state detection.

The phase of an installation is never stored and trusted: it is inferred on
every call from what the machine shows, so an interrupted run resumes from
where the disk actually is.
"""
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import List

from fortress.core.bootloader import GRUB_CONFIG
from fortress.core.bootstrap import has_base_system
from fortress.core.context import RunContext
from fortress.core.encryption import is_luks, is_open
from fortress.core.exceptions import UnknownPhaseError
from fortress.core.filesystem import has_filesystem
from fortress.core.mount import is_mounted, target_path

logger = logging.getLogger('fortress')

# Written by the configure step, grub.cfg last
CONFIGURATION_ARTIFACTS = ("/etc/fstab", GRUB_CONFIG)


class InstallationPhase(Enum):
    """Progress of an installation, in the order a fresh install moves through it"""
    NO_DISK = "no_disk"
    NO_PARTITIONS = "no_partitions"
    NOT_ENCRYPTED = "not_encrypted"
    PARTIAL_ENCRYPTED = "partial_encrypted"
    VOLUMES_CLOSED = "volumes_closed"
    ROOT_OPEN_HOME_CLOSED = "root_open_home_closed"
    NO_ROOT_FILESYSTEM = "no_root_filesystem"
    NO_HOME_FILESYSTEM = "no_home_filesystem"
    NOT_MOUNTED = "not_mounted"
    PARTIAL_MOUNT = "partial_mount"
    NO_SYSTEM = "no_system"
    NOT_CONFIGURED = "not_configured"
    READY = "ready"
    # Never produced by detection
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        """Position in the total order; markers rank below every real phase."""
        try:
            return DETECTABLE_PHASES.index(self)
        except ValueError:
            return -1

    @property
    def is_detectable(self) -> bool:
        return self in DETECTABLE_PHASES

    def __lt__(self, other: "InstallationPhase") -> bool:
        if not isinstance(other, InstallationPhase):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "InstallationPhase") -> bool:
        if not isinstance(other, InstallationPhase):
            return NotImplemented
        return self.rank <= other.rank


DETECTABLE_PHASES = (
    InstallationPhase.NO_DISK,
    InstallationPhase.NO_PARTITIONS,
    InstallationPhase.NOT_ENCRYPTED,
    InstallationPhase.PARTIAL_ENCRYPTED,
    InstallationPhase.VOLUMES_CLOSED,
    InstallationPhase.ROOT_OPEN_HOME_CLOSED,
    InstallationPhase.NO_ROOT_FILESYSTEM,
    InstallationPhase.NO_HOME_FILESYSTEM,
    InstallationPhase.NOT_MOUNTED,
    InstallationPhase.PARTIAL_MOUNT,
    InstallationPhase.NO_SYSTEM,
    InstallationPhase.NOT_CONFIGURED,
    InstallationPhase.READY,
)


@dataclass(frozen=True)
class Detection:
    phase: InstallationPhase
    detail: str

    def __str__(self) -> str:
        return f"{self.phase.name}: {self.detail}"


def missing_configuration(target: str, ctx: RunContext) -> List[str]:
    """Return the configuration artifacts not yet present in the target."""
    return [path for path in CONFIGURATION_ARTIFACTS
            if not ctx.cmd_runner.path_exists(target_path(target, path))]


def _detect(ctx: RunContext) -> Detection:
    runner = ctx.cmd_runner
    disk = ctx.disk
    root = ctx.root_volume
    home = ctx.home_volume
    target = ctx.target

    if not runner.is_block_device(disk.path):
        return Detection(InstallationPhase.NO_DISK, f"Disk {disk.path} not found")

    if not runner.is_block_device(disk.last_partition):
        return Detection(InstallationPhase.NO_PARTITIONS, f"Partitions not created on {disk.path}")

    if not is_luks(root.partition, runner):
        return Detection(InstallationPhase.NOT_ENCRYPTED, f"Root partition {root.partition} not LUKS formatted")

    if not is_luks(home.partition, runner):
        return Detection(InstallationPhase.PARTIAL_ENCRYPTED, f"Home partition {home.partition} not LUKS formatted")

    if not is_open(root.name, runner):
        return Detection(InstallationPhase.VOLUMES_CLOSED, "LUKS volumes not opened")

    if not is_open(home.name, runner):
        return Detection(InstallationPhase.ROOT_OPEN_HOME_CLOSED, f"{home.name} not opened")

    if not has_filesystem(root.mapper_path, runner):
        return Detection(InstallationPhase.NO_ROOT_FILESYSTEM, f"No filesystem on {root.mapper_path}")

    if is_luks(home.partition, runner) and not has_filesystem(home.mapper_path, runner):
        return Detection(InstallationPhase.NO_HOME_FILESYSTEM, f"No filesystem on {home.mapper_path}")

    if not is_mounted(target, runner):
        return Detection(InstallationPhase.NOT_MOUNTED, f"{target} not mounted")

    for entry in ctx.mount_plan[1:]:
        path = entry.path_under(target)
        if not is_mounted(path, runner):
            return Detection(InstallationPhase.PARTIAL_MOUNT, f"{path} not mounted")

    if not has_base_system(target, runner):
        return Detection(InstallationPhase.NO_SYSTEM, "Base system not installed")

    missing = missing_configuration(target, ctx)
    if missing:
        return Detection(InstallationPhase.NOT_CONFIGURED, f"System not configured, missing {', '.join(missing)}")

    return Detection(InstallationPhase.READY, "Installation complete")


def detect_phase(ctx: RunContext) -> Detection:
    """
    Determine how far the installation has progressed.

    Checks run in dependency order and the first one that fails decides the
    phase. Nothing on the machine is modified.

    Args:
        ctx: Context of the current run

    Returns:
        The detected phase with a human readable detail

    Raises:
        UnknownPhaseError: If the machine could not be inspected at all
    """
    try:
        detection = _detect(ctx)
    except (OSError, subprocess.SubprocessError) as e:
        raise UnknownPhaseError(f"State detection failed: {e}")
    logger.debug(f"Detected phase {detection}")
    return detection

"""
Run configuration and context.

An InstallConfig is built once per run from the command line and environment
and never changes afterwards. The RunContext bundles it with the facts every
step needs: the target disk, the encrypted volumes, the partition plan and
the resources opened so far.
"""
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.utils.types import LibcType, PartitionRole, SizeOverrides
from fortress.core.bootstrap import repository_url
from fortress.core.disk import TargetDisk
from fortress.core.encryption import EncryptedVolume, build_volumes
from fortress.core.exceptions import ConfirmationRequiredError, FortressError, InstallCancelled
from fortress.core.mount import MountEntry, build_mount_plan
from fortress.core.planner import PartitionPlan, plan_partitions

logger = logging.getLogger('fortress')

DEFAULT_TARGET = "/mnt"
DEFAULT_CHECKPOINT_PATH = "/tmp/fortress.state.json"


@dataclass(frozen=True)
class InstallConfig:
    """Immutable settings of one installer run"""
    disk: str
    target: str = DEFAULT_TARGET
    hostname: str = "void-fortress"
    username: str = "nx"
    timezone: str = "UTC"
    locale: str = "en_US.UTF-8"
    keymap: str = "us"
    bootloader_id: str = "void"
    luks_passphrase: Optional[str] = field(default=None, repr=False)
    home_luks_passphrase: Optional[str] = field(default=None, repr=False)
    root_password: Optional[str] = field(default=None, repr=False)
    user_password: Optional[str] = field(default=None, repr=False)
    size_overrides: SizeOverrides = field(default_factory=dict)
    checkpoint_path: str = DEFAULT_CHECKPOINT_PATH
    confirm_destroy: bool = False
    teardown_on_error: bool = False
    repository: Optional[str] = None

    def __post_init__(self):
        # Mount table entries never carry a trailing slash
        object.__setattr__(self, "target", os.path.normpath(self.target))

    def passphrase_for(self, role: PartitionRole) -> Optional[str]:
        """Passphrase of an encrypted volume; home falls back to the root passphrase."""
        if role == PartitionRole.HOME and self.home_luks_passphrase:
            return self.home_luks_passphrase
        return self.luks_passphrase


ReleaseCallback = Callable[[], object]


class ResourceGuard:
    """
    Scoped record of the resources a run has opened.

    Release callbacks run in reverse registration order. Used as a context
    manager, the guard releases transient resources on every exit path and
    everything on cancellation, or on any error when release_on_error is set.
    Mounts and mappings left behind by a failed run stay in place so the
    operator can inspect them.
    """

    def __init__(self, cmd_runner: CommandRunner, release_on_error: bool = False):
        self.cmd_runner = cmd_runner
        self.release_on_error = release_on_error
        self._held: List[Tuple[str, ReleaseCallback, bool]] = []

    def __len__(self) -> int:
        return len(self._held)

    @property
    def descriptions(self) -> List[str]:
        return [description for description, _, _ in self._held]

    def register(self, description: str, release: ReleaseCallback, transient: bool = False) -> None:
        """
        Record a release callback for a resource opened by this run.

        Args:
            description: Human readable name of the resource
            release: Callable that releases it
            transient: Whether the resource is released even on success
        """
        logger.debug(f"Holding resource: {description}")
        self._held.append((description, release, transient))

    def release(self, transient_only: bool = False) -> List[str]:
        """
        Release held resources, newest first.

        Args:
            transient_only: Release only resources registered as transient

        Returns:
            Descriptions of resources whose release failed
        """
        failed = []
        kept = []
        for description, release, transient in reversed(self._held):
            if transient_only and not transient:
                kept.append((description, release, transient))
                continue
            try:
                release()
                logger.debug(f"Released resource: {description}")
            except (FortressError, subprocess.CalledProcessError, OSError) as e:
                logger.warning(colorize(f"Could not release {description}: {e}",
                                        TermColors.WARNING, self.cmd_runner.colored_output))
                failed.append(description)
        self._held = list(reversed(kept))
        return failed

    def __enter__(self) -> "ResourceGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        cancelled = exc_type is not None and issubclass(exc_type, (KeyboardInterrupt, InstallCancelled))
        if cancelled or (exc_type is not None and self.release_on_error):
            logger.info(f"Releasing {len(self._held)} resource(s)")
            self.release()
        else:
            self.release(transient_only=True)
            if self._held:
                logger.debug(f"Keeping resources: {', '.join(self.descriptions)}")
        return False


class RunContext:
    """Everything a detection or reconcile step needs about the current run"""

    def __init__(
        self,
        config: InstallConfig,
        cmd_runner: CommandRunner,
        disk: TargetDisk,
        memory_kib: int = 0,
        libc: LibcType = "glibc"
    ):
        """
        Initialize the run context.

        Args:
            config: Settings of the run
            cmd_runner: CommandRunner instance for executing commands
            disk: The target disk
            memory_kib: Total memory, used for the home volume KDF cost
            libc: libc flavour of the live environment
        """
        self.config = config
        self.cmd_runner = cmd_runner
        self.disk = disk
        self.memory_kib = memory_kib
        self.libc = libc
        self.volumes: Dict[PartitionRole, EncryptedVolume] = build_volumes(disk, memory_kib)
        self.mount_plan: Tuple[MountEntry, ...] = build_mount_plan(disk)
        self.resources = ResourceGuard(cmd_runner, release_on_error=config.teardown_on_error)
        self._plan: Optional[PartitionPlan] = None

    @property
    def target(self) -> str:
        return self.config.target

    @property
    def root_volume(self) -> EncryptedVolume:
        return self.volumes[PartitionRole.ROOT]

    @property
    def home_volume(self) -> EncryptedVolume:
        return self.volumes[PartitionRole.HOME]

    @property
    def repository(self) -> str:
        return self.config.repository or repository_url(self.libc)

    @property
    def partition_plan(self) -> PartitionPlan:
        """The partition plan of this run, computed on first use and then fixed."""
        if self._plan is None:
            self._plan = plan_partitions(self.disk.size_bytes, self.config.size_overrides or None)
        return self._plan

    def require_confirmation(self, operation: str) -> None:
        """
        Raise unless the operator confirmed destructive operations.

        Raises:
            ConfirmationRequiredError: If confirm_destroy is not set
        """
        if not self.config.confirm_destroy:
            raise ConfirmationRequiredError(
                f"{operation} would destroy data on {self.disk.path}; destructive confirmation is required"
            )

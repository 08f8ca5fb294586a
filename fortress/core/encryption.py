"""
Disk encryption module.

This module handles the two LUKS volumes of an installation: a LUKS1 root
volume that GRUB can unlock at boot, and a LUKS2 home volume using Argon2id.
Every operation checks the current state first so it can be safely repeated.
"""
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.utils.types import PartitionRole
from fortress.core.disk import TargetDisk
from fortress.core.exceptions import EncryptionError

logger = logging.getLogger('fortress')

ROOT_MAPPING = "root_crypt"
HOME_MAPPING = "home_crypt"

LUKS1_ITER_TIME_MS = 5000
ARGON2_MIN_MEMORY_KIB = 1024 * 1024
ARGON2_MAX_MEMORY_KIB = 4 * 1024 * 1024
ARGON2_PARALLEL = 4


class VolumeState(Enum):
    """Observed lifecycle state of an encrypted volume"""
    UNFORMATTED = "unformatted"
    CLOSED = "closed"   # formatted, no mapping
    OPEN = "open"


@dataclass(frozen=True)
class LuksParameters:
    """Format parameters of one encrypted volume generation"""
    luks_type: str
    cipher: str = "aes-xts-plain64"
    key_size: int = 512
    hash: str = "sha512"
    pbkdf: Optional[str] = None
    iter_time_ms: Optional[int] = None
    pbkdf_memory_kib: Optional[int] = None
    pbkdf_parallel: Optional[int] = None

    def format_arguments(self) -> List[str]:
        args = [
            "--type", self.luks_type,
            "--cipher", self.cipher,
            "--key-size", str(self.key_size),
            "--hash", self.hash,
        ]
        if self.pbkdf:
            args += ["--pbkdf", self.pbkdf]
        if self.iter_time_ms:
            args += ["--iter-time", str(self.iter_time_ms)]
        if self.pbkdf_memory_kib:
            args += ["--pbkdf-memory", str(self.pbkdf_memory_kib)]
        if self.pbkdf_parallel:
            args += ["--pbkdf-parallel", str(self.pbkdf_parallel)]
        return args


@dataclass(frozen=True)
class EncryptedVolume:
    """A LUKS container on a partition, addressed by a stable mapping name"""
    role: PartitionRole
    partition: str
    name: str
    parameters: LuksParameters

    @property
    def mapper_path(self) -> str:
        return mapper_path(self.name)


def mapper_path(name: str) -> str:
    return f"/dev/mapper/{name}"


def root_luks_parameters() -> LuksParameters:
    """LUKS1 with PBKDF2, the newest format GRUB's cryptodisk can open."""
    return LuksParameters(luks_type="luks1", iter_time_ms=LUKS1_ITER_TIME_MS)


def home_luks_parameters(memory_kib: int) -> LuksParameters:
    """
    LUKS2 with Argon2id, using three quarters of RAM within fixed bounds.

    Args:
        memory_kib: Total memory of the machine in KiB
    """
    argon_memory = memory_kib * 3 // 4
    argon_memory = max(ARGON2_MIN_MEMORY_KIB, min(ARGON2_MAX_MEMORY_KIB, argon_memory))
    return LuksParameters(
        luks_type="luks2",
        pbkdf="argon2id",
        iter_time_ms=LUKS1_ITER_TIME_MS,
        pbkdf_memory_kib=argon_memory,
        pbkdf_parallel=ARGON2_PARALLEL,
    )


def build_volumes(disk: TargetDisk, memory_kib: int) -> Dict[PartitionRole, EncryptedVolume]:
    """Describe the root and home volumes of a target disk."""
    return {
        PartitionRole.ROOT: EncryptedVolume(
            role=PartitionRole.ROOT,
            partition=disk.partition(PartitionRole.ROOT),
            name=ROOT_MAPPING,
            parameters=root_luks_parameters(),
        ),
        PartitionRole.HOME: EncryptedVolume(
            role=PartitionRole.HOME,
            partition=disk.partition(PartitionRole.HOME),
            name=HOME_MAPPING,
            parameters=home_luks_parameters(memory_kib),
        ),
    }


def run_cryptsetup_cmd(cmd: List[str], secret_input: str, cmd_runner: CommandRunner) -> None:
    """
    Run a cryptsetup command with the provided secret input.

    Args:
        cmd: The cryptsetup command to run
        secret_input: Secret input to provide to the command
        cmd_runner: CommandRunner instance for executing commands

    Raises:
        EncryptionError: If the command fails
    """
    try:
        cmd_runner.run(cmd, input=secret_input)
    except subprocess.CalledProcessError as e:
        raise EncryptionError(f"Cryptsetup command failed: {e.stderr.strip() if e.stderr else e}")


def is_luks(partition: str, cmd_runner: CommandRunner) -> bool:
    """Return True if the partition exists and carries a LUKS header."""
    if not cmd_runner.is_block_device(partition):
        return False
    return cmd_runner.succeeds(["cryptsetup", "isLuks", partition])


def is_open(name: str, cmd_runner: CommandRunner) -> bool:
    """Return True if the mapping for a logical volume name is active."""
    return cmd_runner.is_block_device(mapper_path(name))


def volume_state(volume: EncryptedVolume, cmd_runner: CommandRunner) -> VolumeState:
    if is_open(volume.name, cmd_runner):
        return VolumeState.OPEN
    if is_luks(volume.partition, cmd_runner):
        return VolumeState.CLOSED
    return VolumeState.UNFORMATTED


def format_volume(volume: EncryptedVolume, passphrase: str, cmd_runner: CommandRunner) -> bool:
    """
    Create the LUKS header of a volume unless one already exists.

    Args:
        volume: Volume to format
        passphrase: Passphrase for the first key slot
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        True if the volume was formatted, False if it already was

    Raises:
        EncryptionError: If cryptsetup fails
    """
    if is_luks(volume.partition, cmd_runner):
        logger.warning(colorize(f"{volume.partition} already LUKS formatted, skipping",
                                TermColors.WARNING, cmd_runner.colored_output))
        return False

    logger.info(f"Formatting {volume.role.value} partition {volume.partition} "
                f"with {volume.parameters.luks_type.upper()}")
    run_cryptsetup_cmd(
        ["cryptsetup", "luksFormat", "--batch-mode", *volume.parameters.format_arguments(), volume.partition],
        f"{passphrase}\n",
        cmd_runner
    )
    return True


def open_volume(volume: EncryptedVolume, passphrase: str, cmd_runner: CommandRunner) -> bool:
    """
    Open the mapping of a volume unless it is already active.

    Returns:
        True if the mapping was opened, False if it already was

    Raises:
        EncryptionError: If the volume cannot be unlocked
    """
    if is_open(volume.name, cmd_runner):
        logger.info(f"{volume.name} already open")
        return False

    logger.info(f"Opening {volume.partition} as {volume.name}")
    run_cryptsetup_cmd(
        ["cryptsetup", "open", "--type", "luks", volume.partition, volume.name],
        f"{passphrase}\n",
        cmd_runner
    )
    return True


def close_volume(name: str, cmd_runner: CommandRunner) -> bool:
    """
    Close a mapping if it is active.

    Returns:
        True if the mapping was closed, False if it was not open

    Raises:
        EncryptionError: If cryptsetup refuses to close it
    """
    if not is_open(name, cmd_runner):
        return False

    try:
        cmd_runner.run(["cryptsetup", "close", name])
    except subprocess.CalledProcessError as e:
        raise EncryptionError(f"Failed to close {name}: {e.stderr.strip() if e.stderr else e}")
    logger.info(f"Closed {name}")
    return True


def add_recovery_key(partition: str, key_file: str, passphrase: str, cmd_runner: CommandRunner) -> bool:
    """
    Enroll a key file into a free key slot of a LUKS partition.

    Args:
        partition: LUKS partition
        key_file: Path of the key file on the host
        passphrase: An existing passphrase of the partition
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        True if the key was added, False if it already unlocks the partition

    Raises:
        EncryptionError: If cryptsetup fails
    """
    if cmd_runner.succeeds(["cryptsetup", "open", "--test-passphrase", "--key-file", key_file, partition]):
        logger.info(f"Key file already enrolled in {partition}")
        return False

    run_cryptsetup_cmd(
        ["cryptsetup", "luksAddKey", partition, key_file],
        f"{passphrase}\n",
        cmd_runner
    )
    logger.info(f"Enrolled key file in {partition}")
    return True

"""
Type definitions for fortress.

This module provides TypedDict definitions, enumerations and other type aliases
shared by the disk, planning and state detection modules.
"""
from enum import Enum
from typing import Dict, Literal, Tuple, TypedDict


class DiskInfo(TypedDict):
    """Information about a disk device"""
    size_bytes: int
    size_gib: float
    rotational: bool
    nvme: bool
    model: str


class BlockDeviceEntry(TypedDict):
    """A whole-disk entry as listed by lsblk"""
    path: str
    size_bytes: int
    model: str


class PartitionRole(Enum):
    """Regions of the target disk, in on-disk order"""
    EFI = "efi"
    BOOT = "boot"
    SWAP = "swap"
    ROOT = "root"
    HOME = "home"


# Partition number of each role is its 1-based position in this tuple
PARTITION_ORDER: Tuple[PartitionRole, ...] = (
    PartitionRole.EFI,
    PartitionRole.BOOT,
    PartitionRole.SWAP,
    PartitionRole.ROOT,
    PartitionRole.HOME,
)

# Operator supplied sizes in bytes, keyed by role
SizeOverrides = Dict[PartitionRole, int]

# Mapping of mount points to mount options
MountOptions = Dict[str, str]

# C library flavour of the live environment
LibcType = Literal["glibc", "musl"]

# Outcome of a single teardown step
TeardownOutcome = Literal["done", "noop", "failed"]


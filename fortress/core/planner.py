"""
Partition layout planning.

The planner turns a disk capacity into the five-region layout used by every
installation: EFI, boot, swap, the encrypted root and the encrypted home
region that takes whatever space remains.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from fortress.utils.format import GIB, MIB, bytes_to_human_readable, parse_size_spec
from fortress.utils.types import PartitionRole, PARTITION_ORDER, SizeOverrides
from fortress.core.exceptions import NotEnoughSpaceError

logger = logging.getLogger('fortress')

# Space kept free at the end of the fixed regions for GPT headers, alignment
# and a usable home region
SAFETY_MARGIN = 1 * GIB

# Tier upper bounds in whole GiB
SMALL_DISK_LIMIT_GIB = 30
MEDIUM_DISK_LIMIT_GIB = 60

TIER_SIZES: Dict[str, Dict[PartitionRole, int]] = {
    "small": {
        PartitionRole.EFI: 512 * MIB,
        PartitionRole.BOOT: 512 * MIB,
        PartitionRole.SWAP: 2 * GIB,
        PartitionRole.ROOT: 10 * GIB,
    },
    "medium": {
        PartitionRole.EFI: 512 * MIB,
        PartitionRole.BOOT: 1 * GIB,
        PartitionRole.SWAP: 4 * GIB,
        PartitionRole.ROOT: 20 * GIB,
    },
    "large": {
        PartitionRole.EFI: 512 * MIB,
        PartitionRole.BOOT: 1 * GIB,
        PartitionRole.SWAP: 8 * GIB,
        PartitionRole.ROOT: 50 * GIB,
    },
}

# GPT type GUID and partition name of each region
PARTITION_TYPES: Dict[PartitionRole, Tuple[str, str]] = {
    PartitionRole.EFI: ("C12A7328-F81F-11D2-BA4B-00A0C93EC93B", "EFI"),
    PartitionRole.BOOT: ("0FC63DAF-8483-4772-8E79-3D69D8477DE4", "BOOT"),
    PartitionRole.SWAP: ("0657FD6D-A4AB-43C4-84E5-0933C84B4F4F", "SWAP"),
    PartitionRole.ROOT: ("0FC63DAF-8483-4772-8E79-3D69D8477DE4", "ROOT"),
    PartitionRole.HOME: ("0FC63DAF-8483-4772-8E79-3D69D8477DE4", "HOME"),
}


@dataclass(frozen=True)
class Region:
    """One partition of the plan. A size of None means the rest of the disk."""
    role: PartitionRole
    size_bytes: Optional[int]
    type_guid: str
    label: str


@dataclass(frozen=True)
class PartitionPlan:
    """Ordered regions laid out from the start of the disk."""
    capacity_bytes: int
    tier: str
    regions: Tuple[Region, ...]

    @property
    def fixed_bytes(self) -> int:
        return sum(region.size_bytes or 0 for region in self.regions)

    @property
    def remainder_bytes(self) -> int:
        return self.capacity_bytes - self.fixed_bytes

    def region(self, role: PartitionRole) -> Region:
        for region in self.regions:
            if region.role == role:
                return region
        raise KeyError(role)

    def describe(self) -> str:
        lines = [f"Partition plan ({self.tier} disk, {bytes_to_human_readable(self.capacity_bytes)}):"]
        for region in self.regions:
            if region.size_bytes is None:
                size = f"remainder (~{bytes_to_human_readable(self.remainder_bytes)})"
            else:
                size = bytes_to_human_readable(region.size_bytes)
            lines.append(f"  {region.label:<5} {size}")
        return "\n".join(lines)


def capacity_tier(capacity_bytes: int) -> str:
    """Classify a disk into the small, medium or large sizing tier."""
    capacity_gib = capacity_bytes // GIB
    if capacity_gib < SMALL_DISK_LIMIT_GIB:
        return "small"
    if capacity_gib < MEDIUM_DISK_LIMIT_GIB:
        return "medium"
    return "large"


def _fitting_tier(capacity_bytes: int, tier: str) -> str:
    # Just above a tier boundary the tier's own sizes can leave no room for home
    tiers = list(TIER_SIZES)
    index = tiers.index(tier)
    while index > 0 and sum(TIER_SIZES[tiers[index]].values()) > capacity_bytes - SAFETY_MARGIN:
        index -= 1
        logger.warning(f"{tier.capitalize()} tier sizes do not fit, using {tiers[index]} tier sizes")
    return tiers[index]


def parse_size_overrides(specs: Optional[Dict[str, str]]) -> SizeOverrides:
    """
    Convert operator supplied sizes such as {"root": "30G"} into bytes.

    Raises:
        ValueError: On an unknown role, a size for the home region or a bad size
    """
    overrides: SizeOverrides = {}
    for name, spec in (specs or {}).items():
        try:
            role = PartitionRole(name.lower())
        except ValueError:
            raise ValueError(f"Unknown partition role: {name}")
        if role == PARTITION_ORDER[-1]:
            raise ValueError(f"The {role.value} partition always takes the remainder of the disk")
        size = parse_size_spec(spec)
        if size <= 0:
            raise ValueError(f"Partition size must be positive: {name}={spec}")
        overrides[role] = size
    return overrides


def plan_partitions(capacity_bytes: int, overrides: Optional[SizeOverrides] = None) -> PartitionPlan:
    """
    Compute the partition layout for a disk.

    Fixed sizes come from the capacity tier unless the operator overrides
    them; overrides are used verbatim. The last region is never sized.

    Args:
        capacity_bytes: Disk capacity in bytes
        overrides: Explicit sizes in bytes for any of the fixed regions

    Returns:
        The validated PartitionPlan

    Raises:
        NotEnoughSpaceError: If the fixed regions do not fit in capacity minus
            the safety margin
    """
    tier = capacity_tier(capacity_bytes)
    if not overrides:
        tier = _fitting_tier(capacity_bytes, tier)
    sizes = dict(TIER_SIZES[tier])
    if overrides:
        tier = f"{tier}, custom"
        sizes.update(overrides)

    regions = []
    for role in PARTITION_ORDER:
        type_guid, label = PARTITION_TYPES[role]
        size = None if role == PARTITION_ORDER[-1] else sizes[role]
        regions.append(Region(role=role, size_bytes=size, type_guid=type_guid, label=label))

    plan = PartitionPlan(capacity_bytes=capacity_bytes, tier=tier, regions=tuple(regions))

    usable = capacity_bytes - SAFETY_MARGIN
    if plan.fixed_bytes > usable:
        raise NotEnoughSpaceError(
            f"Disk of {bytes_to_human_readable(capacity_bytes)} is too small: "
            f"fixed partitions need {bytes_to_human_readable(plan.fixed_bytes)} "
            f"plus a {bytes_to_human_readable(SAFETY_MARGIN)} safety margin"
        )

    logger.debug(plan.describe())
    return plan

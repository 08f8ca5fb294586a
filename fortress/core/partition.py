"""
Disk partitioning module.

This module handles disk partitioning operations using sfdisk for simpler and more
efficient partition layout creation.
"""
import logging
import subprocess
import time

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize, bytes_to_sfdisk_size
from fortress.core.disk import TargetDisk
from fortress.core.planner import PartitionPlan
from fortress.core.exceptions import PartitioningError

logger = logging.getLogger('fortress')


def render_sfdisk_script(disk: TargetDisk, plan: PartitionPlan) -> str:
    """
    Build the sfdisk input for a partition plan.

    Args:
        disk: Target disk
        plan: Validated partition plan

    Returns:
        sfdisk script creating a GPT label and one partition per region
    """
    script_lines = ["label: gpt", f"device: {disk.path}", ""]

    for region in plan.regions:
        script_lines.append(f"# {region.label} partition")
        entry = f"type={region.type_guid}, name=\"{region.label}\""
        if region.size_bytes is not None:
            entry = f"size={bytes_to_sfdisk_size(region.size_bytes)}, {entry}"
        script_lines.append(entry)

    return "\n".join(script_lines) + "\n"


def reread_partition_table(disk: TargetDisk, cmd_runner: CommandRunner) -> None:
    """
    Ask the kernel to pick up a new partition table.

    Failures here are not fatal: the partitions usually appear anyway once
    udev has caught up.
    """
    if cmd_runner.which("partprobe"):
        reread = ["partprobe", disk.path]
    else:
        reread = ["blockdev", "--rereadpt", disk.path]

    try:
        cmd_runner.run(reread)
    except subprocess.CalledProcessError as e:
        logger.warning(colorize(f"Partition table re-read failed, but continuing: {e}",
                                TermColors.WARNING, cmd_runner.colored_output))

    try:
        cmd_runner.run(["udevadm", "settle"])
    except subprocess.CalledProcessError as e:
        logger.warning(colorize(f"udevadm settle failed, but continuing: {e}",
                                TermColors.WARNING, cmd_runner.colored_output))
        # Sleep a bit to give the kernel time to recognize partitions
        if not cmd_runner.simulating:
            time.sleep(2)


def create_partitions(disk: TargetDisk, plan: PartitionPlan, cmd_runner: CommandRunner) -> None:
    """
    Wipe the disk and write the partition table for a plan.

    Args:
        disk: Target disk
        plan: Validated partition plan
        cmd_runner: CommandRunner instance for executing commands

    Raises:
        PartitioningError: If the table could not be written or the partitions
            did not appear afterwards
    """
    logger.info(colorize(f"Preparing disk {disk.path}", TermColors.INFO, cmd_runner.colored_output))

    try:
        cmd_runner.run(["wipefs", "-af", disk.path])
    except subprocess.CalledProcessError as e:
        logger.warning(colorize(f"Could not wipe filesystem signatures: {e}",
                                TermColors.WARNING, cmd_runner.colored_output))

    script = render_sfdisk_script(disk, plan)
    logger.info("Applying partition table:")
    for line in script.splitlines():
        if line and not line.startswith("#"):
            logger.info(f"  {line}")

    try:
        cmd_runner.run(["sfdisk", disk.path], input=script)
    except subprocess.CalledProcessError as e:
        raise PartitioningError(f"Failed to create partition table on {disk.path}: {e}")

    reread_partition_table(disk, cmd_runner)

    if not cmd_runner.simulating and not cmd_runner.is_block_device(disk.last_partition):
        raise PartitioningError(
            f"Partition table written but {disk.last_partition} did not appear"
        )

    logger.info(colorize("Partitioning completed successfully",
                         TermColors.SUCCESS, cmd_runner.colored_output))

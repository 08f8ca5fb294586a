"""
Installer orchestration.

This module ties the run context, state detection, reconciliation,
checkpointing and teardown together behind the operations the command line
exposes.
"""
import logging
from typing import Optional, Tuple

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, bytes_to_human_readable, colorize
from fortress.utils.validation import CapabilityReport, detect_libc, memory_total_kib
from fortress.core import actions
from fortress.core.checkpoint import Checkpoint, CheckpointStore
from fortress.core.chroot import chroot_command, chroot_session
from fortress.core.context import InstallConfig, RunContext
from fortress.core.detect import Detection, InstallationPhase, detect_phase
from fortress.core.disk import get_disk_info, load_target_disk
from fortress.core.exceptions import FortressError, InstallCancelled
from fortress.core.planner import PartitionPlan
from fortress.core.reconcile import Reconciler, reconcile_until_ready
from fortress.core.teardown import TeardownReport, teardown

logger = logging.getLogger('fortress')


def build_context(
    config: InstallConfig,
    cmd_runner: CommandRunner,
    report: Optional[CapabilityReport] = None
) -> RunContext:
    """
    Create the context of a run.

    Memory size and libc flavour come from the capability report when one
    was produced, otherwise they are read directly.
    """
    disk = load_target_disk(config.disk, cmd_runner)
    if report is not None:
        memory_kib, libc = report.memory_kib, report.libc
    else:
        memory_kib, libc = memory_total_kib(cmd_runner), detect_libc(cmd_runner)
    return RunContext(config, cmd_runner, disk, memory_kib=memory_kib, libc=libc)


class Installer:
    """Operations on one target disk"""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        # Simulated runs change nothing, so they leave the checkpoint alone
        self.checkpoints = CheckpointStore(ctx.config.checkpoint_path, enabled=not ctx.cmd_runner.simulating)
        self.reconciler = Reconciler(ctx, self.checkpoints)

    @property
    def cmd_runner(self) -> CommandRunner:
        return self.ctx.cmd_runner

    def detect(self) -> Detection:
        return detect_phase(self.ctx)

    def plan(self) -> PartitionPlan:
        return self.ctx.partition_plan

    def describe_disk(self) -> None:
        """Log the characteristics of the target disk."""
        info = get_disk_info(self.ctx.disk.path, self.cmd_runner)
        logger.info(f"Disk: {self.ctx.disk.path}")
        logger.info(f"Size: {bytes_to_human_readable(info['size_bytes'])}")
        logger.info(f"Type: {'SSD/NVMe' if not info['rotational'] else 'HDD'}")
        logger.info(f"Model: {info['model']}")

    def install(self) -> Detection:
        """
        Drive the installation to completion from whatever phase it is in.

        Returns:
            The final detection, READY unless simulating

        Raises:
            FortressError: On any fatal error, after checkpointing it
            InstallCancelled: If interrupted, after tearing down
        """
        ctx = self.ctx
        try:
            with ctx.resources:
                detection = self.detect()
                if detection.phase == InstallationPhase.NO_PARTITIONS:
                    # Refuse an impossible layout before anything is written
                    try:
                        logger.info(self.plan().describe())
                    except FortressError as e:
                        self.checkpoints.save(InstallationPhase.ERROR.name, ctx.disk.path, str(e))
                        raise
                return reconcile_until_ready(self.reconciler)
        except (KeyboardInterrupt, InstallCancelled):
            self.cancel()
            raise

    def cancel(self) -> TeardownReport:
        """Tear down after an interruption and record where the run stopped."""
        logger.warning(colorize("Installation interrupted, releasing resources",
                                TermColors.WARNING, self.cmd_runner.colored_output))
        report = teardown(self.ctx)
        try:
            detection = self.detect()
            self.checkpoints.save(detection.phase.name, self.ctx.disk.path,
                                  f"interrupted, torn down: {detection.detail}")
        except FortressError as e:
            logger.warning(f"Could not record interruption: {e}")
        return report

    def _run_operator_actions(self, sequence: Tuple[actions.Action, ...]) -> Detection:
        try:
            with self.ctx.resources:
                return self.reconciler.run_actions(sequence)
        except (KeyboardInterrupt, InstallCancelled):
            self.cancel()
            raise

    def open_volumes(self) -> Detection:
        """Unlock both encrypted volumes."""
        return self._run_operator_actions((actions.OPEN_VOLUMES,))

    def mount(self) -> Detection:
        """Unlock the volumes and mount the target filesystems."""
        return self._run_operator_actions((actions.OPEN_VOLUMES, actions.MOUNT))

    def shell(self, shell: str = "/bin/bash") -> int:
        """
        Open an interactive shell inside the installed system.

        Returns:
            Exit status of the shell
        """
        self.mount()
        with chroot_session(self.ctx.target, self.cmd_runner):
            return self.cmd_runner.run_interactive(chroot_command(self.ctx.target, [shell, "-l"]))

    def clean(self) -> TeardownReport:
        """Release every mount, swap area and mapping of the target."""
        report = teardown(self.ctx)
        if report.ok:
            detection = self.detect()
            self.checkpoints.save(detection.phase.name, self.ctx.disk.path, f"after teardown: {detection.detail}")
        return report

    def status(self) -> Tuple[Optional[Checkpoint], Detection]:
        """Return the last checkpoint and a fresh detection, without changing anything."""
        return self.checkpoints.load(), self.detect()

"""
Reconciliation of the installation state.

The reconciler maps each detected phase to the ordered actions that bring
the machine from that phase to a finished installation, runs them and
records a checkpoint after every one.
"""
import logging
import subprocess
from typing import Dict, Sequence, Tuple

from fortress.utils.format import TermColors, colorize
from fortress.core import actions
from fortress.core.actions import Action
from fortress.core.checkpoint import CheckpointStore
from fortress.core.context import RunContext
from fortress.core.detect import DETECTABLE_PHASES, Detection, InstallationPhase, detect_phase
from fortress.core.exceptions import (
    ActionError, DiskNotFoundError, FortressError, InstallCancelled, ReconcileStalledError,
    UnknownPhaseError
)

logger = logging.getLogger('fortress')

_FULL_FROM_FORMAT: Tuple[Action, ...] = (
    actions.FORMAT_VOLUMES,
    actions.OPEN_VOLUMES,
    actions.CREATE_FILESYSTEMS,
    actions.MOUNT,
    actions.BOOTSTRAP,
) + actions.CONFIGURE

_FROM_CLOSED_VOLUMES: Tuple[Action, ...] = (
    actions.OPEN_VOLUMES,
    actions.CREATE_FILESYSTEMS,
    actions.MOUNT,
    actions.BOOTSTRAP_IF_ABSENT,
) + actions.CONFIGURE

_FROM_MISSING_FILESYSTEM: Tuple[Action, ...] = (
    actions.OPEN_VOLUMES,
    actions.CREATE_FILESYSTEMS,
    actions.MOUNT,
    actions.BOOTSTRAP,
) + actions.CONFIGURE

_FROM_UNMOUNTED: Tuple[Action, ...] = (
    actions.MOUNT,
    actions.BOOTSTRAP_IF_ABSENT,
) + actions.CONFIGURE

# NO_DISK has no actions: it is reported as a fatal error
ACTION_TABLE: Dict[InstallationPhase, Tuple[Action, ...]] = {
    InstallationPhase.NO_DISK: (),
    InstallationPhase.NO_PARTITIONS: (actions.PARTITION,) + _FULL_FROM_FORMAT,
    InstallationPhase.NOT_ENCRYPTED: _FULL_FROM_FORMAT,
    InstallationPhase.PARTIAL_ENCRYPTED: _FULL_FROM_FORMAT,
    InstallationPhase.VOLUMES_CLOSED: _FROM_CLOSED_VOLUMES,
    InstallationPhase.ROOT_OPEN_HOME_CLOSED: _FROM_CLOSED_VOLUMES,
    InstallationPhase.NO_ROOT_FILESYSTEM: _FROM_MISSING_FILESYSTEM,
    InstallationPhase.NO_HOME_FILESYSTEM: _FROM_MISSING_FILESYSTEM,
    InstallationPhase.NOT_MOUNTED: _FROM_UNMOUNTED,
    InstallationPhase.PARTIAL_MOUNT: _FROM_UNMOUNTED,
    InstallationPhase.NO_SYSTEM: (actions.BOOTSTRAP,) + actions.CONFIGURE,
    InstallationPhase.NOT_CONFIGURED: actions.CONFIGURE,
    InstallationPhase.READY: (),
}

_unmapped = [phase.name for phase in DETECTABLE_PHASES if phase not in ACTION_TABLE]
if _unmapped:
    raise RuntimeError(f"No reconcile actions defined for: {', '.join(_unmapped)}")


def actions_for(phase: InstallationPhase) -> Tuple[Action, ...]:
    """
    Return the actions that finish an installation from a phase.

    Raises:
        DiskNotFoundError: For NO_DISK
        UnknownPhaseError: For phases that are not the result of a detection
    """
    if phase == InstallationPhase.NO_DISK:
        raise DiskNotFoundError("Target disk not found")
    try:
        return ACTION_TABLE[phase]
    except KeyError:
        raise UnknownPhaseError(f"Unknown phase: {phase.name}")


class Reconciler:
    """Runs reconcile actions against the machine, checkpointing every step"""

    def __init__(self, ctx: RunContext, checkpoints: CheckpointStore):
        self.ctx = ctx
        self.checkpoints = checkpoints

    def checkpoint(self, detection: Detection, detail: str = "") -> None:
        self.checkpoints.save(detection.phase.name, self.ctx.disk.path, detail or detection.detail)

    def run_actions(self, sequence: Sequence[Action]) -> Detection:
        """
        Run actions in order, stopping at the first failure.

        After each action the phase is detected again and checkpointed. A
        failure is checkpointed as ERROR before it propagates.

        Returns:
            The detection after the last action

        Raises:
            ActionError: If an action fails
            PreconditionError: If an action lacks a secret or confirmation
        """
        runner = self.ctx.cmd_runner
        detection = None
        for position, action in enumerate(sequence, 1):
            logger.info(colorize(f"==> [{position}/{len(sequence)}] {action.description}",
                                 TermColors.BOLD, runner.colored_output))
            try:
                action.run(self.ctx)
            except InstallCancelled:
                raise
            except FortressError as e:
                self._record_failure(action, e)
                raise
            except subprocess.CalledProcessError as e:
                error = ActionError(f"{action.name}: {e}")
                self._record_failure(action, error)
                raise error from e

            detection = detect_phase(self.ctx)
            self.checkpoint(detection, f"after {action.name}: {detection.detail}")

        return detection if detection is not None else detect_phase(self.ctx)

    def _record_failure(self, action: Action, error: Exception) -> None:
        logger.error(colorize(f"Action {action.name} failed: {error}", TermColors.ERROR,
                              self.ctx.cmd_runner.colored_output))
        self.checkpoints.save(InstallationPhase.ERROR.name, self.ctx.disk.path, f"{action.name}: {error}")

    def reconcile(self, detection: Detection) -> Detection:
        """
        Run the actions mapped to a detected phase.

        Returns:
            The detection after the last action

        Raises:
            DiskNotFoundError: If the target disk is missing
            FortressError: If an action fails
        """
        try:
            sequence = actions_for(detection.phase)
        except FortressError as e:
            self.checkpoints.save(InstallationPhase.ERROR.name, self.ctx.disk.path, str(e))
            raise

        if not sequence:
            self.checkpoint(detection)
            return detection

        logger.info(f"Phase {detection.phase.name}: {len(sequence)} action(s) to run")
        return self.run_actions(sequence)


def reconcile_until_ready(reconciler: Reconciler, max_passes: int = 3) -> Detection:
    """
    Detect and reconcile until the installation is ready.

    A pass that does not move the phase forward aborts the run. In simulation
    mode nothing changes on the machine, so a single pass is made.

    Returns:
        The final detection

    Raises:
        ReconcileStalledError: If the phase stops advancing
    """
    ctx = reconciler.ctx
    detection = detect_phase(ctx)
    logger.info(f"Detected phase {detection}")

    for _ in range(max_passes):
        if detection.phase == InstallationPhase.READY:
            reconciler.checkpoint(detection)
            return detection

        result = reconciler.reconcile(detection)
        if ctx.cmd_runner.simulating:
            return result

        if result.phase <= detection.phase:
            message = f"Reconcile made no progress from {detection.phase.name}: {result.detail}"
            reconciler.checkpoints.save(InstallationPhase.ERROR.name, ctx.disk.path, message)
            raise ReconcileStalledError(message)
        detection = result

    if detection.phase == InstallationPhase.READY:
        reconciler.checkpoint(detection)
        return detection
    raise ReconcileStalledError(f"Installation not ready after {max_passes} passes: {detection}")

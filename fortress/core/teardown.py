"""
Teardown of an installation in progress.

Releases everything an installation may hold on the machine, in reverse
dependency order, whatever phase it reached. Each step checks the current
state first, so repeating a teardown is harmless.
"""
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Callable, List, Tuple

from fortress.utils.format import TermColors, colorize
from fortress.utils.types import PartitionRole, TeardownOutcome
from fortress.core.context import RunContext
from fortress.core.encryption import close_volume
from fortress.core.exceptions import FortressError
from fortress.core.mount import deactivate_swap, unmount_recursive

logger = logging.getLogger('fortress')


@dataclass(frozen=True)
class TeardownStep:
    name: str
    outcome: TeardownOutcome
    detail: str = ""


@dataclass
class TeardownReport:
    steps: List[TeardownStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.outcome != "failed" for step in self.steps)

    @property
    def performed(self) -> List[TeardownStep]:
        """Steps that changed the machine."""
        return [step for step in self.steps if step.outcome == "done"]

    def describe(self) -> str:
        lines = []
        for step in self.steps:
            suffix = f" ({step.detail})" if step.detail else ""
            lines.append(f"  {step.outcome:<6} {step.name}{suffix}")
        return "\n".join(lines)


def teardown(ctx: RunContext) -> TeardownReport:
    """
    Deactivate swap, unmount the target and close both mappings.

    A failed step does not stop the following ones.

    Args:
        ctx: Context of the current run

    Returns:
        Outcome of every step
    """
    runner = ctx.cmd_runner
    swap = ctx.disk.partition(PartitionRole.SWAP)

    steps: Tuple[Tuple[str, Callable[[], bool]], ...] = (
        (f"deactivate swap {swap}", lambda: deactivate_swap(swap, runner)),
        (f"unmount {ctx.target}", lambda: unmount_recursive(ctx.target, runner)),
        (f"close {ctx.home_volume.name}", lambda: close_volume(ctx.home_volume.name, runner)),
        (f"close {ctx.root_volume.name}", lambda: close_volume(ctx.root_volume.name, runner)),
    )

    report = TeardownReport()
    for name, step in steps:
        try:
            changed = step()
        except (FortressError, subprocess.CalledProcessError) as e:
            logger.warning(colorize(f"Teardown step failed: {name}: {e}", TermColors.WARNING, runner.colored_output))
            report.steps.append(TeardownStep(name, "failed", str(e)))
            continue
        report.steps.append(TeardownStep(name, "done" if changed else "noop"))

    if report.ok:
        logger.info(colorize(f"Teardown complete, {len(report.performed)} operation(s) performed",
                             TermColors.SUCCESS, runner.colored_output))
    else:
        logger.error(colorize("Teardown incomplete", TermColors.ERROR, runner.colored_output))
    return report

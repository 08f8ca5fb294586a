"""
Validation utilities.

This module inspects the live environment before anything destructive runs:
privileges, firmware mode, required tools and the kernel/memory facts later
steps depend on.
"""
import logging
import platform
from dataclasses import dataclass, field
from typing import List, Optional

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.utils.types import LibcType
from fortress.core.exceptions import MissingSecretError, PreconditionError

logger = logging.getLogger('fortress')

REQUIRED_TOOLS = [
    "sfdisk", "wipefs", "cryptsetup", "blkid", "mkfs.vfat", "mkfs.ext4",
    "mkswap", "mount", "umount", "mountpoint", "swapon", "swapoff",
    "xbps-install", "chroot",
]

# Optional tools used for partition table re-reads
RECOMMENDED_TOOLS = ["partprobe", "udevadm"]

# Below this amount of RAM the Argon2id parameters hit their lower bound
LOW_MEMORY_KIB = 2 * 1024 * 1024


@dataclass
class CapabilityCheck:
    name: str
    passed: bool
    detail: str
    required: bool = True


@dataclass
class CapabilityReport:
    """Outcome of probing the environment"""
    checks: List[CapabilityCheck] = field(default_factory=list)
    libc: LibcType = "glibc"
    memory_kib: int = 0
    kernel: str = ""

    def add(self, name: str, passed: bool, detail: str, required: bool = True) -> None:
        self.checks.append(CapabilityCheck(name, passed, detail, required))

    @property
    def failures(self) -> List[CapabilityCheck]:
        return [check for check in self.checks if check.required and not check.passed]

    @property
    def warnings(self) -> List[CapabilityCheck]:
        return [check for check in self.checks if not check.required and not check.passed]

    @property
    def ok(self) -> bool:
        return not self.failures

    def require(self) -> None:
        """
        Raise if any required check failed.

        Raises:
            PreconditionError: Listing every failed check
        """
        if self.failures:
            raise PreconditionError(
                "Environment check failed:\n" +
                "\n".join(f"  - {check.name}: {check.detail}" for check in self.failures)
            )


def detect_libc(cmd_runner: CommandRunner) -> LibcType:
    """Return 'musl' if the live environment's ldd is musl, else 'glibc'."""
    result = cmd_runner.query(["ldd", "--version"])
    # musl's ldd prints its banner on stderr and exits 1
    output = f"{result.stdout}\n{result.stderr}".lower()
    return "musl" if "musl" in output else "glibc"


def memory_total_kib(cmd_runner: CommandRunner) -> int:
    """Return MemTotal from /proc/meminfo in KiB, 0 if unavailable."""
    meminfo = cmd_runner.read_text("/proc/meminfo") or ""
    for line in meminfo.splitlines():
        if line.startswith("MemTotal:"):
            fields = line.split()
            if len(fields) >= 2 and fields[1].isdigit():
                return int(fields[1])
    return 0


def is_uefi(cmd_runner: CommandRunner) -> bool:
    return cmd_runner.path_exists("/sys/firmware/efi")


def is_live_environment(cmd_runner: CommandRunner) -> bool:
    if cmd_runner.path_exists("/run/void-live"):
        return True
    cmdline = cmd_runner.read_text("/proc/cmdline") or ""
    return "void-live" in cmdline


def probe_capabilities(cmd_runner: CommandRunner) -> CapabilityReport:
    """
    Check for required tools, permissions and firmware mode.

    In simulation mode the checks that only matter for real execution are
    reported as warnings instead of failures.

    Args:
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        The populated CapabilityReport
    """
    strict = not cmd_runner.simulating
    report = CapabilityReport()

    uid = cmd_runner.effective_uid()
    report.add("privileges", uid == 0,
               "running as root" if uid == 0 else "must be run as root", required=strict)

    uefi = is_uefi(cmd_runner)
    report.add("firmware", uefi,
               "UEFI firmware detected" if uefi else "boot in UEFI mode required", required=strict)

    missing = [tool for tool in REQUIRED_TOOLS if not cmd_runner.which(tool)]
    report.add("tools", not missing,
               "all required tools present" if not missing else f"missing: {', '.join(missing)}",
               required=strict)

    missing_optional = [tool for tool in RECOMMENDED_TOOLS if not cmd_runner.which(tool)]
    report.add("recommended tools", not missing_optional,
               "present" if not missing_optional else f"missing: {', '.join(missing_optional)}",
               required=False)

    report.memory_kib = memory_total_kib(cmd_runner)
    report.add("memory", report.memory_kib >= LOW_MEMORY_KIB,
               f"{report.memory_kib // 1024} MiB", required=False)

    report.kernel = platform.release()
    report.libc = detect_libc(cmd_runner)
    report.add("libc", True, report.libc, required=False)

    live = is_live_environment(cmd_runner)
    report.add("live environment", live, "Void live image" if live else "not a Void live image", required=False)

    for check in report.checks:
        if not check.passed:
            level = logging.ERROR if check.required else logging.WARNING
            color = TermColors.ERROR if check.required else TermColors.WARNING
            logger.log(level, colorize(f"{check.name}: {check.detail}", color, cmd_runner.colored_output))
        else:
            logger.debug(f"{check.name}: {check.detail}")

    logger.info(f"Environment: {report.libc} on {platform.machine()}, kernel {report.kernel}")
    return report


def require_secret(value: Optional[str], what: str) -> str:
    """
    Return a secret that a step cannot proceed without.

    Raises:
        MissingSecretError: If the secret was not supplied
    """
    if not value:
        raise MissingSecretError(f"{what} is required but was not supplied")
    return value

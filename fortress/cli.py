"""
Command-line interface for fortress.

This module handles argument parsing, interactive prompts and signal
handling, and dispatches to the installer operations.
"""
import argparse
import dataclasses
import getpass
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

from fortress import __version__
from fortress.utils.logging import DEFAULT_LOG_FILE, setup_logging
from fortress.utils.command import CommandRunner, SimulationMode
from fortress.utils.format import TermColors, colorize, parse_size_spec
from fortress.utils.validation import probe_capabilities
from fortress.core.checkpoint import CheckpointStore
from fortress.core.context import DEFAULT_CHECKPOINT_PATH, DEFAULT_TARGET, InstallConfig
from fortress.core.detect import Detection, InstallationPhase
from fortress.core.disk import TargetDisk, auto_select_disk
from fortress.core.encryption import volume_state
from fortress.core.exceptions import (
    DiskNotFoundError, FortressError, InstallCancelled, MissingSecretError
)
from fortress.core.mount import mounts_under
from fortress.core.partition import render_sfdisk_script
from fortress.core.planner import parse_size_overrides, plan_partitions
from fortress.installer import Installer, build_context

logger = logging.getLogger('fortress')

COMMANDS = ["install", "resume", "status", "plan", "open", "mount", "shell", "clean"]

# Commands that change the machine and need the environment checks to pass
MUTATING_COMMANDS = {"install", "resume", "open", "mount", "shell"}

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Options fall back to environment variables so the installer can be
    driven non-interactively.

    Args:
        argv: Arguments to parse, sys.argv[1:] when None

    Returns:
        Namespace containing parsed arguments
    """
    env = os.environ
    parser = argparse.ArgumentParser(
        prog="fortress",
        description="Resumable full-disk-encrypted Void Linux installer"
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="install",
        choices=COMMANDS,
        help="Operation to run (default: install)"
    )

    parser.add_argument(
        "-d", "--disk",
        default=env.get("DISK"),
        help="Target disk device, e.g. /dev/nvme0n1 (env: DISK; default: auto-detect)"
    )

    parser.add_argument(
        "-t", "--target",
        default=DEFAULT_TARGET,
        help=f"Mount point for the target root (default: {DEFAULT_TARGET})"
    )

    system_group = parser.add_argument_group('Installed system')
    system_group.add_argument("--hostname", default=env.get("HOSTNAME", "void-fortress"),
                              help="Host name (env: HOSTNAME)")
    system_group.add_argument("--username", default=env.get("USERNAME", "nx"),
                              help="Regular user account (env: USERNAME)")
    system_group.add_argument("--timezone", default=env.get("TIMEZONE", "UTC"),
                              help="Time zone, e.g. Europe/Paris (env: TIMEZONE)")
    system_group.add_argument("--locale", default=env.get("LOCALE", "en_US.UTF-8"),
                              help="Locale, glibc only (env: LOCALE)")
    system_group.add_argument("--keymap", default=env.get("KEYMAP", "us"),
                              help="Console keymap (env: KEYMAP)")
    system_group.add_argument("--bootloader-id", default="void",
                              help="EFI boot entry name (default: void)")
    system_group.add_argument("--repository", default=env.get("FORTRESS_REPOSITORY"),
                              help="XBPS repository URL (env: FORTRESS_REPOSITORY)")

    # Help text for size specification in arguments
    size_help_text = "(binary units like 512M, 20G, or decimal units like 100GB)"

    layout_group = parser.add_argument_group('Disk layout')
    layout_group.add_argument(
        "--size",
        action="append",
        default=[],
        metavar="ROLE=SIZE",
        help=f"Override a partition size, e.g. root=30G; roles: efi, boot, swap, root {size_help_text}"
    )
    layout_group.add_argument(
        "--capacity",
        help=f"Disk capacity to plan for with the plan command {size_help_text}"
    )

    run_group = parser.add_argument_group('Run control')
    run_group.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Confirm destructive operations (partitioning, LUKS formatting) without prompting"
    )
    run_group.add_argument(
        "--teardown-on-error",
        action="store_true",
        help="Release mounts and mappings opened by this run when it fails"
    )
    run_group.add_argument(
        "--checkpoint",
        default=env.get("FORTRESS_CHECKPOINT", DEFAULT_CHECKPOINT_PATH),
        help=f"Checkpoint file (env: FORTRESS_CHECKPOINT; default: {DEFAULT_CHECKPOINT_PATH})"
    )
    run_group.add_argument(
        "--log-file",
        default=env.get("FORTRESS_LOG", DEFAULT_LOG_FILE),
        help=f"Log file (env: FORTRESS_LOG; default: {DEFAULT_LOG_FILE})"
    )

    # Simulation options
    parser.add_argument(
        "-s", "--simulate",
        action="store_true",
        help="Simulate operations without making any changes to the system"
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)

    try:
        args.size_overrides = parse_size_overrides(parse_size_assignments(args.size))
    except ValueError as e:
        parser.error(str(e))

    return args


def parse_size_assignments(assignments: List[str]) -> Dict[str, str]:
    """
    Split ROLE=SIZE assignments.

    Raises:
        ValueError: If an assignment has no '='
    """
    specs = {}
    for assignment in assignments:
        role, sep, size = assignment.partition("=")
        if not sep or not role or not size:
            raise ValueError(f"Expected ROLE=SIZE, got: {assignment}")
        specs[role.strip()] = size.strip()
    return specs


def build_config(args: argparse.Namespace, disk: str) -> InstallConfig:
    """Create the run configuration from arguments and secret environment variables."""
    env = os.environ
    return InstallConfig(
        disk=disk,
        target=args.target,
        hostname=args.hostname,
        username=args.username,
        timezone=args.timezone,
        locale=args.locale,
        keymap=args.keymap,
        bootloader_id=args.bootloader_id,
        luks_passphrase=env.get("LUKS_PASS") or None,
        home_luks_passphrase=env.get("HOME_LUKS_PASS") or None,
        root_password=env.get("ROOT_PASS") or None,
        user_password=env.get("USER_PASS") or None,
        size_overrides=args.size_overrides,
        checkpoint_path=args.checkpoint,
        confirm_destroy=args.yes,
        teardown_on_error=args.teardown_on_error,
        repository=args.repository,
    )


def _raise_cancelled(signum, frame) -> None:
    raise InstallCancelled(f"Received {signal.Signals(signum).name}")


def install_signal_handlers() -> None:
    """Turn termination signals into InstallCancelled so cleanup runs."""
    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, _raise_cancelled)


def prompt_secret(prompt: str, confirm: bool = False) -> Optional[str]:
    """
    Ask for a secret on the terminal.

    Returns:
        The secret, or None when not attached to a terminal or left empty

    Raises:
        MissingSecretError: If the confirmation does not match
    """
    if not sys.stdin.isatty():
        return None
    secret = getpass.getpass(f"{prompt}: ")
    if not secret:
        return None
    if confirm and getpass.getpass(f"{prompt} (again): ") != secret:
        raise MissingSecretError(f"{prompt}: entries do not match")
    return secret


def confirm_destruction(disk: str) -> bool:
    """Ask the operator to type YES before the disk is overwritten."""
    if not sys.stdin.isatty():
        return False
    print(colorize(f"WARNING: all data on {disk} will be destroyed.", TermColors.ERROR + TermColors.BOLD))
    return input("Type YES to continue: ").strip() == "YES"


def complete_config(
    config: InstallConfig,
    command: str,
    detection: Detection,
    simulate: bool
) -> InstallConfig:
    """
    Fill in secrets and confirmation the detected phase calls for.

    Prompts only for what the command will actually need from this phase.
    """
    phase = detection.phase
    updates = {}
    formatting = InstallationPhase.NO_PARTITIONS <= phase <= InstallationPhase.PARTIAL_ENCRYPTED

    if phase == InstallationPhase.NO_DISK:
        # The run stops before any secret is used
        return config

    if simulate:
        # Nothing is written, placeholders keep the simulated steps running
        updates["confirm_destroy"] = True
        if not config.luks_passphrase:
            updates["luks_passphrase"] = "simulation"
        return dataclasses.replace(config, **updates)

    if command in ("install", "resume"):
        if phase == InstallationPhase.READY:
            return config
        if not config.luks_passphrase:
            updates["luks_passphrase"] = prompt_secret("LUKS passphrase", confirm=formatting)
        if not config.root_password:
            updates["root_password"] = prompt_secret("Password for root", confirm=True)
        if not config.user_password:
            updates["user_password"] = prompt_secret(f"Password for {config.username}", confirm=True)
        if formatting and not config.confirm_destroy:
            updates["confirm_destroy"] = confirm_destruction(config.disk)
    elif command in ("open", "mount", "shell"):
        if phase < InstallationPhase.NO_ROOT_FILESYSTEM and not config.luks_passphrase:
            updates["luks_passphrase"] = prompt_secret("LUKS passphrase")

    return dataclasses.replace(config, **updates)


def display_simulation_summary(cmd_runner: CommandRunner) -> None:
    """
    Display a summary of the simulation.

    Args:
        cmd_runner: CommandRunner instance for executing commands
    """
    if cmd_runner.simulation_mode != SimulationMode.SIMULATE:
        return

    # Get the simulation report
    report = cmd_runner.get_simulation_report()

    # Get terminal width
    try:
        terminal_width = os.get_terminal_size().columns
    except (AttributeError, OSError):
        terminal_width = 80

    stars = "*" * terminal_width
    colored = cmd_runner.colored_output

    print(f"\n{colorize(stars, TermColors.SIM, colored)}")
    print(colorize("SIMULATION COMPLETE - NO CHANGES WERE MADE", TermColors.SIM + TermColors.BOLD, colored))
    print(f"{colorize(stars, TermColors.SIM, colored)}\n")

    print(colorize("The following operations would have been performed:", TermColors.SUCCESS, colored))
    print(report)

    print(f"\n{colorize('To execute these operations for real, run without the --simulate flag.', TermColors.SIM, colored)}")


def show_status(installer: Installer) -> None:
    """Print the last checkpoint next to the live state of the machine."""
    ctx = installer.ctx
    checkpoint, detection = installer.status()

    print(f"Disk:        {ctx.disk.path} ({ctx.disk.size_gib:.1f} GiB)")
    print(f"Target:      {ctx.target}")
    if checkpoint is None:
        print("Checkpoint:  none")
    else:
        print(f"Checkpoint:  {checkpoint.describe()}")
    print(f"Live phase:  {detection.phase.name} ({detection.detail})")
    for volume in ctx.volumes.values():
        print(f"Volume:      {volume.name} on {volume.partition}: {volume_state(volume, ctx.cmd_runner).value}")
    mounts = mounts_under(ctx.target, ctx.cmd_runner)
    print(f"Mounted:     {', '.join(reversed(mounts)) if mounts else 'nothing'}")


def show_plan(args: argparse.Namespace, disk: str, cmd_runner: CommandRunner) -> None:
    """Print the partition plan and sfdisk script without touching the disk."""
    if args.capacity:
        target_disk = TargetDisk.for_path(disk, parse_size_spec(args.capacity))
    else:
        target_disk = build_context(build_config(args, disk), cmd_runner).disk
        if not target_disk.size_bytes:
            raise DiskNotFoundError(f"Cannot read the size of {disk}; pass --capacity to plan anyway")

    plan = plan_partitions(target_disk.size_bytes, args.size_overrides or None)
    print(plan.describe())
    print()
    print(render_sfdisk_script(target_disk, plan))


def run_command(args: argparse.Namespace, cmd_runner: CommandRunner) -> int:
    """
    Run the selected command.

    Returns:
        Exit code
    """
    disk = auto_select_disk(cmd_runner, args.disk)
    if args.command == "plan":
        show_plan(args, disk or "/dev/sdX", cmd_runner)
        return EXIT_SUCCESS

    if not disk:
        raise DiskNotFoundError("No target disk found; pass --disk or set DISK")

    report = None
    if args.command in MUTATING_COMMANDS:
        report = probe_capabilities(cmd_runner)
        report.require()

    config = build_config(args, disk)
    installer = Installer(build_context(config, cmd_runner, report))

    if args.command == "status":
        show_status(installer)
        return EXIT_SUCCESS

    if args.command == "clean":
        teardown_report = installer.clean()
        print(teardown_report.describe())
        return EXIT_SUCCESS if teardown_report.ok else EXIT_FAILURE

    # Secrets depend on how far the installation already got
    detection = installer.detect()
    config = complete_config(config, args.command, detection, args.simulate)
    installer = Installer(build_context(config, cmd_runner, report))

    if args.command in ("install", "resume"):
        if detection.phase != InstallationPhase.NO_DISK:
            installer.describe_disk()
        if args.command == "resume":
            checkpoint = installer.checkpoints.load()
            if checkpoint is not None:
                logger.info(f"Last checkpoint: {checkpoint.describe()}")
            logger.info(f"Resuming from detected phase {detection.phase.name}")
        result = installer.install()
        if args.simulate:
            display_simulation_summary(cmd_runner)
        else:
            logger.info(colorize("Installation complete", TermColors.SUCCESS, cmd_runner.colored_output))
            logger.info(f"The system is mounted at {config.target}; run 'fortress clean' before rebooting")
        logger.debug(f"Final phase: {result}")
        return EXIT_SUCCESS

    if args.command == "open":
        installer.open_volumes()
    elif args.command == "mount":
        installer.mount()
        logger.info(f"Target mounted at {config.target}")
    elif args.command == "shell":
        return installer.shell()

    if args.simulate:
        display_simulation_summary(cmd_runner)
    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function.

    Returns:
        Exit code (0 for success, 1 for errors, 130 when interrupted)
    """
    args = None
    try:
        args = parse_arguments(argv)

        # Set up logging
        log_file = setup_logging(args.debug, args.log_file)

        # Create the command runner with appropriate simulation mode
        cmd_runner = CommandRunner(
            SimulationMode.SIMULATE if args.simulate else SimulationMode.DISABLED,
            not args.no_color
        )
        if args.simulate:
            logger.info("Running in simulation mode - NO CHANGES WILL BE MADE")

        install_signal_handlers()

        try:
            return run_command(args, cmd_runner)
        except FortressError as e:
            if isinstance(e, InstallCancelled):
                raise
            logger.error(colorize(str(e), TermColors.ERROR, cmd_runner.colored_output))
            checkpoint = CheckpointStore(args.checkpoint).load()
            if checkpoint is not None:
                logger.error(f"Last checkpoint: {checkpoint.describe()}")
            logger.error(f"Checkpoint: {args.checkpoint}")
            if log_file:
                logger.error(f"Log: {log_file}")
            return EXIT_FAILURE

    except (KeyboardInterrupt, InstallCancelled):
        logger.error("Operation cancelled by user")
        return EXIT_INTERRUPTED

    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args is not None and args.debug:
            import traceback
            traceback.print_exc()
        return EXIT_FAILURE


# For module import compatibility
if __name__ == "__main__":
    sys.exit(main())

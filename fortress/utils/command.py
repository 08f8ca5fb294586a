"""
Command execution utilities.

This module provides the single gateway fortress uses to touch the live system:
shell commands, read-only probes and file writes into the target, with
simulation support for everything that mutates state.
"""
import logging
import os
import shutil
import stat
import subprocess
import uuid
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

from fortress.utils.format import TermColors, colorize

logger = logging.getLogger('fortress')


class SimulationMode(Enum):
    """Enumeration for simulation modes"""
    DISABLED = 0  # Normal operation
    SIMULATE = 1  # Simulate operations


class CommandRunner:
    """
    Class responsible for command execution with simulation support.

    Mutating commands go through run(), which only logs them in simulation
    mode. Probes go through query(), which always executes for real because
    state detection must observe the actual machine.
    """
    def __init__(self, simulation_mode: SimulationMode = SimulationMode.DISABLED, colored_output: bool = True):
        """
        Initialize the command runner.

        Args:
            simulation_mode: Simulation mode to operate in
            colored_output: Whether to use colored output in terminal
        """
        self.simulation_mode = simulation_mode
        self.colored_output = colored_output
        self.commands_run: List[Dict[str, Any]] = []

        # Generate a unique simulation ID
        self.simulation_id = str(uuid.uuid4())[:8]

        # Keep track of simulated UUIDs for consistency
        self.simulated_uuids: Dict[str, str] = {}
        self.simulated_partuuids: Dict[str, str] = {}

    @property
    def simulating(self) -> bool:
        return self.simulation_mode == SimulationMode.SIMULATE

    def run(self, cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        """
        Run a shell command or simulate running it.

        Args:
            cmd: Command to run as list of strings
            check: Whether to check for non-zero return code
            **kwargs: Additional arguments to pass to subprocess.run

        Returns:
            CompletedProcess instance from subprocess.run

        Raises:
            subprocess.CalledProcessError: If check is set and the command fails
        """
        cmd_str = ' '.join(cmd)
        logger.debug(f"Command requested: {cmd_str}")

        self.commands_run.append({
            "command": list(cmd),
            "simulated": self.simulating
        })

        if self.simulating:
            sim_prefix = colorize(f"[SIM:{self.simulation_id}]", TermColors.SIM, self.colored_output)
            logger.info(f"{sim_prefix} Would execute: {cmd_str}")
            return self._simulate_command(cmd, **kwargs)

        try:
            return self._execute(cmd, check=check, **kwargs)
        except subprocess.CalledProcessError as e:
            logger.error(colorize(f"Command failed: {cmd_str}", TermColors.ERROR, self.colored_output))
            logger.error(f"Return code: {e.returncode}")
            if e.stdout:
                logger.error(f"Stdout: {e.stdout}")
            if e.stderr:
                logger.error(f"Stderr: {e.stderr}")
            raise

    def query(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        """
        Run a read-only probe for real, even in simulation mode.

        Probes never raise on a non-zero exit status: callers inspect the
        return code, and a missing tool is reported as code 127.

        Args:
            cmd: Command to run as list of strings
            **kwargs: Additional arguments to pass to subprocess.run

        Returns:
            CompletedProcess instance
        """
        logger.debug(f"Probe: {' '.join(cmd)}")
        return self._execute(cmd, check=False, **kwargs)

    def succeeds(self, cmd: List[str]) -> bool:
        """Return True if the probe exits with status 0."""
        return self.query(cmd).returncode == 0

    def run_interactive(self, cmd: List[str]) -> int:
        """
        Run a command attached to the operator's terminal.

        Args:
            cmd: Command to run as list of strings

        Returns:
            Exit status of the command
        """
        logger.info(f"Starting interactive command: {' '.join(cmd)}")
        if self.simulating:
            return 0
        return subprocess.run(cmd).returncode

    def _execute(self, cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        """Execute a command with captured text output."""
        try:
            return subprocess.run(
                cmd,
                check=check,
                text=True,
                capture_output=True,
                **kwargs
            )
        except FileNotFoundError:
            result = subprocess.CompletedProcess(cmd, 127, stdout="", stderr=f"{cmd[0]}: command not found")
            if check:
                raise subprocess.CalledProcessError(127, cmd, output="", stderr=result.stderr)
            return result

    def _simulate_command(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        """
        Generate simulated output for a command.

        Args:
            cmd: Command to simulate
            **kwargs: Additional arguments passed to the original command

        Returns:
            CompletedProcess with simulated output
        """
        result = subprocess.CompletedProcess(
            args=cmd,
            returncode=0,
            stdout="",
            stderr=""
        )

        cmd_name = os.path.basename(cmd[0]) if cmd else ""

        if cmd_name == "blkid":
            return self._handle_blkid_simulation(cmd, result)
        elif cmd_name == "sfdisk" and "input" in kwargs:
            logger.debug(f"sfdisk script:\n{kwargs['input']}")
            result.stdout = "Created a new GPT disklabel\nThe partition table has been altered.\n"

        return result

    def _handle_blkid_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate blkid command output"""
        if "-s" in cmd and len(cmd) > cmd.index("-s") + 1:
            param_type = cmd[cmd.index("-s") + 1]
            device_path = cmd[-1]

            # Generate consistent identifiers for the same device
            if param_type == "UUID":
                if device_path not in self.simulated_uuids:
                    self.simulated_uuids[device_path] = str(uuid.uuid4())
                result.stdout = self.simulated_uuids[device_path] + "\n"
            elif param_type == "PARTUUID":
                if device_path not in self.simulated_partuuids:
                    self.simulated_partuuids[device_path] = str(uuid.uuid4())
                result.stdout = self.simulated_partuuids[device_path] + "\n"

        return result

    # Read-only environment facts

    def effective_uid(self) -> int:
        return os.geteuid()

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def path_exists(self, path: Union[str, Path]) -> bool:
        return os.path.exists(path)

    def is_block_device(self, path: Union[str, Path]) -> bool:
        """Return True if path exists and is a block special file."""
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def list_dir(self, path: Union[str, Path]) -> List[str]:
        """List a directory, returning an empty list if it is absent or unreadable."""
        try:
            return os.listdir(path)
        except OSError:
            return []

    def read_text(self, path: Union[str, Path]) -> Optional[str]:
        """Read a text file, returning None if it is absent or unreadable."""
        try:
            return Path(path).read_text()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Could not read {path}: {e}")
            return None

    # Writes into the target system

    def make_dirs(self, path: Union[str, Path]) -> None:
        """Create a directory tree or log that it would be created in simulation mode."""
        if self.simulating:
            logger.info(f"Would create directory: {path}")
        else:
            Path(path).mkdir(exist_ok=True, parents=True)

    def write_file(self, path: Union[str, Path], content: Union[str, bytes], mode: Optional[int] = None) -> None:
        """
        Write a file or log that it would be written in simulation mode.

        Args:
            path: Destination path
            content: Text or binary content
            mode: Optional permission bits applied after writing
        """
        if self.simulating:
            logger.info(f"Would write {len(content)} bytes to {path}")
            return

        target = Path(path)
        target.parent.mkdir(exist_ok=True, parents=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content)
        if mode is not None:
            os.chmod(target, mode)
        logger.debug(f"Wrote {path}")

    def remove_file(self, path: Union[str, Path]) -> None:
        if self.simulating:
            logger.info(f"Would remove {path}")
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def get_simulation_report(self) -> str:
        """
        Generate a report of all simulated commands.

        Returns:
            Formatted string with report of simulated commands
        """
        if not self.simulating:
            return "Simulation mode is not active."

        report = []
        report.append("=" * 80)
        report.append(f"SIMULATION REPORT [ID: {self.simulation_id}]")
        report.append("=" * 80)
        report.append("")

        # Group commands by type
        command_groups: Dict[str, List[Dict[str, Any]]] = {}
        for cmd_record in self.commands_run:
            cmd = cmd_record["command"]
            cmd_type = os.path.basename(cmd[0]) if cmd else "unknown"
            command_groups.setdefault(cmd_type, []).append(cmd_record)

        for cmd_type, cmd_records in command_groups.items():
            report.append(f"{cmd_type.upper()} COMMANDS:")
            report.append("-" * 40)
            for i, cmd_record in enumerate(cmd_records, 1):
                report.append(f"{i}. {' '.join(cmd_record['command'])}")
            report.append("")

        report.append("-" * 80)
        report.append(f"Total commands simulated: {len(self.commands_run)}")
        report.append("=" * 80)

        return "\n".join(report)

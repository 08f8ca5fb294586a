"""
Formatting utilities.

This module provides functions for formatting sizes, parsing size specifications,
and consistent terminal output formatting.
"""
import re
import time
from typing import Optional


GIB = 1024**3
MIB = 1024**2


# ANSI Terminal Colors
class TermColors:
    """ANSI color codes for terminal output"""
    INFO = '\033[96m'     # Cyan for informational messages
    SUCCESS = '\033[92m'  # Green for success messages
    WARNING = '\033[93m'  # Yellow for warnings
    ERROR = '\033[91m'    # Red for errors
    SIM = '\033[95m'      # Purple for simulation messages
    BOLD = '\033[1m'      # Bold text
    ENDC = '\033[0m'      # End color


def colorize(message: str, color: str, enabled: bool = True) -> str:
    """
    Add color to a message if color output is enabled.

    Args:
        message: The message to colorize
        color: The color to use (from TermColors)
        enabled: Whether colorization is enabled

    Returns:
        Colorized message or original message if colors disabled
    """
    if not enabled:
        return message
    return f"{color}{message}{TermColors.ENDC}"


def bytes_to_human_readable(size_bytes: int) -> str:
    """
    Convert bytes to human readable format using binary units (KiB, MiB, GiB, TiB).

    Args:
        size_bytes: Size in bytes

    Returns:
        Human readable size string with proper binary unit
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"

    size = float(size_bytes)
    for unit in ['KiB', 'MiB', 'GiB', 'TiB', 'PiB']:
        size /= 1024
        if size < 1024:
            return f"{size:.2f} {unit}"

    return f"{size:.2f} PiB"


def bytes_to_sfdisk_size(size_bytes: int) -> str:
    """
    Render a byte count the way sfdisk scripts expect it.

    Whole GiB values are written as GiB, everything else is rounded down to MiB.
    """
    if size_bytes % GIB == 0:
        return f"{size_bytes // GIB}GiB"
    return f"{size_bytes // MIB}MiB"


def parse_size_spec(spec: str, disk_size_bytes: Optional[int] = None) -> int:
    """
    Parse a size specification, which can be absolute or a percentage.

    Single-letter suffixes follow the sfdisk convention and are binary units,
    so "512M" is 512 MiB and "20G" is 20 GiB.

    Args:
        spec: Size specification (e.g., "512M", "20G", "100GB", "100GiB", "10%")
        disk_size_bytes: Total disk size in bytes, required for percentages

    Returns:
        Size in bytes

    Raises:
        ValueError: If the specification cannot be parsed
    """
    spec = spec.strip()
    if spec.endswith("%"):
        if disk_size_bytes is None:
            raise ValueError(f"Percentage size needs a disk size: {spec}")
        percentage = float(spec.rstrip("%"))
        return int(disk_size_bytes * percentage / 100)

    match = re.match(r"^(\d+(?:\.\d+)?)\s*([KMGT]i?B?)?$", spec, re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size specification: {spec}")

    number, unit = match.groups()
    value = float(number)
    unit = (unit or "").upper()

    binary = {"K": 1, "KIB": 1, "M": 2, "MIB": 2, "G": 3, "GIB": 3, "T": 4, "TIB": 4}
    decimal = {"KB": 1, "MB": 2, "GB": 3, "TB": 4}

    if unit in ("", "B"):
        return int(value)
    if unit in binary:
        return int(value * 1024**binary[unit])
    if unit in decimal:
        return int(value * 1000**decimal[unit])

    raise ValueError(f"Unknown unit: {unit}")


def format_timestamp(epoch: float) -> str:
    """Render an epoch timestamp as local time for status output."""
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(epoch))

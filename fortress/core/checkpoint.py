"""
Checkpoint persistence.

After every step the installer records the phase it observed, so an operator
can see where an interrupted run stopped. The record is informational: the
next run detects the phase again from the machine itself.
"""
import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from fortress.utils.format import format_timestamp

logger = logging.getLogger('fortress')

CHECKPOINT_VERSION = 1


@dataclass(frozen=True)
class Checkpoint:
    phase: str
    timestamp: float
    disk: str
    detail: str
    version: int = CHECKPOINT_VERSION

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            phase=str(data["phase"]),
            timestamp=float(data["timestamp"]),
            disk=str(data.get("disk", "")),
            detail=str(data.get("detail", "")),
            version=int(data.get("version", CHECKPOINT_VERSION)),
        )

    def describe(self) -> str:
        return f"{self.phase} at {format_timestamp(self.timestamp)} on {self.disk}: {self.detail}"


class CheckpointStore:
    """
    JSON checkpoint file, replaced atomically on every save.

    A disabled store (used in simulation mode) accepts saves without
    touching the filesystem.
    """

    def __init__(self, path: str, enabled: bool = True):
        self.path = Path(path)
        self.enabled = enabled

    def save(self, phase: str, disk: str, detail: str) -> Optional[Checkpoint]:
        """
        Record a phase transition.

        Args:
            phase: Phase name
            disk: Target disk path
            detail: What happened

        Returns:
            The checkpoint written, or None if the store is disabled or the
            file could not be written
        """
        checkpoint = Checkpoint(phase=phase, timestamp=time.time(), disk=disk, detail=detail)
        if not self.enabled:
            logger.debug(f"Checkpoint (not persisted): {checkpoint.describe()}")
            return None

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        except OSError as e:
            logger.warning(f"Could not write checkpoint {self.path}: {e}")
            return None

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(asdict(checkpoint), f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp_name, self.path)
        except OSError as e:
            logger.warning(f"Could not write checkpoint {self.path}: {e}")
            try:
                os.remove(tmp_name)
            except OSError:
                pass
            return None

        logger.debug(f"Checkpoint: {checkpoint.describe()}")
        return checkpoint

    def load(self) -> Optional[Checkpoint]:
        """Return the last checkpoint, or None if it is missing or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Checkpoint.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {self.path}: {e}")
            return None

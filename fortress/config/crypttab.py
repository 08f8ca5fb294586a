"""
crypttab generation for the target system.
"""
import logging

from fortress.utils.command import CommandRunner
from fortress.utils.types import PartitionRole
from fortress.core.disk import TargetDisk
from fortress.core.encryption import HOME_MAPPING, ROOT_MAPPING
from fortress.core.exceptions import CrypttabError, FilesystemError
from fortress.core.filesystem import get_partuuid, get_uuid
from fortress.config import write_target_file
from fortress.config.fstab import SWAP_MAPPING

logger = logging.getLogger('fortress')

# Key file unlocking root from the initramfs, so the passphrase is typed once in GRUB
VOLUME_KEY_PATH = "/boot/volume.key"


def render_crypttab(root_uuid: str, home_uuid: str, swap_partuuid: str) -> str:
    return (
        f"{ROOT_MAPPING}  UUID={root_uuid}  {VOLUME_KEY_PATH}  luks\n"
        f"{HOME_MAPPING}  UUID={home_uuid}  none  luks\n"
        f"{SWAP_MAPPING}  PARTUUID={swap_partuuid}  /dev/urandom  swap,cipher=aes-xts-plain64,size=512\n"
    )


def generate_crypttab(disk: TargetDisk, target: str, cmd_runner: CommandRunner) -> str:
    """
    Write /etc/crypttab of the target.

    The LUKS UUIDs are those of the physical partitions; swap is addressed by
    partition UUID because its content is re-keyed on every boot.

    Returns:
        Host path of the written file

    Raises:
        CrypttabError: If a UUID cannot be read or the file cannot be written
    """
    try:
        content = render_crypttab(
            get_uuid(disk.partition(PartitionRole.ROOT), cmd_runner),
            get_uuid(disk.partition(PartitionRole.HOME), cmd_runner),
            get_partuuid(disk.partition(PartitionRole.SWAP), cmd_runner),
        )
        return write_target_file(target, "/etc/crypttab", content, cmd_runner)
    except (FilesystemError, OSError) as e:
        raise CrypttabError(f"Cannot generate crypttab: {e}")

"""
System configuration of the installed target.

Plain configuration files are written directly into the target root; steps
that need the target's own tools (timezone link, locales, user creation,
passwords) run as a script inside a chroot.
"""
import logging
import os
import shlex
import subprocess
from typing import Dict, List, Optional

from fortress.utils.command import CommandRunner
from fortress.utils.format import TermColors, colorize
from fortress.utils.types import LibcType
from fortress.core.chroot import chroot_command
from fortress.core.encryption import ROOT_MAPPING
from fortress.core.exceptions import ConfigurationError
from fortress.core.mount import target_path
from fortress.config import write_target_file
from fortress.config.crypttab import VOLUME_KEY_PATH

logger = logging.getLogger('fortress')

CONFIGURE_SCRIPT_PATH = "/root/fortress-configure.sh"
KEY_FILE_BYTES = 64
USER_GROUPS = "wheel,audio,video,input,kvm"

DRACUT_CONF = (
    'hostonly="yes"\n'
    'add_dracutmodules+=" crypt "\n'
    f'install_items+=" {VOLUME_KEY_PATH} /etc/crypttab "\n'
)


def render_grub_defaults(root_luks_uuid: str) -> str:
    """GRUB defaults unlocking the LUKS1 root volume from the boot loader."""
    return (
        "GRUB_DEFAULT=0\n"
        "GRUB_TIMEOUT=5\n"
        'GRUB_DISTRIBUTOR="Void"\n'
        'GRUB_CMDLINE_LINUX_DEFAULT="loglevel=4"\n'
        f'GRUB_CMDLINE_LINUX="rd.luks.uuid={root_luks_uuid} rd.luks.name={root_luks_uuid}={ROOT_MAPPING} '
        f'root=/dev/mapper/{ROOT_MAPPING}"\n'
        "GRUB_ENABLE_CRYPTODISK=y\n"
    )


def render_static_files(hostname: str, root_luks_uuid: str) -> Dict[str, str]:
    """
    Files written verbatim into the target.

    Returns:
        Mapping of absolute target paths to their content
    """
    return {
        "/etc/hostname": f"{hostname}\n",
        "/etc/hosts": (
            "127.0.0.1   localhost\n"
            "::1         localhost\n"
            f"127.0.1.1   {hostname}.localdomain {hostname}\n"
        ),
        "/etc/sudoers.d/wheel": "%wheel ALL=(ALL:ALL) ALL\n",
        "/etc/dracut.conf.d/10-crypt.conf": DRACUT_CONF,
        "/etc/default/grub": render_grub_defaults(root_luks_uuid),
    }


def render_configure_script(
    timezone: str,
    locale: str,
    keymap: str,
    username: str,
    libc: LibcType
) -> str:
    """
    Build the shell script run inside the target chroot.

    Every step is safe to repeat on an already configured system.
    """
    q_timezone = shlex.quote(f"/usr/share/zoneinfo/{timezone}")
    q_user = shlex.quote(username)
    q_keymap = shlex.quote(keymap)

    lines: List[str] = [
        "#!/bin/sh",
        "set -eu",
        "",
        f"ln -sf {q_timezone} /etc/localtime",
        "",
        f"keymap={q_keymap}",
        "if grep -q '^#\\?KEYMAP=' /etc/rc.conf 2>/dev/null; then",
        "    sed -i \"s|^#\\?KEYMAP=.*|KEYMAP=$keymap|\" /etc/rc.conf",
        "else",
        "    echo \"KEYMAP=$keymap\" >> /etc/rc.conf",
        "fi",
        "",
    ]

    if libc == "glibc":
        lines += [
            f"locale={shlex.quote(locale)}",
            "echo \"LANG=$locale\" > /etc/locale.conf",
            "if grep -q \"^#$locale \" /etc/default/libc-locales; then",
            "    sed -i \"s|^#$locale |$locale |\" /etc/default/libc-locales",
            "elif ! grep -q \"^$locale \" /etc/default/libc-locales; then",
            "    echo \"$locale UTF-8\" >> /etc/default/libc-locales",
            "fi",
            "xbps-reconfigure -f glibc-locales",
            "",
        ]

    lines += [
        f"if ! id -u {q_user} >/dev/null 2>&1; then",
        f"    useradd -m -G {USER_GROUPS} -s /bin/bash {q_user}",
        "fi",
        "chmod 0440 /etc/sudoers.d/wheel",
        "",
    ]
    return "\n".join(lines)


def write_system_files(hostname: str, root_luks_uuid: str, target: str, cmd_runner: CommandRunner) -> None:
    """
    Write the static configuration files of the target.

    Raises:
        ConfigurationError: If a file cannot be written
    """
    try:
        for path, content in render_static_files(hostname, root_luks_uuid).items():
            write_target_file(target, path, content, cmd_runner)
    except OSError as e:
        raise ConfigurationError(f"Cannot write system configuration: {e}")


def run_configure_script(script: str, target: str, cmd_runner: CommandRunner) -> None:
    """
    Run the configuration script inside the chroot and remove it afterwards.

    The target's pseudo filesystems must already be mounted.

    Raises:
        ConfigurationError: If the script fails
    """
    try:
        write_target_file(target, CONFIGURE_SCRIPT_PATH, script, cmd_runner, mode=0o700)
    except OSError as e:
        raise ConfigurationError(f"Cannot write configuration script: {e}")

    try:
        cmd_runner.run(chroot_command(target, ["/bin/sh", CONFIGURE_SCRIPT_PATH]))
    except subprocess.CalledProcessError as e:
        raise ConfigurationError(f"System configuration failed: {e.stderr.strip() if e.stderr else e}")
    finally:
        cmd_runner.remove_file(target_path(target, CONFIGURE_SCRIPT_PATH))

    logger.info(colorize("System configured", TermColors.SUCCESS, cmd_runner.colored_output))


def set_account_passwords(passwords: Dict[str, Optional[str]], target: str, cmd_runner: CommandRunner) -> None:
    """
    Set account passwords with chpasswd inside the chroot.

    Accounts without a password are reported and left locked. Failures are
    reported as warnings since the operator can set passwords later.

    Args:
        passwords: Mapping of account name to password; empty values are skipped
        target: Target root directory
        cmd_runner: CommandRunner instance for executing commands
    """
    missing = [account for account, password in passwords.items() if not password]
    for account in missing:
        logger.warning(colorize(f"No password supplied for {account}, account left locked",
                                TermColors.WARNING, cmd_runner.colored_output))

    entries = "".join(f"{account}:{password}\n" for account, password in passwords.items() if password)
    if not entries:
        return

    try:
        cmd_runner.run(chroot_command(target, ["chpasswd"]), input=entries)
    except subprocess.CalledProcessError:
        logger.warning(colorize("Could not set account passwords, set them with passwd after boot",
                                TermColors.WARNING, cmd_runner.colored_output))


def ensure_key_file(target: str, cmd_runner: CommandRunner) -> str:
    """
    Create the random key file used to unlock root from the initramfs.

    An existing key file is kept so that a repeated run does not invalidate
    an enrolled key.

    Returns:
        Host path of the key file

    Raises:
        ConfigurationError: If the file cannot be written
    """
    path = target_path(target, VOLUME_KEY_PATH)
    if cmd_runner.path_exists(path):
        logger.debug(f"Reusing key file {path}")
        return path

    try:
        cmd_runner.write_file(path, os.urandom(KEY_FILE_BYTES), mode=0o000)
    except OSError as e:
        raise ConfigurationError(f"Cannot create key file {path}: {e}")
    logger.info(f"Created key file {VOLUME_KEY_PATH}")
    return path

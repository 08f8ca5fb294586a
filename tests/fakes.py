"""
In-memory machine for exercising the installer without root.

FakeMachine is a CommandRunner whose commands and file accesses are served
from a small model of block devices, LUKS headers, mappings, filesystems,
mounts and swap areas. Files written under a mount point land in the
filesystem mounted there, so they survive unmount and remount like on a
real machine.
"""
import os
import subprocess
from typing import Callable, Dict, List, Optional, Set, Tuple

from fortress.utils.command import CommandRunner, SimulationMode
from fortress.utils.format import GIB
from fortress.utils.validation import RECOMMENDED_TOOLS, REQUIRED_TOOLS
from fortress.core.context import InstallConfig, RunContext
from fortress.core.disk import partition_separator_for
from fortress.installer import build_context

MAPPER_PREFIX = "/dev/mapper/"

Result = Tuple[int, str, str]


class FakeStore:
    """Files and directories of one filesystem, keyed by path from its root"""

    def __init__(self):
        self.dirs: Set[str] = {"/"}
        self.files: Dict[str, bytes] = {}
        self.modes: Dict[str, int] = {}

    def add_dir(self, rel: str) -> None:
        current = ""
        for part in rel.strip("/").split("/"):
            if part:
                current += "/" + part
                self.dirs.add(current)

    def write(self, rel: str, data: bytes, mode: Optional[int] = None) -> None:
        self.add_dir(os.path.dirname(rel))
        self.files[rel] = data
        if mode is not None:
            self.modes[rel] = mode

    def exists(self, rel: str) -> bool:
        return rel in self.files or rel in self.dirs

    def children(self, rel: str) -> List[str]:
        prefix = rel.rstrip("/") + "/"
        names = set()
        for path in list(self.dirs) + list(self.files):
            if path != rel and path.startswith(prefix):
                names.add(path[len(prefix):].split("/")[0])
        return sorted(names)


class Mount:
    def __init__(self, source: str, mount_point: str, fstype: str, store: FakeStore, identity: Optional[str]):
        self.source = source
        self.mount_point = mount_point
        self.fstype = fstype
        self.store = store
        self.identity = identity


class FakeMachine(CommandRunner):
    """A scripted machine with one target disk"""

    def __init__(
        self,
        disk: str = "/dev/vda",
        disk_size: int = 100 * GIB,
        memory_kib: int = 8 * 1024 * 1024,
        uefi: bool = True,
        uid: int = 0,
        simulation_mode: SimulationMode = SimulationMode.DISABLED
    ):
        super().__init__(simulation_mode, colored_output=False)
        self.disk = disk
        self.disk_size = disk_size
        self.memory_kib = memory_kib
        self.uefi = uefi
        self.uid = uid
        self.tools: Set[str] = set(REQUIRED_TOOLS) | set(RECOMMENDED_TOOLS)

        self.block_devices: Set[str] = {disk}
        self.partitions: List[str] = []
        self.luks: Dict[str, Set[str]] = {}
        self.luks_types: Dict[str, str] = {}
        self.luks_uuids: Dict[str, str] = {}
        self.mappings: Dict[str, str] = {}
        self.filesystems: Dict[str, Tuple[str, str]] = {}
        self.stores: Dict[str, FakeStore] = {}
        self.mounts: List[Mount] = []
        self.swaps: List[str] = []

        self.host = FakeStore()
        for directory in ("/mnt", "/etc", "/var/db/xbps/keys"):
            self.host.add_dir(directory)
        self.host.write("/etc/resolv.conf", b"nameserver 192.0.2.1\n")

        self.calls: List[List[str]] = []
        self.interactive_calls: List[List[str]] = []
        self.bootloader_modes: List[str] = []
        self.passwords: Optional[str] = None
        self.unknown_commands: List[List[str]] = []

        self._failures: List[Dict] = []
        self._interrupts: List[Tuple[Callable[[List[str]], bool], Optional[Callable[[], None]]]] = []
        self._ignored: Set[str] = set()
        self._serial = 0

    # Scenario set-up

    def fail(self, program: str, when: Optional[Callable[[List[str]], bool]] = None,
             returncode: int = 1, stderr: str = "simulated failure", times: Optional[int] = None) -> None:
        """Make a program fail, optionally only for matching arguments or a limited number of times."""
        self._failures.append({
            "program": program, "when": when, "returncode": returncode,
            "stderr": stderr, "times": times,
        })

    def ignore(self, program: str) -> None:
        """Make a program report success without doing anything."""
        self._ignored.add(program)

    def interrupt(self, program: str, handler: Optional[Callable[[], None]] = None) -> None:
        """Raise KeyboardInterrupt, or call a signal handler, when a program is about to run."""
        self._interrupts.append((lambda argv: os.path.basename(argv[0]) == program, handler))

    def remove_disk(self) -> None:
        self.block_devices.discard(self.disk)

    def partition_path(self, number: int) -> str:
        return f"{self.disk}{partition_separator_for(self.disk)}{number}"

    def create_partitions(self, count: int = 5) -> None:
        self._sfdisk([self.disk], "type=x\n" * count)

    def luks_format(self, partition: str, passphrase: str, luks_type: str = "luks2") -> None:
        self._check(self._cryptsetup(["luksFormat", "--type", luks_type, partition], f"{passphrase}\n"))

    def open_mapping(self, partition: str, name: str, passphrase: str) -> None:
        self._check(self._cryptsetup(["open", "--type", "luks", partition, name], f"{passphrase}\n"))

    def make_filesystem(self, device: str, fstype: str) -> None:
        program = {"ext4": "mkfs.ext4", "vfat": "mkfs.vfat", "swap": "mkswap"}[fstype]
        self._check(self._mkfs(program, [device]))

    def mount_device(self, source: str, path: str) -> None:
        self.make_dirs(path)
        self._check(self._mount([source, path]))

    def install_base_system(self, target: str = "/mnt") -> None:
        self._check(self._xbps_install(["-Sy", "-r", target]))

    def write_target(self, path: str, content: str = "") -> None:
        self.write_file(path, content)

    def mount_points(self) -> List[str]:
        return [mount.mount_point for mount in self.mounts]

    def commands(self, program: str) -> List[List[str]]:
        """Executed command lines of a program, looking inside chroot."""
        found = []
        for argv in self.calls:
            effective, _ = self._effective(argv)
            if effective and os.path.basename(effective[0]) == program:
                found.append(effective)
        return found

    @staticmethod
    def _check(result: Result) -> None:
        if result[0] != 0:
            raise AssertionError(f"Scenario set-up failed: {result[2]}")

    # Environment facts

    def effective_uid(self) -> int:
        return self.uid

    def which(self, tool: str) -> Optional[str]:
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def path_exists(self, path) -> bool:
        path = os.path.normpath(str(path))
        if path in self.block_devices:
            return True
        if path == "/sys/firmware/efi":
            return self.uefi
        store, rel = self._resolve(path)
        return store.exists(rel)

    def is_block_device(self, path) -> bool:
        return os.path.normpath(str(path)) in self.block_devices

    def list_dir(self, path) -> List[str]:
        store, rel = self._resolve(os.path.normpath(str(path)))
        return store.children(rel) if store.exists(rel) else []

    def read_text(self, path) -> Optional[str]:
        path = os.path.normpath(str(path))
        if path == "/proc/self/mounts":
            return "".join(
                f"{m.source} {m.mount_point.replace(' ', chr(92) + '040')} {m.fstype} rw 0 0\n"
                for m in self.mounts
            )
        if path == "/proc/swaps":
            header = "Filename\t\t\t\tType\t\tSize\t\tUsed\t\tPriority\n"
            return header + "".join(f"{device}\tpartition\t2097148\t0\t-2\n" for device in self.swaps)
        if path == "/proc/meminfo":
            return f"MemTotal:       {self.memory_kib} kB\nMemFree:        1024 kB\n"
        if path == "/proc/cmdline":
            return "BOOT_IMAGE=/boot/vmlinuz root=live:CDLABEL=VOID_LIVE\n"
        data = self.read_bytes(path)
        return data.decode() if data is not None else None

    def read_bytes(self, path: str) -> Optional[bytes]:
        store, rel = self._resolve(os.path.normpath(path))
        return store.files.get(rel)

    def file_mode(self, path: str) -> Optional[int]:
        store, rel = self._resolve(os.path.normpath(path))
        return store.modes.get(rel)

    def make_dirs(self, path) -> None:
        if self.simulating:
            return super().make_dirs(path)
        store, rel = self._resolve(os.path.normpath(str(path)))
        store.add_dir(rel)

    def write_file(self, path, content, mode: Optional[int] = None) -> None:
        if self.simulating:
            return super().write_file(path, content, mode)
        data = content.encode() if isinstance(content, str) else content
        store, rel = self._resolve(os.path.normpath(str(path)))
        store.write(rel, data, mode)

    def remove_file(self, path) -> None:
        if self.simulating:
            return super().remove_file(path)
        store, rel = self._resolve(os.path.normpath(str(path)))
        store.files.pop(rel, None)

    def run_interactive(self, cmd: List[str]) -> int:
        self.interactive_calls.append(list(cmd))
        return 0

    # Path resolution through the mount table

    def _identity(self, device: str) -> Optional[str]:
        """Key of the filesystem a device carries; mappings are keyed by their partition."""
        if device.startswith(MAPPER_PREFIX):
            partition = self.mappings.get(device[len(MAPPER_PREFIX):])
            return f"crypt:{partition}" if partition else None
        return device

    def _resolve(self, path: str) -> Tuple[FakeStore, str]:
        best = None
        for mount in self.mounts:
            prefix = mount.mount_point.rstrip("/") + "/"
            if path == mount.mount_point or path.startswith(prefix):
                if best is None or len(mount.mount_point) >= len(best.mount_point):
                    best = mount
        if best is None:
            return self.host, path
        rel = "/" + path[len(best.mount_point):].lstrip("/")
        return best.store, rel

    def _new_uuid(self) -> str:
        self._serial += 1
        return f"0000{self._serial:04d}-fake-4000-8000-{self._serial:012d}"

    # Command dispatch

    @staticmethod
    def _effective(argv: List[str]) -> Tuple[List[str], Optional[str]]:
        if argv and argv[0] == "chroot" and len(argv) >= 2:
            return argv[2:], argv[1]
        return argv, None

    def _execute(self, cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        argv = list(cmd)
        self.calls.append(argv)
        effective, root = self._effective(argv)

        for predicate, handler in self._interrupts:
            if effective and predicate(effective):
                if handler is not None:
                    handler()
                raise KeyboardInterrupt()

        result = self._injected_failure(effective)
        if result is None and effective and os.path.basename(effective[0]) in self._ignored:
            result = (0, "", "")
        if result is None:
            result = self._dispatch(effective, root, kwargs.get("input"))

        returncode, stdout, stderr = result
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, argv, output=stdout, stderr=stderr)
        return subprocess.CompletedProcess(argv, returncode, stdout=stdout, stderr=stderr)

    def _injected_failure(self, argv: List[str]) -> Optional[Result]:
        if not argv:
            return None
        program = os.path.basename(argv[0])
        for failure in self._failures:
            if failure["program"] != program:
                continue
            if failure["when"] is not None and not failure["when"](argv):
                continue
            if failure["times"] is not None:
                if failure["times"] <= 0:
                    continue
                failure["times"] -= 1
            return failure["returncode"], "", failure["stderr"]
        return None

    def _dispatch(self, argv: List[str], root: Optional[str], stdin: Optional[str]) -> Result:
        if not argv:
            return 1, "", "empty command"
        program = os.path.basename(argv[0])
        args = argv[1:]

        if root is not None:
            return self._chroot(root, program, args, stdin)
        if program not in self.tools | {"ldd", "lsblk", "blockdev", "cp", "xbps-install"}:
            return 127, "", f"{program}: command not found"

        if program == "ldd":
            return 0, "ldd (GNU libc) 2.39\n", ""
        if program == "lsblk":
            return self._lsblk(args)
        if program == "blockdev":
            if "--getsize64" in args and args[-1] == self.disk and self.disk in self.block_devices:
                return 0, f"{self.disk_size}\n", ""
            if "--rereadpt" in args:
                return 0, "", ""
            return 1, "", "blockdev: cannot open device"
        if program in ("wipefs", "partprobe", "udevadm", "cp"):
            return 0, "", ""
        if program == "sfdisk":
            return self._sfdisk(args, stdin or "")
        if program == "cryptsetup":
            return self._cryptsetup(args, stdin or "")
        if program == "blkid":
            return self._blkid(args)
        if program in ("mkfs.ext4", "mkfs.vfat", "mkswap"):
            return self._mkfs(program, args)
        if program == "mountpoint":
            path = os.path.normpath(args[-1])
            return (0, "", "") if path in self.mount_points() else (32, "", f"{path} is not a mountpoint")
        if program == "mount":
            return self._mount(args)
        if program == "umount":
            return self._umount(args)
        if program == "swapon":
            return self._swapon(args)
        if program == "swapoff":
            return self._swapoff(args)
        if program == "xbps-install":
            return self._xbps_install(args)

        self.unknown_commands.append(argv)
        return 0, "", ""

    def _lsblk(self, args: List[str]) -> Result:
        if "-bdnp" in args:
            if self.disk not in self.block_devices:
                return 0, "", ""
            return 0, f"{self.disk} disk {self.disk_size} FakeDisk\n", ""
        device = args[-1]
        if device not in self.block_devices:
            return 32, "", f"lsblk: {device}: not a block device"
        if "TYPE" in args:
            return 0, ("disk" if device == self.disk else "part") + "\n", ""
        if "MODEL" in args:
            return 0, "FakeDisk\n", ""
        if "SIZE" in args:
            return 0, f"{self.disk_size}\n", ""
        return 0, "", ""

    def _sfdisk(self, args: List[str], script: str) -> Result:
        device = args[-1]
        if device not in self.block_devices:
            return 1, "", f"sfdisk: cannot open {device}"
        count = sum(1 for line in script.splitlines() if "type=" in line)
        for partition in self.partitions:
            self.block_devices.discard(partition)
            self.luks.pop(partition, None)
            self.filesystems.pop(partition, None)
            self.filesystems.pop(f"crypt:{partition}", None)
        self.partitions = [self.partition_path(n) for n in range(1, count + 1)]
        self.block_devices.update(self.partitions)
        return 0, "The partition table has been altered.\n", ""

    def _cryptsetup(self, args: List[str], stdin: str) -> Result:
        action = args[0]
        secret = f"pass:{stdin.rstrip(chr(10))}"

        if action == "isLuks":
            return (0, "", "") if args[-1] in self.luks else (1, "", "")

        if action == "luksFormat":
            partition = args[-1]
            if partition not in self.block_devices:
                return 4, "", f"Device {partition} does not exist"
            if partition in self.mappings.values():
                return 5, "", f"Cannot format device {partition} which is still in use"
            self.luks[partition] = {secret}
            self.luks_types[partition] = args[args.index("--type") + 1] if "--type" in args else "luks2"
            self.luks_uuids[partition] = self._new_uuid()
            self.filesystems.pop(f"crypt:{partition}", None)
            self.filesystems.pop(partition, None)
            return 0, "", ""

        if action == "open" and "--test-passphrase" in args:
            key = self.read_bytes(args[args.index("--key-file") + 1])
            partition = args[-1]
            if key is not None and f"key:{key.hex()}" in self.luks.get(partition, set()):
                return 0, "", ""
            return 2, "", "No key available with this passphrase."

        if action == "open":
            partition, name = args[-2], args[-1]
            if partition not in self.luks:
                return 1, "", f"Device {partition} is not a valid LUKS device."
            if name in self.mappings:
                return 5, "", f"Device {name} already exists."
            if secret not in self.luks[partition]:
                return 2, "", "No key available with this passphrase."
            self.mappings[name] = partition
            self.block_devices.add(MAPPER_PREFIX + name)
            return 0, "", ""

        if action == "luksAddKey":
            partition, key_file = args[1], args[2]
            if secret not in self.luks.get(partition, set()):
                return 2, "", "No key available with this passphrase."
            key = self.read_bytes(key_file)
            if key is None:
                return 1, "", f"Failed to open key file {key_file}"
            self.luks[partition].add(f"key:{key.hex()}")
            return 0, "", ""

        if action == "close":
            name = args[-1]
            if name not in self.mappings:
                return 4, "", f"Device {name} is not active."
            identity = f"crypt:{self.mappings[name]}"
            if any(mount.identity == identity for mount in self.mounts):
                return 5, "", f"Device {name} is still in use."
            if MAPPER_PREFIX + name in self.swaps:
                return 5, "", f"Device {name} is still in use."
            del self.mappings[name]
            self.block_devices.discard(MAPPER_PREFIX + name)
            return 0, "", ""

        self.unknown_commands.append(["cryptsetup", *args])
        return 1, "", f"Unknown action {action}"

    def _blkid(self, args: List[str]) -> Result:
        tag = args[args.index("-s") + 1]
        device = args[-1]
        if device not in self.block_devices:
            return 2, "", ""
        identity = self._identity(device)
        value = None
        if tag == "TYPE":
            if device in self.luks:
                value = "crypto_LUKS"
            elif identity in self.filesystems:
                value = self.filesystems[identity][0]
        elif tag == "UUID":
            if device in self.luks:
                value = self.luks_uuids[device]
            elif identity in self.filesystems:
                value = self.filesystems[identity][1]
        elif tag == "PARTUUID" and device in self.partitions:
            value = f"fa4e0000-0000-4000-8000-{self.partitions.index(device) + 1:012d}"
        if value is None:
            return 2, "", ""
        return 0, f"{value}\n", ""

    def _mkfs(self, program: str, args: List[str]) -> Result:
        device = args[-1]
        identity = self._identity(device)
        if device not in self.block_devices or identity is None:
            return 1, "", f"{program}: {device}: No such file or directory"
        fstype = {"mkfs.ext4": "ext4", "mkfs.vfat": "vfat", "mkswap": "swap"}[program]
        self.filesystems[identity] = (fstype, self._new_uuid())
        self.stores[identity] = FakeStore()
        return 0, "", ""

    def _mount(self, args: List[str]) -> Result:
        if "--make-rslave" in args:
            return 0, "", ""

        source, path = args[-2], os.path.normpath(args[-1])
        if not self.path_exists(path):
            return 32, "", f"mount: {path}: mount point does not exist."

        if "--rbind" in args:
            store = self.stores.setdefault(f"pseudo:{path}", FakeStore())
            self.mounts.append(Mount(source, path, "bind", store, None))
            return 0, "", ""

        if not source.startswith("/dev/"):
            fstype = args[args.index("-t") + 1] if "-t" in args else source
            store = self.stores.setdefault(f"pseudo:{path}", FakeStore())
            self.mounts.append(Mount(source, path, fstype, store, None))
            return 0, "", ""

        identity = self._identity(source)
        if source not in self.block_devices or identity not in self.filesystems:
            return 32, "", f"mount: {path}: wrong fs type, bad option, bad superblock on {source}"
        fstype = self.filesystems[identity][0]
        if fstype == "swap":
            return 32, "", f"mount: {path}: unknown filesystem type 'swap'"
        if any(mount.mount_point == path and mount.identity == identity for mount in self.mounts):
            return 32, "", f"mount: {path}: {source} already mounted"
        self.mounts.append(Mount(source, path, fstype, self.stores.setdefault(identity, FakeStore()), identity))
        return 0, "", ""

    def _umount(self, args: List[str]) -> Result:
        path = os.path.normpath(args[-1])
        if path not in self.mount_points():
            return 32, "", f"umount: {path}: not mounted."
        prefix = path.rstrip("/") + "/"
        below = [m for m in self.mounts if m.mount_point.startswith(prefix)]
        if "-R" in args:
            self.mounts = [m for m in self.mounts if m.mount_point != path and m not in below]
            return 0, "", ""
        if below and "-l" not in args:
            return 32, "", f"umount: {path}: target is busy."
        # Remove the most recent mount on that point
        for index in range(len(self.mounts) - 1, -1, -1):
            if self.mounts[index].mount_point == path:
                del self.mounts[index]
                break
        return 0, "", ""

    def _swapon(self, args: List[str]) -> Result:
        device = args[-1]
        identity = self._identity(device)
        if identity not in self.filesystems or self.filesystems[identity][0] != "swap":
            return 255, "", f"swapon: {device}: read swap header failed"
        if device in self.swaps:
            return 255, "", f"swapon: {device}: swapon failed: Device or resource busy"
        self.swaps.append(device)
        return 0, "", ""

    def _swapoff(self, args: List[str]) -> Result:
        device = args[-1]
        if device not in self.swaps:
            return 255, "", f"swapoff: {device}: swapoff failed: Invalid argument"
        self.swaps.remove(device)
        return 0, "", ""

    def _xbps_install(self, args: List[str]) -> Result:
        target = args[args.index("-r") + 1]
        if target not in self.mount_points():
            return 1, "", f"ERROR: {target} is not a mounted root"
        for binary in ("bash", "sh", "grub-install", "xbps-reconfigure"):
            self.write_file(f"{target}/usr/bin/{binary}", b"\x7fELF")
        self.write_file(f"{target}/etc/rc.conf", "#KEYMAP=\"es\"\n")
        self.write_file(f"{target}/etc/default/libc-locales", "#en_US.UTF-8 UTF-8\n")
        return 0, "", ""

    def _chroot(self, root: str, program: str, args: List[str], stdin: Optional[str]) -> Result:
        root = os.path.normpath(root)
        if root not in self.mount_points():
            return 125, "", f"chroot: cannot change root directory to '{root}'"

        if program == "sh":
            script = args[-1]
            if not self.path_exists(f"{root}{script}"):
                return 127, "", f"sh: {script}: not found"
            return 0, "", ""
        if program == "chpasswd":
            self.passwords = stdin
            return 0, "", ""
        if program == "grub-install":
            self.bootloader_modes.append("removable" if "--removable" in args else "nvram")
            return 0, "", ""
        if program == "xbps-reconfigure":
            return 0, "", ""
        if program == "grub-mkconfig":
            output = args[args.index("-o") + 1]
            self.write_file(f"{root}{output}", "menuentry 'Void' {}\n")
            return 0, "", ""

        self.unknown_commands.append(["chroot", root, program, *args])
        return 0, "", ""


PASSPHRASE = "correct horse battery"

# Manual installation milestones, each including all earlier ones
STAGES = (
    "partitions",
    "root_luks",
    "home_luks",
    "root_open",
    "home_open",
    "root_fs",
    "home_fs",
    "mount_root",
    "mount_rest",
    "base_system",
    "configured",
)


def provision(machine: FakeMachine, stage: str, target: str = "/mnt") -> None:
    """Bring a machine to an installation milestone without the installer."""
    root, home = machine.partition_path(4), machine.partition_path(5)
    for step in STAGES[:STAGES.index(stage) + 1]:
        if step == "partitions":
            machine.create_partitions()
        elif step == "root_luks":
            machine.luks_format(root, PASSPHRASE, "luks1")
        elif step == "home_luks":
            machine.luks_format(home, PASSPHRASE, "luks2")
        elif step == "root_open":
            machine.open_mapping(root, "root_crypt", PASSPHRASE)
        elif step == "home_open":
            machine.open_mapping(home, "home_crypt", PASSPHRASE)
        elif step == "root_fs":
            machine.make_filesystem(machine.partition_path(1), "vfat")
            machine.make_filesystem(machine.partition_path(2), "ext4")
            machine.make_filesystem(machine.partition_path(3), "swap")
            machine.make_filesystem("/dev/mapper/root_crypt", "ext4")
        elif step == "home_fs":
            machine.make_filesystem("/dev/mapper/home_crypt", "ext4")
        elif step == "mount_root":
            machine.mount_device("/dev/mapper/root_crypt", target)
        elif step == "mount_rest":
            machine.mount_device(machine.partition_path(2), f"{target}/boot")
            machine.mount_device(machine.partition_path(1), f"{target}/boot/efi")
            machine.mount_device("/dev/mapper/home_crypt", f"{target}/home")
            machine._check(machine._swapon([machine.partition_path(3)]))
        elif step == "base_system":
            machine.install_base_system(target)
        elif step == "configured":
            machine.write_target(f"{target}/etc/fstab", "# fstab\n")
            machine.write_target(f"{target}/boot/grub/grub.cfg", "menuentry 'Void' {}\n")


def make_config(checkpoint_path: str, **overrides) -> InstallConfig:
    settings = dict(
        disk="/dev/vda",
        luks_passphrase=PASSPHRASE,
        root_password="rootpw",
        user_password="userpw",
        confirm_destroy=True,
        checkpoint_path=checkpoint_path,
    )
    settings.update(overrides)
    return InstallConfig(**settings)


def make_context(machine: FakeMachine, checkpoint_path: str, **overrides) -> RunContext:
    return build_context(make_config(checkpoint_path, disk=machine.disk, **overrides), machine)

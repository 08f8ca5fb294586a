import tempfile
import unittest

from fortress.core.exceptions import ConfigurationError
from fortress.config.crypttab import generate_crypttab, render_crypttab
from fortress.config.fstab import generate_fstab
from fortress.config.system import (
    CONFIGURE_SCRIPT_PATH, KEY_FILE_BYTES, ensure_key_file, render_configure_script,
    render_static_files, run_configure_script
)
from tests.fakes import FakeMachine, make_context, provision


class CrypttabTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.checkpoint_path = f"{tmp.name}/state.json"

    def test_render(self) -> None:
        lines = render_crypttab("1111", "2222", "3333").splitlines()

        self.assertEqual(lines[0].split(), ["root_crypt", "UUID=1111", "/boot/volume.key", "luks"])
        self.assertEqual(lines[1].split(), ["home_crypt", "UUID=2222", "none", "luks"])
        self.assertEqual(lines[2].split()[:3], ["swap", "PARTUUID=3333", "/dev/urandom"])
        self.assertIn("swap,cipher=aes-xts-plain64", lines[2])

    def test_generate_uses_partition_identifiers(self) -> None:
        machine = FakeMachine()
        provision(machine, "mount_rest")
        ctx = make_context(machine, self.checkpoint_path)
        generate_crypttab(ctx.disk, ctx.target, machine)

        content = machine.read_bytes("/mnt/etc/crypttab").decode()
        self.assertIn(f"UUID={machine.luks_uuids['/dev/vda4']}", content)
        self.assertIn(f"UUID={machine.luks_uuids['/dev/vda5']}", content)


class FstabTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.checkpoint_path = f"{tmp.name}/state.json"

    def test_generate(self) -> None:
        machine = FakeMachine()
        provision(machine, "mount_rest")
        ctx = make_context(machine, self.checkpoint_path)
        generate_fstab(ctx.disk, ctx.target, machine)
        generate_fstab(ctx.disk, ctx.target, machine)

        rows = [line.split() for line in machine.read_bytes("/mnt/etc/fstab").decode().splitlines()
                if not line.startswith("#")]
        self.assertEqual([row[1] for row in rows], ["/", "/boot", "/boot/efi", "/home", "none", "/tmp"])
        self.assertTrue(all(row[0].startswith("UUID=") for row in rows[:4]))
        self.assertEqual(rows[4][:3], ["/dev/mapper/swap", "none", "swap"])
        self.assertEqual([row[2] for row in rows[:4]], ["ext4", "ext4", "vfat", "ext4"])


class SystemFilesTests(unittest.TestCase):
    def test_static_files(self) -> None:
        files = render_static_files("vault", "abcd")

        self.assertEqual(files["/etc/hostname"], "vault\n")
        self.assertIn("vault.localdomain", files["/etc/hosts"])
        grub = files["/etc/default/grub"]
        self.assertIn("GRUB_ENABLE_CRYPTODISK=y", grub)
        self.assertIn("rd.luks.uuid=abcd", grub)
        self.assertIn("/boot/volume.key", files["/etc/dracut.conf.d/10-crypt.conf"])

    def test_configure_script_follows_libc(self) -> None:
        glibc = render_configure_script("Europe/Paris", "fr_FR.UTF-8", "fr", "nx", "glibc")
        musl = render_configure_script("Europe/Paris", "fr_FR.UTF-8", "fr", "nx", "musl")

        self.assertIn("/usr/share/zoneinfo/Europe/Paris", glibc)
        self.assertIn("xbps-reconfigure -f glibc-locales", glibc)
        self.assertNotIn("glibc-locales", musl)
        self.assertIn("useradd -m", musl)

    def test_configure_script_quotes_values(self) -> None:
        script = render_configure_script("UTC", "en_US.UTF-8", "us", "bob; rm -rf /", "glibc")
        self.assertIn("'bob; rm -rf /'", script)
        self.assertNotIn(" bob; rm", script)

    def test_script_runs_in_chroot_and_is_removed(self) -> None:
        machine = FakeMachine()
        provision(machine, "mount_root")

        run_configure_script("#!/bin/sh\n", "/mnt", machine)

        self.assertEqual(machine.commands("sh"), [["/bin/sh", CONFIGURE_SCRIPT_PATH]])
        self.assertIsNone(machine.read_bytes(f"/mnt{CONFIGURE_SCRIPT_PATH}"))

    def test_failed_script_is_removed(self) -> None:
        machine = FakeMachine()
        provision(machine, "mount_root")
        machine.fail("sh", stderr="useradd: group 'kvm' does not exist")

        with self.assertRaises(ConfigurationError) as raised:
            run_configure_script("#!/bin/sh\n", "/mnt", machine)

        self.assertIn("kvm", str(raised.exception))
        self.assertIsNone(machine.read_bytes(f"/mnt{CONFIGURE_SCRIPT_PATH}"))

    def test_key_file_is_kept_across_runs(self) -> None:
        machine = FakeMachine()
        provision(machine, "mount_rest")

        path = ensure_key_file("/mnt", machine)
        first = machine.read_bytes(path)
        self.assertEqual(ensure_key_file("/mnt", machine), path)

        self.assertEqual(len(first), KEY_FILE_BYTES)
        self.assertEqual(machine.read_bytes(path), first)
        self.assertEqual(machine.file_mode(path), 0o000)


if __name__ == "__main__":
    unittest.main()

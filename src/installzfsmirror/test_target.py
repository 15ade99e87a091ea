#!/usr/bin/env python

import mock
import os
from pathlib import Path
import shutil
import subprocess
import tempfile
import unittest

from installzfsmirror import cmd as cmdmod
from installzfsmirror import target
from installzfsmirror.config import InstallConfig
from installzfsmirror.errors import ConfigurationError
from installzfsmirror.inspectors import DriveClass
from installzfsmirror.partition import DriveSpec, GiB, MiB, plan_pair
from installzfsmirror.session import Ledger, Session
from installzfsmirror.test_fakes import FakePools, record_calls

ID_A = Path("/dev/disk/by-id/ata-WDC_WD40EFRX-68N32N0_WD-WCC7K0001234")
ID_B = Path("/dev/disk/by-id/ata-WDC_WD40EFRX-68N32N0_WD-WCC7K0005678")


def plans(swap_mib=4096):
    a = DriveSpec(ID_A, "a", 500 * GiB, DriveClass.HDD)
    b = DriveSpec(ID_B, "b", 500 * GiB, DriveClass.HDD)
    return list(plan_pair(a, b, 1024 * MiB, swap_mib * MiB))


class TextTest(unittest.TestCase):

    def test_volume_id(self):
        v = target.efi_volume_id("box")
        self.assertRegex(v, r"^[0-9A-F]{8}$")
        self.assertEqual(v, target.efi_volume_id("box"))
        self.assertNotEqual(v, target.efi_volume_id("other"))
        self.assertEqual(target.fstab_uuid("ABCD1234"), "ABCD-1234")

    def test_fstab(self):
        text = target.fstab("ABCD1234", [Path("/dev/sda2"), Path("/dev/sdb2")])
        self.assertIn("UUID=ABCD-1234 /boot/efi vfat umask=0077,nofail 0 1\n", text)
        self.assertIn("/dev/sdb2 none swap sw,discard,nofail 0 0\n", text)
        self.assertNotIn(" / ", text)

    def test_fstab_without_swap(self):
        self.assertNotIn("swap", target.fstab("ABCD1234", []))

    def test_launcher(self):
        text = target.launcher("sync_mirror_boot")
        self.assertTrue(text.startswith("#!/usr/bin/python3\n"))
        self.assertIn("sys.path.insert(0, '/usr/local/lib/zfs-mirror-installer')", text)
        self.assertIn("from installzfsmirror import sync_mirror_boot", text)
        compile(text, "launcher", "exec")

    def test_grub_defaults(self):
        text = target.grub_defaults("rpool/root")
        self.assertIn('GRUB_CMDLINE_LINUX="root=ZFS=rpool/root"', text)
        self.assertIn("GRUB_DEFAULT=0", text)


class UbuntuTargetTest(unittest.TestCase):

    def setUp(self):
        self.tmpd = tempfile.mkdtemp()
        self.config = InstallConfig(
            hostname="box",
            drives=(ID_A, ID_B),
            workdir=Path(self.tmpd),
            timezone="Europe/Berlin",
        )
        self.target = target.UbuntuTarget(self.config, plans())
        self.session = Session(Ledger(FakePools()))
        for d in ["etc/apt/apt.conf.d", "etc/default", "etc/cron.d"]:
            os.makedirs(self.target.root.p(d))

    def tearDown(self):
        shutil.rmtree(self.tmpd)

    def test_base_system_already_there(self):
        os.makedirs(self.target.root.p("/usr/bin"))
        cmdmod.writetext(self.target.root.p("/usr/bin/apt-get"), "")
        cmds, fun = record_calls()
        with mock.patch.object(cmdmod, "check_call", fun):
            self.target.bootstrap_base()
        self.assertEqual(cmds, [])

    def test_debootstrap_failure(self):
        def debootstrap(cmd):
            raise subprocess.CalledProcessError(1, cmd)

        cmds, fun = record_calls({"debootstrap": debootstrap})
        with mock.patch.object(cmdmod, "check_call", fun):
            self.assertRaises(ConfigurationError, self.target.bootstrap_base)
        self.assertEqual(
            cmds,
            [["debootstrap", "noble", self.tmpd, "http://archive.ubuntu.com/ubuntu"]],
        )

    def test_base_config(self):
        self.target.write_base_config()
        p = self.target.root.p
        self.assertEqual(cmdmod.readtext(p("/etc/hostname")), "box\n")
        self.assertIn("127.0.1.1 box", cmdmod.readtext(p("/etc/hosts")))
        self.assertIn("noble-security", cmdmod.readtext(p("/etc/apt/sources.list")))
        self.assertEqual(os.stat(p("/etc/netplan/01-netcfg.yaml")).st_mode & 0o777, 0o600)

    def test_deploy_tools(self):
        pkg = Path(self.tmpd) / "src" / "installzfsmirror"
        os.makedirs(pkg / "__pycache__")
        for f in ["__init__.py", "mirror.py", "test_mirror.py", "__pycache__/mirror.pyc"]:
            cmdmod.writetext(pkg / f, "")
        self.target.deploy_tools(pkg)
        dest = self.target.root.p(target.LIB_DIR) / "installzfsmirror"
        self.assertEqual(sorted(os.listdir(dest)), ["__init__.py", "mirror.py"])
        for name in target.LAUNCHERS:
            launcher = self.target.root.p(target.SBIN_DIR / name)
            self.assertTrue(os.access(launcher, os.X_OK))

    def test_bind_chroot(self):
        bound = []
        with mock.patch.object(cmdmod, "ismount", return_value=False), mock.patch.object(
            cmdmod, "rbindmount", lambda s, t: bound.append((s, t))
        ):
            self.target.bind_chroot(self.session)
        self.assertEqual(
            bound, [(Path(d), self.target.root.p(d)) for d in ["/dev", "/proc", "/sys"]]
        )
        self.assertTrue(self.session.ledger.chroot_active)

    def test_configure_in_chroot(self):
        mounted = []
        cmds, fun = record_calls()
        with mock.patch.object(cmdmod, "check_call", fun), mock.patch.object(
            cmdmod, "ismount", return_value=False
        ), mock.patch.object(cmdmod, "mount", lambda s, t, *o: mounted.append((s, t))):
            self.target.configure_in_chroot(self.session)
        p = self.target.root.p
        vid = target.efi_volume_id("box")
        for drive in (ID_A, ID_B):
            self.assertIn(
                ["mkdosfs", "-F", "32", "-s", "1", "-n", "EFI", "-i", vid, f"{drive}-part1"],
                cmds,
            )
            self.assertIn(["mkswap", f"{drive}-part2"], cmds)
        self.assertEqual(mounted, [(Path(f"{ID_A}-part1"), p("/boot/efi"))])
        self.assertTrue(self.session.ledger.mounts_active)
        self.assertIn(f"UUID={target.fstab_uuid(vid)}", cmdmod.readtext(p("/etc/fstab")))
        self.assertEqual(cmdmod.readtext(p("/etc/timezone")), "Europe/Berlin\n")
        self.assertIn("zpool scrub rpool", cmdmod.readtext(p("/etc/cron.d/zfs-mirror")))
        self.assertIn(["chroot", self.tmpd, "zgenhostid", "-f"], cmds)
        self.assertEqual(
            cmds[-1], ["chroot", self.tmpd, "update-initramfs", "-u", "-k", "all"]
        )

    def test_configure_failure(self):
        def apt_get(cmd):
            raise subprocess.CalledProcessError(100, cmd)

        cmds, fun = record_calls({"apt-get": apt_get})
        with mock.patch.object(cmdmod, "check_call", fun):
            self.assertRaises(
                ConfigurationError, self.target.configure_in_chroot, self.session
            )
        self.assertEqual(len(cmds), 1)

    def test_no_swap(self):
        t = target.UbuntuTarget(self.config, plans(swap_mib=0))
        self.assertEqual(t._swap_partitions(), [])


if __name__ == "__main__":
    unittest.main()

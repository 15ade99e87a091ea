#!/usr/bin/env python

import mock
import os
from pathlib import Path
import shutil
import subprocess
import tempfile
import unittest

from installzfsmirror import cmd as cmdmod
from installzfsmirror import mirror
from installzfsmirror.errors import PreconditionError, ReplacementRefused, SyncError
from installzfsmirror.inspectors import ResilverState
from installzfsmirror.partition import partition_device
from installzfsmirror.test_fakes import (
    EFI_GUID,
    SWAP_GUID,
    ZFS_GUID,
    FakeDisks,
    FakePools,
    GiB,
    record_calls,
)

ID_A = Path("/dev/disk/by-id/nvme-Samsung_SSD_980_PRO_2TB_S6B0NL0W1234ABCD")
ID_B = Path("/dev/disk/by-id/nvme-Samsung_SSD_980_PRO_2TB_S6B0NL0W1234WXYZ")
ID_NEW = Path("/dev/disk/by-id/nvme-Samsung_SSD_980_PRO_2TB_S6B0NL0W1234NEW1")
LAYOUT = [(1 * GiB, EFI_GUID), (4 * GiB, SWAP_GUID), (495 * GiB, ZFS_GUID)]


def mirrored_disks(root):
    disks = FakeDisks()
    disks.mounts[root.p("/boot/efi")] = Path("/dev/nvme0n1p1")
    disks.fs[(Path("/dev/nvme0n1p1"), "UUID")] = "ABCD-1234"
    disks.uuids["ABCD-1234"] = [Path("/dev/nvme0n1p1"), Path("/dev/nvme1n1p1")]
    disks.stable[Path("/dev/nvme0n1")] = ID_A
    disks.stable[Path("/dev/nvme1n1")] = ID_B
    return disks


class DiscoverTest(unittest.TestCase):

    def test_primary_and_others(self):
        disks = mirrored_disks(cmdmod.HOST)
        m = mirror.discover(disks)
        self.assertEqual(m.uuid, "ABCD-1234")
        self.assertEqual(m.primary, mirror.MirrorMember(ID_A, Path("/dev/nvme0n1p1")))
        self.assertEqual(m.others, (mirror.MirrorMember(ID_B, Path("/dev/nvme1n1p1")),))
        self.assertEqual(m.primary.bootloader_id, "Ubuntu-Samsung-SSD-980-ABCD")
        self.assertEqual(m.others[0].bootloader_id, "Ubuntu-Samsung-SSD-980-WXYZ")

    def test_nothing_mounted(self):
        self.assertRaises(SyncError, mirror.discover, FakeDisks())

    def test_lonely_partition(self):
        disks = mirrored_disks(cmdmod.HOST)
        disks.uuids["ABCD-1234"] = [Path("/dev/nvme0n1p1")]
        self.assertRaises(SyncError, mirror.discover, disks)


class SyncTest(unittest.TestCase):

    def setUp(self):
        self.tmpd = tempfile.mkdtemp()
        self.root = cmdmod.Root(Path(self.tmpd))
        os.makedirs(self.root.p("/run"))
        self.mirror = mirror.discover(mirrored_disks(self.root), self.root)
        self.mounted = []

    def tearDown(self):
        shutil.rmtree(self.tmpd)

    def _patches(self, fun):
        return (
            mock.patch.object(cmdmod, "check_call", fun),
            mock.patch.object(
                cmdmod, "mount", lambda src, tgt, *o: self.mounted.append((src, tgt))
            ),
            mock.patch.object(cmdmod, "umount", lambda tgt: None),
        )

    def test_copies_and_installs_on_each_member(self):
        cmds, fun = record_calls()
        a, b, c = self._patches(fun)
        with a, b, c:
            mirror.sync(self.mirror, self.root)
        mnt = self.root.p("/run/zfs-mirror-efi-Ubuntu-Samsung-SSD-980-WXYZ")
        self.assertEqual(self.mounted, [(Path("/dev/nvme1n1p1"), mnt)])
        self.assertEqual(
            cmds,
            [
                [
                    "chroot",
                    self.tmpd,
                    "grub-install",
                    "--target=x86_64-efi",
                    "--efi-directory=/boot/efi",
                    "--bootloader-id=Ubuntu-Samsung-SSD-980-ABCD",
                    "--recheck",
                    "--no-floppy",
                    str(ID_A),
                ],
                ["rsync", "-a", "--delete", f"{self.tmpd}/boot/efi/", f"{mnt}/"],
                [
                    "chroot",
                    self.tmpd,
                    "grub-install",
                    "--target=x86_64-efi",
                    "--efi-directory=/run/zfs-mirror-efi-Ubuntu-Samsung-SSD-980-WXYZ",
                    "--bootloader-id=Ubuntu-Samsung-SSD-980-WXYZ",
                    "--recheck",
                    "--no-floppy",
                    str(ID_B),
                ],
            ],
        )
        self.assertFalse(mnt.exists())

    def test_member_failure_is_reported(self):
        def rsync(cmd):
            raise subprocess.CalledProcessError(23, cmd)

        cmds, fun = record_calls({"rsync": rsync})
        a, b, c = self._patches(fun)
        with a, b, c:
            self.assertRaises(SyncError, mirror.sync, self.mirror, self.root)


class ReplaceTest(unittest.TestCase):

    def setUp(self):
        self.pools = FakePools()
        self.pools.add_pool(
            "rpool",
            [(f"{ID_A}-part3", "ONLINE"), (f"{ID_B}-part3", "UNAVAIL")],
            health="DEGRADED",
        )
        self.disks = FakeDisks()
        self.disks.add_disk(ID_A)
        self.disks.add_partitions(ID_A, LAYOUT, partition_device)
        self.disks.fs[(Path(f"{ID_A}-part1"), "UUID")] = "ABCD-1234"
        self.disks.add_disk(ID_NEW)

    def _replace(self, failed=ID_B, new=ID_NEW):
        def replicate(source, target, disks):
            self.replicated = (source, target)
            return [partition_device(target, n) for n in (1, 2, 3)]

        cmds, fun = record_calls()
        with mock.patch.object(cmdmod, "check_call", fun), mock.patch.object(
            mirror, "replicate", replicate
        ), mock.patch.object(mirror, "sync") as sync, mock.patch.object(
            mirror, "discover"
        ):
            state = mirror.replace_member(
                "rpool", failed, new, self.pools, self.disks
            )
        return state, cmds, sync

    def test_replaces_failed_member(self):
        self.pools.resilver = [ResilverState.IN_PROGRESS]
        state, cmds, sync = self._replace()
        self.assertEqual(state, ResilverState.IN_PROGRESS)
        self.assertEqual(self.replicated, (ID_A, ID_NEW))
        self.assertIn(
            ["zpool", "replace", "-f", "rpool", f"{ID_B}-part3", f"{ID_NEW}-part3"], cmds
        )
        self.assertIn(
            ["mkdosfs", "-F", "32", "-s", "1", "-n", "EFI", "-i", "ABCD1234", f"{ID_NEW}-part1"],
            cmds,
        )
        self.assertIn(["mkswap", f"{ID_NEW}-part2"], cmds)
        replace_at = cmds.index(
            ["zpool", "replace", "-f", "rpool", f"{ID_B}-part3", f"{ID_NEW}-part3"]
        )
        labelclear_at = cmds.index(["zpool", "labelclear", "-f", f"{ID_NEW}-part3"])
        self.assertLess(labelclear_at, replace_at)
        sync.assert_called_once()

    def test_refuses_healthy_member(self):
        self.pools.member_states["rpool"][1] = self.pools.member_states["rpool"][1]._replace(
            state="ONLINE"
        )
        self.assertRaises(ReplacementRefused, self._replace)

    def test_refuses_non_member(self):
        self.assertRaises(
            ReplacementRefused, self._replace, failed=Path("/dev/disk/by-id/ata-Other_1")
        )

    def test_refuses_partition_as_new_drive(self):
        self.assertRaises(PreconditionError, self._replace, new=Path(f"{ID_NEW}-part1"))

    def test_refuses_the_survivor(self):
        self.assertRaises(PreconditionError, self._replace, new=ID_A)

    def test_resilver_never_starts(self):
        self.assertRaises(
            SyncError, mirror.wait_for_resilver, "rpool", self.pools, tries=2, delay=0
        )

    def test_resilver_already_done(self):
        self.pools.resilver = [ResilverState.COMPLETED]
        self.assertEqual(
            mirror.wait_for_resilver("rpool", self.pools, tries=1, delay=0),
            ResilverState.COMPLETED,
        )


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python

import mock
from pathlib import Path
import subprocess
import tempfile
import unittest

from installzfsmirror import cmd as cmdmod
from installzfsmirror import wipe
from installzfsmirror.errors import PreconditionError
from installzfsmirror.partition import MiB, partition_device
from installzfsmirror.test_fakes import (
    EFI_GUID,
    SWAP_GUID,
    ZFS_GUID,
    FakeDisks,
    FakePools,
    GiB,
    record_calls,
)

SDA = Path("/dev/sda")
SDB = Path("/dev/sdb")


def answers(*typed):
    typed = list(typed)
    prompts = []

    def ask(prompt):
        prompts.append(prompt)
        if not typed:
            raise EOFError()
        return typed.pop(0)

    return prompts, ask


class AnalysisTest(unittest.TestCase):

    def setUp(self):
        self.disks = FakeDisks()
        self.disks.add_disk(SDA)
        self.disks.add_disk(SDB)
        self.pools = FakePools()

    def test_blank_drives(self):
        a = wipe.analyze([SDA, SDB], self.disks, self.pools)
        self.assertTrue(a.empty)
        self.assertEqual(wipe.required_answers(a, "box"), ["yes"])

    def test_pool_on_drive(self):
        self.pools.add_pool("tank", [("/dev/sdb3", "ONLINE"), ("/dev/sdc3", "ONLINE")])
        self.pools.add_pool("other", [("/dev/sdd1", "ONLINE")])
        self.disks.add_partitions(
            SDB,
            [(1 * GiB, EFI_GUID), (4 * GiB, SWAP_GUID), (400 * GiB, ZFS_GUID)],
            partition_device,
        )
        a = wipe.analyze([SDA, SDB], self.disks, self.pools)
        self.assertEqual(a.pools, ("tank",))
        self.assertEqual(a.partitions, 3)
        self.assertTrue(a.boot_signatures)
        self.assertEqual(
            wipe.required_answers(a, "box"), ["DESTROY-EXISTING-DATA", "box"]
        )

    def test_mounted_file_system(self):
        self.disks.mounted[SDA] = [Path("/media/usb")]
        a = wipe.analyze([SDA], self.disks, self.pools)
        self.assertFalse(a.empty)
        self.assertEqual(wipe.required_answers(a, None), ["DESTROY"])


class ConfirmTest(unittest.TestCase):

    def setUp(self):
        self.analysis = wipe.DriveAnalysis((SDA,), ("tank",), (), 3, True)

    def test_correct_answers(self):
        prompts, ask = answers("DESTROY-EXISTING-DATA", "box")
        wipe.confirm(self.analysis, "box", ask=ask)
        self.assertEqual(len(prompts), 2)

    def test_wrong_answer(self):
        prompts, ask = answers("yes")
        self.assertRaises(
            PreconditionError, wipe.confirm, self.analysis, "box", ask=ask
        )
        self.assertEqual(len(prompts), 1)

    def test_end_of_input(self):
        prompts, ask = answers()
        self.assertRaises(
            PreconditionError, wipe.confirm, self.analysis, "box", ask=ask
        )

    def test_assume_yes(self):
        prompts, ask = answers()
        wipe.confirm(self.analysis, "box", assume_yes=True, ask=ask)
        self.assertEqual(prompts, [])


class ReleaseTest(unittest.TestCase):

    def test_swap_mounts_and_pools(self):
        disks = FakeDisks()
        disks.add_disk(SDA)
        disks.add_partitions(
            SDA, [(1 * GiB, EFI_GUID), (4 * GiB, SWAP_GUID)], partition_device
        )
        disks.fs[(Path("/dev/sda2"), "TYPE")] = "swap"
        disks.mounted[SDA] = [Path("/media/a"), Path("/media/a/b"), Path("[SWAP]")]
        pools = FakePools()
        pools.add_pool("tank", [("/dev/sda3", "ONLINE")])
        unmounted = []
        destroyed = []

        def swapoff(cmd):
            raise subprocess.CalledProcessError(1, cmd)

        cmds, fun = record_calls({"swapoff": swapoff})
        with mock.patch.object(cmdmod, "check_call", fun), mock.patch.object(
            cmdmod, "umount", unmounted.append
        ), mock.patch.object(
            wipe, "destroy_pool", lambda name, p: destroyed.append(name)
        ):
            wipe.release([SDA], disks, pools)
        self.assertEqual(cmds, [["swapoff", "/dev/sda2"]])
        self.assertEqual(unmounted, [Path("/media/a/b"), Path("/media/a")])
        self.assertEqual(destroyed, ["tank"])


class QuickWipeTest(unittest.TestCase):

    def test_zeroes_both_ends(self):
        size = 3 * MiB
        with tempfile.NamedTemporaryFile() as f:
            f.write(b"x" * size)
            f.flush()
            cmds, fun = record_calls()
            with mock.patch.object(cmdmod, "check_call", fun):
                wipe.quick_wipe(Path(f.name), size, span=MiB)
            with open(f.name, "rb") as g:
                data = g.read()
        self.assertEqual(len(data), size)
        self.assertEqual(data[:MiB], b"\0" * MiB)
        self.assertEqual(data[MiB : 2 * MiB], b"x" * MiB)
        self.assertEqual(data[2 * MiB :], b"\0" * MiB)
        self.assertEqual(cmds[0], ["wipefs", "-a", f.name])
        self.assertIn(["blockdev", "--rereadpt", f.name], cmds)

    def test_small_device(self):
        with tempfile.NamedTemporaryFile() as f:
            f.write(b"x" * 4096)
            f.flush()
            cmds, fun = record_calls()
            with mock.patch.object(cmdmod, "check_call", fun):
                wipe.quick_wipe(Path(f.name), 4096)
            with open(f.name, "rb") as g:
                self.assertEqual(g.read(), b"\0" * 4096)


if __name__ == "__main__":
    unittest.main()

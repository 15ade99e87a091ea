#!/usr/bin/env python

import mock
import os
from pathlib import Path
import unittest

import installzfsmirror as cli
from installzfsmirror import cmd as cmdmod
from installzfsmirror import mirror
from installzfsmirror.breakingbefore import BreakingBefore
from installzfsmirror.errors import PreconditionError, ReplacementRefused
from installzfsmirror.inspectors import ResilverState
from installzfsmirror.session import SessionFailed

INSTALL_ARGS = ["box", "/dev/sda", "/dev/sdb"]


def failed_session(cause):
    e = SessionFailed("validating", Path("/tmp/x.log"))
    e.__cause__ = cause
    return e


class InstallParserTest(unittest.TestCase):

    def test_defaults(self):
        args = cli.get_install_parser().parse_args(INSTALL_ARGS)
        self.assertEqual(args.drives, [Path("/dev/sda"), Path("/dev/sdb")])
        self.assertEqual(args.pool, "rpool")
        self.assertEqual(args.efi_size, 1024)
        self.assertIsNone(args.finalize)
        self.assertFalse(args.prepare)

    def test_final_question(self):
        p = cli.get_install_parser()
        self.assertTrue(p.parse_args(INSTALL_ARGS + ["--finalize"]).finalize)
        self.assertFalse(p.parse_args(INSTALL_ARGS + ["--leave-mounted"]).finalize)
        with mock.patch("sys.stderr"):
            self.assertRaises(
                SystemExit,
                p.parse_args,
                INSTALL_ARGS + ["--finalize", "--leave-mounted"],
            )

    def test_break_stages(self):
        p = cli.get_install_parser()
        args = p.parse_args(INSTALL_ARGS + ["--break-before", "partitioning"])
        self.assertEqual(args.break_before, "partitioning")
        with mock.patch("sys.stderr"):
            self.assertRaises(
                SystemExit, p.parse_args, INSTALL_ARGS + ["--break-before", "nowhere"]
            )
        self.assertIn("* configuring_first_boot:", p.epilog)

    def test_repeated_datasets(self):
        args = cli.get_install_parser().parse_args(
            INSTALL_ARGS + ["--dataset", "/home", "--dataset", "/srv"]
        )
        self.assertEqual(args.datasets, ["/home", "/srv"])


class ExitCodeTest(unittest.TestCase):

    def setUp(self):
        patcher = mock.patch.object(cli, "log_config")
        patcher.start()
        self.addCleanup(patcher.stop)

    def install(self, error):
        with mock.patch.object(cli, "Installer") as installer:
            installer.return_value.run.side_effect = error
            return cli.install_zfs_mirror(INSTALL_ARGS + ["--trace-file", "/tmp/t.log"])

    def test_install_exit_codes(self):
        self.assertEqual(self.install(BreakingBefore("partitioning")), 120)
        self.assertEqual(self.install(KeyboardInterrupt()), 130)
        self.assertEqual(
            self.install(failed_session(PreconditionError("bad"))), os.EX_USAGE
        )
        self.assertEqual(self.install(failed_session(OSError("disk gone"))), 1)

    def test_install_success_finishes(self):
        with mock.patch.object(cli, "Installer") as installer:
            self.assertEqual(cli.install_zfs_mirror(INSTALL_ARGS), 0)
        installer.return_value.finish.assert_called_once_with(
            installer.return_value.run.return_value
        )

    def test_replace_refused(self):
        with mock.patch.object(cmdmod, "is_superuser", return_value=True), mock.patch.object(
            mirror, "replace_member", side_effect=ReplacementRefused("healthy")
        ):
            self.assertEqual(cli.replace_drive(["/dev/sda", "/dev/sdc"]), 1)

    def test_replace_success(self):
        with mock.patch.object(cmdmod, "is_superuser", return_value=True), mock.patch.object(
            mirror, "replace_member", return_value=ResilverState.IN_PROGRESS
        ) as replace:
            self.assertEqual(
                cli.replace_drive(["--pool", "tank", "/dev/sda", "/dev/sdc"]), 0
            )
        self.assertEqual(replace.call_args[0][:3], ("tank", Path("/dev/sda"), Path("/dev/sdc")))

    def test_tools_need_root(self):
        with mock.patch.object(cmdmod, "is_superuser", return_value=False):
            self.assertEqual(cli.sync_mirror_boot([]), os.EX_USAGE)
            self.assertEqual(cli.firstboot_cleanup(["--no-reboot"]), os.EX_USAGE)


if __name__ == "__main__":
    unittest.main()

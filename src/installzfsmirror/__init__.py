#!/usr/bin/env python

import argparse
import logging
import os
from pathlib import Path
import subprocess

from installzfsmirror import cmd as cmdmod
from installzfsmirror import wipe
from installzfsmirror.breakingbefore import BreakingBefore, break_stages
from installzfsmirror.config import (
    DEFAULT_EFI_MIB,
    DEFAULT_POOL,
    DEFAULT_RELEASE,
    DEFAULT_SWAP_MIB,
    DEFAULT_WORKDIR,
    InstallConfig,
)
from installzfsmirror.errors import (
    FirstBootValidationError,
    InstallerError,
    PreconditionError,
)
from installzfsmirror.firstboot import MANUAL_STEPS, UNIT_NAME, FirstBootAgent
from installzfsmirror.inspectors import SystemDiskInspector, SystemPoolInspector
from installzfsmirror.installer import Installer, inspect_drive
from installzfsmirror.log import log_config, session_log_path
import installzfsmirror.mirror as mirrormod
from installzfsmirror.session import SessionFailed

_LOGGER = logging.getLogger()

EXIT_FAILURE = 1
EXIT_BREAK = 120
EXIT_INTERRUPTED = 130


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Add arguments common to all commands."""
    parser.add_argument(
        "--trace-file",
        dest="trace_file",
        type=Path,
        action="store",
        default=None,
        help="file name for a detailed trace file of program activity (default no"
        " trace file)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        dest="verbose",
        action="store_true",
        default=False,
        help="show every command run on the console",
    )


def add_pool_arguments(parser: argparse.ArgumentParser) -> None:
    """Add arguments naming the pool to operate on."""
    parser.add_argument(
        "--pool",
        "--pool-name",
        dest="pool",
        metavar="POOL",
        action="store",
        default=DEFAULT_POOL,
        help=f"name of the mirrored root pool (default {DEFAULT_POOL})",
    )


def add_confirmation_arguments(parser: argparse.ArgumentParser) -> None:
    """Add arguments controlling the destructive-operation prompts."""
    parser.add_argument(
        "--yes",
        dest="assume_yes",
        action="store_true",
        default=False,
        help="do not ask for typed confirmation before destroying data on the"
        " drives; use with care",
    )


def add_drive_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the two drive arguments."""
    parser.add_argument(
        "drives",
        metavar="DISK",
        type=Path,
        nargs=2,
        help="whole-disk device (preferably a /dev/disk/by-id/ path); both drives"
        " will be erased",
    )


def get_install_parser() -> argparse.ArgumentParser:
    """Get a parser to configure install-zfs-mirror."""
    parser = argparse.ArgumentParser(
        description="Install Ubuntu on a ZFS pool mirrored across two drives",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "hostname",
        metavar="HOSTNAME",
        help="host name of the new system",
    )
    add_drive_arguments(parser)
    parser.add_argument(
        "--prepare",
        dest="prepare",
        action="store_true",
        default=False,
        help="zero the start and the end of both drives before partitioning them",
    )
    parser.add_argument(
        "--timezone",
        dest="timezone",
        metavar="TZ",
        action="store",
        default=None,
        help="time zone of the new system, e.g. Europe/Madrid (default UTC)",
    )
    add_confirmation_arguments(parser)
    add_pool_arguments(parser)
    parser.add_argument(
        "--efi-size",
        dest="efi_size",
        metavar="MIB",
        type=int,
        action="store",
        default=DEFAULT_EFI_MIB,
        help=f"size of the EFI partition in MiB (default {DEFAULT_EFI_MIB})",
    )
    parser.add_argument(
        "--swap-size",
        dest="swap_size",
        metavar="MIB",
        type=int,
        action="store",
        default=DEFAULT_SWAP_MIB,
        help=f"size of the swap partition on each drive in MiB, 0 for none"
        f" (default {DEFAULT_SWAP_MIB})",
    )
    parser.add_argument(
        "--workdir",
        dest="workdir",
        type=Path,
        action="store",
        default=DEFAULT_WORKDIR,
        help=f"mount the new system here while installing (default {DEFAULT_WORKDIR})",
    )
    parser.add_argument(
        "--release",
        dest="release",
        action="store",
        default=DEFAULT_RELEASE,
        help="Ubuntu release code name to install, noble or newer"
        f" (default {DEFAULT_RELEASE})",
    )
    parser.add_argument(
        "--admin-user",
        dest="admin_user",
        action="store",
        default=None,
        help="create this user with administrative rights",
    )
    parser.add_argument(
        "--admin-password-file",
        dest="admin_password_file",
        type=Path,
        action="store",
        default=None,
        help="file whose first line is the password of the administrative user",
    )
    parser.add_argument(
        "--ssh-key-file",
        dest="ssh_key_file",
        type=Path,
        action="store",
        default=None,
        help="authorized SSH public keys for the administrative user",
    )
    parser.add_argument(
        "--dataset",
        dest="datasets",
        metavar="MOUNTPOINT",
        action="append",
        default=[],
        help="create a separate dataset for this mountpoint; may be repeated",
    )
    parser.add_argument(
        "--break-before",
        dest="break_before",
        choices=break_stages,
        action="store",
        default=None,
        help="break before the specified stage (see below); useful to stop"
        " the process at a particular stage for debugging",
    )
    final = parser.add_mutually_exclusive_group()
    final.add_argument(
        "--finalize",
        dest="finalize",
        action="store_true",
        default=None,
        help="unmount and export the pool when done without asking",
    )
    final.add_argument(
        "--leave-mounted",
        dest="finalize",
        action="store_false",
        default=None,
        help="leave the new system mounted for inspection when done",
    )
    add_common_arguments(parser)
    parser.epilog = "Stages for the --break-before argument:\n%s" % (
        "".join(
            "\n* %s:%s%s"
            % (k, " " * (max(len(x) for x in break_stages) - len(k) + 1), v)
            for k, v in list(break_stages.items())
        ),
    )
    return parser


def get_wipe_parser() -> argparse.ArgumentParser:
    """Get a parser to configure wipe-zfs-mirror-drives."""
    parser = argparse.ArgumentParser(
        description="Release and wipe two drives without installing anything"
    )
    add_drive_arguments(parser)
    add_confirmation_arguments(parser)
    add_common_arguments(parser)
    return parser


def get_firstboot_parser() -> argparse.ArgumentParser:
    """Get a parser to configure zfs-firstboot-cleanup."""
    parser = argparse.ArgumentParser(
        description="Validate the first boot and retract the forced pool import"
    )
    add_pool_arguments(parser)
    parser.add_argument(
        "--no-reboot",
        dest="reboot",
        action="store_false",
        default=True,
        help="do not reboot after a successful cleanup",
    )
    add_common_arguments(parser)
    return parser


def get_sync_parser() -> argparse.ArgumentParser:
    """Get a parser to configure sync-mirror-boot."""
    parser = argparse.ArgumentParser(
        description="Copy the mounted EFI partition to every drive of the mirror"
        " and reinstall GRUB on each"
    )
    add_common_arguments(parser)
    return parser


def get_replace_parser() -> argparse.ArgumentParser:
    """Get a parser to configure zfs-replace-drive."""
    parser = argparse.ArgumentParser(
        description="Replace a failed drive of the mirror with a new one"
    )
    add_pool_arguments(parser)
    parser.add_argument(
        "failed",
        metavar="FAILED",
        type=Path,
        help="failed pool member, as shown by zpool status -P, or its drive",
    )
    parser.add_argument(
        "new",
        metavar="NEW",
        type=Path,
        help="whole-disk device of the replacement drive",
    )
    add_common_arguments(parser)
    return parser


def _check_root() -> None:
    if not cmdmod.is_superuser():
        raise PreconditionError("this program must be run as root")


def install_zfs_mirror(argv: list[str] | None = None) -> int:
    """Install Ubuntu on a mirrored ZFS root pool."""
    args = get_install_parser().parse_args(argv)
    trace_file = args.trace_file or session_log_path()
    log_config(trace_file, args.verbose)
    _LOGGER.info("Session log: %s", trace_file)

    config = InstallConfig(
        hostname=args.hostname,
        drives=(args.drives[0], args.drives[1]),
        pool_name=args.pool,
        efi_size_mib=args.efi_size,
        swap_size_mib=args.swap_size,
        workdir=args.workdir,
        release=args.release,
        timezone=args.timezone,
        prepare=args.prepare,
        assume_yes=args.assume_yes,
        admin_user=args.admin_user,
        admin_password_file=args.admin_password_file,
        ssh_key_file=args.ssh_key_file,
        datasets=tuple(args.datasets),
        break_before=args.break_before,
        finalize=args.finalize,
    )
    installer = Installer(
        config, SystemDiskInspector(), SystemPoolInspector(), log_path=trace_file
    )
    try:
        session = installer.run()
        installer.finish(session)
    except BreakingBefore:
        return EXIT_BREAK
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except SessionFailed as e:
        _LOGGER.error("error: %s", e.__cause__)
        _LOGGER.error("Last checkpoint reached: %s; log in %s", e.checkpoint, e.log_path)
        if isinstance(e.__cause__, PreconditionError):
            return os.EX_USAGE
        return EXIT_FAILURE
    except InstallerError as e:
        _LOGGER.error("error: %s", e)
        return EXIT_FAILURE
    return 0


def wipe_drives(argv: list[str] | None = None) -> int:
    """Release and wipe two drives."""
    args = get_wipe_parser().parse_args(argv)
    log_config(args.trace_file, args.verbose)
    disks, pools = SystemDiskInspector(), SystemPoolInspector()
    try:
        _check_root()
        a, b = args.drives
        if os.path.realpath(a) == os.path.realpath(b):
            raise PreconditionError(f"{a} and {b} are the same drive")
        paths = [inspect_drive(d, disks).path for d in (a, b)]
        analysis = wipe.analyze(paths, disks, pools)
        wipe.confirm(analysis, None, args.assume_yes)
        wipe.prepare(paths, disks, pools, wipe=True)
    except PreconditionError as e:
        _LOGGER.error("error: %s", e)
        return os.EX_USAGE
    except (InstallerError, subprocess.CalledProcessError, OSError) as e:
        _LOGGER.error("error: %s", e)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    _LOGGER.info("Both drives are wiped")
    return 0


def firstboot_cleanup(argv: list[str] | None = None) -> int:
    """Run the first-boot cleanup agent."""
    args = get_firstboot_parser().parse_args(argv)
    log_config(args.trace_file, args.verbose)
    disks = SystemDiskInspector()
    agent = FirstBootAgent(
        args.pool,
        SystemPoolInspector(),
        disks,
        sync=lambda: mirrormod.sync(mirrormod.discover(disks)),
    )
    try:
        _check_root()
        agent.run(reboot=args.reboot)
    except PreconditionError as e:
        _LOGGER.error("error: %s", e)
        return os.EX_USAGE
    except FirstBootValidationError as e:
        _LOGGER.error("First boot validation failed: %s", e)
        _LOGGER.error(MANUAL_STEPS.format(pool=args.pool, unit=UNIT_NAME))
        return EXIT_FAILURE
    except (InstallerError, subprocess.CalledProcessError, OSError) as e:
        _LOGGER.error("First boot cleanup failed: %s", e)
        _LOGGER.error(MANUAL_STEPS.format(pool=args.pool, unit=UNIT_NAME))
        return EXIT_FAILURE
    _LOGGER.info("First boot cleanup complete")
    return 0


def sync_mirror_boot(argv: list[str] | None = None) -> int:
    """Synchronize the EFI partitions of the mirror."""
    args = get_sync_parser().parse_args(argv)
    log_config(args.trace_file, args.verbose)
    try:
        _check_root()
        mirrormod.sync(mirrormod.discover(SystemDiskInspector()))
    except PreconditionError as e:
        _LOGGER.error("error: %s", e)
        return os.EX_USAGE
    except (InstallerError, subprocess.CalledProcessError, OSError) as e:
        _LOGGER.error("error: %s", e)
        return EXIT_FAILURE
    return 0


def replace_drive(argv: list[str] | None = None) -> int:
    """Replace a failed drive of the mirror."""
    args = get_replace_parser().parse_args(argv)
    log_config(args.trace_file, args.verbose)
    try:
        _check_root()
        state = mirrormod.replace_member(
            args.pool,
            args.failed,
            args.new,
            SystemPoolInspector(),
            SystemDiskInspector(),
        )
    except PreconditionError as e:
        _LOGGER.error("error: %s", e)
        return os.EX_USAGE
    except (InstallerError, subprocess.CalledProcessError, OSError) as e:
        _LOGGER.error("error: %s", e)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    _LOGGER.info(
        "Replacement done, resilver %s; follow it with: zpool status %s",
        state.value.replace("_", " "),
        args.pool,
    )
    return 0

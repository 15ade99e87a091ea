"""The installation, from drive validation to the first-boot configuration."""

from collections.abc import Callable
import logging
import os
from pathlib import Path
import re

from installzfsmirror import cmd as cmdmod
from installzfsmirror import recovery, wipe
from installzfsmirror.config import (
    MIN_DRIVE_BYTES,
    OLD_RELEASES,
    SIZE_MISMATCH_TOLERANCE,
    InstallConfig,
)
from installzfsmirror.errors import InstallerError, PreconditionError
from installzfsmirror.firstboot import BootstrapProtocol
from installzfsmirror.identity import drive_label
from installzfsmirror.inspectors import DiskInspector, PoolInspector
import installzfsmirror.mirror as mirrormod
from installzfsmirror.partition import (
    DriveSpec,
    PartitionPlan,
    Role,
    looks_like_partition,
    plan_pair,
    realize,
)
from installzfsmirror.pool import (
    CapabilityProfile,
    create_datasets,
    create_pool,
    root_pool_spec,
)
from installzfsmirror.session import Ledger, Session
from installzfsmirror.target import UbuntuTarget, efi_volume_id

_LOGGER = logging.getLogger(__name__)

REQUIRED_TOOLS = [
    "sgdisk",
    "partprobe",
    "wipefs",
    "blkid",
    "lsblk",
    "findmnt",
    "zpool",
    "zfs",
    "mkdosfs",
    "mkswap",
    "debootstrap",
    "rsync",
]

_HOSTNAME = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_POOL_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_.:-]*$")


def valid_hostname(hostname: str) -> bool:
    """Whether hostname is a valid single-label host name."""
    return bool(_HOSTNAME.match(hostname))


def _check_arguments(config: InstallConfig) -> None:
    if not valid_hostname(config.hostname):
        raise PreconditionError(f"{config.hostname!r} is not a valid host name")
    if not _POOL_NAME.match(config.pool_name):
        raise PreconditionError(f"{config.pool_name!r} is not a valid pool name")
    for mp in config.datasets:
        if not mp.startswith("/") or mp == "/" or ".." in mp.split("/"):
            raise PreconditionError(f"{mp!r} is not a valid dataset mountpoint")
    for f in (config.admin_password_file, config.ssh_key_file):
        if f is not None and not os.path.isfile(f):
            raise PreconditionError(f"{f} does not exist")
    if config.admin_password_file and not config.admin_user:
        raise PreconditionError("--admin-password-file requires --admin-user")
    if config.release in OLD_RELEASES:
        raise PreconditionError(
            f"Ubuntu {config.release} is too old; install noble or a newer release"
        )


def _check_environment(config: InstallConfig, disks: DiskInspector) -> None:
    if not cmdmod.is_superuser():
        raise PreconditionError("this program must be run as root")
    missing = [t for t in REQUIRED_TOOLS if not cmdmod.which(t)]
    if missing:
        raise PreconditionError("required tools missing: %s" % ", ".join(missing))
    if disks.mount_fstype(Path("/")) == "zfs":
        raise PreconditionError(
            "the running system has its root on ZFS; boot a live system instead"
        )
    if cmdmod.ismount(config.workdir):
        raise PreconditionError(f"{config.workdir} is already a mountpoint")


def inspect_drive(dev: Path, disks: DiskInspector) -> DriveSpec:
    """Check that dev is a usable whole disk and capture what we know of it."""
    if looks_like_partition(dev):
        raise PreconditionError(f"{dev} looks like a partition; give a whole disk")
    if not disks.exists(dev):
        raise PreconditionError(f"{dev} is not a block device")
    if disks.device_type(dev) != "disk":
        raise PreconditionError(f"{dev} is not a whole disk")
    size = disks.size_bytes(dev)
    if size < MIN_DRIVE_BYTES:
        raise PreconditionError(
            f"{dev} has {size // 2**30} GiB; at least {MIN_DRIVE_BYTES // 2**30}"
            " GiB are needed"
        )
    stable = disks.stable_path(dev)
    if stable != dev:
        _LOGGER.info("Using %s for %s", stable, dev)
    return DriveSpec(
        path=stable,
        label=drive_label(stable),
        size_bytes=size,
        drive_class=disks.drive_class(dev),
        physical_sector_size=disks.physical_sector_size(dev),
    )


def validate(
    config: InstallConfig, disks: DiskInspector, pools: PoolInspector
) -> tuple[tuple[DriveSpec, DriveSpec], tuple[PartitionPlan, PartitionPlan]]:
    """Check everything that can be checked before touching the drives.

    Returns the drives and their partition plans.
    """
    _check_arguments(config)
    _check_environment(config, disks)

    a, b = config.drives
    if os.path.realpath(a) == os.path.realpath(b):
        raise PreconditionError(f"{a} and {b} are the same drive")
    first, second = inspect_drive(a, disks), inspect_drive(b, disks)
    bigger = max(first.size_bytes, second.size_bytes)
    if abs(first.size_bytes - second.size_bytes) > bigger * SIZE_MISMATCH_TOLERANCE:
        raise PreconditionError(
            f"{a} and {b} differ in size by more than"
            f" {int(SIZE_MISMATCH_TOLERANCE * 100)}%"
        )
    if first.label == second.label:
        raise PreconditionError(
            f"{first.path} and {second.path} have the same label {first.label}"
        )

    if pools.exists(config.pool_name):
        if config.pool_name not in wipe.pools_on([a, b], pools):
            raise PreconditionError(
                f"a pool named {config.pool_name} is imported from other drives"
            )

    plans = plan_pair(first, second, config.efi_bytes, config.swap_bytes)
    for d in (first, second):
        _LOGGER.info(
            "Drive %s: %s, %s GiB, label %s",
            d.path,
            d.drive_class.value,
            d.size_bytes // 2**30,
            d.label,
        )
    return (first, second), plans


def recovery_path(log_path: Path | None) -> Path:
    """Return where the recovery document goes during the installation."""
    if log_path is None:
        return Path("/tmp/zfs-mirror-root-install.recovery.txt")
    return log_path.with_suffix(".recovery.txt")


class Installer:
    """Drives one installation session through its checkpoints."""

    def __init__(
        self,
        config: InstallConfig,
        disks: DiskInspector,
        pools: PoolInspector,
        log_path: Path | None = None,
        ask: Callable[[str], str] = input,
    ) -> None:
        """Initialize the installer."""
        self.config = config
        self.disks = disks
        self.pools = pools
        self.log_path = log_path
        self.ask = ask
        self.plans: tuple[PartitionPlan, ...] = ()

    def _write_recovery(self, session: Session, path: Path) -> None:
        text = recovery.render(
            self.config.hostname,
            self.config.pool_name,
            list(self.plans),
            efi_volume_id(self.config.hostname),
            session.checkpoint,
            self.log_path,
        )
        recovery.write(path, text)

    def run(self) -> Session:
        """Install the system.  Raises SessionFailed on failure."""
        c = self.config
        session = Session(Ledger(self.pools), self.log_path, c.break_before)
        with session.guard():
            session.advance("validating")
            drives, self.plans = validate(c, self.disks, self.pools)
            paths = [d.path for d in drives]

            session.advance("preparing")
            analysis = wipe.analyze(paths, self.disks, self.pools)
            wipe.confirm(analysis, c.hostname, c.assume_yes, self.ask)
            self._write_recovery(session, recovery_path(self.log_path))
            wipe.prepare(paths, self.disks, self.pools, wipe=c.prepare)

            session.advance("partitioning")
            for plan in self.plans:
                realize(plan, self.disks)

            session.advance("pools_creating")
            spec = root_pool_spec(
                c.pool_name,
                (self.plans[0].partition(Role.POOL), self.plans[1].partition(Role.POOL)),
                list(c.datasets),
            )
            profile = CapabilityProfile.for_drives(*drives)
            create_pool(
                spec, profile, c.workdir, self.pools, session.ledger.to_export.append
            )

            session.advance("pools_creating_datasets")
            create_datasets(spec, self.pools)
            target = UbuntuTarget(c, list(self.plans))
            run_dir = target.root.p("/run")
            cmdmod.makedirs([run_dir])
            cmdmod.mount("tmpfs", run_dir, "-t", "tmpfs", "-o", "mode=0755")
            session.ledger.to_unmount.append(run_dir)

            session.advance("configuring_system")
            target.bootstrap_base()
            target.write_base_config()
            target.deploy_tools()

            session.advance("chroot_configuration")
            target.bind_chroot(session)
            target.configure_in_chroot(session)

            session.advance("finalizing")
            mirrormod.sync(mirrormod.discover(self.disks, target.root), target.root)
            self._write_recovery(session, recovery_path(self.log_path))
            self._write_recovery(session, target.root.p(recovery.TARGET_PATH))

            session.advance("configuring_first_boot")
            BootstrapProtocol(target.root, c.pool_name, spec.root_dataset).configure()

            session.advance("completed")
        _LOGGER.info("Installation of %s complete", c.hostname)
        return session

    def _wants_finalize(self) -> bool:
        if self.config.finalize is not None:
            return self.config.finalize
        if self.config.assume_yes:
            return True
        try:
            answer = self.ask("Unmount and export the pool now? [Y/n] ")
        except EOFError:
            answer = ""
        return answer.strip().lower() in ("", "y", "yes")

    def finish(self, session: Session) -> None:
        """Release the new system, or leave it mounted for inspection."""
        if self._wants_finalize():
            _LOGGER.info("Unmounting and exporting pool %s", self.config.pool_name)
            session.ledger.unwind()
            if self.pools.exists(self.config.pool_name):
                raise InstallerError(
                    f"pool {self.config.pool_name} is still imported; export it by"
                    " hand before rebooting"
                )
            _LOGGER.info("The system is ready; reboot into it")
            return
        session.ledger.discard()
        _LOGGER.info("The new system is left mounted at %s", self.config.workdir)
        _LOGGER.info("When done, release it with:")
        _LOGGER.info("  umount -lR %s/dev %s/proc %s/sys", *[self.config.workdir] * 3)
        _LOGGER.info("  umount %s/boot/efi %s/run", *[self.config.workdir] * 2)
        _LOGGER.info("  zpool export %s", self.config.pool_name)

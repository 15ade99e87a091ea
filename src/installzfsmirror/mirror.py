"""Keeping the EFI system partitions of the mirror identical and bootable.

Every drive carries its own EFI partition, all formatted with the same
volume id.  The one mounted at /boot/efi is the source of truth; the
others are copied from it and get GRUB installed under their own
drive-specific bootloader id.
"""

import logging
import os
from pathlib import Path
import subprocess
from typing import NamedTuple

from installzfsmirror import cmd as cmdmod
from installzfsmirror.errors import PreconditionError, ReplacementRefused, SyncError
from installzfsmirror.identity import bootloader_id
from installzfsmirror.inspectors import (
    DiskInspector,
    MemberState,
    PoolInspector,
    ResilverState,
    type_code,
)
from installzfsmirror.partition import looks_like_partition, parent_disk, replicate
from installzfsmirror.pool import clear_stale_labels
import installzfsmirror.retry as retrymod

_LOGGER = logging.getLogger(__name__)

EFI_MOUNTPOINT = Path("/boot/efi")
SYNC_MOUNT_PREFIX = "/run/zfs-mirror-efi-"
RESILVER_TRIES = 15
RESILVER_DELAY = 2


class MirrorMember(NamedTuple):
    """The EFI partition of one drive of the mirror."""

    drive: Path
    efi_partition: Path

    @property
    def bootloader_id(self) -> str:
        """Return the bootloader folder name used on this drive."""
        return bootloader_id(self.drive)


class MirrorSet(NamedTuple):
    """The mounted EFI partition and its siblings."""

    uuid: str
    primary: MirrorMember
    others: tuple[MirrorMember, ...]

    @property
    def members(self) -> tuple[MirrorMember, ...]:
        """Return every member, primary first."""
        return (self.primary,) + self.others


def _same_device(a: Path, b: Path) -> bool:
    return os.path.realpath(a) == os.path.realpath(b)


def _member_for(partition: Path, disks: DiskInspector) -> MirrorMember:
    disk = parent_disk(Path(os.path.realpath(partition)))
    if disk is None:
        raise SyncError(f"cannot tell which drive {partition} belongs to")
    return MirrorMember(drive=disks.stable_path(disk), efi_partition=partition)


def discover(
    disks: DiskInspector, root: cmdmod.Root = cmdmod.HOST
) -> MirrorSet:
    """Find the mounted EFI partition and the others sharing its volume id."""
    mountpoint = root.p(EFI_MOUNTPOINT)
    primary = disks.mount_source(mountpoint)
    if primary is None:
        raise SyncError(f"{mountpoint} is not mounted")
    uuid = disks.filesystem_value(primary, "UUID")
    if not uuid:
        raise SyncError(f"{primary} carries no file system")
    others = [
        dev
        for dev in disks.devices_with_uuid(uuid)
        if not _same_device(dev, primary)
    ]
    if not others:
        raise SyncError(f"no other EFI partition carries volume id {uuid}")
    mirror = MirrorSet(
        uuid=uuid,
        primary=_member_for(primary, disks),
        others=tuple(_member_for(o, disks) for o in others),
    )
    _LOGGER.debug("Mirror set: %s", mirror)
    return mirror


def grub_install_command(efi_directory: Path, member: MirrorMember) -> list[str]:
    """Return the grub-install command line for a member."""
    return [
        "grub-install",
        "--target=x86_64-efi",
        f"--efi-directory={efi_directory}",
        f"--bootloader-id={member.bootloader_id}",
        "--recheck",
        "--no-floppy",
        str(member.drive),
    ]


def _sync_member(
    member: MirrorMember, source: Path, root: cmdmod.Root
) -> None:
    mnt = root.p(SYNC_MOUNT_PREFIX + member.bootloader_id)
    cmdmod.makedirs([mnt])
    cmdmod.mount(member.efi_partition, mnt)
    try:
        cmdmod.check_call(["rsync", "-a", "--delete", f"{source}/", f"{mnt}/"])
        cmdmod.check_call(root.in_chroot(grub_install_command(root.q(mnt), member)))
    finally:
        cmdmod.umount(mnt)
        os.rmdir(mnt)


def sync(mirror: MirrorSet, root: cmdmod.Root = cmdmod.HOST) -> None:
    """Copy the mounted EFI partition onto the others and install GRUB on each.

    Every member is attempted.  Raises SyncError listing those that failed.
    """
    source = root.p(EFI_MOUNTPOINT)
    _LOGGER.info(
        "Installing GRUB to %s from %s", mirror.primary.drive, mirror.primary.efi_partition
    )
    cmdmod.check_call(
        root.in_chroot(grub_install_command(EFI_MOUNTPOINT, mirror.primary))
    )
    failed = []
    for member in mirror.others:
        _LOGGER.info("Synchronizing %s on %s", member.efi_partition, member.drive)
        try:
            _sync_member(member, source, root)
        except (subprocess.CalledProcessError, OSError) as e:
            _LOGGER.error("Could not synchronize %s: %s", member.efi_partition, e)
            failed.append(member.efi_partition)
    if failed:
        raise SyncError(
            "could not synchronize %s" % ", ".join(str(f) for f in failed)
        )
    _LOGGER.info("Synchronized %s EFI partitions", len(mirror.members))


def find_member(members: list[MemberState], device: Path) -> MemberState | None:
    """Return the pool member that is device, or a partition of it."""
    for m in members:
        if m.path == device or parent_disk(m.path) == device:
            return m
    for m in members:
        if _same_device(m.path, device):
            return m
    return None


class ResilverNotStarted(retrymod.Retryable):
    """The pool does not report a resilver yet."""


def wait_for_resilver(
    pool: str,
    pools: PoolInspector,
    tries: int = RESILVER_TRIES,
    delay: float = RESILVER_DELAY,
) -> ResilverState:
    """Wait until the pool reports a resilver running or finished."""

    @retrymod.retry(tries - 1, timeout=delay, retryable_exception=ResilverNotStarted)
    def check() -> ResilverState:
        state = pools.resilver_state(pool)
        if state is ResilverState.NONE:
            raise ResilverNotStarted(pool)
        return state

    try:
        return check()
    except ResilverNotStarted:
        raise SyncError(
            f"pool {pool} did not start resilvering within {tries * delay} seconds"
        ) from None


def _layout_roles(disk: Path, disks: DiskInspector) -> dict[str, int]:
    return {type_code(p.type_guid): p.number for p in disks.partitions(disk)}


def replace_member(
    pool: str,
    failed: Path,
    new: Path,
    pools: PoolInspector,
    disks: DiskInspector,
    root: cmdmod.Root = cmdmod.HOST,
) -> ResilverState:
    """Put the drive new in the place of the failed member of the pool.

    Refuses unless the pool itself reports that member failed or absent.
    Returns once the resilver is visibly under way.
    """
    members = pools.members(pool)
    victim = find_member(members, failed)
    if victim is None:
        raise ReplacementRefused(f"{failed} is not a member of pool {pool}")
    if not victim.failed:
        raise ReplacementRefused(
            f"pool {pool} reports {victim.path} as {victim.state}; refusing to"
            " replace a working member"
        )
    survivors = [m for m in members if not m.failed and m.path != victim.path]
    if not survivors:
        raise SyncError(f"pool {pool} has no working member to copy from")
    survivor_disk = parent_disk(survivors[0].path)
    if survivor_disk is None:
        raise SyncError(f"cannot tell which drive {survivors[0].path} belongs to")

    if not disks.exists(new):
        raise PreconditionError(f"{new} is not a block device")
    if looks_like_partition(new) or disks.device_type(new) != "disk":
        raise PreconditionError(f"{new} is not a whole disk")
    if _same_device(new, survivor_disk):
        raise PreconditionError(f"{new} holds the working member of the pool")
    if disks.mounted_filesystems(new):
        raise PreconditionError(f"{new} has mounted file systems")

    roles = _layout_roles(survivor_disk, disks)
    for code in ("EF00", "BF00"):
        if code not in roles:
            raise SyncError(f"{survivor_disk} has no partition of type {code}")

    _LOGGER.info(
        "Replacing %s (%s) in pool %s with %s", victim.path, victim.state, pool, new
    )
    parts = replicate(survivor_disk, new, disks)
    by_number = {n + 1: part for n, part in enumerate(parts)}
    new_pool_part = by_number[roles["BF00"]]
    new_efi = by_number[roles["EF00"]]

    clear_stale_labels([new_pool_part])
    cmdmod.check_call(["zpool", "replace", "-f", pool, str(victim.path), str(new_pool_part)])

    # The new EFI partition must share the survivor's volume id.
    survivor_efi = [
        p.path for p in disks.partitions(survivor_disk) if type_code(p.type_guid) == "EF00"
    ][0]
    volume_id = disks.filesystem_value(survivor_efi, "UUID").replace("-", "")
    mkfs = ["mkdosfs", "-F", "32", "-s", "1", "-n", "EFI"]
    if volume_id:
        mkfs += ["-i", volume_id]
    cmdmod.check_call(mkfs + [str(new_efi)])
    if "8200" in roles:
        cmdmod.check_call(["mkswap", str(by_number[roles["8200"]])])

    state = wait_for_resilver(pool, pools)
    _LOGGER.info("Pool %s resilver is %s", pool, state.value.replace("_", " "))
    sync(discover(disks, root), root)
    return state

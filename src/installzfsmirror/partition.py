"""Partition layout planning and realization.

Every drive of the mirror gets the same three partitions: an EFI system
partition, a swap partition and the pool partition, which takes the rest
of the drive.  Plans for the two drives of a pair are structurally
identical so that either drive can stand in for the other.
"""

import enum
import logging
from pathlib import Path
import re
import subprocess
from typing import NamedTuple

from installzfsmirror import cmd as cmdmod
from installzfsmirror.errors import PartitioningError, PreconditionError
from installzfsmirror.inspectors import DiskInspector, DriveClass, type_code
import installzfsmirror.retry as retrymod

_LOGGER = logging.getLogger(__name__)

MiB = 1024 * 1024
GiB = 1024 * MiB

# sgdisk starts the first partition at 1 MiB and keeps 33 sectors of
# backup GPT at the end; round both up to whole MiB.
LEADING_RESERVE = 1 * MiB
TRAILING_RESERVE = 1 * MiB
MIN_POOL_BYTES = 8 * GiB
# Partition sizes reported by the kernel may differ from the requested
# size by alignment; anything closer than this counts as a match.
SIZE_TOLERANCE = 1 * MiB

SETTLE_TRIES = 30
SETTLE_DELAY = 1


class Role(enum.Enum):
    """What a partition is used for."""

    EFI = "efi"
    SWAP = "swap"
    POOL = "pool"


class DriveSpec(NamedTuple):
    """A physical drive as captured at session start."""

    path: Path
    label: str
    size_bytes: int
    drive_class: DriveClass
    physical_sector_size: int = 4096

    @property
    def rotational(self) -> bool:
        """Whether the drive has spinning platters."""
        return self.drive_class.rotational


class PartitionEntry(NamedTuple):
    """One partition of a plan.  A size of None means the rest of the drive."""

    number: int
    role: Role
    size_bytes: int | None
    type_code: str
    name: str


class PartitionPlan(NamedTuple):
    """Ordered partitions for one drive."""

    device: Path
    entries: tuple[PartitionEntry, ...]

    def layout(self) -> tuple[tuple[Role, int | None, str], ...]:
        """Return the structure of the plan, independent of the device."""
        return tuple((e.role, e.size_bytes, e.type_code) for e in self.entries)

    def entry(self, role: Role) -> PartitionEntry:
        """Return the entry for a role."""
        for e in self.entries:
            if e.role is role:
                return e
        raise KeyError(role)

    def partition(self, role: Role) -> Path:
        """Return the device path the partition for role will have."""
        return partition_device(self.device, self.entry(role).number)

    def partitions(self) -> list[Path]:
        """Return every partition device path of the plan, in order."""
        return [partition_device(self.device, e.number) for e in self.entries]


def partition_device(disk: Path, number: int) -> Path:
    """Return the device path of partition `number` of `disk`."""
    s = str(disk)
    if s.startswith("/dev/disk/by-"):
        return Path(f"{s}-part{number}")
    if re.search(r"(nvme[0-9]+n[0-9]+|mmcblk[0-9]+|loop[0-9]+)$", s):
        return Path(f"{s}p{number}")
    if re.search(r"/[shv]d[a-z]+$", s):
        return Path(f"{s}{number}")
    return Path(f"{s}-part{number}")


_PARTITION_SUFFIXES = [
    re.compile(r"^(?P<disk>/dev/disk/by-.+)-part[0-9]+$"),
    re.compile(r"^(?P<disk>.*(?:nvme[0-9]+n[0-9]+|mmcblk[0-9]+|loop[0-9]+))p[0-9]+$"),
    re.compile(r"^(?P<disk>.*/[shv]d[a-z]+)[0-9]+$"),
    re.compile(r"^(?P<disk>.+)-part[0-9]+$"),
]


def parent_disk(partition: Path) -> Path | None:
    """Return the whole-disk path of a partition path, if it looks like one."""
    for pattern in _PARTITION_SUFFIXES:
        m = pattern.match(str(partition))
        if m:
            return Path(m.group("disk"))
    return None


def looks_like_partition(dev: Path) -> bool:
    """Whether a path names a partition rather than a whole disk."""
    return parent_disk(dev) is not None


def plan_partitions(drive: DriveSpec, efi_bytes: int, swap_bytes: int) -> PartitionPlan:
    """Compute the partition plan for a drive.

    Raises PreconditionError if the fixed regions plus a usable pool
    region do not fit on the drive.
    """
    if efi_bytes <= 0 or efi_bytes % MiB:
        raise PreconditionError(f"EFI size {efi_bytes} must be a positive whole MiB")
    if swap_bytes < 0 or swap_bytes % MiB:
        raise PreconditionError(f"swap size {swap_bytes} must be a whole MiB")
    needed = (
        LEADING_RESERVE + efi_bytes + swap_bytes + MIN_POOL_BYTES + TRAILING_RESERVE
    )
    if needed > drive.size_bytes:
        raise PreconditionError(
            f"drive {drive.path} has {drive.size_bytes} bytes but the layout"
            f" needs at least {needed}"
        )
    entries = [PartitionEntry(1, Role.EFI, efi_bytes, "EF00", "EFI System")]
    if swap_bytes:
        entries.append(PartitionEntry(2, Role.SWAP, swap_bytes, "8200", "Linux Swap"))
    entries.append(
        PartitionEntry(len(entries) + 1, Role.POOL, None, "BF00", "ZFS Pool")
    )
    return PartitionPlan(drive.path, tuple(entries))


def plan_pair(
    first: DriveSpec, second: DriveSpec, efi_bytes: int, swap_bytes: int
) -> tuple[PartitionPlan, PartitionPlan]:
    """Compute matching plans for both drives of a mirror."""
    a = plan_partitions(first, efi_bytes, swap_bytes)
    b = plan_partitions(second, efi_bytes, swap_bytes)
    if a.layout() != b.layout():
        raise PreconditionError(
            f"partition plans for {first.path} and {second.path} differ"
        )
    return a, b


def layout_matches(plan: PartitionPlan, disks: DiskInspector) -> bool:
    """Whether the drive already carries exactly the planned partitions."""
    current = disks.partitions(plan.device)
    if len(current) != len(plan.entries):
        return False
    for want, have in zip(plan.entries, current):
        if want.number != have.number or want.type_code != type_code(have.type_guid):
            return False
        if want.size_bytes is not None:
            if abs(want.size_bytes - have.size_bytes) > SIZE_TOLERANCE:
                return False
    return True


def sgdisk_command(plan: PartitionPlan) -> list[str]:
    """Return the sgdisk command line that writes the plan."""
    cmd = ["sgdisk", "--zap-all"]
    for e in plan.entries:
        start = "1M" if e.number == 1 else "0"
        end = "0" if e.size_bytes is None else f"+{e.size_bytes // MiB}M"
        cmd += [
            f"--new={e.number}:{start}:{end}",
            f"--typecode={e.number}:{e.type_code}",
            f"--change-name={e.number}:{e.name}",
        ]
    cmd.append(str(plan.device))
    return cmd


class PartitionsNotReady(retrymod.Retryable):
    """Partition device nodes have not appeared yet."""


def reread_partition_table(disk: Path) -> None:
    """Make the kernel and udev pick up a changed partition table."""
    for c in (["partprobe", str(disk)], ["udevadm", "settle"]):
        try:
            cmdmod.check_call(c)
        except subprocess.CalledProcessError as e:
            _LOGGER.debug("Ignoring failure of %s: %s", cmdmod.format_cmdline(c), e)


def wait_for_partitions(
    partitions: list[Path],
    disks: DiskInspector,
    tries: int = SETTLE_TRIES,
    delay: float = SETTLE_DELAY,
) -> None:
    """Wait until every partition device exists.

    Raises PartitioningError when they fail to appear within the bounded
    number of polls.
    """

    @retrymod.retry(tries - 1, timeout=delay, retryable_exception=PartitionsNotReady)
    def check() -> None:
        missing = [p for p in partitions if not disks.exists(p)]
        if missing:
            raise PartitionsNotReady(missing)

    try:
        check()
    except PartitionsNotReady as e:
        raise PartitioningError(
            "partition devices %s did not appear after %s seconds"
            % (", ".join(str(p) for p in e.args[0]), tries * delay)
        ) from None


def realize(plan: PartitionPlan, disks: DiskInspector) -> None:
    """Write the plan to its drive, destroying whatever was there.

    Nothing is written when the drive already carries the planned layout.
    Any failure here is fatal: a half-written table is not retried.
    """
    if layout_matches(plan, disks):
        _LOGGER.info("%s is already partitioned as planned", plan.device)
    else:
        _LOGGER.info("Partitioning %s", plan.device)
        for e in plan.entries:
            _LOGGER.debug(
                "  partition %s (%s): %s",
                e.number,
                e.role.value,
                "rest of drive" if e.size_bytes is None else f"{e.size_bytes // MiB}M",
            )
        try:
            cmdmod.check_call(["wipefs", "-a", str(plan.device)])
            cmdmod.check_call(sgdisk_command(plan))
        except subprocess.CalledProcessError as e:
            raise PartitioningError(f"could not partition {plan.device}: {e}") from e
        reread_partition_table(plan.device)
    wait_for_partitions(plan.partitions(), disks)


def replicate(source: Path, target: Path, disks: DiskInspector) -> list[Path]:
    """Copy the partition table of source onto target with fresh GUIDs.

    Returns the partition devices of target.
    """
    count = len(disks.partitions(source))
    try:
        cmdmod.check_call(["sgdisk", f"--replicate={target}", str(source)])
        cmdmod.check_call(["sgdisk", "--randomize-guids", str(target)])
    except subprocess.CalledProcessError as e:
        raise PartitioningError(f"could not replicate {source} onto {target}") from e
    reread_partition_table(target)
    parts = [partition_device(target, n) for n in range(1, count + 1)]
    wait_for_partitions(parts, disks)
    return parts

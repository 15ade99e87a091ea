"""Typed queries about drives and pools.

All parsing of the text printed by storage tools lives here.  Everything
else in the program works with the small value types below, which makes
the logic testable with in-memory fakes that implement the protocols.
"""

import enum
import json
import logging
import os
from pathlib import Path
import re
import subprocess
from typing import NamedTuple, Protocol

from installzfsmirror import cmd as cmdmod

_LOGGER = logging.getLogger(__name__)


class DriveClass(enum.Enum):
    """Kind of drive, as far as pool tuning is concerned."""

    NVME = "nvme"
    SSD = "ssd"
    HDD = "hdd"

    @property
    def rotational(self) -> bool:
        """Whether the drive has spinning platters."""
        return self is DriveClass.HDD


class PartitionInfo(NamedTuple):
    """One partition as currently present on a drive."""

    number: int
    path: Path
    size_bytes: int
    type_guid: str


class MemberState(NamedTuple):
    """One leaf device of a pool and the state the pool reports for it."""

    path: Path
    state: str

    @property
    def failed(self) -> bool:
        """Whether the pool considers this member failed or absent."""
        return self.state in FAILED_STATES


FAILED_STATES = frozenset(["FAULTED", "UNAVAIL", "OFFLINE", "REMOVED"])


class ResilverState(enum.Enum):
    """Progress of redundancy rebuild as reported in the pool scan line."""

    NONE = "none"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class DiskInspector(Protocol):
    """Answers questions about block devices."""

    def exists(self, dev: Path) -> bool:
        """Whether dev is an existing block device."""
        ...

    def device_type(self, dev: Path) -> str:
        """Return the kernel's device type, e.g. disk or part."""
        ...

    def size_bytes(self, dev: Path) -> int:
        """Return the size of the device in bytes."""
        ...

    def physical_sector_size(self, dev: Path) -> int:
        """Return the physical sector size of the device in bytes."""
        ...

    def drive_class(self, dev: Path) -> DriveClass:
        """Return the class of the drive."""
        ...

    def partitions(self, dev: Path) -> list[PartitionInfo]:
        """Return the partitions of a drive, ordered by number."""
        ...

    def filesystem_value(self, dev: Path, tag: str) -> str:
        """Return a blkid tag (TYPE, UUID, LABEL) of dev, or an empty string."""
        ...

    def devices_with_uuid(self, uuid: str) -> list[Path]:
        """Return every device carrying a file system with this UUID."""
        ...

    def mount_source(self, mountpoint: Path) -> Path | None:
        """Return the device mounted at mountpoint, if any."""
        ...

    def mount_fstype(self, mountpoint: Path) -> str:
        """Return the file system type mounted at mountpoint, or an empty string."""
        ...

    def mounted_filesystems(self, dev: Path) -> list[Path]:
        """Return mountpoints of file systems on dev or its partitions."""
        ...

    def stable_path(self, dev: Path) -> Path:
        """Return the /dev/disk/by-id/ path of a whole-disk device."""
        ...


class PoolInspector(Protocol):
    """Answers questions about pools."""

    def pools(self) -> list[str]:
        """Return the names of imported pools."""
        ...

    def exists(self, pool: str) -> bool:
        """Whether the pool is currently imported."""
        ...

    def health(self, pool: str) -> str:
        """Return the pool health, e.g. ONLINE or DEGRADED."""
        ...

    def property(self, pool: str, name: str) -> str:
        """Return the value of a pool property."""
        ...

    def members(self, pool: str) -> list[MemberState]:
        """Return the leaf devices of the pool."""
        ...

    def datasets(self, pool: str) -> list[str]:
        """Return the datasets of the pool, parents before children."""
        ...

    def resilver_state(self, pool: str) -> ResilverState:
        """Return the state of redundancy rebuild in the pool."""
        ...


_GUID_ALIASES = {
    "c12a7328-f81f-11d2-ba4b-00a0c93ec93b": "EF00",
    "0657fd6d-a4ab-43c4-84e5-0933c84b4f4f": "8200",
    "6a898cc3-1dd2-11b2-99a6-080020736631": "BF00",
}


def type_code(type_guid: str) -> str:
    """Map a GPT partition type GUID to its sgdisk short code, if known."""
    return _GUID_ALIASES.get(type_guid.lower(), type_guid.upper())


class SystemDiskInspector:
    """DiskInspector backed by blockdev, lsblk, blkid and findmnt."""

    by_id_dir = Path("/dev/disk/by-id")

    def exists(self, dev: Path) -> bool:
        """Whether dev is an existing block device."""
        return cmdmod.filetype(dev) == "blockdev"

    def device_type(self, dev: Path) -> str:
        """Return the kernel's device type, e.g. disk or part."""
        out = cmdmod.check_output(["lsblk", "-ndo", "TYPE", str(dev)])
        lines = out.split()
        return lines[0] if lines else "unknown"

    def size_bytes(self, dev: Path) -> int:
        """Return the size of the device in bytes."""
        return int(cmdmod.check_output(["blockdev", "--getsize64", str(dev)]))

    def physical_sector_size(self, dev: Path) -> int:
        """Return the physical sector size of the device in bytes."""
        return int(cmdmod.check_output(["blockdev", "--getpbsz", str(dev)]))

    def drive_class(self, dev: Path) -> DriveClass:
        """Return the class of the drive."""
        resolved = Path(os.path.realpath(dev))
        if "nvme" in str(dev) or "nvme" in resolved.name:
            return DriveClass.NVME
        rotational = Path("/sys/block") / resolved.name / "queue" / "rotational"
        try:
            value = cmdmod.readtext(rotational).strip()
        except FileNotFoundError:
            _LOGGER.debug("No rotational flag for %s, assuming SSD", dev)
            return DriveClass.SSD
        return DriveClass.HDD if value == "1" else DriveClass.SSD

    def partitions(self, dev: Path) -> list[PartitionInfo]:
        """Return the partitions of a drive, ordered by number."""
        out = cmdmod.check_output(
            ["lsblk", "-J", "-b", "-o", "PATH,TYPE,SIZE,PARTN,PARTTYPE", str(dev)],
            logall=True,
        )
        parts = []
        for blockdev in json.loads(out).get("blockdevices", []):
            for child in blockdev.get("children", []) or []:
                if child.get("type") != "part" or child.get("partn") is None:
                    continue
                parts.append(
                    PartitionInfo(
                        number=int(child["partn"]),
                        path=Path(child["path"]),
                        size_bytes=int(child["size"]),
                        type_guid=child.get("parttype") or "",
                    )
                )
        return sorted(parts, key=lambda p: p.number)

    def filesystem_value(self, dev: Path, tag: str) -> str:
        """Return a blkid tag (TYPE, UUID, LABEL) of dev, or an empty string."""
        try:
            out = cmdmod.check_output(
                ["blkid", "-c", "/dev/null", "-o", "value", "-s", tag, str(dev)]
            )
        except subprocess.CalledProcessError as e:
            if e.returncode != 2:
                raise
            return ""
        return out.strip()

    def devices_with_uuid(self, uuid: str) -> list[Path]:
        """Return every device carrying a file system with this UUID."""
        try:
            out = cmdmod.check_output(
                ["blkid", "-c", "/dev/null", "-o", "device", "-t", f"UUID={uuid}"]
            )
        except subprocess.CalledProcessError as e:
            if e.returncode != 2:
                raise
            return []
        return sorted(Path(x) for x in out.splitlines() if x.strip())

    def mount_source(self, mountpoint: Path) -> Path | None:
        """Return the device mounted at mountpoint, if any."""
        try:
            out = cmdmod.check_output(
                ["findmnt", "-n", "-o", "SOURCE", "--mountpoint", str(mountpoint)]
            )
        except subprocess.CalledProcessError:
            return None
        src = out.strip().splitlines()
        return Path(src[0]) if src and src[0] else None

    def mount_fstype(self, mountpoint: Path) -> str:
        """Return the file system type mounted at mountpoint, or an empty string."""
        try:
            out = cmdmod.check_output(
                ["findmnt", "-n", "-o", "FSTYPE", "--mountpoint", str(mountpoint)]
            )
        except subprocess.CalledProcessError:
            return ""
        lines = out.strip().splitlines()
        return lines[0] if lines else ""

    def mounted_filesystems(self, dev: Path) -> list[Path]:
        """Return mountpoints of file systems on dev or its partitions."""
        out = cmdmod.check_output(
            ["lsblk", "-J", "-o", "PATH,MOUNTPOINTS", str(dev)], logall=True
        )
        found: list[Path] = []

        def walk(nodes: list[dict]) -> None:
            for node in nodes:
                for mp in node.get("mountpoints") or []:
                    if mp:
                        found.append(Path(mp))
                walk(node.get("children") or [])

        walk(json.loads(out).get("blockdevices", []))
        return found

    def stable_path(self, dev: Path) -> Path:
        """Return the /dev/disk/by-id/ path of a whole-disk device.

        Prefers vendor identities (nvme-, ata-, scsi-) over wwn- aliases,
        and returns dev itself when no alias exists.
        """
        if str(dev).startswith(str(self.by_id_dir)):
            return dev
        target = os.path.realpath(dev)
        candidates = []
        try:
            entries = sorted(self.by_id_dir.iterdir())
        except FileNotFoundError:
            return dev
        for link in entries:
            if re.search(r"-part[0-9]+$", link.name):
                continue
            if os.path.realpath(link) == target:
                candidates.append(link)
        if not candidates:
            return dev
        candidates.sort(key=lambda p: (p.name.startswith("wwn-"), p.name))
        return candidates[0]


_STATUS_MEMBER = re.compile(
    r"^\s+(?P<name>\S+)\s+(?P<state>ONLINE|DEGRADED|FAULTED|OFFLINE|UNAVAIL|REMOVED)"
    r"(?:\s+\d+\S*\s+\d+\S*\s+\d+\S*)?(?P<rest>.*)$"
)
_WAS = re.compile(r"was (?P<path>/\S+)")


def parse_status_members(status: str) -> list[MemberState]:
    """Extract the leaf devices from the config section of `zpool status -P`.

    Missing devices appear as a numeric GUID followed by "was /dev/...";
    those are reported under the path they used to have.
    """
    members = []
    in_config = False
    for line in status.splitlines():
        if line.strip().startswith("config:"):
            in_config = True
            continue
        if line.strip().startswith("errors:"):
            break
        if not in_config:
            continue
        m = _STATUS_MEMBER.match(line)
        if not m:
            continue
        name, state, rest = m.group("name"), m.group("state"), m.group("rest")
        if name.startswith("/"):
            members.append(MemberState(Path(name), state))
            continue
        was = _WAS.search(rest)
        if was:
            members.append(MemberState(Path(was.group("path")), state))
    return members


def parse_resilver_state(status: str) -> ResilverState:
    """Read the scan line of `zpool status` output."""
    for line in status.splitlines():
        stripped = line.strip()
        if not stripped.startswith("scan:"):
            continue
        if "resilver in progress" in stripped:
            return ResilverState.IN_PROGRESS
        if stripped.startswith("scan: resilvered"):
            return ResilverState.COMPLETED
    if "(resilvering)" in status:
        return ResilverState.IN_PROGRESS
    return ResilverState.NONE


class SystemPoolInspector:
    """PoolInspector backed by zpool and zfs."""

    def pools(self) -> list[str]:
        """Return the names of imported pools."""
        d = cmdmod.check_output(["zpool", "list", "-H", "-o", "name"], logall=True)
        return [x for x in d.splitlines() if x]

    def exists(self, pool: str) -> bool:
        """Whether the pool is currently imported."""
        return cmdmod.succeeds(["zpool", "list", "-H", "-o", "name", pool])

    def health(self, pool: str) -> str:
        """Return the pool health, e.g. ONLINE or DEGRADED."""
        return self.property(pool, "health")

    def property(self, pool: str, name: str) -> str:
        """Return the value of a pool property."""
        return cmdmod.check_output(
            ["zpool", "get", "-H", "-o", "value", name, pool]
        ).strip()

    def _status(self, pool: str) -> str:
        return cmdmod.check_output(["zpool", "status", "-P", pool], logall=True)

    def members(self, pool: str) -> list[MemberState]:
        """Return the leaf devices of the pool."""
        return parse_status_members(self._status(pool))

    def datasets(self, pool: str) -> list[str]:
        """Return the datasets of the pool, parents before children."""
        out = cmdmod.check_output(["zfs", "list", "-H", "-o", "name", "-r", pool])
        return [x for x in out.splitlines() if x]

    def resilver_state(self, pool: str) -> ResilverState:
        """Return the state of redundancy rebuild in the pool."""
        return parse_resilver_state(self._status(pool))

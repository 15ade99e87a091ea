"""Inspecting drives before destroying them, and wiping them."""

from collections.abc import Callable
import logging
import os
from pathlib import Path
import subprocess
from typing import NamedTuple

from installzfsmirror import cmd as cmdmod
from installzfsmirror.errors import PreconditionError
from installzfsmirror.inspectors import DiskInspector, PoolInspector, type_code
from installzfsmirror.partition import MiB, parent_disk, reread_partition_table
from installzfsmirror.pool import destroy_pool

_LOGGER = logging.getLogger(__name__)

WIPE_BYTES = 100 * MiB
CHUNK = 1 * MiB


class DriveAnalysis(NamedTuple):
    """What would be lost by wiping a set of drives."""

    drives: tuple[Path, ...]
    pools: tuple[str, ...]
    mounted: tuple[Path, ...]
    partitions: int
    boot_signatures: bool

    @property
    def empty(self) -> bool:
        """Whether the drives carry nothing at all."""
        return not (self.pools or self.mounted or self.partitions)


def _real(p: Path) -> str:
    return os.path.realpath(p)


def pools_on(drives: list[Path], pools: PoolInspector) -> list[str]:
    """Return the imported pools having a member on one of the drives."""
    wanted = {_real(d) for d in drives}
    found = []
    for name in pools.pools():
        for m in pools.members(name):
            disk = parent_disk(Path(_real(m.path))) or m.path
            if _real(disk) in wanted or _real(m.path) in wanted:
                found.append(name)
                break
    return found


def analyze(
    drives: list[Path], disks: DiskInspector, pools: PoolInspector
) -> DriveAnalysis:
    """Inspect the drives for pools, mounted file systems and partitions."""
    mounted: list[Path] = []
    partitions = 0
    boot = False
    for d in drives:
        mounted.extend(disks.mounted_filesystems(d))
        parts = disks.partitions(d)
        partitions += len(parts)
        if any(type_code(p.type_guid) == "EF00" for p in parts):
            boot = True
    return DriveAnalysis(
        drives=tuple(drives),
        pools=tuple(pools_on(drives, pools)),
        mounted=tuple(mounted),
        partitions=partitions,
        boot_signatures=boot,
    )


def report(analysis: DriveAnalysis) -> None:
    """Tell the operator what is about to be destroyed."""
    _LOGGER.warning("The following drives will be ERASED:")
    for d in analysis.drives:
        _LOGGER.warning("  %s", d)
    for p in analysis.pools:
        _LOGGER.warning("Pool %s lives on these drives and will be destroyed", p)
    for m in analysis.mounted:
        _LOGGER.warning("File system mounted at %s will be unmounted", m)
    if analysis.boot_signatures:
        _LOGGER.warning("These drives contain EFI system partitions")
    if analysis.partitions:
        _LOGGER.warning("%s existing partitions will be lost", analysis.partitions)


def required_answers(analysis: DriveAnalysis, hostname: str | None) -> list[str]:
    """Return the answers the operator must type, in order."""
    if analysis.pools:
        answers = ["DESTROY-EXISTING-DATA"]
        if hostname:
            answers.append(hostname)
        return answers
    if analysis.mounted or analysis.boot_signatures:
        return ["DESTROY"]
    return ["yes"]


def confirm(
    analysis: DriveAnalysis,
    hostname: str | None,
    assume_yes: bool = False,
    ask: Callable[[str], str] = input,
) -> None:
    """Make the operator type the required answers, or raise PreconditionError."""
    report(analysis)
    if assume_yes:
        _LOGGER.warning("Proceeding without confirmation as requested")
        return
    for answer in required_answers(analysis, hostname):
        if answer == hostname:
            prompt = "Type the host name of the new system to continue: "
        else:
            prompt = f"Type {answer} to continue: "
        try:
            typed = ask(prompt)
        except EOFError:
            typed = ""
        if typed.strip() != answer:
            raise PreconditionError("operation not confirmed; nothing was changed")


def release(drives: list[Path], disks: DiskInspector, pools: PoolInspector) -> None:
    """Stop everything using the drives: swap, mounts and pools."""
    for d in drives:
        for part in disks.partitions(d):
            if disks.filesystem_value(part.path, "TYPE") == "swap":
                try:
                    cmdmod.check_call_silent(["swapoff", str(part.path)])
                except subprocess.CalledProcessError:
                    _LOGGER.debug("Swap on %s was not active", part.path)
        for mp in sorted(disks.mounted_filesystems(d), key=lambda p: len(p.parts), reverse=True):
            if str(mp) == "[SWAP]":
                continue
            _LOGGER.info("Unmounting %s", mp)
            cmdmod.umount(mp)
    for name in pools_on(drives, pools):
        destroy_pool(name, pools)


def quick_wipe(drive: Path, size_bytes: int, span: int = WIPE_BYTES) -> None:
    """Zero the beginning and the end of a drive, then drop all signatures."""
    _LOGGER.info("Wiping %s", drive)
    zeros = b"\0" * CHUNK
    span = min(span, size_bytes)
    with open(drive, "r+b") as f:
        for offset in (0, max(size_bytes - span, 0)):
            f.seek(offset)
            written = 0
            while written < span:
                written += f.write(zeros[: min(CHUNK, span - written)])
        f.flush()
        os.fsync(f.fileno())
    cmdmod.check_call(["wipefs", "-a", str(drive)])
    try:
        cmdmod.check_call(["blockdev", "--rereadpt", str(drive)])
    except subprocess.CalledProcessError as e:
        _LOGGER.debug("Kernel did not reread partition table of %s: %s", drive, e)
    reread_partition_table(drive)


def prepare(
    drives: list[Path], disks: DiskInspector, pools: PoolInspector, wipe: bool = True
) -> None:
    """Release the drives and, if asked, wipe them."""
    release(drives, disks, pools)
    if wipe:
        for d in drives:
            quick_wipe(d, disks.size_bytes(d))

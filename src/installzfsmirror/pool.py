"""Creation and destruction of the mirrored root pool."""

import logging
from os.path import join as j
from collections.abc import Callable
from pathlib import Path
import subprocess
from typing import NamedTuple

from installzfsmirror import cmd as cmdmod
from installzfsmirror.errors import PoolCreationError, PoolDestroyError
from installzfsmirror.inspectors import PoolInspector
from installzfsmirror.partition import DriveSpec, reread_partition_table
from installzfsmirror.retry import Strategy, run_ladder

_LOGGER = logging.getLogger(__name__)

# Pool-level properties that make up the external contract of the pool:
# import happens by scanning devices, never through a cache file, and the
# feature set stays readable by GRUB because /boot lives in the pool.
CONTRACT_POOL_PROPERTIES = {
    "cachefile": "none",
    "compatibility": "grub2",
}

DEFAULT_FS_PROPERTIES = {
    "acltype": "posixacl",
    "xattr": "sa",
    "compression": "lz4",
    "normalization": "formD",
    "relatime": "on",
    "canmount": "off",
    "mountpoint": "/",
}


class CapabilityProfile(NamedTuple):
    """Alignment and trim settings chosen from the drives' class."""

    ashift: int
    autotrim: bool

    @classmethod
    def for_drives(cls, *drives: DriveSpec) -> "CapabilityProfile":
        """Choose the profile that suits every drive of the mirror."""
        if any(d.rotational for d in drives):
            small_sectors = any(d.physical_sector_size == 512 for d in drives)
            return cls(ashift=9 if small_sectors else 12, autotrim=False)
        return cls(ashift=12, autotrim=True)


class DatasetSpec(NamedTuple):
    """A child dataset of the pool, mounted at a fixed path."""

    name: str
    mountpoint: str
    properties: tuple[tuple[str, str], ...] = ()


class PoolSpec(NamedTuple):
    """A single mirror vdev made of exactly two partitions."""

    name: str
    members: tuple[Path, Path]
    pool_properties: dict[str, str]
    fs_properties: dict[str, str]
    datasets: tuple[DatasetSpec, ...]

    @property
    def root_dataset(self) -> str:
        """Return the dataset mounted at /."""
        for ds in self.datasets:
            if ds.mountpoint == "/":
                return j(self.name, ds.name)
        raise KeyError("no dataset is mounted at /")


def dataset_name_for(mountpoint: str) -> str:
    """Return the dataset name used for an extra mountpoint, e.g. var-cache."""
    return mountpoint.strip("/").replace("/", "-")


def root_pool_spec(
    name: str, members: tuple[Path, Path], extra_mountpoints: list[str] | None = None
) -> PoolSpec:
    """Return the specification of the root pool."""
    if len(members) != 2 or members[0] == members[1]:
        raise ValueError(f"a mirror needs exactly two distinct members: {members}")
    datasets = [
        DatasetSpec("root", "/"),
        DatasetSpec("var", "/var"),
        DatasetSpec(j("var", "log"), "/var/log"),
    ]
    taken = {d.mountpoint for d in datasets}
    for mp in extra_mountpoints or []:
        if mp in taken:
            continue
        taken.add(mp)
        datasets.append(DatasetSpec(dataset_name_for(mp), mp))
    return PoolSpec(
        name=name,
        members=members,
        pool_properties=dict(CONTRACT_POOL_PROPERTIES),
        fs_properties=dict(DEFAULT_FS_PROPERTIES),
        datasets=tuple(datasets),
    )


def clear_stale_labels(partitions: list[Path]) -> None:
    """Remove any pool label from the partitions.

    Succeeds when there is nothing to clear.
    """
    for part in partitions:
        _LOGGER.debug("Clearing pool label from %s", part)
        try:
            cmdmod.check_call_silent(["zpool", "labelclear", "-f", str(part)])
        except subprocess.CalledProcessError:
            _LOGGER.debug("No pool label on %s", part)
    for part in partitions:
        reread_partition_table(part)


def create_command(spec: PoolSpec, profile: CapabilityProfile, altroot: Path) -> list[str]:
    """Return the zpool create command line for a pool spec."""
    cmd = ["zpool", "create", "-f", "-o", f"ashift={profile.ashift}"]
    cmd += ["-o", "autotrim=%s" % ("on" if profile.autotrim else "off")]
    for k, v in spec.pool_properties.items():
        cmd += ["-o", f"{k}={v}"]
    for k, v in spec.fs_properties.items():
        cmd += ["-O", f"{k}={v}"]
    cmd += ["-R", str(altroot), spec.name, "mirror"]
    cmd += [str(m) for m in spec.members]
    return cmd


def create_pool(
    spec: PoolSpec,
    profile: CapabilityProfile,
    altroot: Path,
    pools: PoolInspector,
    track: Callable[[str], None] | None = None,
) -> None:
    """Create the pool, then prove it exists and imports by scan only.

    track is called with the pool name as soon as zpool create succeeds,
    before the pool is verified or its cache file disabled.
    """
    clear_stale_labels(list(spec.members))
    _LOGGER.info(
        "Creating pool %s (ashift=%s, autotrim=%s) on %s",
        spec.name,
        profile.ashift,
        "on" if profile.autotrim else "off",
        " and ".join(str(m) for m in spec.members),
    )
    try:
        cmdmod.check_call(create_command(spec, profile, altroot))
    except subprocess.CalledProcessError as e:
        raise PoolCreationError(f"could not create pool {spec.name}: {e}") from e
    if track is not None:
        track(spec.name)
    if not pools.exists(spec.name):
        raise PoolCreationError(
            f"pool {spec.name} creation reported success but the pool does not exist"
        )
    disable_cachefile(spec.name, pools)


def disable_cachefile(pool: str, pools: PoolInspector) -> None:
    """Make sure the pool is never recorded in an import cache file."""
    cmdmod.check_call(["zpool", "set", "cachefile=none", pool])
    value = pools.property(pool, "cachefile")
    if value not in ("none", "-"):
        raise PoolCreationError(f"pool {pool} still uses cache file {value!r}")


def create_datasets(spec: PoolSpec, pools: PoolInspector) -> None:
    """Create the datasets of a pool spec that do not exist yet."""
    existing = set(pools.datasets(spec.name))
    for ds in spec.datasets:
        full = j(spec.name, ds.name)
        if full in existing:
            _LOGGER.info("Dataset %s already exists", full)
            continue
        parent = full.rsplit("/", 1)[0]
        cmd = ["zfs", "create"]
        if parent != spec.name and parent not in existing:
            cmd.append("-p")
        cmd += ["-o", f"mountpoint={ds.mountpoint}"]
        for k, v in ds.properties:
            cmd += ["-o", f"{k}={v}"]
        cmd.append(full)
        _LOGGER.info("Creating dataset %s at %s", full, ds.mountpoint)
        cmdmod.check_call(cmd)
        existing.add(full)


def _destroy_children(pool: str, pools: PoolInspector) -> None:
    for dataset in reversed(pools.datasets(pool)):
        if dataset == pool:
            continue
        try:
            cmdmod.check_call_silent(["zfs", "destroy", "-f", dataset])
        except subprocess.CalledProcessError:
            _LOGGER.debug("Could not destroy dataset %s", dataset)
    cmdmod.check_call_silent(["zfs", "unmount", "-a"])


def _destroy(pool: str) -> None:
    cmdmod.check_call_silent(["zpool", "destroy", "-f", pool])


def _export(pool: str) -> None:
    cmdmod.check_call_silent(["zpool", "export", "-f", pool])


def _force_import_and_destroy(pool: str) -> None:
    cmdmod.check_call_silent(["zpool", "import", "-f", "-N", pool])
    _destroy(pool)


def destroy_ladder(pool: str, pools: PoolInspector) -> list[Strategy]:
    """Return the strategies used to get rid of a pool, gentlest first."""
    return [
        Strategy("destroy child datasets and unmount", lambda: _destroy_children(pool, pools)),
        Strategy("destroy pool", lambda: _destroy(pool)),
        Strategy("export pool", lambda: _export(pool)),
        Strategy("force import and destroy", lambda: _force_import_and_destroy(pool)),
    ]


def destroy_pool(pool: str, pools: PoolInspector) -> None:
    """Make the pool go away.  Does nothing if the pool is not present.

    Raises PoolDestroyError only if the pool is still observably present
    after every strategy.
    """

    def absent() -> bool:
        return not pools.exists(pool)

    if absent():
        _LOGGER.debug("Pool %s does not exist", pool)
        return
    _LOGGER.info("Destroying pool %s", pool)
    if not run_ladder(destroy_ladder(pool, pools), absent):
        raise PoolDestroyError(f"pool {pool} is still present after every attempt")
    _LOGGER.info("Pool %s is gone", pool)


def export_pool(pool: str, pools: PoolInspector) -> bool:
    """Export the pool, forcing if needed.  Returns whether it is gone."""

    def absent() -> bool:
        return not pools.exists(pool)

    return run_ladder(
        [
            Strategy("export", lambda: cmdmod.check_call(["zpool", "export", pool])),
            Strategy("forced export", lambda: _export(pool)),
        ],
        absent,
    )

#!/usr/bin/env python

from pathlib import Path

from installzfsmirror.inspectors import (
    DriveClass,
    MemberState,
    PartitionInfo,
    ResilverState,
)

GiB = 1024 * 1024 * 1024

EFI_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
SWAP_GUID = "0657fd6d-a4ab-43c4-84e5-0933c84b4f4f"
ZFS_GUID = "6a898cc3-1dd2-11b2-99a6-080020736631"


def record_calls(actions=None):
    """Return a list of the commands run, and a check_call replacement.

    actions maps a program name to a callable taking the command; the
    first word of the command that is a key of actions selects it, so
    commands wrapped in chroot are matched too.  It may raise to simulate
    failure.
    """
    cmds = []
    actions = actions or {}

    def fun(cmd, *unused_args, **unused_kwargs):
        cmds.append(list(cmd))
        for w in cmd:
            if w in actions:
                return actions[w](list(cmd))
        return None

    return cmds, fun


class FakeDisks:
    def __init__(self):
        self.types = {}
        self.sizes = {}
        self.pbsz = {}
        self.classes = {}
        self.parts = {}
        self.fs = {}
        self.uuids = {}
        self.mounts = {}
        self.fstypes = {}
        self.mounted = {}
        self.stable = {}

    def add_disk(self, path, size=500 * GiB, cls=DriveClass.SSD, pbsz=4096):
        path = Path(path)
        self.types[path] = "disk"
        self.sizes[path] = size
        self.classes[path] = cls
        self.pbsz[path] = pbsz
        self.parts.setdefault(path, [])
        return path

    def add_partitions(self, disk, layout, partition_device):
        disk = Path(disk)
        self.parts[disk] = []
        for n, (size, guid) in enumerate(layout, start=1):
            dev = partition_device(disk, n)
            self.types[dev] = "part"
            self.parts[disk].append(PartitionInfo(n, dev, size, guid))

    def exists(self, dev):
        return Path(dev) in self.types

    def device_type(self, dev):
        return self.types[Path(dev)]

    def size_bytes(self, dev):
        return self.sizes[Path(dev)]

    def physical_sector_size(self, dev):
        return self.pbsz[Path(dev)]

    def drive_class(self, dev):
        return self.classes[Path(dev)]

    def partitions(self, dev):
        return list(self.parts.get(Path(dev), []))

    def filesystem_value(self, dev, tag):
        return self.fs.get((Path(dev), tag), "")

    def devices_with_uuid(self, uuid):
        return list(self.uuids.get(uuid, []))

    def mount_source(self, mountpoint):
        return self.mounts.get(Path(mountpoint))

    def mount_fstype(self, mountpoint):
        return self.fstypes.get(Path(mountpoint), "")

    def mounted_filesystems(self, dev):
        return list(self.mounted.get(Path(dev), []))

    def stable_path(self, dev):
        return self.stable.get(Path(dev), Path(dev))


class FakePools:
    def __init__(self):
        self.imported = {}
        self.props = {}
        self.member_states = {}
        self.dataset_names = {}
        self.health_states = {}
        self.resilver = []

    def add_pool(self, name, members=(), health="ONLINE"):
        self.imported[name] = True
        self.health_states[name] = health
        self.member_states[name] = [MemberState(Path(p), s) for p, s in members]
        self.dataset_names[name] = [name]
        self.props[name] = {"cachefile": "-"}

    def drop(self, name):
        self.imported.pop(name, None)

    def pools(self):
        return [n for n, present in self.imported.items() if present]

    def exists(self, pool):
        return self.imported.get(pool, False)

    def health(self, pool):
        return self.health_states[pool]

    def property(self, pool, name):
        return self.props[pool][name]

    def members(self, pool):
        return list(self.member_states.get(pool, []))

    def datasets(self, pool):
        return list(self.dataset_names.get(pool, []))

    def resilver_state(self, pool):
        if self.resilver:
            return self.resilver.pop(0)
        return ResilverState.NONE

"""The recovery document left behind by every installation attempt."""

import datetime
import logging
from pathlib import Path

from installzfsmirror import cmd as cmdmod
from installzfsmirror.identity import bootloader_id
from installzfsmirror.partition import PartitionPlan

_LOGGER = logging.getLogger(__name__)

TARGET_PATH = Path("/root/ZFS-MIRROR-RECOVERY.txt")


def render(
    hostname: str,
    pool: str,
    plans: list[PartitionPlan],
    efi_volume_id: str,
    checkpoint: str,
    log_path: Path | None,
    now: datetime.datetime | None = None,
) -> str:
    """Return the text of the recovery document."""
    now = now or datetime.datetime.now()
    out = [
        f"ZFS mirrored root of {hostname}",
        f"Written {now.isoformat(timespec='seconds')} at checkpoint {checkpoint}",
        "",
        f"Pool:            {pool}",
        f"EFI volume id:   {efi_volume_id}",
        f"Session log:     {log_path or '(none)'}",
        "",
        "Drives",
        "------",
    ]
    for plan in plans:
        out.append(f"{plan.device}")
        out.append(f"  bootloader id: {bootloader_id(plan.device)}")
        for e in plan.entries:
            out.append(f"  {plan.partition(e.role)}  {e.role.value} ({e.type_code})")
    out += [
        "",
        "Importing the pool from a live system",
        "-------------------------------------",
        f"  zpool import -f -N -R /mnt {pool}",
        f"  zfs mount {pool}/root && zfs mount -a",
        "  mount UUID=%s /mnt/boot/efi" % _dashed(efi_volume_id),
        "  for d in dev proc sys; do mount --rbind /$d /mnt/$d; done",
        "  chroot /mnt",
        "",
        "Releasing it again",
        "------------------",
        "  umount -lR /mnt",
        f"  zpool export {pool}",
        "",
        "Boot partitions",
        "---------------",
        "  sync-mirror-boot               copy /boot/efi to every drive, reinstall GRUB",
        f"  zfs-replace-drive --pool {pool} FAILED NEW",
        "                                 replace a failed drive",
        "",
        "First boot",
        "----------",
        "  The first boot forces the pool import.  If the cleanup did not run:",
        f"  zfs-firstboot-cleanup --pool {pool}",
        "  journalctl -u zfs-firstboot-cleanup.service",
        "",
    ]
    return "\n".join(out)


def _dashed(volume_id: str) -> str:
    return f"{volume_id[:4]}-{volume_id[4:]}"


def write(path: Path, text: str) -> Path:
    """Write the recovery document, readable by root only."""
    cmdmod.makedirs([path.parent])
    cmdmod.writetext(path, text, mode=0o600)
    _LOGGER.info("Recovery information written to %s", path)
    return path

"""Short, stable labels for physical drives.

The label ends up in two places: the name of the bootloader folder on each
EFI partition (``EFI/Ubuntu-<label>``) and the firmware boot menu, which
truncates long entries.  Two drives of the same model must still be told
apart, so the label carries the tail of the drive's serial number.
"""

import logging
from pathlib import Path
import re

_LOGGER = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 20
MAX_MODEL_LENGTH = 15
SUFFIX_LENGTH = 4
BOOTLOADER_ID_PREFIX = "Ubuntu-"

# Patterns over the basename of a /dev/disk/by-id/ path.  Group "model" is
# the vendor/model part, group "serial" is the serial-like tail.
_STRUCTURED_IDENTITIES = [
    re.compile(r"^nvme-(?P<model>.+)_(?P<serial>[A-Za-z0-9-]{8,})$"),
    re.compile(r"^(?:ata|scsi|usb)-(?P<model>.+)_(?P<serial>[A-Za-z0-9-]{8,})$"),
]
_INTERFACE_PREFIX = re.compile(r"^(?:sata|ata|nvme|scsi)[-_ ](?P<rest>.+)$", re.I)
_UNSAFE = re.compile(r"[^A-Za-z0-9]+")
_NOT_ALNUM = re.compile(r"[^A-Za-z0-9]")


def _normalize(text: str) -> str:
    return _UNSAFE.sub("-", text).strip("-")


def _tail(text: str) -> str:
    alnum = _NOT_ALNUM.sub("", text)
    return alnum[-SUFFIX_LENGTH:].rjust(SUFFIX_LENGTH, "0")


def split_identity(device_path: str | Path) -> tuple[str, str]:
    """Split a device path into its model and serial-like suffix.

    Paths without a structured identity (plain /dev/sdX nodes, virtio
    disks) yield the generic model "Disk" and the device node name.
    """
    name = Path(device_path).name
    for pattern in _STRUCTURED_IDENTITIES:
        m = pattern.match(name)
        if m:
            return m.group("model"), m.group("serial")
    return "Disk", name


def drive_label(device_path: str | Path) -> str:
    """Return the label of the drive at device_path.

    The result is a pure function of the path: no device is examined.
    It is at most 20 characters long, made of letters, digits and single
    inner hyphens, and shaped like ``Model-Tail``.
    """
    if not str(device_path):
        raise ValueError("a device path is required to derive a drive label")

    model, suffix = split_identity(device_path)
    m = _INTERFACE_PREFIX.match(model)
    if m:
        model = m.group("rest")
    model = _normalize(model)[:MAX_MODEL_LENGTH].rstrip("-")

    if not model:
        label = "Unknown-" + _tail(Path(device_path).name)
    else:
        label = f"{model}-{_tail(suffix)}"

    assert len(label) <= MAX_LABEL_LENGTH, label
    _LOGGER.debug("Drive label for %s is %s", device_path, label)
    return label


def bootloader_id(device_path: str | Path) -> str:
    """Return the bootloader folder name for the drive at device_path."""
    return BOOTLOADER_ID_PREFIX + drive_label(device_path)

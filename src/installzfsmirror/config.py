"""Settings of an installation, as collected from the command line."""

import dataclasses
from pathlib import Path

from installzfsmirror.partition import GiB, MiB

DEFAULT_POOL = "rpool"
DEFAULT_EFI_MIB = 1024
DEFAULT_SWAP_MIB = 4096
DEFAULT_WORKDIR = Path("/mnt")
DEFAULT_RELEASE = "noble"
# Releases whose python3 is older than the 3.12 the deployed tools need.
OLD_RELEASES = frozenset(
    ["xenial", "bionic", "focal", "jammy", "kinetic", "lunar", "mantic"]
)
DEFAULT_MIRROR = "http://archive.ubuntu.com/ubuntu"

MIN_DRIVE_BYTES = 16 * GiB
# Drives whose sizes differ by more than this fraction are refused.
SIZE_MISMATCH_TOLERANCE = 0.10


@dataclasses.dataclass(frozen=True)
class InstallConfig:
    """Everything the installation needs to know up front."""

    hostname: str
    drives: tuple[Path, Path]
    pool_name: str = DEFAULT_POOL
    efi_size_mib: int = DEFAULT_EFI_MIB
    swap_size_mib: int = DEFAULT_SWAP_MIB
    workdir: Path = DEFAULT_WORKDIR
    release: str = DEFAULT_RELEASE
    mirror_url: str = DEFAULT_MIRROR
    timezone: str | None = None
    prepare: bool = False
    assume_yes: bool = False
    admin_user: str | None = None
    admin_password_file: Path | None = None
    ssh_key_file: Path | None = None
    datasets: tuple[str, ...] = ()
    break_before: str | None = None
    finalize: bool | None = None

    @property
    def efi_bytes(self) -> int:
        """Return the EFI partition size in bytes."""
        return self.efi_size_mib * MiB

    @property
    def swap_bytes(self) -> int:
        """Return the swap partition size in bytes."""
        return self.swap_size_mib * MiB

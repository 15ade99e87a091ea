"""Installing and configuring Ubuntu inside the new pool."""

import hashlib
import logging
import os
from pathlib import Path
import shutil
import subprocess

from installzfsmirror import cmd as cmdmod
from installzfsmirror.config import InstallConfig
from installzfsmirror.errors import ConfigurationError
from installzfsmirror.partition import PartitionPlan, Role
from installzfsmirror.session import Session

_LOGGER = logging.getLogger(__name__)

PACKAGES = [
    "linux-image-generic",
    "zfsutils-linux",
    "zfs-initramfs",
    "grub-efi-amd64",
    "grub-efi-amd64-signed",
    "shim-signed",
    "efibootmgr",
    "dosfstools",
    "rsync",
    "python3",
    "openssh-server",
    "cron",
    "sudo",
    "locales",
    "netplan.io",
    "systemd-timesyncd",
]

LIB_DIR = Path("/usr/local/lib/zfs-mirror-installer")
SBIN_DIR = Path("/usr/local/sbin")
LAUNCHERS = {
    "zfs-firstboot-cleanup": "firstboot_cleanup",
    "sync-mirror-boot": "sync_mirror_boot",
    "zfs-replace-drive": "replace_drive",
}
CHROOT_BINDS = ["/dev", "/proc", "/sys"]
EFI_MOUNTPOINT = Path("/boot/efi")
LOCALE = "en_US.UTF-8"


def efi_volume_id(hostname: str) -> str:
    """Return the FAT volume id shared by every EFI partition of the host."""
    return hashlib.sha256(hostname.encode("utf-8")).hexdigest()[:8].upper()


def fstab_uuid(volume_id: str) -> str:
    """Return the volume id the way blkid and fstab spell it."""
    return f"{volume_id[:4]}-{volume_id[4:]}"


def launcher(function: str) -> str:
    """Return a script running one entry point from the deployed package."""
    return "\n".join(
        [
            "#!/usr/bin/python3",
            "import sys",
            f"sys.path.insert(0, {str(LIB_DIR)!r})",
            f"from installzfsmirror import {function}",
            f"sys.exit({function}())",
            "",
        ]
    )


def fstab(volume_id: str, swap_partitions: list[Path]) -> str:
    """Return /etc/fstab for the installed system.

    ZFS datasets mount themselves; only the EFI partition and swap are listed.
    """
    lines = [
        "# <file system> <mount point> <type> <options> <dump> <pass>",
        f"UUID={fstab_uuid(volume_id)} /boot/efi vfat umask=0077,nofail 0 1",
    ]
    for s in swap_partitions:
        lines.append(f"{s} none swap sw,discard,nofail 0 0")
    return "\n".join(lines) + "\n"


def grub_defaults(root_dataset: str) -> str:
    """Return /etc/default/grub for the installed system."""
    return "\n".join(
        [
            "GRUB_DEFAULT=0",
            "GRUB_TIMEOUT=10",
            'GRUB_DISTRIBUTOR="Ubuntu"',
            'GRUB_CMDLINE_LINUX_DEFAULT=""',
            f'GRUB_CMDLINE_LINUX="root=ZFS={root_dataset}"',
            'GRUB_TERMINAL="console"',
            "",
        ]
    )


def sources_list(release: str, mirror: str) -> str:
    """Return the APT sources of the installed system."""
    comps = "main restricted universe multiverse"
    return "\n".join(
        [
            f"deb {mirror} {release} {comps}",
            f"deb {mirror} {release}-updates {comps}",
            f"deb http://security.ubuntu.com/ubuntu {release}-security {comps}",
            "",
        ]
    )


NETPLAN = """\
network:
  version: 2
  ethernets:
    wired:
      match:
        name: "en*"
      dhcp4: true
"""

APT_HOOK = 'DPkg::Post-Invoke {"/usr/local/sbin/sync-mirror-boot || true";};\n'


def maintenance_cron(pool: str) -> str:
    """Return the cron table scrubbing and trimming the pool."""
    return "\n".join(
        [
            "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
            f"0 2 1 * * root zpool scrub {pool}",
            f"0 3 * * 0 root zpool trim {pool}",
            "",
        ]
    )


class UbuntuTarget:
    """The tree of the new system, mounted at the pool's altroot."""

    def __init__(self, config: InstallConfig, plans: list[PartitionPlan]) -> None:
        """Initialize the target."""
        self.config = config
        self.plans = plans
        self.root = cmdmod.Root(config.workdir)
        self.root_dataset = f"{config.pool_name}/root"
        self.volume_id = efi_volume_id(config.hostname)

    def _chroot(self, cmd: list[str]) -> None:
        env = dict(os.environ)
        env["DEBIAN_FRONTEND"] = "noninteractive"
        env["LANG"] = "C.UTF-8"
        cmdmod.check_call(self.root.in_chroot(cmd), env=env)

    def bootstrap_base(self) -> None:
        """Install the base file tree, unless it is already there."""
        if self.root.p("/usr/bin/apt-get").exists():
            _LOGGER.info("Base system already present in %s", self.root.path)
            return
        _LOGGER.info("Installing Ubuntu %s into %s", self.config.release, self.root.path)
        try:
            cmdmod.check_call(
                [
                    "debootstrap",
                    self.config.release,
                    str(self.root.path),
                    self.config.mirror_url,
                ]
            )
        except subprocess.CalledProcessError as e:
            raise ConfigurationError(f"debootstrap failed: {e}") from e

    def write_base_config(self) -> None:
        """Write host name, hosts, APT sources and network configuration."""
        p = self.root.p
        h = self.config.hostname
        cmdmod.writetext(p("/etc/hostname"), h + "\n")
        cmdmod.writetext(
            p("/etc/hosts"),
            f"127.0.0.1 localhost\n127.0.1.1 {h}\n::1 localhost ip6-localhost\n",
        )
        cmdmod.writetext(
            p("/etc/apt/sources.list"),
            sources_list(self.config.release, self.config.mirror_url),
        )
        cmdmod.makedirs([p("/etc/netplan")])
        cmdmod.writetext(p("/etc/netplan/01-netcfg.yaml"), NETPLAN, mode=0o600)

    def deploy_tools(self, package_dir: Path | None = None) -> None:
        """Copy this program into the target and add launchers for its tools."""
        package_dir = package_dir or Path(__file__).resolve().parent
        dest = self.root.p(LIB_DIR) / package_dir.name
        _LOGGER.info("Deploying maintenance tools to %s", self.root.q(dest))
        if dest.exists():
            shutil.rmtree(dest)
        shutil.copytree(
            package_dir,
            dest,
            ignore=shutil.ignore_patterns("test_*.py", "__pycache__"),
        )
        cmdmod.makedirs([self.root.p(SBIN_DIR)])
        for name, function in LAUNCHERS.items():
            cmdmod.writetext(self.root.p(SBIN_DIR / name), launcher(function), mode=0o755)

    def bind_chroot(self, session: Session) -> None:
        """Bind the kernel file systems into the target."""
        for d in CHROOT_BINDS:
            target = self.root.p(d)
            cmdmod.makedirs([target])
            if cmdmod.ismount(target):
                continue
            cmdmod.rbindmount(Path(d), target)
            session.ledger.to_unbind.append(target)

    def _format_efi(self) -> None:
        for plan in self.plans:
            part = plan.partition(Role.EFI)
            cmdmod.check_call(
                ["mkdosfs", "-F", "32", "-s", "1", "-n", "EFI", "-i", self.volume_id, str(part)]
            )

    def _mount_efi(self, session: Session) -> None:
        mnt = self.root.p(EFI_MOUNTPOINT)
        cmdmod.makedirs([mnt])
        if cmdmod.ismount(mnt):
            return
        cmdmod.mount(self.plans[0].partition(Role.EFI), mnt)
        session.ledger.to_unmount.append(mnt)

    def _swap_partitions(self) -> list[Path]:
        parts = []
        for plan in self.plans:
            try:
                parts.append(plan.partition(Role.SWAP))
            except KeyError:
                continue
        return parts

    def _admin_user(self) -> None:
        user = self.config.admin_user
        if not user:
            return
        p = self.root.p
        self._chroot(["useradd", "-m", "-s", "/bin/bash", "-G", "sudo", user])
        if self.config.admin_password_file:
            password = cmdmod.readtext(self.config.admin_password_file).strip()
            cmdmod.feed(self.root.in_chroot(["chpasswd"]), f"{user}:{password}\n")
        if self.config.ssh_key_file:
            home = p(f"/home/{user}")
            cmdmod.makedirs([home / ".ssh"])
            cmdmod.writetext(
                home / ".ssh" / "authorized_keys",
                cmdmod.readtext(self.config.ssh_key_file),
                mode=0o600,
            )
            self._chroot(["chown", "-R", f"{user}:{user}", f"/home/{user}/.ssh"])

    def configure_in_chroot(self, session: Session) -> None:
        """Install packages and configure the system from inside the chroot."""
        p = self.root.p
        try:
            self._chroot(["apt-get", "update"])
            self._chroot(["apt-get", "install", "-y", "--no-install-recommends"] + PACKAGES)

            self._chroot(["locale-gen", LOCALE])
            self._chroot(["update-locale", f"LANG={LOCALE}"])
            if self.config.timezone:
                self._chroot(
                    ["ln", "-sf", f"/usr/share/zoneinfo/{self.config.timezone}", "/etc/localtime"]
                )
                cmdmod.writetext(p("/etc/timezone"), self.config.timezone + "\n")
                self._chroot(["dpkg-reconfigure", "-f", "noninteractive", "tzdata"])

            self._format_efi()
            self._mount_efi(session)
            swaps = self._swap_partitions()
            for s in swaps:
                cmdmod.check_call(["mkswap", str(s)])
            cmdmod.writetext(p("/etc/fstab"), fstab(self.volume_id, swaps))

            self._admin_user()

            cmdmod.writetext(p("/etc/default/grub"), grub_defaults(self.root_dataset))
            self._chroot(["zgenhostid", "-f"])
            self._chroot(
                ["systemctl", "enable", "zfs-import-scan.service", "zfs-mount.service", "zfs.target"]
            )
            cmdmod.writetext(p("/etc/cron.d/zfs-mirror"), maintenance_cron(self.config.pool_name))
            cmdmod.writetext(p("/etc/apt/apt.conf.d/90-zfs-mirror-sync"), APT_HOOK)
            self._chroot(["update-initramfs", "-u", "-k", "all"])
        except (subprocess.CalledProcessError, OSError) as e:
            raise ConfigurationError(f"could not configure the system: {e}") from e

"""First-boot forced import, and its retraction once the system is proven.

The pool is created by the installation environment, so the installed
system finds it last imported by a different host and refuses to import
it.  The installer therefore adds a GRUB entry that boots with
``zfs_force=1`` and makes it the default, and enables a one-shot unit
that runs on the first boot, checks the system is sound, removes the
entry and restores the previous default.

The entry is emitted by a /etc/grub.d fragment only while both the ticket
file and the unit's wants symlink exist.
"""

from collections.abc import Callable
import logging
import os
from pathlib import Path
import re
import subprocess
from typing import NamedTuple

from installzfsmirror import cmd as cmdmod
from installzfsmirror.errors import (
    BootstrapError,
    FirstBootValidationError,
    SyncError,
)
from installzfsmirror.inspectors import DiskInspector, PoolInspector

_LOGGER = logging.getLogger(__name__)

FORCE_PARAMETER = "zfs_force=1"
ENTRY_ID = "zfs-firstboot-force"
ENTRY_TITLE = "Ubuntu - Force ZFS import first boot"
UNIT_NAME = "zfs-firstboot-cleanup.service"
AGENT_COMMAND = "/usr/local/sbin/zfs-firstboot-cleanup"

STATE_DIR = Path("/etc/zfs-mirror")
TICKET = STATE_DIR / "firstboot-force"
SAVED_DEFAULT = STATE_DIR / "grub-default.saved"
FRAGMENT = Path("/etc/grub.d/09_zfs_firstboot_force")
GRUB_DEFAULTS = Path("/etc/default/grub")
GRUB_CFG = Path("/boot/grub/grub.cfg")
WANTED_BY = "multi-user.target"
WANTS_LINK = Path("/etc/systemd/system") / f"{WANTED_BY}.wants" / UNIT_NAME
UNIT_FILE = Path("/etc/systemd/system") / UNIT_NAME
WRITE_PROBE = Path("/var/tmp/.zfs-firstboot-write-probe")
EFI_MOUNTPOINT = Path("/boot/efi")
REBOOT_DELAY = 30

HEALTHY = frozenset(["ONLINE", "DEGRADED"])

_SAFE_VALUE = re.compile(r"^[A-Za-z0-9_./=:,@+-]+$")


def _check_safe(value: str, what: str) -> str:
    if not _SAFE_VALUE.match(value):
        raise ValueError(f"{what} {value!r} contains characters unsafe for GRUB")
    return value


class GrubMenuEntry(NamedTuple):
    """A GRUB menu entry booting a kernel stored in a pool dataset."""

    title: str
    entry_id: str
    pool: str
    dataset: str
    kernel: str
    initrd: str
    parameters: tuple[str, ...]

    def _grub_path(self, path: str) -> str:
        # GRUB addresses files in a ZFS dataset as /<dataset below pool>@/<path>.
        below = self.dataset.split("/", 1)[1] if "/" in self.dataset else ""
        return f"/{below}@{path}"

    def render(self) -> str:
        """Return the entry as grub.cfg text."""
        for p in self.parameters:
            _check_safe(p, "kernel parameter")
        _check_safe(self.entry_id, "entry id")
        _check_safe(self.pool, "pool name")
        if "'" in self.title:
            raise ValueError(f"title {self.title!r} cannot contain quotes")
        params = " ".join(self.parameters)
        return "\n".join(
            [
                f"menuentry '{self.title}' --id {self.entry_id} {{",
                "\tinsmod part_gpt",
                "\tinsmod zfs",
                f"\tsearch --no-floppy --label --set=root {self.pool}",
                f"\tlinux {self._grub_path(self.kernel)} {params}",
                f"\tinitrd {self._grub_path(self.initrd)}",
                "}",
                "",
            ]
        )


class GrubFragment(NamedTuple):
    """A /etc/grub.d script that emits an entry while conditions hold."""

    entry: GrubMenuEntry
    conditions: tuple[Path, ...]

    def render(self) -> str:
        """Return the script text."""
        lines = ["#!/bin/sh", "set -e", ""]
        for c in self.conditions:
            lines.append(f"[ -e {_check_safe(str(c), 'path')} ] || exit 0")
        lines += ["", "cat << 'EOF'", self.entry.render() + "EOF", ""]
        return "\n".join(lines)


class SystemdUnit(NamedTuple):
    """A systemd unit file as ordered sections of key/value pairs."""

    sections: tuple[tuple[str, tuple[tuple[str, str], ...]], ...]

    def render(self) -> str:
        """Return the unit file text."""
        out = []
        for name, pairs in self.sections:
            out.append(f"[{name}]")
            for k, v in pairs:
                if "\n" in v:
                    raise ValueError(f"value of {k} spans lines")
                out.append(f"{k}={v}")
            out.append("")
        return "\n".join(out)


def firstboot_entry(pool: str, root_dataset: str, cmdline: list[str]) -> GrubMenuEntry:
    """Return the entry that boots the installed system with forced import."""
    return GrubMenuEntry(
        title=ENTRY_TITLE,
        entry_id=ENTRY_ID,
        pool=pool,
        dataset=root_dataset,
        kernel="/boot/vmlinuz",
        initrd="/boot/initrd.img",
        parameters=tuple([f"root=ZFS={root_dataset}"] + cmdline + [FORCE_PARAMETER]),
    )


def cleanup_unit(pool: str) -> SystemdUnit:
    """Return the one-shot unit running the first-boot cleanup agent."""
    return SystemdUnit(
        (
            (
                "Unit",
                (
                    ("Description", "Retract first-boot forced ZFS import"),
                    ("After", "local-fs.target zfs-mount.service"),
                    ("ConditionPathExists", str(TICKET)),
                ),
            ),
            (
                "Service",
                (
                    ("Type", "oneshot"),
                    ("ExecStart", f"{AGENT_COMMAND} --pool {_check_safe(pool, 'pool')}"),
                    ("StandardOutput", "journal+console"),
                ),
            ),
            ("Install", (("WantedBy", WANTED_BY),)),
        )
    )


_DEFAULT_LINE = re.compile(r"^GRUB_DEFAULT=(?P<value>.*)$", re.M)


def grub_default(text: str) -> str | None:
    """Return the raw value of GRUB_DEFAULT in /etc/default/grub text."""
    m = _DEFAULT_LINE.search(text)
    return m.group("value") if m else None


def set_grub_default(text: str, value: str) -> str:
    """Return the text with GRUB_DEFAULT set to value."""
    line = f"GRUB_DEFAULT={value}"
    if _DEFAULT_LINE.search(text):
        return _DEFAULT_LINE.sub(lambda _: line, text, count=1)
    if text and not text.endswith("\n"):
        text += "\n"
    return text + line + "\n"


class BootstrapProtocol:
    """Writes and proves the first-boot forced-import configuration."""

    def __init__(
        self,
        root: cmdmod.Root,
        pool: str,
        root_dataset: str,
        cmdline: list[str] | None = None,
    ) -> None:
        """Initialize the protocol for the system tree at root."""
        self.root = root
        self.pool = pool
        self.root_dataset = root_dataset
        self.cmdline = cmdline or []

    def fragment(self) -> GrubFragment:
        """Return the fragment emitting the forced entry."""
        return GrubFragment(
            firstboot_entry(self.pool, self.root_dataset, self.cmdline),
            (TICKET, WANTS_LINK),
        )

    def configure(self) -> None:
        """Install the entry, its conditions and the agent, then verify."""
        p = self.root.p
        _LOGGER.info("Configuring first-boot forced import of pool %s", self.pool)
        cmdmod.makedirs([p(STATE_DIR), p(FRAGMENT.parent)])
        cmdmod.writetext(p(FRAGMENT), self.fragment().render(), mode=0o755)
        cmdmod.writetext(p(UNIT_FILE), cleanup_unit(self.pool).render(), mode=0o644)
        cmdmod.check_call(self.root.in_chroot(["systemctl", "enable", UNIT_NAME]))
        cmdmod.writetext(p(TICKET), "forced import pending\n")

        defaults = cmdmod.readtext(p(GRUB_DEFAULTS))
        previous = grub_default(defaults)
        if previous is not None and previous != ENTRY_ID:
            cmdmod.writetext(p(SAVED_DEFAULT), previous + "\n")
        cmdmod.writetext(p(GRUB_DEFAULTS), set_grub_default(defaults, ENTRY_ID))

        cmdmod.check_call(self.root.in_chroot(["update-grub"]))
        self.verify()

    def verify(self) -> None:
        """Raise BootstrapError unless the forced entry is really set up."""
        p = self.root.p
        for path in (FRAGMENT, TICKET, WANTS_LINK):
            if not os.path.lexists(p(path)):
                raise BootstrapError(f"{path} is missing")
        try:
            cfg = cmdmod.readtext(p(GRUB_CFG))
        except FileNotFoundError:
            raise BootstrapError(f"{GRUB_CFG} was not generated") from None
        if FORCE_PARAMETER not in cfg:
            raise BootstrapError(
                f"{GRUB_CFG} does not contain {FORCE_PARAMETER}; the first boot"
                " would fail to import the pool"
            )
        if grub_default(cmdmod.readtext(p(GRUB_DEFAULTS))) != ENTRY_ID:
            raise BootstrapError(f"GRUB_DEFAULT is not {ENTRY_ID}")
        _LOGGER.info("First-boot forced import is configured")


class FirstBootAgent:
    """Runs once on the first boot: validate, then revert the forced import."""

    def __init__(
        self,
        pool: str,
        pools: PoolInspector,
        disks: DiskInspector,
        sync: Callable[[], None],
        root: cmdmod.Root = cmdmod.HOST,
        reboot_delay: int = REBOOT_DELAY,
    ) -> None:
        """Initialize the agent."""
        self.pool = pool
        self.pools = pools
        self.disks = disks
        self.sync = sync
        self.root = root
        self.reboot_delay = reboot_delay

    def validate(self) -> None:
        """Raise FirstBootValidationError unless the system is sound."""
        if not self.pools.exists(self.pool):
            raise FirstBootValidationError(f"pool {self.pool} is not imported")
        health = self.pools.health(self.pool)
        if health not in HEALTHY:
            raise FirstBootValidationError(f"pool {self.pool} is {health}")
        if health != "ONLINE":
            _LOGGER.warning("Pool %s is %s", self.pool, health)

        source = self.disks.mount_source(self.root.p("/"))
        if source is None or not str(source).startswith(self.pool + "/"):
            raise FirstBootValidationError(
                f"root file system is not mounted from pool {self.pool}"
            )
        if self.disks.mount_source(self.root.p(EFI_MOUNTPOINT)) is None:
            raise FirstBootValidationError(f"{EFI_MOUNTPOINT} is not mounted")

        probe = self.root.p(WRITE_PROBE)
        try:
            cmdmod.writetext(probe, "probe\n")
            os.unlink(probe)
        except OSError as e:
            raise FirstBootValidationError(f"cannot write to {probe}: {e}") from e
        _LOGGER.info("System booted with forced import is sound")

    def revert(self) -> None:
        """Remove the forced entry and restore the previous boot default."""
        p = self.root.p
        p(FRAGMENT).unlink(missing_ok=True)

        saved = p(SAVED_DEFAULT)
        previous = cmdmod.readtext(saved).strip() if saved.exists() else "0"
        defaults = cmdmod.readtext(p(GRUB_DEFAULTS))
        cmdmod.writetext(p(GRUB_DEFAULTS), set_grub_default(defaults, previous))
        _LOGGER.info("Restored GRUB_DEFAULT=%s", previous)

        cmdmod.check_call(self.root.in_chroot(["update-grub"]))
        if FORCE_PARAMETER in cmdmod.readtext(p(GRUB_CFG)):
            raise BootstrapError(f"{GRUB_CFG} still contains {FORCE_PARAMETER}")
        saved.unlink(missing_ok=True)

    def retire(self) -> None:
        """Disable the agent and close the ticket so it never runs again."""
        cmdmod.check_call(self.root.in_chroot(["systemctl", "disable", UNIT_NAME]))
        self.root.p(TICKET).unlink(missing_ok=True)

    def schedule_reboot(self) -> None:
        """Reboot shortly, once logs had a chance to be flushed."""
        _LOGGER.info("Rebooting in %s seconds", self.reboot_delay)
        cmdmod.check_call(
            [
                "systemd-run",
                f"--on-active={self.reboot_delay}",
                "systemctl",
                "reboot",
            ]
        )

    def run(self, reboot: bool = True) -> None:
        """Validate, revert, resynchronize and retire.

        Nothing is changed if validation fails, so the next boot forces
        the import again.
        """
        self.validate()
        self.revert()
        try:
            self.sync()
        except (SyncError, subprocess.CalledProcessError) as e:
            _LOGGER.error("Mirror synchronization failed: %s", e)
            _LOGGER.error("Run sync-mirror-boot by hand once the problem is fixed")
        self.retire()
        if reboot:
            self.schedule_reboot()


MANUAL_STEPS = """\
The system still boots with forced pool import.  Once the problem above is
fixed, run the cleanup again by hand:

    sudo zfs-firstboot-cleanup --pool {pool}

or check its previous runs with:

    journalctl -u {unit}
"""

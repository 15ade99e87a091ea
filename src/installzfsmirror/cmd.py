"""Commands and utilities."""

import contextlib
import errno
import glob
import logging
import os
from pathlib import Path
import shlex
import shutil
import signal
import stat
import subprocess
import time
from typing import Any, Literal, Sequence, cast

logger = logging.getLogger("cmd")


def readtext(fn: Path) -> str:
    """Read a text file."""
    with open(fn) as f:
        return f.read()


def writetext(fn: Path, text: str, mode: int | None = None) -> None:
    """Write text to a file, optionally setting its permission bits.

    The write is not transactional.  Incomplete writes can appear after a crash
    """
    with open(fn, "w") as f:
        f.write(text)
    if mode is not None:
        os.chmod(fn, mode)


def format_cmdline(lst: Sequence[str]) -> str:
    """Format a command line for print()."""
    return " ".join(shlex.quote(str(x)) for x in lst)


def check_call(cmd: list[str], *args: Any, **kwargs: Any) -> None:
    """subprocess.check_call with logging.

    Standard input will be closed and all I/O will proceed with text.

    Arguments:
      cmd: command and arguments to run
      cwd: current working directory
      *args: positional arguments for check_call
      **kwargs: keyword arguments for check_call
    """
    cwd = kwargs.get("cwd", os.getcwd())
    kwargs["close_fds"] = True
    kwargs.setdefault("stdin", subprocess.DEVNULL)
    kwargs["universal_newlines"] = True
    logger.debug("Check calling %s in cwd %r", format_cmdline(cmd), cwd)
    subprocess.check_call(cmd, *args, **kwargs)


def check_call_silent(cmd: list[str]) -> None:
    """subprocess.check_call with no standard output or error."""
    check_call(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)


def succeeds(cmd: list[str]) -> bool:
    """Run a command silently and report whether it exited zero."""
    try:
        check_call_silent(cmd)
    except subprocess.CalledProcessError:
        return False
    return True


def check_output(cmd: list[str], *args: Any, **kwargs: Any) -> str:
    """Obtain the standard output of a command.

    Arguments:
      cmd: command and arguments to run
      cwd: current working directory
      *args: positional arguments for check_call
      **kwargs: keyword arguments for check_call
    """
    logall = kwargs.pop("logall", False)
    cwd = kwargs.get("cwd", os.getcwd())
    kwargs["universal_newlines"] = True
    kwargs["close_fds"] = True
    kwargs.setdefault("stdin", subprocess.DEVNULL)
    logger.debug("Check outputting %s in cwd %r", format_cmdline(cmd), cwd)
    output = cast(str, subprocess.check_output(cmd, *args, **kwargs))
    if output:
        if logall:
            logger.debug("Output from command: %r", output)
        else:
            firstline = output.splitlines()[0].strip()
            logger.debug("First line of output from command: %s", firstline)
    else:
        logger.debug("No output from command")
    return output


def feed(cmd: list[str], text: str) -> None:
    """Run a command with text on its standard input, raising on failure.

    The text is never logged, since it usually carries secrets.
    """
    logger.debug("Feeding input to %s", format_cmdline(cmd))
    pr = subprocess.Popen(cmd, stdin=subprocess.PIPE, universal_newlines=True)
    pr.communicate(text)
    retcode = pr.wait()
    if retcode != 0:
        raise subprocess.CalledProcessError(retcode, cmd)


def filetype(
    dev: Path,
) -> Literal["file"] | Literal["blockdev"] | Literal["doesntexist"] | Literal["other"]:
    """Return 'file', 'blockdev', 'other' or 'doesntexist' for dev."""
    try:
        s = os.stat(dev)
    except OSError as e:
        if e.errno == errno.ENOENT:
            return "doesntexist"
        raise
    if stat.S_ISBLK(s.st_mode):
        return "blockdev"
    if stat.S_ISREG(s.st_mode):
        return "file"
    return "other"


def mount(source: Path | str, target: Path, *opts: str) -> Path:
    """Mount a file system.

    Returns the mountpoint.
    """
    cmd = ["mount"]
    cmd.extend(opts)
    cmd.extend(["--", str(source), str(target)])
    check_call(cmd)
    return target


def rbindmount(source: Path, target: Path) -> Path:
    """Recursively bind mounts a path onto another path, privately.

    Returns the mountpoint.
    """
    return mount(source, target, "--make-private", "--rbind")


def _mountpoints() -> list[str]:
    with open("/proc/self/mounts", "rb") as f:
        return [x.split()[1].decode("unicode-escape") for x in f.read().splitlines()]


def isbindmount(target: Path) -> bool:
    """Is path a bind mountpoint."""
    return str(target) in _mountpoints()


def ismount(target: Path) -> bool:
    """Is path a mountpoint."""
    return os.path.ismount(target) or isbindmount(target)


def check_for_open_files(prefix: Path) -> dict[str, list[tuple[str, str]]]:  # noqa: C901
    """Check that there are open files or mounted file systems within the prefix.

    Returns a  dictionary where the keys are the files, and the values are lists
    that contain tuples (pid, command line) representing the processes that are
    keeping those files open, or tuples ("<mount>", description) representing
    the file systems mounted there.
    """
    MAXWIDTH = 60
    results: dict[str, list[tuple[str, str]]] = {}
    files = glob.glob("/proc/*/fd/*") + glob.glob("/proc/*/cwd")
    for f in files:
        try:
            d = os.readlink(f)
        except OSError:
            continue
        if d.startswith(str(prefix) + os.path.sep) or d == str(prefix):
            pid = f.split(os.path.sep)[2]
            if pid == "self":
                continue
            c = os.path.join("/", *(f.split(os.path.sep)[1:3] + ["cmdline"]))
            try:
                with open(c) as ff:
                    cmd = format_cmdline(ff.read().split("\0"))
            except OSError:
                continue
            if len(cmd) > MAXWIDTH:
                cmd = cmd[:57] + "..."
            results.setdefault(d, []).append((pid, cmd))
    with open("/proc/self/mounts", "rb") as mounts:
        for line in mounts.read().splitlines():
            fields = line.split()
            dev = fields[0].decode("unicode-escape")
            mp = fields[1].decode("unicode-escape")
            if mp.startswith(str(prefix) + os.path.sep):
                results.setdefault(mp, []).append(("<mount>", dev))
    return results


def _killpids(pidlist: Sequence[int]) -> None:
    for p in pidlist:
        if int(p) == os.getpid():
            continue
        os.kill(p, signal.SIGKILL)


def _printfiles(openfiles: dict[str, list[tuple[str, str]]]) -> Sequence[int]:
    pids: set[int] = set()
    for of, procs in list(openfiles.items()):
        logger.warning("%r:", of)
        for pid, cmd in procs:
            logger.warning("  %8s  %s", pid, cmd)
            with contextlib.suppress(ValueError):
                pids.add(int(pid))
    return list(pids)


def umount(mountpoint: Path, tries: int = 5) -> None:
    """Unmount a file system, trying `tries` times."""

    sleep = 1
    while True:
        if not ismount(mountpoint):
            return None
        try:
            check_call(["umount", str(mountpoint)])
            break
        except subprocess.CalledProcessError:
            openfiles = check_for_open_files(mountpoint)
            if openfiles:
                logger.warning("There are open files in %r:", mountpoint)
                pids = _printfiles(openfiles)
                if tries <= 1 and pids:
                    logger.warning("Killing processes with open files: %s:", pids)
                    _killpids(pids)
            if tries <= 0:
                raise
            logger.warning("Syncing and sleeping %d seconds", sleep)
            time.sleep(sleep)
            tries -= 1
            sleep = sleep * 2


def umount_recursive(mountpoint: Path) -> None:
    """Lazily unmount a mount tree such as a recursive bind mount."""
    if not ismount(mountpoint):
        return None
    check_call(["umount", "-lR", str(mountpoint)])


def makedirs(ds: list[Path]) -> list[Path]:
    """Recursively create list of directories."""
    for subdir in ds:
        os.makedirs(subdir, exist_ok=True)
    return ds


class Root:
    """A file system tree commands can operate on, possibly through chroot.

    `p` maps a path as seen inside the tree to the path outside of it,
    `q` does the converse, and `in_chroot` prefixes a command so it runs
    inside the tree.  The running system is Root(Path("/")).
    """

    def __init__(self, path: Path) -> None:
        """Initialize the root."""
        self.path = Path(path)

    @property
    def is_host(self) -> bool:
        """Whether this root is the running system."""
        return self.path == Path("/")

    def p(self, withinchroot: str | Path) -> Path:
        """Return the outside path for a path inside the tree."""
        return self.path / str(withinchroot).lstrip(os.path.sep)

    def q(self, outsidechroot: str | Path) -> Path:
        """Return the inside path for a path outside the tree."""
        if self.is_host:
            return Path(outsidechroot)
        return Path("/") / Path(outsidechroot).relative_to(self.path)

    def in_chroot(self, lst: list[str]) -> list[str]:
        """Return the command wrapped to run inside the tree."""
        if self.is_host:
            return lst
        return ["chroot", str(self.path)] + lst

    def __repr__(self) -> str:
        """Represent the root."""
        return f"Root({str(self.path)!r})"


HOST = Root(Path("/"))


def is_superuser() -> bool:
    """Whether the program runs with elevated privileges."""
    return os.geteuid() == 0


def which(tool: str) -> bool:
    """Whether a program is available in PATH."""
    return shutil.which(tool) is not None

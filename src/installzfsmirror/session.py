"""The installation session: checkpoints, resource ledger and cleanup scope."""

from collections.abc import Callable, Generator
import contextlib
import logging
from pathlib import Path
import signal
import subprocess
from typing import Any

from installzfsmirror import cmd as cmdmod
from installzfsmirror.breakingbefore import BreakingBefore, break_stages
from installzfsmirror.errors import InstallerError
from installzfsmirror.inspectors import PoolInspector
from installzfsmirror.pool import export_pool

_LOGGER = logging.getLogger(__name__)

STARTING = "starting"
COMPLETED = "completed"
CHECKPOINTS = [STARTING] + list(break_stages) + [COMPLETED]


class Interrupted(KeyboardInterrupt):
    """The session was asked to terminate by a signal."""


class SessionFailed(InstallerError):
    """The session failed; carries the last checkpoint and the log location.

    The original error is available as __cause__.
    """

    def __init__(self, checkpoint: str, log_path: Path | None) -> None:
        """Initialize the failure."""
        InstallerError.__init__(self, checkpoint, log_path)
        self.checkpoint = checkpoint
        self.log_path = log_path

    def __str__(self) -> str:
        """Describe the failure."""
        return f"installation failed at checkpoint {self.checkpoint}"


class Ledger:
    """Resources acquired by the session, released LIFO style."""

    def __init__(
        self,
        pools: PoolInspector,
        unbind: Callable[[Path], None] = cmdmod.umount_recursive,
        unmount: Callable[[Path], None] = cmdmod.umount,
    ) -> None:
        """Initialize an empty ledger."""
        self.actions: list[tuple[str, Any]] = []
        self._pools = pools
        self._unbind = unbind
        self._unmount = unmount

        class Tracker:
            def __init__(self, typ: str) -> None:
                self.typ = typ

            def append(me: "Tracker", o: Any) -> None:  # noqa:N805
                assert o is not None
                self.actions.append((me.typ, o))

            def remove(me: "Tracker", o: Any) -> None:  # noqa:N805
                for n, (typ, origo) in reversed(list(enumerate(self.actions[:]))):
                    if typ == me.typ and o == origo:
                        self.actions.pop(n)
                        break

        self.to_export = Tracker("export")
        self.to_unmount = Tracker("unmount")
        self.to_unbind = Tracker("unbind")

    def _holds(self, typ: str) -> bool:
        return any(t == typ for t, _ in self.actions)

    @property
    def pools_created(self) -> bool:
        """Whether a pool created by the session is still imported."""
        return self._holds("export")

    @property
    def mounts_active(self) -> bool:
        """Whether temporary mounts made by the session are still in place."""
        return self._holds("unmount")

    @property
    def chroot_active(self) -> bool:
        """Whether the chroot bind mounts are still in place."""
        return self._holds("unbind")

    def discard(self) -> None:
        """Forget every resource without releasing it."""
        self.actions.clear()

    def unwind(self) -> bool:
        """Release every resource in reverse order of acquisition.

        A failed release is logged and the remaining ones are still
        attempted.  Returns whether every release succeeded.
        """
        if not self.actions:
            return True
        _LOGGER.info("Rewinding stack of actions.")
        clean = True
        for n, (typ, o) in reversed(list(enumerate(self.actions[:]))):
            try:
                if typ == "unbind":
                    _LOGGER.info("Releasing chroot bind mount %s", o)
                    self._unbind(o)
                elif typ == "unmount":
                    _LOGGER.info("Unmounting %s", o)
                    self._unmount(o)
                elif typ == "export":
                    _LOGGER.info("Exporting pool %s", o)
                    if not export_pool(o, self._pools):
                        raise InstallerError(f"pool {o} is still imported")
            except (InstallerError, subprocess.CalledProcessError, OSError) as e:
                _LOGGER.error("Could not release %s %s: %s", typ, o, e)
                clean = False
            self.actions.pop(n)
        _LOGGER.info("Rewind complete.")
        return clean


def _raise_interrupted(signum: int, unused_frame: Any) -> None:
    raise Interrupted(signal.Signals(signum).name)


class Session:
    """One run of the installer, moving through its checkpoints in order.

    Pass the session to every step that acquires resources, so it can
    record them in the ledger.
    """

    def __init__(
        self,
        ledger: Ledger,
        log_path: Path | None = None,
        break_before: str | None = None,
    ) -> None:
        """Initialize a session at the starting checkpoint."""
        if break_before is not None and break_before not in break_stages:
            raise ValueError(f"unknown stage {break_before!r}")
        self.ledger = ledger
        self.log_path = log_path
        self.break_before = break_before
        self.history = [STARTING]

    @property
    def checkpoint(self) -> str:
        """Return the last checkpoint reached."""
        return self.history[-1]

    @property
    def completed(self) -> bool:
        """Whether the session went through every checkpoint."""
        return self.history == CHECKPOINTS

    def advance(self, state: str) -> None:
        """Move to the next checkpoint, which must be state."""
        index = CHECKPOINTS.index(self.checkpoint)
        if index + 1 >= len(CHECKPOINTS) or CHECKPOINTS[index + 1] != state:
            raise ValueError(f"cannot move from {self.checkpoint} to {state}")
        if self.break_before == state:
            raise BreakingBefore(state)
        _LOGGER.info("=== %s ===", state)
        _LOGGER.debug("Checkpoint %s reached", state)
        self.history.append(state)

    @contextlib.contextmanager
    def guard(self) -> Generator[None, None, None]:
        """Release the ledger on any failure or interruption of the body.

        SIGTERM and SIGHUP are turned into Interrupted while the body runs.
        Errors are re-raised as SessionFailed; interruptions and breaks are
        re-raised as they are, after cleanup.  The ledger is kept as is
        only if the session reached its completed checkpoint.
        """
        previous = {
            s: signal.signal(s, _raise_interrupted)
            for s in (signal.SIGTERM, signal.SIGHUP)
        }
        try:
            yield
        except BreakingBefore as e:
            _LOGGER.info("------------------------------------------------")
            _LOGGER.info("Breaking before %s", break_stages[e.args[0]])
            self.ledger.unwind()
            raise
        except KeyboardInterrupt:
            _LOGGER.error("Interrupted at checkpoint %s", self.checkpoint)
            self.ledger.unwind()
            self._report()
            raise
        except Exception as e:
            _LOGGER.error("Failed at checkpoint %s: %s", self.checkpoint, e)
            self.ledger.unwind()
            self._report()
            raise SessionFailed(self.checkpoint, self.log_path) from e
        finally:
            for s, handler in previous.items():
                signal.signal(s, handler)
        if not self.completed:
            self.ledger.unwind()

    def _report(self) -> None:
        _LOGGER.error("Last checkpoint reached: %s", self.checkpoint)
        if self.log_path:
            _LOGGER.error("Session log: %s", self.log_path)

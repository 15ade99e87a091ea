"""Logging functionality."""

import datetime
import logging
from pathlib import Path
import time
from typing import Any

BASIC_FORMAT = "%(asctime)8s  %(levelname)2s  %(message)s"
TRACE_FORMAT = (
    "%(asctime)8s  %(levelname)2s:%(name)16s:%(funcName)32s@%(lineno)4d\t%(message)s"
)

SESSION_LOG_DIR = Path("/tmp")
SESSION_LOG_PREFIX = "zfs-mirror-root-install-"


class ElapsedTimeFormatter(logging.Formatter):
    """Formats the record time as minutes and seconds since setup."""

    def __init__(self, *a: Any, **kw: Any) -> None:
        """Initialize the formatter and start its clock."""
        logging.Formatter.__init__(self, *a, **kw)
        self.start = time.time()

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        """Return the elapsed time for the record."""
        t = record.created - self.start
        m = int(t / 60)
        s = t % 60
        return "%dm%.2f" % (m, s)


def session_log_path(
    directory: Path = SESSION_LOG_DIR, now: datetime.datetime | None = None
) -> Path:
    """Return the timestamped path of a new installer session log."""
    now = now or datetime.datetime.now()
    return directory / f"{SESSION_LOG_PREFIX}{now.strftime('%Y%m%dT%H%M%S')}.log"


def log_config(trace_file: Path | None = None, verbose: bool = False) -> None:
    """Set up logging formats.

    The console gets INFO and above (DEBUG if verbose); the trace file,
    if any, gets everything including every external command run.
    """
    logging.addLevelName(logging.DEBUG, "TT")
    logging.addLevelName(logging.INFO, "II")
    logging.addLevelName(logging.WARNING, "WW")
    logging.addLevelName(logging.ERROR, "EE")
    logging.addLevelName(logging.CRITICAL, "XX")

    rl = logging.getLogger()
    rl.setLevel(logging.DEBUG)
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(ElapsedTimeFormatter(BASIC_FORMAT))
    rl.addHandler(ch)
    if trace_file:
        th = logging.FileHandler(trace_file, mode="a")
        th.setLevel(logging.DEBUG)
        th.setFormatter(ElapsedTimeFormatter(TRACE_FORMAT))
        rl.addHandler(th)

"""Exceptions raised by the installer and its companion tools."""


class InstallerError(Exception):
    """Base class for all errors this program reports."""


class PreconditionError(InstallerError):
    """Bad arguments or unsuitable drives, detected before any destructive step."""


class DestructiveOperationError(InstallerError):
    """A destructive step failed and cannot be retried safely."""


class PartitioningError(DestructiveOperationError):
    """The partition table could not be written or its devices never appeared."""


class PoolCreationError(DestructiveOperationError):
    """The pool could not be created or is not usable after creation."""


class PoolDestroyError(DestructiveOperationError):
    """The pool is still present after every destruction strategy."""


class ConfigurationError(InstallerError):
    """Installation of the file tree or system configuration failed."""


class BootstrapError(InstallerError):
    """The first-boot forced-import entry could not be proven configured."""


class FirstBootValidationError(InstallerError):
    """The system booted with forced import is not healthy enough to revert."""


class SyncError(InstallerError):
    """The boot partitions of the mirror could not be synchronized."""


class ReplacementRefused(SyncError):
    """The member designated for replacement is not reported failed by the pool."""

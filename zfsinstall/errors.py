#!/usr/bin/env python3
# Installer Errors
# Exception classes raised by the installer components


class InstallerError(Exception):
    """Base class for every fatal installer error"""


class PreconditionError(InstallerError):
    """The system is not fit for installation; nothing has been touched yet"""


class ValidationError(InstallerError):
    """A configuration value does not satisfy its constraint"""


class PlanFinalizedError(InstallerError):
    """Attempt to modify an installation plan after it was finalized"""


class NoSuitableDisksError(InstallerError):
    """No block device is usable as an installation target"""


class DiskOperationError(InstallerError):
    """Partitioning or another disk operation failed"""


class CommandError(DiskOperationError):
    """An external command exited with a non-zero status"""

    def __init__(self, cmd, returncode, stdout="", stderr=""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"Command {' '.join(self.cmd)} failed with exit status {returncode}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


class PoolOperationError(InstallerError):
    """Creating, importing or expanding a ZFS pool failed"""


class NoSnapshotFoundError(InstallerError):
    """The Timeshift backup path is missing or holds no snapshot"""


class CacheIntegrityError(InstallerError):
    """The ZFS mount-ordering cache was not populated in time"""

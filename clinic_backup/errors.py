"""Exceptions raised by the backup subsystem."""


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


class BackupError(Exception):
    """Base class for backup failures."""
    pass


class BackupFailedError(BackupError):
    """A backup run could not be completed. Temporary state was cleaned up."""
    pass


class BackupForbiddenError(BackupError):
    """The requesting role may not run a backup."""
    pass

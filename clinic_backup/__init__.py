# Storage monitoring and backups for the clinic MongoDB database

from .errors import DatabaseError, BackupError, BackupFailedError, BackupForbiddenError
from .monitor import StorageMonitor, StorageStatus, get_storage_monitor
from .runner import BackupRunner, BackupResult
from .connection import ConnectionManager, get_connection_manager

__all__ = [
    'DatabaseError',
    'BackupError',
    'BackupFailedError',
    'BackupForbiddenError',
    'StorageMonitor',
    'StorageStatus',
    'get_storage_monitor',
    'BackupRunner',
    'BackupResult',
    'ConnectionManager',
    'get_connection_manager',
]

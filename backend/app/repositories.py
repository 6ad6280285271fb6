"""Repository pattern for database operations.

This module provides repository classes for the collections the backup
service reads and writes, abstracting database operations and providing a
clean interface for the API layer and the backup runner.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError
from bson import ObjectId
from bson.errors import InvalidId

from . import db

logger = logging.getLogger(__name__)


def _as_object_id(value: Any) -> Any:
    """Return an ObjectId for id-like strings, otherwise the value unchanged."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return value


class BaseRepository:
    """Base repository class with common database operations."""

    def __init__(self, collection_name: str, database_provider: Optional[Callable[[], Database]] = None):
        """Initialize repository with collection name.

        Args:
            collection_name: Name of the MongoDB collection
            database_provider: Callable returning the database; defaults to db.get_db
        """
        self.collection_name = collection_name
        self._database_provider = database_provider

    @property
    def collection(self) -> Collection:
        database = self._database_provider() if self._database_provider else db.get_db()
        return database[self.collection_name]

    def find_many(self, filter_dict: Dict[str, Any], limit: Optional[int] = None, sort: Optional[List[tuple]] = None) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection.find(filter_dict)
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)
        except PyMongoError as e:
            logger.error(f"Error finding documents in {self.collection_name}: {e}")
            raise

    def insert_one(self, document: Dict[str, Any]) -> ObjectId:
        try:
            result = self.collection.insert_one(document)
            return result.inserted_id
        except PyMongoError as e:
            logger.error(f"Error inserting document in {self.collection_name}: {e}")
            raise

    def delete_many(self, filter_dict: Dict[str, Any]) -> int:
        try:
            result = self.collection.delete_many(filter_dict)
            return result.deleted_count
        except PyMongoError as e:
            logger.error(f"Error deleting documents in {self.collection_name}: {e}")
            raise


class BackupHistoryRepository(BaseRepository):
    """Metadata rows for finished manual backups (one per archive)."""

    def __init__(self, database_provider: Optional[Callable[[], Database]] = None) -> None:
        super().__init__('backup_histories', database_provider)

    def record(self, filename: str, path: str, role: str, size: int, triggered_by: Any,
               backup_date: Optional[datetime] = None) -> ObjectId:
        now = datetime.now(timezone.utc)
        return self.insert_one({
            'filename': filename,
            'path': path,
            'role': role,
            'size': int(size),
            'triggeredBy': _as_object_id(triggered_by),
            'backupDate': backup_date or now,
            'createdAt': now,
            'updatedAt': now,
        })

    def list_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.find_many({}, limit=max(limit, 1), sort=[('backupDate', DESCENDING)])

    def delete_by_paths(self, paths: List[str]) -> int:
        """Drop rows whose archive was removed by retention."""
        if not paths:
            return 0
        return self.delete_many({'path': {'$in': list(paths)}})


def serialize_history(doc: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-friendly view of a backup history row."""
    out: Dict[str, Any] = {}
    for key, value in doc.items():
        if key == '_id':
            out['id'] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out

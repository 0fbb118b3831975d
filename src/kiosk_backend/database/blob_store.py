"""
Blob Stores
===========
Narrow get/set/remove persistence used by the attendance store.

- MemoryBlobStore: process-local dict, for tests and throwaway kiosks
- SqlBlobStore: storage_blobs table managed by DatabaseManager
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from .db_manager import DatabaseManager, get_db_manager
from .models import StorageBlob

logger = logging.getLogger(__name__)


class BlobStore:
    """Key/value text storage. Subclasses persist somewhere."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryBlobStore(BlobStore):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._blobs: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._blobs.get(key)

    def set(self, key: str, value: str) -> None:
        self._blobs[key] = value

    def remove(self, key: str) -> None:
        self._blobs.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._blobs


class SqlBlobStore(BlobStore):
    """
    Blobs kept in SQLite through the shared DatabaseManager.

    Errors are not caught here; the caller decides whether a failed
    write is fatal.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db = db_manager or get_db_manager()

    def get(self, key: str) -> Optional[str]:
        with self.db.get_session() as session:
            blob = session.query(StorageBlob).filter_by(key=key).first()
            return blob.value if blob else None

    def set(self, key: str, value: str) -> None:
        with self.db.get_session() as session:
            blob = session.query(StorageBlob).filter_by(key=key).first()
            if blob:
                blob.value = value
                blob.updated_at = datetime.utcnow()
            else:
                session.add(StorageBlob(key=key, value=value))
            session.commit()
            logger.debug(f"Blob written: {key} ({len(value)} chars)")

    def remove(self, key: str) -> None:
        with self.db.get_session() as session:
            deleted = session.query(StorageBlob).filter_by(key=key).delete()
            session.commit()
            if deleted:
                logger.debug(f"Blob removed: {key}")

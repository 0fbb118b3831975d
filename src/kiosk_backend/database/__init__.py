"""
Database Module for the Attendance Kiosk
========================================
Provides durable attendance state with:
- Newest-first attendance records
- Attendee profiles with presence status and match vectors
- Pluggable blob persistence (memory or SQLite)
"""

from .models import AttendanceRecord, AttendeeProfile, EntryType, PresenceStatus, VectorKind
from .db_manager import DatabaseManager, get_db_manager
from .blob_store import BlobStore, MemoryBlobStore, SqlBlobStore
from .attendance_store import AttendanceStore

__all__ = [
    'AttendanceRecord',
    'AttendeeProfile',
    'EntryType',
    'PresenceStatus',
    'VectorKind',
    'DatabaseManager',
    'get_db_manager',
    'BlobStore',
    'MemoryBlobStore',
    'SqlBlobStore',
    'AttendanceStore'
]

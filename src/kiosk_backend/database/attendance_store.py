"""
Attendance Store for the Attendance Kiosk
=========================================
Owns the attendance records and attendee profiles.

Features:
- Records kept newest-first, profiles in insertion order
- Every mutation re-serializes its whole collection to a blob
- Missing or corrupt blobs load as empty collections
- Derived queries: recent records, vector catalogs, today's entry
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel

from .blob_store import BlobStore, SqlBlobStore
from .models import (
    AttendanceRecord,
    AttendeeProfile,
    EntryType,
    PresenceStatus,
    VectorKind,
)

logger = logging.getLogger(__name__)

RECORDS_KEY = "attendance_records"
PROFILES_KEY = "attendee_profiles"

DEFAULT_RECENT_LIMIT = 50

_PROFILE_FIELDS = frozenset(AttendeeProfile.model_fields) - {"id"}


class AttendanceStore:
    """
    In-memory collections mirrored to a blob store.

    Collections are replaced, never mutated in place, so the tuples and
    catalogs handed out by the read methods stay valid snapshots.

    Usage:
        store = AttendanceStore(MemoryBlobStore())
        record = store.add_record(
            attendee_id="a1", name="Ann", email="ann@x.com",
            image=data_url, type=EntryType.ENTRY
        )
        store.update_profile("a1", current_status=PresenceStatus.IN)
    """

    def __init__(
        self,
        blob_store: Optional[BlobStore] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Args:
            blob_store: Persistence transport. Uses the SQLite-backed store if not provided.
            clock: Source of "now" (local, naive). Injectable for tests.
        """
        self.blobs = blob_store or SqlBlobStore()
        self._clock = clock
        self._records: List[AttendanceRecord] = self._load(RECORDS_KEY, AttendanceRecord)
        self._profiles: List[AttendeeProfile] = self._load(PROFILES_KEY, AttendeeProfile)

        logger.info(
            f"[STORE] Loaded {len(self._records)} records and {len(self._profiles)} profiles"
        )

    # ============== Persistence ==============

    def _load(self, key: str, model: Type[BaseModel]) -> list:
        try:
            raw = self.blobs.get(key)
            if not raw:
                return []
            items = json.loads(raw)
            if not isinstance(items, list):
                raise ValueError(f"expected a JSON array, got {type(items).__name__}")
            return [model.model_validate(item) for item in items]
        except Exception as e:
            logger.warning(f"[STORE] Could not load '{key}', starting empty: {e}")
            return []

    def _persist(self, key: str, items: Iterable[BaseModel]):
        try:
            payload = json.dumps([item.model_dump(mode="json") for item in items])
            self.blobs.set(key, payload)
        except Exception as e:
            # The in-memory state keeps the mutation; it is lost on next load.
            logger.error(f"[STORE] Failed to save '{key}': {e}")

    # ============== Records ==============

    @property
    def records(self) -> Tuple[AttendanceRecord, ...]:
        return tuple(self._records)

    def add_record(
        self,
        attendee_id: str,
        name: str,
        email: str,
        image: str,
        type: EntryType,
        biometric_vector=None,
        embedding_vector=None
    ) -> AttendanceRecord:
        """
        Create a record with a fresh id and the current time, newest first.

        The timestamp never goes backwards relative to the newest record,
        even if the wall clock does.
        """
        timestamp = self._clock()
        if self._records and timestamp < self._records[0].timestamp:
            timestamp = self._records[0].timestamp

        record = AttendanceRecord(
            id=str(uuid.uuid4()),
            attendee_id=attendee_id,
            name=name,
            email=email,
            image=image,
            timestamp=timestamp,
            type=type,
            biometric_vector=biometric_vector,
            embedding_vector=embedding_vector
        )

        self._records = [record] + self._records
        self._persist(RECORDS_KEY, self._records)

        logger.debug(f"[STORE] Added record {record.id}: {record.type.value} for {attendee_id}")
        return record

    def get_recent_records(self, limit: int = DEFAULT_RECENT_LIMIT) -> List[AttendanceRecord]:
        return self._records[:max(0, limit)]

    def get_today_entry_record(self, attendee_id: str) -> Optional[AttendanceRecord]:
        """
        Most recent ENTRY record for this attendee dated today (local time).
        """
        today = self._clock().date()
        for record in self._records:
            if (
                record.attendee_id == attendee_id
                and record.type == EntryType.ENTRY
                and record.timestamp.date() == today
            ):
                return record
        return None

    # ============== Profiles ==============

    @property
    def profiles(self) -> Tuple[AttendeeProfile, ...]:
        return tuple(self._profiles)

    def get_profile(self, profile_id: str) -> Optional[AttendeeProfile]:
        for profile in self._profiles:
            if profile.id == profile_id:
                return profile
        return None

    def find_profile_by_email(self, email: Optional[str]) -> Optional[AttendeeProfile]:
        """Case-insensitive email lookup; first profile in insertion order wins."""
        needle = (email or "").strip().lower()
        if not needle:
            return None
        for profile in self._profiles:
            if profile.email.strip().lower() == needle:
                return profile
        return None

    def update_profile(self, profile_id: str, **fields) -> AttendeeProfile:
        """
        Merge fields into a profile, creating it if needed.

        Fields passed as None are treated as not supplied and never erase
        an existing value. New profiles default to name="", email="",
        last_image="" and current_status=OUT before the overlay.

        Raises:
            ValueError: for a field the profile does not have
        """
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        updates = {key: value for key, value in fields.items() if value is not None}

        for index, existing in enumerate(self._profiles):
            if existing.id == profile_id:
                profile = AttendeeProfile.model_validate({**existing.model_dump(), **updates})
                self._profiles = self._profiles[:index] + [profile] + self._profiles[index + 1:]
                break
        else:
            profile = AttendeeProfile(id=profile_id, **updates)
            self._profiles = self._profiles + [profile]
            logger.info(f"[STORE] Created profile {profile_id} ({profile.name or 'unnamed'})")

        self._persist(PROFILES_KEY, self._profiles)
        return profile

    def get_vector_catalog(self, kind) -> List[Tuple[str, List[float]]]:
        """
        (id, vector) for every profile that has a vector of this kind.

        Args:
            kind: VectorKind or its value ("biometric", "embedding")
        """
        kind = VectorKind(kind)
        catalog = []
        for profile in self._profiles:
            vector = profile.vector(kind)
            if vector is not None:
                catalog.append((profile.id, vector))
        return catalog

    def get_image_catalog(self) -> List[Tuple[str, str]]:
        """(id, last_image) for every profile with a stored image."""
        return [(profile.id, profile.last_image) for profile in self._profiles if profile.last_image]

    # ============== Housekeeping ==============

    def get_summary(self) -> dict:
        present = sum(1 for p in self._profiles if p.current_status == PresenceStatus.IN)
        return {
            "total_records": len(self._records),
            "total_profiles": len(self._profiles),
            "currently_present": present
        }

    def clear_all_data(self):
        """Drop both collections and their blobs."""
        self._records = []
        self._profiles = []
        for key in (RECORDS_KEY, PROFILES_KEY):
            try:
                self.blobs.remove(key)
            except Exception as e:
                logger.error(f"[STORE] Failed to remove '{key}': {e}")
        logger.info("[STORE] All attendance data cleared")

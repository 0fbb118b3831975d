"""
Data Models for the Attendance Kiosk
====================================
Domain models (pydantic) and SQLAlchemy ORM tables.

Domain:
- AttendanceRecord: immutable log of one accepted check-in/check-out
- AttendeeProfile: current presence state and latest biometric data

Tables:
- storage_blobs: key/value JSON blobs backing the attendance store
- system_config: configurable system parameters
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Optional

import numpy as np
from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field
from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class EntryType(str, Enum):
    """Type of attendance event."""
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class PresenceStatus(str, Enum):
    """Current presence of an attendee."""
    IN = "IN"
    OUT = "OUT"


class VectorKind(str, Enum):
    """Vector kinds a profile can carry for matching."""
    BIOMETRIC = "biometric"
    EMBEDDING = "embedding"


def _vector_to_list(value):
    """Accept numpy arrays or any numeric sequence; store plain floats."""
    if value is None:
        return None
    return np.asarray(value, dtype=np.float64).ravel().tolist()


Vector = Annotated[Optional[List[float]], BeforeValidator(_vector_to_list)]


def _to_local_naive(value: datetime) -> datetime:
    """Timestamps are compared as naive local time; convert aware ones."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


LocalDatetime = Annotated[datetime, AfterValidator(_to_local_naive)]


class AttendanceRecord(BaseModel):
    """
    One accepted capture. Never mutated once created.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    attendee_id: str
    name: str
    email: str
    image: str = Field(..., description="Encoded still, usually a data URL")
    timestamp: LocalDatetime
    type: EntryType
    biometric_vector: Vector = None
    embedding_vector: Vector = None


class AttendeeProfile(BaseModel):
    """
    Durable identity of one attendee.
    current_status mirrors the type of the attendee's most recent record.
    """

    id: str
    name: str = ""
    email: str = ""
    last_image: str = ""
    biometric_vector: Vector = None
    embedding_vector: Vector = None
    current_status: PresenceStatus = PresenceStatus.OUT
    last_entry: Optional[LocalDatetime] = None
    last_exit: Optional[LocalDatetime] = None

    def vector(self, kind: VectorKind) -> Optional[List[float]]:
        return self.biometric_vector if kind == VectorKind.BIOMETRIC else self.embedding_vector


class StorageBlob(Base):
    """
    Named JSON blob.
    The attendance store keeps each of its collections in one row.
    """
    __tablename__ = 'storage_blobs'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<StorageBlob(key={self.key}, size={len(self.value or '')})>"


class SystemConfig(Base):
    """
    System configuration parameters.
    Allows runtime configuration without code changes.
    """
    __tablename__ = 'system_config'

    key = Column(String(100), primary_key=True)
    value = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<SystemConfig(key={self.key}, value={self.value})>"


# Default configuration values
DEFAULT_CONFIG = {
    "biometric_match_threshold": ("0.6", "Descriptor confidence needed for a biometric match"),
    "embedding_match_threshold": ("0.75", "Embedding confidence needed for an embedding match"),
    "pixel_match_threshold": ("0.8", "Pixel confidence needed for the last-resort image match"),
    "checkout_match_threshold": ("0.7", "Pixel confidence against today's entry needed to check out"),
    "pixel_compare_size": ("64", "Side of the square images are resampled to for pixel comparison"),
    "recent_records_limit": ("50", "Default page size of GET /attendance/records"),
}

"""Shared fixtures: synthetic stills, a controllable clock, stores and extractors."""

import io
from datetime import datetime, timedelta

import numpy as np
import pytest
from PIL import Image

from kiosk_backend.database import AttendanceStore, DatabaseManager, MemoryBlobStore
from kiosk_backend.recognition.extractors import FeatureExtractor
from kiosk_backend.recognition.similarity import encode_data_url


def png_bytes(color=(0, 0, 0), size=(32, 32)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def solid_image(color=(0, 0, 0), size=(32, 32)) -> str:
    """Lossless solid-colour still as a data URL."""
    return encode_data_url(png_bytes(color, size), "image/png")


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class StaticExtractor(FeatureExtractor):
    """Returns a fixed vector (or raises) and records what it was given."""

    name = "static"

    def __init__(self, vector=None, ready=True, error=None):
        super().__init__()
        self.vector = vector
        self.error = error
        self.calls = 0
        self.inputs = []
        self._ready = ready

    def load(self) -> bool:
        return self._ready

    def _extract_rgb(self, rgb):
        self.calls += 1
        self.inputs.append(rgb)
        if self.error:
            raise self.error
        return None if self.vector is None else np.asarray(self.vector, dtype=np.float32)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 6, 9, 0, 0))


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def store(blobs, clock):
    return AttendanceStore(blobs, clock=clock)


@pytest.fixture
def db_manager():
    db = DatabaseManager(db_path=":memory:")
    db.initialize()
    yield db
    db.close()

"""
Similarity Functions
====================
Pure routines turning a distance or difference into a confidence in [0, 1].

- euclidean_confidence: face descriptors (distance 0 -> confidence 1)
- cosine_confidence: image embeddings (similarity -1..1 -> 0..1)
- pixel_confidence: last-resort raw pixel comparison of two stills
"""

import base64
import binascii
import io
import logging
from typing import Optional, Sequence, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

PIXEL_COMPARE_SIZE = 64
DEFAULT_CONTENT_TYPE = "image/jpeg"

ImageInput = Union[str, bytes]


class ImageDecodeError(ValueError):
    """Raised when a captured still cannot be decoded."""


def _as_vector(value) -> Optional[np.ndarray]:
    if value is None:
        return None
    vector = np.asarray(value, dtype=np.float64).ravel()
    return vector if vector.size else None


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


def euclidean_confidence(a, b) -> float:
    """max(0, 1 - distance). Absent or mismatched vectors give 0."""
    va, vb = _as_vector(a), _as_vector(b)
    if va is None or vb is None or va.shape != vb.shape:
        return 0.0
    return max(0.0, 1.0 - euclidean_distance(va, vb))


def cosine_similarity(a, b) -> float:
    va, vb = _as_vector(a), _as_vector(b)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_confidence(a, b) -> float:
    """max(0, (cos + 1) / 2). Only defined for equal lengths, else 0."""
    va, vb = _as_vector(a), _as_vector(b)
    if va is None or vb is None or va.shape != vb.shape:
        return 0.0
    if np.linalg.norm(va) == 0 or np.linalg.norm(vb) == 0:
        return 0.0
    return max(0.0, (cosine_similarity(va, vb) + 1.0) / 2.0)


# ============== Images ==============

def detect_content_type(image_bytes: bytes) -> str:
    """MIME type of encoded image bytes, sniffed by Pillow. Unknown data is treated as JPEG."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            image_format = img.format
    except (UnidentifiedImageError, OSError, ValueError):
        return DEFAULT_CONTENT_TYPE
    return Image.MIME.get(image_format, DEFAULT_CONTENT_TYPE)


def encode_data_url(image_bytes: bytes, content_type: Optional[str] = None) -> str:
    """
    Wrap raw image bytes as a data URL, the format stored on records.
    The content type is detected from the bytes when not given.
    """
    content_type = content_type or detect_content_type(image_bytes)
    return f"data:{content_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"


def _image_bytes(image: ImageInput) -> bytes:
    if isinstance(image, (bytes, bytearray)):
        return bytes(image)
    if not isinstance(image, str) or not image:
        raise ImageDecodeError("empty image")

    payload = image
    if image.startswith("data:"):
        header, sep, payload = image.partition(",")
        if not sep or ";base64" not in header:
            raise ImageDecodeError("unsupported data URL")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"invalid base64 image: {e}") from e


def decode_image(image: ImageInput) -> Image.Image:
    """
    Decode a data URL, bare base64 text or raw bytes into an RGB image.

    Raises:
        ImageDecodeError: if the data is not a readable image
    """
    data = _image_bytes(image)
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageDecodeError(f"unreadable image: {e}") from e


def to_pixels(img: Image.Image, size: int = PIXEL_COMPARE_SIZE) -> np.ndarray:
    """Resample a decoded image to a size x size x 3 uint8 array."""
    resized = img.resize((size, size), Image.BILINEAR)
    return np.asarray(resized, dtype=np.uint8)


def load_pixels(image: ImageInput, size: int = PIXEL_COMPARE_SIZE) -> np.ndarray:
    """Decode and resample to a size x size x 3 uint8 array."""
    return to_pixels(decode_image(image), size)


def pixel_array_confidence(a: np.ndarray, b: np.ndarray) -> float:
    """1 - sum|a - b| / max possible difference, clamped at 0."""
    if a.shape != b.shape:
        return 0.0
    total_diff = np.abs(a.astype(np.int32) - b.astype(np.int32)).sum()
    max_diff = a.size * 255
    return max(0.0, 1.0 - float(total_diff) / max_diff)


def pixel_confidence(img_a: ImageInput, img_b: ImageInput, size: int = PIXEL_COMPARE_SIZE) -> float:
    """
    Crude appearance similarity of two stills.

    No alignment or normalization: the same face shot from a different
    distance scores low. Unreadable images score 0.
    """
    try:
        a = load_pixels(img_a, size)
        b = load_pixels(img_b, size)
    except ImageDecodeError as e:
        logger.warning(f"Pixel comparison skipped: {e}")
        return 0.0
    confidence = pixel_array_confidence(a, b)
    logger.debug(f"Pixel similarity: {confidence:.3f}")
    return confidence

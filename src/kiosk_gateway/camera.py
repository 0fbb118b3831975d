"""
Camera Capture
==============
OpenCV-backed capture device for the kiosk.

Exposes start/stop, an observable state and single-still capture as a
JPEG data URL, the format the attendance pipeline stores.
"""

import logging
import threading
from typing import Any, NamedTuple, Optional, Union

import cv2
import numpy as np

from kiosk_backend.recognition.similarity import encode_data_url

logger = logging.getLogger(__name__)

PREFERRED_WIDTH = 640
PREFERRED_HEIGHT = 480
JPEG_QUALITY = 80


class CameraState(NamedTuple):
    is_active: bool = False
    is_loading: bool = False
    error: Optional[str] = None
    stream: Any = None


class CameraCapture:
    """
    Usage:
        with CameraCapture(0) as camera:
            image = camera.capture_still()
    """

    def __init__(
        self,
        source: Union[int, str] = 0,
        width: int = PREFERRED_WIDTH,
        height: int = PREFERRED_HEIGHT,
        jpeg_quality: int = JPEG_QUALITY
    ):
        self.source = source
        self.width = width
        self.height = height
        self.jpeg_quality = jpeg_quality
        self.state = CameraState()
        self.lock = threading.Lock()

    def start_capture(self) -> bool:
        """Open the device. Failures are reported through state.error."""
        with self.lock:
            if self.state.is_active:
                return True

            self.state = CameraState(is_loading=True)
            cap = None
            try:
                cap = cv2.VideoCapture(self.source)
                if not cap.isOpened():
                    raise RuntimeError(f"Camera access denied or unavailable: {self.source}")

                cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
                cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

                self.state = CameraState(is_active=True, stream=cap)
                logger.info(f"Camera started: {self.source}")
                return True

            except Exception as e:
                if cap is not None:
                    cap.release()
                logger.error(f"Failed to start camera {self.source}: {e}")
                self.state = CameraState(error=str(e))
                return False

    def stop_capture(self):
        with self.lock:
            if self.state.stream is not None:
                self.state.stream.release()
                logger.info(f"Camera stopped: {self.source}")
            self.state = CameraState()

    def read_frame(self) -> Optional[np.ndarray]:
        """Latest BGR frame, or None when inactive or the read fails."""
        with self.lock:
            if not self.state.is_active or self.state.stream is None:
                return None
            ret, frame = self.state.stream.read()
        if not ret or frame is None:
            logger.warning("Camera returned no frame")
            return None
        return frame

    def encode_frame(self, frame: np.ndarray) -> Optional[str]:
        ok, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            logger.error("JPEG encoding failed")
            return None
        return encode_data_url(buffer.tobytes(), "image/jpeg")

    def capture_still(self) -> Optional[str]:
        """JPEG data URL of the current frame, or None without an active stream."""
        frame = self.read_frame()
        if frame is None:
            return None
        return self.encode_frame(frame)

    def __enter__(self):
        self.start_capture()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop_capture()
        return False

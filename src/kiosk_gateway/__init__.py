"""
Kiosk Gateway
=============
Capture-station side of the kiosk: camera access and the API client.
"""

from .camera import CameraCapture, CameraState
from .kiosk_client import KioskClient

__all__ = ['CameraCapture', 'CameraState', 'KioskClient']

"""
Attendance Kiosk Backend
========================
Identity resolution pipeline, attendance store and the kiosk HTTP API.
"""

__version__ = "1.0.0"

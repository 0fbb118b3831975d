"""
Kiosk Client for the Attendance API
===================================
Async client used by capture stations to talk to the kiosk backend.
"""

import aiohttp
import asyncio
import logging
import os
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_URL = os.environ.get("KIOSK_BACKEND_URL", "http://localhost:8000")


class KioskClient:
    """
    Async client for communicating with the Attendance Kiosk API.
    """

    def __init__(self, backend_url: str = DEFAULT_BACKEND_URL, timeout: float = 30):
        self.backend_url = backend_url.rstrip('/')
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    async def close(self):
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def health_check(self) -> Dict[str, Any]:
        """Check backend health status."""
        try:
            session = await self._get_session()
            async with session.get(f"{self.backend_url}/") as response:
                if response.status == 200:
                    return await response.json()
                return {"status": "error", "code": response.status}
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {"status": "offline", "error": str(e)}

    async def submit_attendance(
        self,
        name: str,
        email: str,
        image_bytes: bytes,
        content_type: str = "image/jpeg"
    ) -> Dict[str, Any]:
        """
        Send a capture to the backend for check-in/check-out.

        Args:
            name: Name entered on the kiosk form
            email: Email entered on the kiosk form
            image_bytes: Encoded still (JPEG or PNG bytes)

        Returns:
            Pipeline result from backend
        """
        async with self._lock:  # One capture in flight per kiosk
            try:
                session = await self._get_session()

                data = aiohttp.FormData()
                data.add_field('name', name)
                data.add_field('email', email)
                data.add_field(
                    'image',
                    image_bytes,
                    filename='capture.jpg' if content_type == "image/jpeg" else 'capture.png',
                    content_type=content_type
                )

                async with session.post(f"{self.backend_url}/attendance", data=data) as response:
                    if response.status == 200:
                        result = await response.json()
                        logger.info(f"Attendance result: {result.get('message', 'Unknown')}")
                        return result

                    error_text = await response.text()
                    logger.error(f"Attendance submission failed: {response.status} - {error_text}")
                    return {
                        "success": False,
                        "message": f"Backend error: {response.status}",
                        "error": error_text
                    }

            except asyncio.TimeoutError:
                logger.error("Attendance request timed out")
                return {"success": False, "message": "Request timed out", "error": "Timeout"}
            except aiohttp.ClientError as e:
                logger.error(f"Connection error: {e}")
                return {"success": False, "message": "Connection failed", "error": str(e)}

    async def _request_json(self, method: str, path: str, fallback: Dict[str, Any], **kwargs) -> Dict[str, Any]:
        """JSON body of a 200 response, otherwise `fallback` plus the status or error."""
        try:
            session = await self._get_session()
            async with session.request(method, f"{self.backend_url}{path}", **kwargs) as response:
                if response.status == 200:
                    return await response.json()
                logger.warning(f"{method} {path} returned {response.status}")
                return {**fallback, "code": response.status, "error": await response.text()}
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.error(f"{method} {path} failed: {e!r}")
            return {**fallback, "error": str(e) or type(e).__name__}

    async def recent_records(self, limit: int = 20) -> Dict[str, Any]:
        """Most recent attendance records, newest first."""
        return await self._request_json(
            "GET", "/attendance/records", {"records": [], "count": 0}, params={"limit": limit}
        )

    async def stats(self) -> Dict[str, Any]:
        return await self._request_json("GET", "/attendance/stats", {"success": False})

    async def clear_all(self) -> Dict[str, Any]:
        """Remove every record and profile on the backend (409 while a capture is running)."""
        return await self._request_json("DELETE", "/attendance", {"success": False})

"""
Kiosk Capture Utility
=====================
Check a person in or out from the command line.

Examples:
  kiosk-capture --name "Ann Lee" --email ann@example.com --image ./ann.jpg
  kiosk-capture --name "Ann Lee" --email ann@example.com --webcam
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import cv2

from .camera import CameraCapture
from .kiosk_client import DEFAULT_BACKEND_URL, KioskClient


PREVIEW_WINDOW = "Attendance Kiosk"


def _close_preview():
    try:
        cv2.destroyAllWindows()
    except cv2.error:
        # No GUI backend: no window was ever opened
        pass


def capture_from_webcam(source=0) -> Optional[bytes]:
    """
    Show the webcam and return JPEG bytes of the frame taken with SPACE.
    ESC cancels. Returns None when the camera or the preview window is
    unavailable.
    """
    print("Press SPACE to capture, ESC to cancel")

    camera = CameraCapture(source)
    if not camera.start_capture():
        print(f"Error: Could not open webcam ({camera.state.error})")
        return None

    captured = None
    try:
        while True:
            frame = camera.read_frame()
            if frame is None:
                break

            display = frame.copy()
            cv2.putText(display, "SPACE: Capture | ESC: Cancel", (10, 30),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 1)
            cv2.imshow(PREVIEW_WINDOW, display)

            key = cv2.waitKey(1) & 0xFF
            if key == 27:  # ESC
                print("Cancelled")
                break
            elif key == 32:  # SPACE
                ok, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, camera.jpeg_quality])
                if ok:
                    captured = buffer.tobytes()
                break
    except cv2.error as e:
        print(f"Error: Webcam preview unavailable, use --image instead ({e})")
        captured = None
    finally:
        camera.stop_capture()
        _close_preview()

    return captured


def format_result(result: dict) -> str:
    if result.get("success"):
        entry_type = result.get("entry_type", "?")
        method = result.get("match_method", "?")
        return f"✓ {entry_type}: {result.get('message')} (matched by {method})"
    reason = result.get("reason") or result.get("error") or "unknown"
    return f"✗ {result.get('message', 'Failed')} [{reason}]"


async def submit(backend_url: str, name: str, email: str, image_bytes: bytes, content_type: str) -> dict:
    async with KioskClient(backend_url) as client:
        return await client.submit_attendance(name, email, image_bytes, content_type=content_type)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Attendance kiosk capture utility")
    parser.add_argument("--name", type=str, required=True, help="Attendee name")
    parser.add_argument("--email", type=str, required=True, help="Attendee email")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", type=str, help="Path to a JPEG/PNG still")
    source.add_argument("--webcam", action="store_true", help="Capture from webcam")
    parser.add_argument("--camera", type=int, default=0, help="Webcam index")
    parser.add_argument("--backend", type=str, default=DEFAULT_BACKEND_URL, help="Backend URL")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if not args.name.strip():
        print("Error: --name must not be empty")
        return 2
    if "@" not in args.email:
        print("Error: --email must be a valid email address")
        return 2

    if args.image:
        path = Path(args.image)
        if not path.exists():
            print(f"Error: File not found: {path}")
            return 1
        image_bytes = path.read_bytes()
        content_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
    else:
        image_bytes = capture_from_webcam(args.camera)
        content_type = "image/jpeg"
        if image_bytes is None:
            return 1

    print(f"Submitting attendance for {args.name}...")
    result = asyncio.run(submit(args.backend, args.name, args.email, image_bytes, content_type))
    print(format_result(result))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())

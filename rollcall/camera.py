from __future__ import annotations

import base64
import os
import time
from typing import Optional, Sequence

import cv2
import numpy as np

from .exceptions import CameraUnavailable

_BACKEND_CONSTANTS = {
    "auto": "CAP_ANY",
    "any": "CAP_ANY",
    "v4l2": "CAP_V4L2",
    "dshow": "CAP_DSHOW",
    "directshow": "CAP_DSHOW",
    "msmf": "CAP_MSMF",
}


def _default_backends() -> tuple[str, ...]:
    if os.name == "nt":
        return ("dshow", "msmf", "auto")
    return ("auto", "v4l2")


def resolve_backends(names: Sequence[str] = ()) -> list[tuple[str, int]]:
    """Map backend names to OpenCV API preferences in the given order.

    Unknown names, backends missing from this OpenCV build and aliases of an
    already listed backend are dropped. Falls back to ``CAP_ANY``.
    """
    resolved: list[tuple[str, int]] = []
    seen: set[int] = set()
    for name in (item.strip().lower() for item in (names or _default_backends())):
        api = getattr(cv2, _BACKEND_CONSTANTS.get(name, ""), None)
        if api is None or api in seen:
            continue
        seen.add(api)
        resolved.append((name, api))
    return resolved or [("auto", cv2.CAP_ANY)]


def _delivers_frames(cap: cv2.VideoCapture, attempts: int = 6, pause: float = 0.03) -> bool:
    # isOpened() alone is not enough on some drivers
    for _ in range(attempts):
        ok, frame = cap.read()
        if ok and frame is not None:
            return True
        time.sleep(pause)
    return False


def open_capture(camera_index: int, backends: Sequence[str] = ()) -> tuple[cv2.VideoCapture, str]:
    tried: list[str] = []
    for name, api in resolve_backends(backends):
        tried.append(name)
        cap = cv2.VideoCapture(camera_index, api)
        if cap.isOpened() and _delivers_frames(cap):
            return cap, name
        cap.release()
    raise CameraUnavailable(f"Webcam {camera_index} delivered no frames (backends tried: {', '.join(tried)}).")


class VideoTrack:
    kind = "video"

    def __init__(self, cap: cv2.VideoCapture):
        self._cap: Optional[cv2.VideoCapture] = cap

    @property
    def ready_state(self) -> str:
        return "live" if self._cap is not None else "ended"

    def stop(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


class CameraStream:
    """An opened webcam exposing the stop-every-track release contract."""

    def __init__(
        self,
        camera_index: int = 0,
        width: int = 640,
        height: int = 480,
        fps: int = 30,
        backends: Sequence[str] = (),
    ):
        self.camera_index = camera_index
        self.backends = tuple(backends)
        self.width = width
        self.height = height
        self.fps = fps
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self._tracks: list[VideoTrack] = []

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def tracks(self) -> list[VideoTrack]:
        return list(self._tracks)

    def open(self) -> "CameraStream":
        self.cap, self.backend_name = open_capture(self.camera_index, self.backends)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        cv2.setUseOptimized(True)
        self._tracks = [VideoTrack(self.cap)]
        return self

    def read(self) -> np.ndarray:
        if self.cap is None:
            raise CameraUnavailable("Webcam stream is not initialized.")

        success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraUnavailable("Failed to read frame from webcam.")
        return frame

    def release(self) -> None:
        for track in self._tracks:
            track.stop()
        self.cap = None


def encode_jpeg_data_url(frame: np.ndarray, quality: int = 80) -> str:
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise CameraUnavailable("Failed to encode preview image.")
    return "data:image/jpeg;base64," + base64.b64encode(buffer.tobytes()).decode("ascii")

"""Client-side lifecycle of one face registration or recognition interaction.

A session walks ``IDLE -> DETECTING -> FACE_DETECTED -> CAPTURED`` and then
either ``CONFIRMED`` or ``DISCARDED``. The camera is acquired on ``start()``
and released by ``teardown()`` from any state; the session is also a context
manager so every exit path releases the device.

Only one extraction may be outstanding at a time. Frames offered while the
previous one is still being processed are dropped, and results that arrive
after a teardown are thrown away rather than handed to the matcher.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import numpy as np

from .contracts import CameraDevice
from .embedding import EmbeddingProvider, ProviderState
from .exceptions import CameraUnavailable, InvalidTransition, ModelsNotLoaded
from .logger import setup_logger
from .types import Detection, FaceDescriptor


class CaptureState(str, Enum):
    LOADING = "loading"
    IDLE = "idle"
    DETECTING = "detecting"
    FACE_DETECTED = "face_detected"
    CAPTURED = "captured"
    CONFIRMED = "confirmed"
    DISCARDED = "discarded"


class CaptureMode(str, Enum):
    REGISTRATION = "registration"
    RECOGNITION = "recognition"


_TRANSITIONS: dict[CaptureState, frozenset[CaptureState]] = {
    CaptureState.IDLE: frozenset({CaptureState.DETECTING}),
    CaptureState.DETECTING: frozenset({CaptureState.FACE_DETECTED}),
    CaptureState.FACE_DETECTED: frozenset({CaptureState.DETECTING, CaptureState.CAPTURED}),
    CaptureState.CAPTURED: frozenset(
        {CaptureState.CONFIRMED, CaptureState.DETECTING, CaptureState.DISCARDED}
    ),
    CaptureState.CONFIRMED: frozenset({CaptureState.DETECTING}),
    CaptureState.DISCARDED: frozenset({CaptureState.DETECTING}),
}

_DETECTION_STATES = frozenset({CaptureState.DETECTING, CaptureState.FACE_DETECTED})

DEFAULT_DETECTION_FLOOR = 0.5

CameraFactory = Callable[[], CameraDevice]
PreviewEncoder = Callable[[np.ndarray], str]
StateListener = Callable[[CaptureState, CaptureState], None]


@dataclass(frozen=True)
class CapturedFace:
    descriptor: FaceDescriptor
    detection_score: float
    captured_at: datetime
    preview: Optional[str] = None


class CaptureSession:
    def __init__(
        self,
        provider: EmbeddingProvider,
        camera_factory: CameraFactory,
        mode: CaptureMode = CaptureMode.RECOGNITION,
        detection_floor: float = DEFAULT_DETECTION_FLOOR,
        preview_encoder: Optional[PreviewEncoder] = None,
        on_state_change: Optional[StateListener] = None,
    ):
        self.provider = provider
        self.camera_factory = camera_factory
        self.mode = mode
        self.detection_floor = detection_floor
        self.preview_encoder = preview_encoder
        self.on_state_change = on_state_change
        self.logger = setup_logger(self.__class__.__name__)

        self._lock = threading.RLock()
        self._state = CaptureState.IDLE
        self._camera: Optional[CameraDevice] = None
        self._generation = 0
        self._busy = False
        self._frame: Optional[np.ndarray] = None
        self._detection: Optional[Detection] = None
        self._captured: Optional[CapturedFace] = None

        self.frames_dropped = 0
        self.last_face_count = 0

    def __enter__(self) -> "CaptureSession":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    @property
    def state(self) -> CaptureState:
        with self._lock:
            if self._state is CaptureState.IDLE and not self.provider.ready:
                return CaptureState.LOADING
            return self._state

    @property
    def camera(self) -> Optional[CameraDevice]:
        return self._camera

    @property
    def captured(self) -> Optional[CapturedFace]:
        return self._captured

    @property
    def status_message(self) -> str:
        state = self.state
        if state is CaptureState.LOADING:
            if self.provider.state is ProviderState.FAILED:
                return "Face recognition models failed to load"
            return "Loading face recognition models..."
        if state is CaptureState.DETECTING:
            if self.last_face_count > 1:
                return "Only one face should be visible"
            return "No face detected"
        return {
            CaptureState.IDLE: "Camera idle",
            CaptureState.FACE_DETECTED: "Face detected, hold still",
            CaptureState.CAPTURED: "Face captured, confirm or retry",
            CaptureState.CONFIRMED: "Face confirmed",
            CaptureState.DISCARDED: "Capture discarded",
        }[state]

    def start(self) -> None:
        with self._lock:
            if not self.provider.ready:
                raise ModelsNotLoaded(f"Embedding provider is {self.provider.state.value}.")
            if self._state is not CaptureState.IDLE:
                raise InvalidTransition(f"Cannot start a session that is {self._state.value}.")

            try:
                camera = self.camera_factory()
            except CameraUnavailable:
                raise
            except OSError as exc:
                raise CameraUnavailable(f"Camera access failed: {exc}") from exc

            self._camera = camera
            self._transition(CaptureState.DETECTING)
            self.logger.info("Capture session started (%s)", self.mode.value)

    def read_frame(self) -> np.ndarray:
        camera = self._camera
        if camera is None:
            raise CameraUnavailable("Camera is not acquired.")
        return camera.read()

    def process_next(self) -> Optional[CaptureState]:
        return self.process_frame(self.read_frame())

    def process_frame(self, frame: np.ndarray) -> Optional[CaptureState]:
        """Run detection on ``frame`` and update the detecting states.

        Returns the resulting state, or ``None`` when the frame was dropped
        (another extraction in flight, session not detecting, or torn down
        while the extraction ran).
        """
        with self._lock:
            if self._state not in _DETECTION_STATES:
                return None
            if self._busy:
                self.frames_dropped += 1
                return None
            self._busy = True
            generation = self._generation

        try:
            detections = self.provider.detect_faces(frame)
        finally:
            with self._lock:
                if generation == self._generation:
                    self._busy = False

        with self._lock:
            if generation != self._generation or self._state not in _DETECTION_STATES:
                self.logger.debug("Discarding detection result that arrived after teardown")
                return None

            usable = [d for d in detections if d.detection_score > self.detection_floor]
            self.last_face_count = len(usable)

            if len(usable) == 1:
                self._frame = frame
                self._detection = usable[0]
                if self._state is CaptureState.DETECTING:
                    self._transition(CaptureState.FACE_DETECTED)
            else:
                self._frame = None
                self._detection = None
                if self._state is CaptureState.FACE_DETECTED:
                    self._transition(CaptureState.DETECTING)
            return self._state

    def capture(self) -> CapturedFace:
        with self._lock:
            if self._state is not CaptureState.FACE_DETECTED or self._detection is None:
                raise InvalidTransition(f"Cannot capture while {self.state.value}.")

            preview = None
            if self.mode is CaptureMode.REGISTRATION and self.preview_encoder is not None:
                preview = self.preview_encoder(self._frame)

            self._captured = CapturedFace(
                descriptor=self._detection.descriptor,
                detection_score=self._detection.detection_score,
                captured_at=datetime.now(timezone.utc),
                preview=preview,
            )
            self._transition(CaptureState.CAPTURED)
            return self._captured

    def confirm(self) -> CapturedFace:
        with self._lock:
            if self._state is not CaptureState.CAPTURED or self._captured is None:
                raise InvalidTransition(f"Cannot confirm while {self.state.value}.")
            self._transition(CaptureState.CONFIRMED)
            return self._captured

    def accept_automatically(self) -> CapturedFace:
        if self.mode is not CaptureMode.RECOGNITION:
            raise InvalidTransition("Registration captures require explicit confirmation.")
        with self._lock:
            self.capture()
            return self.confirm()

    def retry(self) -> None:
        with self._lock:
            if self._state not in (CaptureState.CAPTURED, CaptureState.DISCARDED):
                raise InvalidTransition(f"Cannot retry while {self.state.value}.")
            self._clear_capture()
            self._transition(CaptureState.DETECTING)

    def resume(self) -> None:
        with self._lock:
            if self._state is not CaptureState.CONFIRMED:
                raise InvalidTransition(f"Cannot resume while {self.state.value}.")
            self._clear_capture()
            self._transition(CaptureState.DETECTING)

    def discard(self) -> None:
        with self._lock:
            if self._state is not CaptureState.CAPTURED:
                raise InvalidTransition(f"Cannot discard while {self.state.value}.")
            self._clear_capture()
            self._transition(CaptureState.DISCARDED)

    def teardown(self) -> None:
        with self._lock:
            self._generation += 1
            self._busy = False
            camera, self._camera = self._camera, None
            previous = self._state
            self._clear_capture()
            self._state = CaptureState.IDLE
            try:
                if camera is not None:
                    camera.release()
            finally:
                if previous is not CaptureState.IDLE:
                    self.logger.info("Capture session torn down from %s", previous.value)
                    self._notify(previous, CaptureState.IDLE)

    def _clear_capture(self) -> None:
        self._frame = None
        self._detection = None
        self._captured = None
        self.last_face_count = 0

    def _transition(self, target: CaptureState) -> None:
        previous = self._state
        if target not in _TRANSITIONS.get(previous, frozenset()):
            raise InvalidTransition(f"Illegal capture transition {previous.value} -> {target.value}.")
        self._state = target
        self.logger.debug("Capture state %s -> %s", previous.value, target.value)
        self._notify(previous, target)

    def _notify(self, previous: CaptureState, target: CaptureState) -> None:
        if self.on_state_change is not None:
            self.on_state_change(previous, target)

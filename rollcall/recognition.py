from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import numpy as np

from .capture import CaptureSession, CaptureState
from .contracts import RosterProvider
from .exceptions import NotEnrolled
from .logger import setup_logger
from .matcher import FaceMatcher
from .reconciler import AttendanceReconciler, recognition_note
from .sampler import FrameSampler
from .types import AttendanceRecord, AttendanceStatus, MatchResult, Provenance, RosterEntry


@dataclass(frozen=True)
class RecognitionEvent:
    result: MatchResult
    message: str
    record: Optional[AttendanceRecord] = None
    created: Optional[bool] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def marked(self) -> bool:
        return self.record is not None


class RecognitionLoop:
    """Live attendance for one lesson.

    Frames come from a ``FrameSampler``; each frame with exactly one usable
    face is captured, accepted, matched against a cached roster snapshot and,
    when the match is confident enough, handed to the reconciler. The capture
    session resumes detecting after every frame, and the camera is torn down
    on any exit from ``run()``.
    """

    def __init__(
        self,
        session: CaptureSession,
        roster: RosterProvider,
        reconciler: AttendanceReconciler,
        lesson_id: str,
        matcher: Optional[FaceMatcher] = None,
        auto_mark_confidence: float = 0.7,
        remark_cooldown_seconds: float = 5.0,
        roster_refresh_seconds: float = 20.0,
        interval_seconds: float = 0.2,
        max_idle_seconds: Optional[float] = None,
        on_result: Optional[Callable[[RecognitionEvent], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.roster = roster
        self.reconciler = reconciler
        self.lesson_id = lesson_id
        self.matcher = matcher or FaceMatcher()
        self.auto_mark_confidence = auto_mark_confidence
        self.remark_cooldown_seconds = remark_cooldown_seconds
        self.roster_refresh_seconds = roster_refresh_seconds
        self.interval_seconds = interval_seconds
        self.max_idle_seconds = max_idle_seconds
        self.on_result = on_result
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)

        self.last_attempt_times: Dict[str, float] = {}
        self._roster: Optional[tuple[RosterEntry, ...]] = None
        self._roster_loaded_at = 0.0
        self._last_activity = clock()

    def roster_snapshot(self) -> tuple[RosterEntry, ...]:
        now = self.clock()
        if self._roster is None or now - self._roster_loaded_at >= self.roster_refresh_seconds:
            self._roster = tuple(self.roster.get_roster_for_session(self.lesson_id))
            self._roster_loaded_at = now
            enrolled = sum(1 for entry in self._roster if entry.descriptor is not None)
            if not enrolled:
                self.logger.warning("No registered faces for lesson %s", self.lesson_id)
            self.logger.debug("Roster refreshed: %d entries, %d with face data", len(self._roster), enrolled)
        return self._roster

    def invalidate_roster(self) -> None:
        self._roster = None

    def idle_expired(self) -> bool:
        if self.max_idle_seconds is None:
            return False
        return self.clock() - self._last_activity >= self.max_idle_seconds

    def step(self, frame: np.ndarray) -> Optional[RecognitionEvent]:
        if self.session.process_frame(frame) is not CaptureState.FACE_DETECTED:
            return None

        captured = self.session.accept_automatically()
        try:
            result = self.matcher.match(captured.descriptor, self.roster_snapshot())
        finally:
            self.session.resume()

        if not result.matched:
            return self._emit(RecognitionEvent(result=result, message="Face not recognized"))

        self._last_activity = self.clock()
        identity = result.identity
        if result.confidence <= self.auto_mark_confidence:
            return self._emit(
                RecognitionEvent(
                    result=result,
                    message=f"Low confidence match: {identity.display_name} ({result.confidence_percent}%)",
                )
            )

        now = self.clock()
        last_try = self.last_attempt_times.get(identity.id)
        if last_try is not None and now - last_try < self.remark_cooldown_seconds:
            return None
        self.last_attempt_times[identity.id] = now

        try:
            outcome = self.reconciler.reconcile(
                identity.id,
                self.lesson_id,
                AttendanceStatus.PRESENT,
                Provenance.AUTOMATIC,
                recognition_note(result.confidence),
            )
        except NotEnrolled:
            self.logger.warning("Matched %s but the student is no longer enrolled", identity.id)
            self.invalidate_roster()
            return self._emit(
                RecognitionEvent(result=result, message=f"{identity.display_name} is not enrolled in this class")
            )

        verb = "marked" if outcome.created else "updated"
        return self._emit(
            RecognitionEvent(
                result=result,
                message=f"Attendance {verb}: {identity.display_name} ({result.confidence_percent}%)",
                record=outcome.record,
                created=outcome.created,
            )
        )

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        self._last_activity = self.clock()
        self.logger.info("Starting live recognition for lesson %s", self.lesson_id)

        with self.session, FrameSampler(self.session.read_frame, self.interval_seconds) as sampler:
            while not stop_event.is_set():
                packet = sampler.get(timeout=self.interval_seconds)
                if sampler.error is not None:
                    raise sampler.error
                if packet is not None:
                    self.step(packet.frame)
                if self.idle_expired():
                    self.logger.info("No recognized face for %.0fs, stopping", self.max_idle_seconds)
                    break

        self.logger.info(
            "Live recognition stopped (%d frames read, %d dropped)",
            sampler.frames_read,
            sampler.frames_dropped + self.session.frames_dropped,
        )

    def _emit(self, event: RecognitionEvent) -> RecognitionEvent:
        if self.on_result is not None:
            self.on_result(event)
        return event

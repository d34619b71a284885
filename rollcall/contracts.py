"""Interfaces the attendance core consumes from its collaborators."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

import numpy as np

from .types import AttendanceRecord, Identity, RosterEntry


class RosterProvider(Protocol):
    """Supplies enrolled identities and their stored descriptors for a lesson."""

    def get_roster_for_session(self, session_id: str) -> list[RosterEntry]:
        """Return the roster, raising ``SessionNotFound`` if the lesson is absent."""
        ...

    def session_exists(self, session_id: str) -> bool:
        ...

    def is_active_member(self, identity_id: str, session_id: str) -> bool:
        ...


class AttendanceStore(Protocol):
    def find_record(self, identity_id: str, session_id: str) -> Optional[AttendanceRecord]:
        ...

    def upsert_record(self, record: AttendanceRecord) -> tuple[AttendanceRecord, bool]:
        """Insert or update the single record keyed by (identity_id, session_id).

        Returns the stored record and whether this call inserted it. The flag
        must come from the write itself, not from an earlier lookup.
        """
        ...

    def list_for_session(self, session_id: str) -> list[AttendanceRecord]:
        ...


class AuditTrail(Protocol):
    """Fire-and-forget security/audit event sink."""

    def record_event(
        self,
        kind: str,
        severity: str,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...


class MediaTrack(Protocol):
    kind: str

    @property
    def ready_state(self) -> str:
        """Either ``"live"`` or ``"ended"``."""
        ...

    def stop(self) -> None:
        ...


class CameraDevice(Protocol):
    """An acquired camera stream, exclusively owned by one capture session."""

    @property
    def tracks(self) -> Sequence[MediaTrack]:
        ...

    def read(self) -> np.ndarray:
        ...

    def release(self) -> None:
        """Stop every track and detach the video sink before returning."""
        ...


class StudentDirectory(Protocol):
    """Owns the stored face data of each student."""

    def get_student(self, student_id: str) -> Identity:
        """Return the student, raising ``StudentNotFound`` if absent."""
        ...

    def store_face_data(
        self,
        student_id: str,
        stored_descriptor: Optional[str],
        photo_url: Optional[str],
        updated_at: Optional[datetime],
    ) -> None:
        ...

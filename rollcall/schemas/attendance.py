from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..types import AttendanceRecord, AttendanceStatus, Provenance


class ManualAttendanceRequest(BaseModel):
    student_id: str = Field(min_length=1)
    lesson_id: str = Field(min_length=1)
    status: AttendanceStatus = AttendanceStatus.PRESENT
    notes: str | None = None


class AttendanceResponse(BaseModel):
    id: str
    student_id: str
    lesson_id: str
    status: AttendanceStatus
    marked_at: datetime
    provenance: Provenance
    notes: str | None = None
    created: bool | None = None

    @classmethod
    def from_record(cls, record: AttendanceRecord, created: bool | None = None) -> "AttendanceResponse":
        return cls(
            id=record.id,
            student_id=record.identity_id,
            lesson_id=record.session_id,
            status=record.status,
            marked_at=record.marked_at,
            provenance=record.provenance,
            notes=record.note,
            created=created,
        )

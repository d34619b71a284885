"""SQLAlchemy-backed implementations of the attendance collaborators.

Each adapter works on a caller-owned ``Session`` and commits its own writes.
Driver errors are rolled back and re-raised as ``PersistenceError``.
"""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..audit import LoggingAuditTrail
from ..descriptors import DescriptorCodec
from ..exceptions import DescriptorValidationError, PersistenceError, SessionNotFound, StudentNotFound
from ..logger import setup_logger
from ..types import AttendanceRecord, AttendanceStatus, Identity, Provenance, RosterEntry
from .models import Attendance, Enrollment, Lesson, SecurityEvent, Student

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite drops tzinfo on the way back.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def translate_errors(db: Session, action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"{action} failed: {exc}") from exc


def _to_record(row: Attendance) -> AttendanceRecord:
    return AttendanceRecord(
        id=row.id,
        identity_id=row.student_id,
        session_id=row.lesson_id,
        status=AttendanceStatus(row.status),
        marked_at=_aware(row.marked_at),
        provenance=Provenance.AUTOMATIC if row.marked_by_facial_recognition else Provenance.MANUAL,
        note=row.notes,
    )


class SqlRosterProvider:
    def __init__(self, db: Session, codec: DescriptorCodec):
        self.db = db
        self.codec = codec
        self.logger = setup_logger(self.__class__.__name__)

    def session_exists(self, session_id: str) -> bool:
        with translate_errors(self.db, "Lesson lookup"):
            return self.db.get(Lesson, session_id) is not None

    def is_active_member(self, identity_id: str, session_id: str) -> bool:
        stmt = (
            select(Enrollment.id)
            .join(Lesson, Lesson.class_id == Enrollment.class_id)
            .where(
                Lesson.id == session_id,
                Enrollment.student_id == identity_id,
                Enrollment.status == "active",
            )
        )
        with translate_errors(self.db, "Enrollment lookup"):
            return self.db.scalar(stmt) is not None

    def get_roster_for_session(self, session_id: str) -> list[RosterEntry]:
        with translate_errors(self.db, "Roster query"):
            lesson = self.db.get(Lesson, session_id)
            if lesson is None:
                raise SessionNotFound(f"Lesson '{session_id}' does not exist.")
            students = self.db.scalars(
                select(Student)
                .join(Enrollment, Enrollment.student_id == Student.id)
                .where(Enrollment.class_id == lesson.class_id, Enrollment.status == "active")
                .order_by(Student.name, Student.id)
            ).all()

        return [
            RosterEntry(
                identity=Identity(id=student.id, display_name=student.name),
                descriptor=self._decode(student),
                updated_at=_aware(student.face_data_updated_at),
            )
            for student in students
        ]

    def _decode(self, student: Student):
        if not student.face_descriptor:
            return None
        try:
            return self.codec.decode(student.face_descriptor)
        except DescriptorValidationError as exc:
            self.logger.warning("Ignoring stored face data for %s: %s", student.id, exc)
            return None


class SqlAttendanceStore:
    def __init__(self, db: Session):
        self.db = db

    def find_record(self, identity_id: str, session_id: str) -> Optional[AttendanceRecord]:
        with translate_errors(self.db, "Attendance lookup"):
            row = self.db.scalar(
                select(Attendance).where(
                    Attendance.student_id == identity_id,
                    Attendance.lesson_id == session_id,
                )
            )
        return _to_record(row) if row is not None else None

    def upsert_record(self, record: AttendanceRecord) -> tuple[AttendanceRecord, bool]:
        # A conflicting row keeps its own id, so getting this one back means we inserted.
        candidate_id = str(uuid.uuid4())
        values = {
            "id": candidate_id,
            "student_id": record.identity_id,
            "lesson_id": record.session_id,
            "status": record.status.value,
            "marked_at": record.marked_at,
            "marked_by_facial_recognition": record.provenance is Provenance.AUTOMATIC,
            "notes": record.note,
        }
        insert = _UPSERT_INSERTS.get(self.db.get_bind().dialect.name)

        with translate_errors(self.db, "Attendance upsert"):
            if insert is None:
                created = self._merge(values)
            else:
                stmt = insert(Attendance).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["student_id", "lesson_id"],
                    set_={
                        "status": stmt.excluded.status,
                        "marked_at": stmt.excluded.marked_at,
                        "marked_by_facial_recognition": stmt.excluded.marked_by_facial_recognition,
                        "notes": stmt.excluded.notes,
                    },
                ).returning(Attendance.id)
                created = self.db.execute(stmt).scalar_one() == candidate_id
            self.db.commit()
            # The session may hold a stale copy from an earlier lookup.
            self.db.expire_all()

        saved = self.find_record(record.identity_id, record.session_id)
        if saved is None:
            raise PersistenceError("Attendance upsert did not persist a record.")
        return saved, created

    def list_for_session(self, session_id: str) -> list[AttendanceRecord]:
        with translate_errors(self.db, "Attendance listing"):
            rows = self.db.scalars(
                select(Attendance).where(Attendance.lesson_id == session_id).order_by(Attendance.marked_at)
            ).all()
        return [_to_record(row) for row in rows]

    def _merge(self, values: dict[str, Any]) -> bool:
        row = self.db.scalar(
            select(Attendance)
            .where(
                Attendance.student_id == values["student_id"],
                Attendance.lesson_id == values["lesson_id"],
            )
            .with_for_update()
        )
        if row is None:
            self.db.add(Attendance(**values))
            self.db.flush()
            return True
        for key in ("status", "marked_at", "marked_by_facial_recognition", "notes"):
            setattr(row, key, values[key])
        return False


class SqlStudentDirectory:
    def __init__(self, db: Session):
        self.db = db

    def _student(self, student_id: str) -> Student:
        with translate_errors(self.db, "Student lookup"):
            student = self.db.get(Student, student_id)
        if student is None:
            raise StudentNotFound(f"Student '{student_id}' does not exist.")
        return student

    def get_student(self, student_id: str) -> Identity:
        student = self._student(student_id)
        return Identity(id=student.id, display_name=student.name)

    def store_face_data(
        self,
        student_id: str,
        stored_descriptor: Optional[str],
        photo_url: Optional[str],
        updated_at: Optional[datetime],
    ) -> None:
        student = self._student(student_id)
        with translate_errors(self.db, "Face data update"):
            student.face_descriptor = stored_descriptor
            student.photo_url = photo_url
            student.face_data_updated_at = updated_at
            self.db.commit()


class SqlSecurityEventLog:
    """Persists security events and mirrors them to the JSON audit log."""

    def __init__(
        self,
        db: Session,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self.db = db
        self.user_id = user_id
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.mirror = LoggingAuditTrail()

    def record_event(
        self,
        kind: str,
        severity: str,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        with translate_errors(self.db, "Security event write"):
            self.db.add(
                SecurityEvent(
                    user_id=self.user_id,
                    event_type=kind,
                    severity=severity,
                    description=description,
                    metadata_json=dict(metadata or {}),
                    ip_address=self.ip_address,
                    user_agent=self.user_agent,
                    timestamp=datetime.now(timezone.utc),
                )
            )
            self.db.commit()
        self.mirror.record_event(kind, severity, description, metadata)

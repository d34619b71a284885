from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .contracts import AttendanceStore, AuditTrail, RosterProvider
from .exceptions import NotEnrolled, PersistenceError, SessionNotFound
from .logger import setup_logger
from .types import AttendanceRecord, AttendanceStatus, Provenance

AUDIT_KIND_BY_PROVENANCE = {
    Provenance.AUTOMATIC: "facial_recognition_attendance",
    Provenance.MANUAL: "manual_attendance",
}


def recognition_note(confidence: float) -> str:
    return f"Face recognition ({int(round(confidence * 100))}% confidence)"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MarkOutcome:
    record: AttendanceRecord
    created: bool


class AttendanceReconciler:
    """Turns a mark request into exactly one attendance record per student and lesson.

    The lesson must exist and the student must be an active member of its
    class. A repeated mark overwrites status, timestamp, provenance and note
    of the existing record instead of inserting a second one. Store errors
    propagate unchanged; audit failures are logged and never undo a write.
    """

    def __init__(
        self,
        roster: RosterProvider,
        store: AttendanceStore,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.roster = roster
        self.store = store
        self.audit = audit
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)

    def mark_present(
        self,
        identity_id: str,
        session_id: str,
        provenance: Provenance = Provenance.AUTOMATIC,
        note: Optional[str] = None,
    ) -> AttendanceRecord:
        return self.mark(identity_id, session_id, AttendanceStatus.PRESENT, provenance, note)

    def mark(
        self,
        identity_id: str,
        session_id: str,
        status: AttendanceStatus = AttendanceStatus.PRESENT,
        provenance: Provenance = Provenance.MANUAL,
        note: Optional[str] = None,
    ) -> AttendanceRecord:
        return self.reconcile(identity_id, session_id, status, provenance, note).record

    def reconcile(
        self,
        identity_id: str,
        session_id: str,
        status: AttendanceStatus,
        provenance: Provenance,
        note: Optional[str] = None,
    ) -> MarkOutcome:
        if not self.roster.session_exists(session_id):
            raise SessionNotFound(f"Lesson '{session_id}' does not exist.")
        if not self.roster.is_active_member(identity_id, session_id):
            raise NotEnrolled(f"Student '{identity_id}' is not enrolled in lesson '{session_id}'.")

        record = AttendanceRecord(
            identity_id=identity_id,
            session_id=session_id,
            status=AttendanceStatus(status),
            marked_at=self.clock(),
            provenance=Provenance(provenance),
            note=note,
        )
        saved, created = self.store.upsert_record(record)
        outcome = MarkOutcome(record=saved, created=created)

        self.logger.info(
            "Attendance %s for %s in %s (%s, %s)",
            "created" if outcome.created else "updated",
            identity_id,
            session_id,
            saved.status.value,
            saved.provenance.value,
        )
        self._record_audit(outcome)
        return outcome

    def _record_audit(self, outcome: MarkOutcome) -> None:
        if self.audit is None:
            return
        record = outcome.record
        action = "created" if outcome.created else "updated"
        try:
            self.audit.record_event(
                AUDIT_KIND_BY_PROVENANCE[record.provenance],
                "low",
                f"Attendance {action} for student {record.identity_id} in lesson {record.session_id}",
                {
                    "student_id": record.identity_id,
                    "lesson_id": record.session_id,
                    "status": record.status.value,
                    "provenance": record.provenance.value,
                    "action": action,
                    "note": record.note,
                },
            )
        except PersistenceError:
            self.logger.exception("Failed to record attendance audit event")

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...db.repository import SqlAttendanceStore, SqlRosterProvider, SqlStudentDirectory
from ...exceptions import SessionNotFound
from ...reconciler import AttendanceReconciler
from ...schemas.attendance import AttendanceResponse, ManualAttendanceRequest
from ...schemas.auth import CurrentPrincipal
from ...types import Provenance
from ...ws.manager import event_broadcaster
from ..deps import db_session, ensure_lesson_and_student, get_directory, get_reconciler, get_roster, require_roles

router = APIRouter(prefix="/attendance", tags=["attendance"])


@router.post("", response_model=AttendanceResponse)
async def mark_manually(
    payload: ManualAttendanceRequest,
    _principal: CurrentPrincipal = Depends(require_roles("admin", "teacher")),
    reconciler: AttendanceReconciler = Depends(get_reconciler),
    roster: SqlRosterProvider = Depends(get_roster),
    directory: SqlStudentDirectory = Depends(get_directory),
):
    ensure_lesson_and_student(roster, directory, payload.lesson_id, payload.student_id)
    outcome = reconciler.reconcile(
        payload.student_id,
        payload.lesson_id,
        payload.status,
        Provenance.MANUAL,
        payload.notes,
    )
    response = AttendanceResponse.from_record(outcome.record, created=outcome.created)
    await event_broadcaster.publish("attendance_event", response.model_dump(mode="json"))
    return response


@router.get("/{lesson_id}", response_model=list[AttendanceResponse])
def list_attendance(
    lesson_id: str,
    _principal: CurrentPrincipal = Depends(require_roles("admin", "teacher", "operator")),
    roster: SqlRosterProvider = Depends(get_roster),
    db: Session = db_session(),
):
    if not roster.session_exists(lesson_id):
        raise SessionNotFound(f"Lesson '{lesson_id}' does not exist.")
    return [AttendanceResponse.from_record(record) for record in SqlAttendanceStore(db).list_for_session(lesson_id)]

from __future__ import annotations

from fastapi import APIRouter, Depends

from ...config import get_settings
from ...db.repository import SqlRosterProvider, SqlSecurityEventLog, SqlStudentDirectory
from ...descriptors import validate_descriptor
from ...exceptions import PersistenceError
from ...logger import setup_logger
from ...matcher import get_matcher
from ...reconciler import AttendanceReconciler, recognition_note
from ...schemas.attendance import AttendanceResponse
from ...schemas.auth import CurrentPrincipal
from ...schemas.recognition import IdentifiedStudent, IdentifyRequest, IdentifyResponse, MarkAttendanceRequest
from ...types import AttendanceStatus, Provenance
from ...ws.manager import event_broadcaster
from ..deps import ensure_lesson_and_student, get_audit, get_directory, get_reconciler, get_roster, require_roles

router = APIRouter(prefix="/face-recognition", tags=["face-recognition"])
logger = setup_logger("rollcall.api.recognition")


@router.post("/identify", response_model=IdentifyResponse)
async def identify(
    payload: IdentifyRequest,
    _principal: CurrentPrincipal = Depends(require_roles("admin", "teacher", "operator")),
    roster: SqlRosterProvider = Depends(get_roster),
    audit: SqlSecurityEventLog = Depends(get_audit),
):
    probe = validate_descriptor(payload.face_descriptor, get_settings().descriptor_length)
    entries = roster.get_roster_for_session(payload.lesson_id)
    if not any(entry.descriptor is not None for entry in entries):
        return IdentifyResponse(data=None, message="No student in this class has registered face data")
    result = get_matcher().match(probe, entries, payload.threshold)

    if not result.matched:
        return IdentifyResponse(data=None, message="No matching student found")

    student = IdentifiedStudent(
        student_id=result.identity.id,
        student_name=result.identity.display_name,
        distance=result.distance,
        confidence=result.confidence,
        confidence_percent=result.confidence_percent,
    )
    try:
        audit.record_event(
            "face_recognition_attempt",
            "low",
            f"Face recognized: {student.student_name} ({student.confidence_percent}% confidence)",
            {
                "student_id": student.student_id,
                "lesson_id": payload.lesson_id,
                "distance": student.distance,
                "confidence": student.confidence,
            },
        )
    except PersistenceError:
        logger.exception("Failed to record recognition audit event")

    await event_broadcaster.publish(
        "recognition_event",
        {"lesson_id": payload.lesson_id, **student.model_dump(mode="json")},
    )
    return IdentifyResponse(data=student, message=f"Recognized {student.student_name}")


@router.post("/mark-attendance", response_model=AttendanceResponse)
async def mark_attendance(
    payload: MarkAttendanceRequest,
    _principal: CurrentPrincipal = Depends(require_roles("admin", "teacher", "operator")),
    reconciler: AttendanceReconciler = Depends(get_reconciler),
    roster: SqlRosterProvider = Depends(get_roster),
    directory: SqlStudentDirectory = Depends(get_directory),
):
    ensure_lesson_and_student(roster, directory, payload.lesson_id, payload.student_id)
    outcome = reconciler.reconcile(
        payload.student_id,
        payload.lesson_id,
        AttendanceStatus.PRESENT,
        Provenance.AUTOMATIC,
        recognition_note(payload.confidence),
    )
    response = AttendanceResponse.from_record(outcome.record, created=outcome.created)
    await event_broadcaster.publish("attendance_event", response.model_dump(mode="json"))
    return response

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..db.repository import SqlAttendanceStore, SqlRosterProvider, SqlSecurityEventLog, SqlStudentDirectory
from ..db.session import get_db
from ..descriptors import get_codec
from ..exceptions import SessionNotFound
from ..reconciler import AttendanceReconciler
from ..registration import FaceDataService
from ..schemas.auth import CurrentPrincipal
from ..security import safe_decode_token

bearer_scheme = HTTPBearer(auto_error=False)


def db_session() -> Session:
    return Depends(get_db)  # type: ignore[return-value]


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentPrincipal:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token.")
    payload = safe_decode_token(credentials.credentials)
    if not payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.")
    return CurrentPrincipal(subject=str(payload.get("sub", "")), role=str(payload.get("role", "")))


def require_roles(*allowed_roles: str) -> Callable[[CurrentPrincipal], CurrentPrincipal]:
    allowed = set(allowed_roles)

    def _checker(principal: CurrentPrincipal = Depends(get_current_principal)) -> CurrentPrincipal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role.")
        return principal

    return _checker


def get_audit(
    request: Request,
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
) -> SqlSecurityEventLog:
    return SqlSecurityEventLog(
        db,
        user_id=principal.subject,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_roster(db: Session = db_session()) -> SqlRosterProvider:
    return SqlRosterProvider(db, get_codec())


def get_directory(db: Session = db_session()) -> SqlStudentDirectory:
    return SqlStudentDirectory(db)


def ensure_lesson_and_student(
    roster: SqlRosterProvider,
    directory: SqlStudentDirectory,
    lesson_id: str,
    student_id: str,
) -> None:
    """Raise 404-mapped errors for an unknown lesson or student before enrollment is checked."""
    if not roster.session_exists(lesson_id):
        raise SessionNotFound(f"Lesson '{lesson_id}' does not exist.")
    directory.get_student(student_id)


def get_reconciler(
    db: Session = db_session(),
    roster: SqlRosterProvider = Depends(get_roster),
    audit: SqlSecurityEventLog = Depends(get_audit),
) -> AttendanceReconciler:
    return AttendanceReconciler(roster, SqlAttendanceStore(db), audit)


def get_face_data_service(
    directory: SqlStudentDirectory = Depends(get_directory),
    audit: SqlSecurityEventLog = Depends(get_audit),
) -> FaceDataService:
    return FaceDataService(directory, get_codec(), audit)

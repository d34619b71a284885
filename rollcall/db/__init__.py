from .base import Base
from .repository import (
    SqlAttendanceStore,
    SqlRosterProvider,
    SqlSecurityEventLog,
    SqlStudentDirectory,
)
from .session import SessionLocal, engine, get_db, init_db

__all__ = [
    "Base",
    "SessionLocal",
    "SqlAttendanceStore",
    "SqlRosterProvider",
    "SqlSecurityEventLog",
    "SqlStudentDirectory",
    "engine",
    "get_db",
    "init_db",
]

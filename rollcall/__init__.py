from .capture import CaptureMode, CaptureSession, CaptureState
from .matcher import FaceMatcher, match
from .reconciler import AttendanceReconciler
from .types import AttendanceRecord, AttendanceStatus, FaceDescriptor, Identity, MatchResult, Provenance, RosterEntry

__all__ = [
    "AttendanceReconciler",
    "AttendanceRecord",
    "AttendanceStatus",
    "CaptureMode",
    "CaptureSession",
    "CaptureState",
    "FaceDescriptor",
    "FaceMatcher",
    "Identity",
    "MatchResult",
    "Provenance",
    "RosterEntry",
    "match",
]

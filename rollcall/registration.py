from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from .capture import CaptureSession, CaptureState
from .contracts import AuditTrail, StudentDirectory
from .descriptors import DescriptorCodec, validate_descriptor
from .exceptions import InvalidTransition, PersistenceError
from .logger import setup_logger
from .types import Identity


class FaceDataService:
    """Stores and clears the reference descriptor of a student.

    Audit metadata describes the change but never carries the descriptor.
    """

    def __init__(self, directory: StudentDirectory, codec: DescriptorCodec, audit: Optional[AuditTrail] = None):
        self.directory = directory
        self.codec = codec
        self.audit = audit
        self.logger = setup_logger(self.__class__.__name__)

    def save_face_data(self, student_id: str, values: Any, photo_url: Optional[str] = None) -> Identity:
        student = self.directory.get_student(student_id)
        descriptor = validate_descriptor(values, self.codec.expected_length)

        self.directory.store_face_data(
            student_id,
            self.codec.encode(descriptor),
            photo_url,
            datetime.now(timezone.utc),
        )
        self.logger.info("Face data updated for %s", student_id)
        self._record_audit(
            "face_data_update",
            f"Face recognition data updated for student {student.display_name}",
            {
                "student_id": student_id,
                "descriptor_length": len(descriptor),
                "has_photo": photo_url is not None,
                "encrypted": self.codec.encrypted,
            },
        )
        return student

    def register_from_session(self, student_id: str, session: CaptureSession) -> Identity:
        if session.state is not CaptureState.CONFIRMED or session.captured is None:
            raise InvalidTransition("Face data can only be saved from a confirmed capture.")
        captured = session.captured
        return self.save_face_data(student_id, captured.descriptor, captured.preview)

    def remove_face_data(self, student_id: str) -> Identity:
        student = self.directory.get_student(student_id)
        self.directory.store_face_data(student_id, None, None, None)
        self.logger.info("Face data removed for %s", student_id)
        self._record_audit(
            "face_data_removal",
            f"Face recognition data removed for student {student.display_name}",
            {"student_id": student_id},
        )
        return student

    def _record_audit(self, kind: str, description: str, metadata: dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record_event(kind, "medium", description, metadata)
        except PersistenceError:
            self.logger.exception("Failed to record %s audit event", kind)

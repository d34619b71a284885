class AttendanceError(Exception):
    """Base exception for the attendance system."""


class CameraUnavailable(AttendanceError):
    """Raised when the camera is denied, missing or stops delivering frames."""


class EmbeddingProviderError(AttendanceError):
    """Raised when face detection or embedding generation fails."""


class ModelsNotLoaded(EmbeddingProviderError):
    """Raised when the embedding provider is used before its models are ready."""


class DimensionMismatch(AttendanceError):
    """Raised when a probe descriptor is empty or not numeric."""


class DescriptorValidationError(AttendanceError):
    """Raised when a descriptor payload fails validation at the persistence boundary."""


class InvalidTransition(AttendanceError):
    """Raised when a capture session is asked for a transition its state does not allow."""


class SessionNotFound(AttendanceError):
    """Raised when a lesson (session context) does not exist."""


class StudentNotFound(AttendanceError):
    """Raised when a student does not exist."""


class NotEnrolled(AttendanceError):
    """Raised when a student is not an active member of the lesson's class."""


class PersistenceError(AttendanceError):
    """Raised when database operations fail."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from .exceptions import DimensionMismatch


class Provenance(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, (bool, np.bool_))


@dataclass(frozen=True, eq=False)
class FaceDescriptor:
    """Fixed-length face embedding for exactly one face in one frame.

    Instances are immutable: the wrapped array is a private copy with the
    writeable flag cleared. Construction rejects anything that is not a
    non-empty, finite, 1D numeric vector, so no descriptor in the system
    skips the structural checks. ``from_values`` adds the length check.
    """

    values: np.ndarray

    def __post_init__(self) -> None:
        raw = self.values
        if isinstance(raw, FaceDescriptor):
            raw = raw.values
        elif isinstance(raw, np.ndarray):
            if raw.dtype.kind not in {"f", "i", "u"}:
                raise DimensionMismatch(f"Descriptor dtype {raw.dtype} is not numeric.")
        else:
            if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
                raise DimensionMismatch("Descriptor must be a sequence of numbers.")
            if not all(_is_number(item) for item in raw):
                raise DimensionMismatch("Descriptor must contain only numbers.")

        vector = np.array(raw, dtype=np.float64, copy=True)
        if vector.ndim != 1:
            raise DimensionMismatch("Descriptor must be a 1D vector.")
        if vector.size == 0:
            raise DimensionMismatch("Descriptor is empty.")
        if not np.all(np.isfinite(vector)):
            raise DimensionMismatch("Descriptor contains NaN or infinite values.")
        vector.setflags(write=False)
        object.__setattr__(self, "values", vector)

    @classmethod
    def from_values(cls, values: Any, expected_length: Optional[int] = None) -> "FaceDescriptor":
        descriptor = cls(values)
        if expected_length is not None and len(descriptor) != expected_length:
            raise DimensionMismatch(
                f"Descriptor has {len(descriptor)} values, expected {expected_length}."
            )
        return descriptor

    def __len__(self) -> int:
        return int(self.values.size)

    def to_list(self) -> list[float]:
        return [float(v) for v in self.values]


@dataclass(frozen=True)
class Identity:
    id: str
    display_name: str


@dataclass(frozen=True)
class RosterEntry:
    identity: Identity
    descriptor: Optional[FaceDescriptor] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Detection:
    descriptor: FaceDescriptor
    detection_score: float
    box: Optional[Tuple[int, int, int, int]] = None


@dataclass(frozen=True)
class MatchResult:
    identity: Optional[Identity] = None
    distance: Optional[float] = None

    @classmethod
    def no_match(cls) -> "MatchResult":
        return cls()

    @classmethod
    def matched_with(cls, identity: Identity, distance: float) -> "MatchResult":
        return cls(identity=identity, distance=float(distance))

    @property
    def matched(self) -> bool:
        return self.identity is not None

    @property
    def confidence(self) -> Optional[float]:
        # Display value only, not a probability.
        if self.distance is None:
            return None
        return 1.0 - self.distance

    @property
    def confidence_percent(self) -> Optional[int]:
        if self.confidence is None:
            return None
        return int(round(self.confidence * 100))


@dataclass(frozen=True)
class AttendanceRecord:
    identity_id: str
    session_id: str
    status: AttendanceStatus
    marked_at: datetime
    provenance: Provenance
    note: Optional[str] = None
    id: Optional[str] = None

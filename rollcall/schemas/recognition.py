from __future__ import annotations

from pydantic import BaseModel, Field


class IdentifyRequest(BaseModel):
    face_descriptor: list[float] = Field(min_length=1)
    lesson_id: str = Field(min_length=1)
    threshold: float | None = Field(default=None, gt=0.0)


class IdentifiedStudent(BaseModel):
    student_id: str
    student_name: str
    distance: float
    confidence: float
    confidence_percent: int


class IdentifyResponse(BaseModel):
    success: bool = True
    data: IdentifiedStudent | None = None
    message: str


class MarkAttendanceRequest(BaseModel):
    student_id: str = Field(min_length=1)
    lesson_id: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)

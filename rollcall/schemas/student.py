from __future__ import annotations

from pydantic import BaseModel, Field


class FaceDataRequest(BaseModel):
    face_descriptor: list[float] = Field(min_length=1)
    photo_url: str | None = None


class FaceDataResponse(BaseModel):
    student_id: str
    student_name: str
    has_face_data: bool
    message: str

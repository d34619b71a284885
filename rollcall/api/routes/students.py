from __future__ import annotations

from fastapi import APIRouter, Depends

from ...registration import FaceDataService
from ...schemas.auth import CurrentPrincipal
from ...schemas.student import FaceDataRequest, FaceDataResponse
from ..deps import get_face_data_service, require_roles

router = APIRouter(prefix="/students", tags=["students"])


@router.post("/{student_id}/face-data", response_model=FaceDataResponse)
def save_face_data(
    student_id: str,
    payload: FaceDataRequest,
    _principal: CurrentPrincipal = Depends(require_roles("admin", "teacher")),
    service: FaceDataService = Depends(get_face_data_service),
):
    student = service.save_face_data(student_id, payload.face_descriptor, payload.photo_url)
    return FaceDataResponse(
        student_id=student.id,
        student_name=student.display_name,
        has_face_data=True,
        message="Face data saved successfully",
    )


@router.delete("/{student_id}/face-data", response_model=FaceDataResponse)
def remove_face_data(
    student_id: str,
    _principal: CurrentPrincipal = Depends(require_roles("admin", "teacher")),
    service: FaceDataService = Depends(get_face_data_service),
):
    student = service.remove_face_data(student_id)
    return FaceDataResponse(
        student_id=student.id,
        student_name=student.display_name,
        has_face_data=False,
        message="Face data removed successfully",
    )

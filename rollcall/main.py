from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import attendance, health, recognition, students
from .config import get_settings
from .db.session import init_db
from .exceptions import (
    AttendanceError,
    DescriptorValidationError,
    DimensionMismatch,
    NotEnrolled,
    PersistenceError,
    SessionNotFound,
    StudentNotFound,
)
from .logger import setup_logger
from .security import safe_decode_token
from .ws.manager import event_broadcaster

settings = get_settings()
logger = setup_logger("rollcall.api")

ERROR_STATUS = {
    SessionNotFound: status.HTTP_404_NOT_FOUND,
    StudentNotFound: status.HTTP_404_NOT_FOUND,
    NotEnrolled: status.HTTP_400_BAD_REQUEST,
    DimensionMismatch: status.HTTP_422_UNPROCESSABLE_ENTITY,
    DescriptorValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database ready, serving %s", settings.app_name)
    yield


app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix=settings.api_prefix)
app.include_router(recognition.router, prefix=settings.api_prefix)
app.include_router(attendance.router, prefix=settings.api_prefix)
app.include_router(students.router, prefix=settings.api_prefix)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError) -> JSONResponse:
    code = next(
        (value for error_type, value in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.websocket("/ws/events")
async def events_socket(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token or safe_decode_token(token) is None:
        await websocket.close(code=4401)
        return

    await event_broadcaster.connect(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message.lower() == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug("Event socket disconnected")
    finally:
        await event_broadcaster.disconnect(websocket)

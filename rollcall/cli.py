from __future__ import annotations

import argparse
import sys
import time
from functools import partial

import cv2
import numpy as np
import uvicorn

from .camera import CameraStream, encode_jpeg_data_url
from .capture import CaptureMode, CaptureSession, CaptureState
from .config import Settings, get_settings
from .db.repository import SqlAttendanceStore, SqlRosterProvider, SqlSecurityEventLog, SqlStudentDirectory
from .db.session import SessionLocal, init_db
from .descriptors import get_codec
from .exceptions import AttendanceError
from .face_engine import FaceEngine
from .logger import setup_logger
from .matcher import FaceMatcher
from .reconciler import AttendanceReconciler
from .recognition import RecognitionEvent, RecognitionLoop
from .registration import FaceDataService
from .security import ROLES, create_access_token


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face recognition attendance for lessons")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database tables")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0", help="Host interface")
    serve.add_argument("--port", type=int, default=8000, help="Port")

    register = subparsers.add_parser("register", help="Capture and store a student's face data")
    register.add_argument("--student", required=True, help="Student ID")
    register.add_argument("--camera", type=int, default=None, help="Webcam index override")

    recognize = subparsers.add_parser("recognize", help="Mark attendance for a lesson from the live camera")
    recognize.add_argument("--lesson", required=True, help="Lesson ID")
    recognize.add_argument("--camera", type=int, default=None, help="Webcam index override")
    recognize.add_argument("--threshold", type=float, default=None, help="Euclidean match threshold")
    recognize.add_argument(
        "--max-idle",
        type=float,
        default=None,
        help="Stop after this many seconds without a recognized face",
    )

    roster = subparsers.add_parser("roster", help="List the students enrolled in a lesson")
    roster.add_argument("--lesson", required=True, help="Lesson ID")

    token = subparsers.add_parser("issue-token", help="Issue an API token signed with the shared secret")
    token.add_argument("--subject", required=True, help="User ID placed in the token")
    token.add_argument("--role", choices=ROLES, default="operator", help="Role claim")
    token.add_argument("--minutes", type=int, default=None, help="Lifetime override")

    return parser


def _load_engine(settings: Settings) -> FaceEngine:
    engine = FaceEngine(
        descriptor_length=settings.descriptor_length,
        min_detection_confidence=settings.detection_floor,
    )
    engine.load()
    if not engine.ready:
        raise engine.error
    return engine


def _camera_factory(settings: Settings, camera_index: int | None):
    index = settings.camera_index if camera_index is None else camera_index
    return lambda: CameraStream(
        index,
        settings.frame_width,
        settings.frame_height,
        settings.frame_fps,
        backends=settings.camera_backends,
    ).open()


def _draw_status(frame: np.ndarray, status: str, hint: str) -> None:
    cv2.rectangle(frame, (0, 0), (frame.shape[1], 80), (35, 35, 35), -1)
    cv2.putText(frame, status, (20, 33), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2, cv2.LINE_AA)
    cv2.putText(frame, hint, (20, 66), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (200, 200, 200), 1, cv2.LINE_AA)


def run_registration(session: CaptureSession, service: FaceDataService, student_id: str, interval: float) -> None:
    student = service.directory.get_student(student_id)
    window_name = f"Registration - {student.display_name}"
    hint = "C capture | Y confirm | R retry | Q quit"

    try:
        with session:
            next_detection = 0.0
            while True:
                frame = session.read_frame()
                now = time.monotonic()
                if now >= next_detection:
                    session.process_frame(frame)
                    next_detection = now + interval

                _draw_status(frame, session.status_message, hint)
                cv2.imshow(window_name, frame)

                key = cv2.waitKey(1) & 0xFF
                state = session.state
                if key == ord("q"):
                    if state is CaptureState.CAPTURED:
                        session.discard()
                    raise AttendanceError("Registration cancelled by user.")
                if key == ord("c") and state is CaptureState.FACE_DETECTED:
                    session.capture()
                elif key == ord("r") and state in (CaptureState.CAPTURED, CaptureState.DISCARDED):
                    session.retry()
                elif key == ord("y") and state is CaptureState.CAPTURED:
                    session.confirm()
                    service.register_from_session(student_id, session)
                    return
    finally:
        cv2.destroyAllWindows()


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")
    settings = get_settings()

    try:
        if args.command == "init-db":
            init_db()
            print("Database tables created.")
            return 0

        if args.command == "serve":
            uvicorn.run("rollcall.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
            return 0

        if args.command == "issue-token":
            # Without a configured secret the key is random per process and no server could verify the token.
            if "jwt_secret" not in settings.model_fields_set:
                raise AttendanceError("ROLLCALL_JWT_SECRET is not set; refusing to sign with a throwaway key.")
            print(create_access_token(args.subject, args.role, args.minutes))
            return 0

        if args.command == "roster":
            with SessionLocal() as db:
                entries = SqlRosterProvider(db, get_codec()).get_roster_for_session(args.lesson)
            if not entries:
                print("No students enrolled.")
                return 0
            print(f"{'Student ID':<38} {'Face data':<10} {'Name'}")
            print("-" * 72)
            for entry in entries:
                flag = "yes" if entry.descriptor is not None else "no"
                print(f"{entry.identity.id:<38} {flag:<10} {entry.identity.display_name}")
            return 0

        if args.command == "register":
            engine = _load_engine(settings)
            session = CaptureSession(
                engine,
                _camera_factory(settings, args.camera),
                mode=CaptureMode.REGISTRATION,
                detection_floor=settings.detection_floor,
                preview_encoder=partial(encode_jpeg_data_url, quality=settings.preview_jpeg_quality),
            )
            with SessionLocal() as db:
                service = FaceDataService(
                    SqlStudentDirectory(db),
                    get_codec(),
                    SqlSecurityEventLog(db, user_id="cli"),
                )
                run_registration(session, service, args.student, settings.detection_interval_seconds)
            print(f"Face data saved for {args.student}.")
            return 0

        if args.command == "recognize":
            engine = _load_engine(settings)
            session = CaptureSession(
                engine,
                _camera_factory(settings, args.camera),
                mode=CaptureMode.RECOGNITION,
                detection_floor=settings.detection_floor,
            )

            def report(event: RecognitionEvent) -> None:
                print(f"[{event.timestamp:%H:%M:%S}] {event.message}")

            with SessionLocal() as db:
                roster = SqlRosterProvider(db, get_codec())
                loop = RecognitionLoop(
                    session=session,
                    roster=roster,
                    reconciler=AttendanceReconciler(
                        roster, SqlAttendanceStore(db), SqlSecurityEventLog(db, user_id="cli")
                    ),
                    lesson_id=args.lesson,
                    matcher=FaceMatcher(args.threshold or settings.match_threshold),
                    auto_mark_confidence=settings.auto_mark_confidence,
                    remark_cooldown_seconds=settings.remark_cooldown_seconds,
                    roster_refresh_seconds=settings.roster_refresh_seconds,
                    interval_seconds=settings.recognition_interval_seconds,
                    max_idle_seconds=args.max_idle if args.max_idle is not None else settings.max_idle_seconds,
                    on_result=report,
                )
                try:
                    loop.run()
                except KeyboardInterrupt:
                    logger.info("Recognition interrupted by user")
            print("Recognition stopped.")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Mapping, Optional

os.environ["ROLLCALL_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ROLLCALL_LOG_DIR"] = str(Path(tempfile.gettempdir()) / "rollcall-test-logs")
os.environ["ROLLCALL_JWT_SECRET"] = "test-secret"
os.environ["ROLLCALL_DESCRIPTOR_LENGTH"] = "4"
os.environ["ROLLCALL_DESCRIPTOR_CIPHER_KEY"] = ""

import numpy as np
import pytest

from rollcall.capture import CaptureMode, CaptureSession
from rollcall.db.base import Base
from rollcall.db.models import ClassGroup, Enrollment, Lesson, Student
from rollcall.db.session import SessionLocal, engine, init_db
from rollcall.descriptors import get_codec
from rollcall.embedding import EmbeddingProvider
from rollcall.exceptions import CameraUnavailable, NotEnrolled, SessionNotFound
from rollcall.types import AttendanceRecord, Detection, FaceDescriptor, Identity, RosterEntry


def descriptor(*values: float) -> FaceDescriptor:
    return FaceDescriptor.from_values(list(values))


def detection(score: float = 0.9, values: tuple = (0.0, 0.0, 0.0, 0.0)) -> Detection:
    return Detection(descriptor=descriptor(*values), detection_score=score)


class FakeTrack:
    kind = "video"

    def __init__(self) -> None:
        self.ready_state = "live"

    def stop(self) -> None:
        self.ready_state = "ended"


class FakeCamera:
    def __init__(self, fail_after: Optional[int] = None) -> None:
        self.tracks = [FakeTrack()]
        self.released = False
        self.reads = 0
        self.fail_after = fail_after

    def read(self) -> np.ndarray:
        if self.released:
            raise CameraUnavailable("Camera released.")
        if self.fail_after is not None and self.reads >= self.fail_after:
            raise CameraUnavailable("Camera unplugged.")
        self.reads += 1
        return np.zeros((8, 8, 3), dtype=np.uint8)

    def release(self) -> None:
        for track in self.tracks:
            track.stop()
        self.released = True


class FakeProvider(EmbeddingProvider):
    """Returns whatever ``detections`` holds; ``hook`` runs mid-extraction."""

    def __init__(self) -> None:
        super().__init__(descriptor_length=4)
        self.detections: list[Detection] = []
        self.hook: Optional[Callable[[], None]] = None
        self.calls = 0

    def _load_models(self) -> None:
        return None

    def _detect(self, frame: np.ndarray) -> list[Detection]:
        self.calls += 1
        if self.hook is not None:
            self.hook()
        return list(self.detections)


class InMemoryRoster:
    def __init__(self) -> None:
        self.lessons: dict[str, list[RosterEntry]] = {}
        self.inactive: set[tuple[str, str]] = set()
        self.roster_calls = 0

    def add(self, lesson_id: str, identity_id: str, name: str, values: Optional[tuple] = None) -> None:
        entry = RosterEntry(
            identity=Identity(identity_id, name),
            descriptor=descriptor(*values) if values is not None else None,
        )
        self.lessons.setdefault(lesson_id, []).append(entry)

    def session_exists(self, session_id: str) -> bool:
        return session_id in self.lessons

    def is_active_member(self, identity_id: str, session_id: str) -> bool:
        if (identity_id, session_id) in self.inactive:
            return False
        return any(entry.identity.id == identity_id for entry in self.lessons.get(session_id, []))

    def get_roster_for_session(self, session_id: str) -> list[RosterEntry]:
        self.roster_calls += 1
        if session_id not in self.lessons:
            raise SessionNotFound(session_id)
        return list(self.lessons[session_id])


class InMemoryStore:
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], AttendanceRecord] = {}
        self.error: Optional[Exception] = None

    def find_record(self, identity_id: str, session_id: str) -> Optional[AttendanceRecord]:
        return self.records.get((identity_id, session_id))

    def upsert_record(self, record: AttendanceRecord) -> tuple[AttendanceRecord, bool]:
        if self.error is not None:
            raise self.error
        key = (record.identity_id, record.session_id)
        existing = self.records.get(key)
        saved = AttendanceRecord(
            identity_id=record.identity_id,
            session_id=record.session_id,
            status=record.status,
            marked_at=record.marked_at,
            provenance=record.provenance,
            note=record.note,
            id=existing.id if existing is not None else f"rec-{len(self.records) + 1}",
        )
        self.records[key] = saved
        return saved, existing is None

    def list_for_session(self, session_id: str) -> list[AttendanceRecord]:
        return [record for key, record in self.records.items() if key[1] == session_id]


class RecordingAudit:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def record_event(
        self,
        kind: str,
        severity: str,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self.error is not None:
            raise self.error
        self.events.append(
            {"kind": kind, "severity": severity, "description": description, "metadata": dict(metadata or {})}
        )


class SteppingClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def provider() -> FakeProvider:
    fake = FakeProvider()
    fake.load()
    return fake


@pytest.fixture
def cameras() -> list[FakeCamera]:
    return []


@pytest.fixture
def camera_factory(cameras: list[FakeCamera]) -> Callable[[], FakeCamera]:
    def _factory() -> FakeCamera:
        camera = FakeCamera()
        cameras.append(camera)
        return camera

    return _factory


@pytest.fixture
def session(provider: FakeProvider, camera_factory) -> CaptureSession:
    return CaptureSession(provider, camera_factory, mode=CaptureMode.RECOGNITION)


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def roster() -> InMemoryRoster:
    fake = InMemoryRoster()
    fake.add("lesson-1", "s-alice", "Alice", (0.0, 0.0, 0.0, 0.0))
    fake.add("lesson-1", "s-bob", "Bob", (1.0, 1.0, 1.0, 1.0))
    fake.add("lesson-1", "s-carol", "Carol", None)
    return fake


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    with SessionLocal() as session:
        yield session


def seed(db) -> SimpleNamespace:
    codec = get_codec()
    maths = ClassGroup(id="class-maths", name="Maths")
    art = ClassGroup(id="class-art", name="Art")
    lesson = Lesson(id="lesson-1", class_id=maths.id, title="Algebra")
    other = Lesson(id="lesson-2", class_id=art.id, title="Drawing")

    alice = Student(id="s-alice", name="Alice", face_descriptor=codec.encode(descriptor(0.0, 0.0, 0.0, 0.0)))
    bob = Student(id="s-bob", name="Bob", face_descriptor=codec.encode(descriptor(1.0, 1.0, 1.0, 1.0)))
    carol = Student(id="s-carol", name="Carol")
    dave = Student(id="s-dave", name="Dave", face_descriptor="not json")
    erin = Student(id="s-erin", name="Erin", face_descriptor=codec.encode(descriptor(0.1, 0.0, 0.0, 0.0)))

    db.add_all([maths, art, lesson, other, alice, bob, carol, dave, erin])
    db.flush()
    db.add_all(
        [
            Enrollment(student_id=alice.id, class_id=maths.id),
            Enrollment(student_id=bob.id, class_id=maths.id),
            Enrollment(student_id=carol.id, class_id=maths.id),
            Enrollment(student_id=dave.id, class_id=maths.id),
            Enrollment(student_id=erin.id, class_id=maths.id, status="inactive"),
        ]
    )
    db.commit()
    return SimpleNamespace(lesson_id=lesson.id, other_lesson_id=other.id)


@pytest.fixture
def seeded(db) -> SimpleNamespace:
    return seed(db)

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from starlette.websockets import WebSocketDisconnect

from rollcall.db.models import SecurityEvent, Student
from rollcall.main import app
from rollcall.security import create_access_token
from rollcall.ws.manager import EventBroadcaster

API = "/api/v1"


def auth(role: str = "teacher") -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token('user-1', role)}"}


@pytest.fixture
def client(seeded):
    with TestClient(app) as test_client:
        yield test_client


def event_types(db) -> list[str]:
    db.expire_all()
    return [row.event_type for row in db.scalars(select(SecurityEvent).order_by(SecurityEvent.timestamp)).all()]


def test_health_endpoint(client):
    response = client.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_requests_without_token_are_rejected(client):
    response = client.post(f"{API}/face-recognition/identify", json={"face_descriptor": [0, 0, 0, 0], "lesson_id": "x"})
    assert response.status_code == 401

    response = client.get(f"{API}/attendance/lesson-1", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_operator_cannot_change_face_data(client):
    response = client.post(
        f"{API}/students/s-carol/face-data",
        json={"face_descriptor": [0.1, 0.2, 0.3, 0.4]},
        headers=auth("operator"),
    )
    assert response.status_code == 403


def test_identify_returns_matched_student(client, db):
    response = client.post(
        f"{API}/face-recognition/identify",
        json={"face_descriptor": [0.1, 0.0, 0.0, 0.0], "lesson_id": "lesson-1"},
        headers=auth("operator"),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["student_id"] == "s-alice"
    assert body["data"]["confidence_percent"] == 90
    assert event_types(db) == ["face_recognition_attempt"]


def test_identify_without_match_returns_null_data(client, db):
    response = client.post(
        f"{API}/face-recognition/identify",
        json={"face_descriptor": [9.0, 9.0, 9.0, 9.0], "lesson_id": "lesson-1"},
        headers=auth(),
    )
    assert response.status_code == 200
    assert response.json()["data"] is None
    assert event_types(db) == []


def test_identify_honours_threshold_override(client):
    response = client.post(
        f"{API}/face-recognition/identify",
        json={"face_descriptor": [0.1, 0.0, 0.0, 0.0], "lesson_id": "lesson-1", "threshold": 0.05},
        headers=auth(),
    )
    assert response.json()["data"] is None


def test_identify_error_mapping(client):
    missing = client.post(
        f"{API}/face-recognition/identify",
        json={"face_descriptor": [0.0, 0.0, 0.0, 0.0], "lesson_id": "lesson-404"},
        headers=auth(),
    )
    assert missing.status_code == 404

    wrong_length = client.post(
        f"{API}/face-recognition/identify",
        json={"face_descriptor": [0.0, 0.0], "lesson_id": "lesson-1"},
        headers=auth(),
    )
    assert wrong_length.status_code == 422


def test_mark_attendance_creates_then_updates(client, db):
    payload = {"student_id": "s-bob", "lesson_id": "lesson-1", "confidence": 0.92}
    first = client.post(f"{API}/face-recognition/mark-attendance", json=payload, headers=auth("operator"))
    second = client.post(f"{API}/face-recognition/mark-attendance", json=payload, headers=auth("operator"))

    assert first.status_code == 200 and second.status_code == 200
    assert first.json()["created"] is True
    assert second.json()["created"] is False
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["provenance"] == "automatic"
    assert second.json()["notes"] == "Face recognition (92% confidence)"

    listing = client.get(f"{API}/attendance/lesson-1", headers=auth())
    assert [row["student_id"] for row in listing.json()] == ["s-bob"]

    events = db.scalars(select(SecurityEvent).where(SecurityEvent.event_type == "facial_recognition_attendance")).all()
    assert [event.metadata_json["action"] for event in events] == ["created", "updated"]
    assert all(event.user_id == "user-1" for event in events)


def test_mark_attendance_error_mapping(client):
    not_enrolled = client.post(
        f"{API}/face-recognition/mark-attendance",
        json={"student_id": "s-erin", "lesson_id": "lesson-1", "confidence": 0.9},
        headers=auth(),
    )
    assert not_enrolled.status_code == 400

    no_lesson = client.post(
        f"{API}/face-recognition/mark-attendance",
        json={"student_id": "s-alice", "lesson_id": "lesson-404", "confidence": 0.9},
        headers=auth(),
    )
    assert no_lesson.status_code == 404

    out_of_range = client.post(
        f"{API}/face-recognition/mark-attendance",
        json={"student_id": "s-alice", "lesson_id": "lesson-1", "confidence": 1.5},
        headers=auth(),
    )
    assert out_of_range.status_code == 422


def test_manual_attendance_overrides_automatic(client):
    client.post(
        f"{API}/face-recognition/mark-attendance",
        json={"student_id": "s-alice", "lesson_id": "lesson-1", "confidence": 0.95},
        headers=auth(),
    )
    response = client.post(
        f"{API}/attendance",
        json={"student_id": "s-alice", "lesson_id": "lesson-1", "status": "absent", "notes": "left early"},
        headers=auth(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "absent"
    assert body["provenance"] == "manual"
    assert body["notes"] == "left early"
    assert body["created"] is False


def test_listing_unknown_lesson_is_404(client):
    assert client.get(f"{API}/attendance/lesson-404", headers=auth()).status_code == 404


def test_face_data_save_and_remove(client, db):
    saved = client.post(
        f"{API}/students/s-carol/face-data",
        json={"face_descriptor": [0.1, 0.2, 0.3, 0.4], "photo_url": "data:image/jpeg;base64,AAAA"},
        headers=auth("admin"),
    )
    assert saved.status_code == 200
    assert saved.json()["has_face_data"] is True

    db.expire_all()
    carol = db.get(Student, "s-carol")
    assert json.loads(carol.face_descriptor) == [0.1, 0.2, 0.3, 0.4]
    assert carol.photo_url == "data:image/jpeg;base64,AAAA"
    assert carol.face_data_updated_at is not None

    removed = client.delete(f"{API}/students/s-carol/face-data", headers=auth("admin"))
    assert removed.status_code == 200
    assert removed.json()["has_face_data"] is False

    db.expire_all()
    carol = db.get(Student, "s-carol")
    assert carol.face_descriptor is None and carol.photo_url is None

    events = db.scalars(select(SecurityEvent).where(SecurityEvent.severity == "medium")).all()
    assert [event.event_type for event in events] == ["face_data_update", "face_data_removal"]
    assert all("0.2" not in json.dumps(event.metadata_json) for event in events)


def test_face_data_error_mapping(client):
    missing = client.post(
        f"{API}/students/s-nobody/face-data",
        json={"face_descriptor": [0.1, 0.2, 0.3, 0.4]},
        headers=auth(),
    )
    assert missing.status_code == 404

    wrong_length = client.post(
        f"{API}/students/s-carol/face-data",
        json={"face_descriptor": [0.1, 0.2]},
        headers=auth(),
    )
    assert wrong_length.status_code == 422

    assert client.delete(f"{API}/students/s-nobody/face-data", headers=auth()).status_code == 404


def test_event_socket_requires_valid_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/events?token=bad") as ws:
            ws.receive_text()

    token = create_access_token("user-1", "operator")
    with client.websocket_connect(f"/ws/events?token={token}") as ws:
        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}


def test_event_socket_receives_attendance_broadcast(client):
    token = create_access_token("user-1", "operator")
    with client.websocket_connect(f"/ws/events?token={token}") as ws:
        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}

        client.post(
            f"{API}/face-recognition/mark-attendance",
            json={"student_id": "s-alice", "lesson_id": "lesson-1", "confidence": 0.9},
            headers=auth(),
        )
        message = ws.receive_json()
        assert message["type"] == "attendance_event"
        assert message["payload"]["student_id"] == "s-alice"


class RecordingSocket:
    def __init__(self, broken: bool = False) -> None:
        self.broken = broken
        self.sent: list[dict] = []

    async def accept(self) -> None:
        return None

    async def send_json(self, message: dict) -> None:
        self.sent.append(message)
        if self.broken:
            raise RuntimeError("socket already closed")


def test_broadcaster_drops_sockets_that_fail_to_send():
    broadcaster = EventBroadcaster()
    broken = RecordingSocket(broken=True)
    listening = RecordingSocket()

    async def scenario() -> None:
        await broadcaster.connect(broken)
        await broadcaster.connect(listening)
        await broadcaster.publish("attendance_event", {"student_id": "s-alice"})
        await broadcaster.publish("attendance_event", {"student_id": "s-bob"})

    asyncio.run(scenario())

    assert len(broken.sent) == 1
    assert [message["payload"]["student_id"] for message in listening.sent] == ["s-alice", "s-bob"]
    assert listening.sent[0]["type"] == "attendance_event"


def test_identify_reports_class_without_face_data(client, db):
    response = client.post(
        f"{API}/face-recognition/identify",
        json={"face_descriptor": [0.0, 0.0, 0.0, 0.0], "lesson_id": "lesson-2"},
        headers=auth(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["data"] is None
    assert body["message"] == "No student in this class has registered face data"
    assert event_types(db) == []


def test_unknown_student_is_404_while_non_member_is_400(client):
    unknown = client.post(
        f"{API}/face-recognition/mark-attendance",
        json={"student_id": "s-nobody", "lesson_id": "lesson-1", "confidence": 0.9},
        headers=auth(),
    )
    assert unknown.status_code == 404

    manual_unknown = client.post(
        f"{API}/attendance",
        json={"student_id": "s-nobody", "lesson_id": "lesson-1", "status": "present"},
        headers=auth(),
    )
    assert manual_unknown.status_code == 404

    # lesson-2 belongs to a class alice is not enrolled in
    non_member = client.post(
        f"{API}/face-recognition/mark-attendance",
        json={"student_id": "s-alice", "lesson_id": "lesson-2", "confidence": 0.9},
        headers=auth(),
    )
    assert non_member.status_code == 400

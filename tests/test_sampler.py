from __future__ import annotations

import threading
import time
from queue import Queue

from conftest import FakeCamera
from rollcall.sampler import FrameSampler, put_latest


def test_put_latest_keeps_only_the_newest_item():
    queue_obj: Queue[int] = Queue(maxsize=1)
    assert put_latest(queue_obj, 1) is False
    assert put_latest(queue_obj, 2) is True
    assert put_latest(queue_obj, 3) is True
    assert queue_obj.get_nowait() == 3
    assert queue_obj.empty()


def test_sampler_delivers_increasing_frame_ids_and_stops():
    camera = FakeCamera()
    with FrameSampler(camera.read, interval_seconds=0.01) as sampler:
        first = sampler.get(timeout=1.0)
        second = sampler.get(timeout=1.0)
        assert sampler.running

    assert first is not None and second is not None
    assert second.frame_id > first.frame_id
    assert second.frame.shape == (8, 8, 3)
    assert not sampler.running


def test_sampler_drops_frames_nobody_consumed():
    camera = FakeCamera()
    sampler = FrameSampler(camera.read, interval_seconds=0.0)
    sampler.start()
    threading.Event().wait(0.1)
    sampler.stop()

    assert sampler.frames_read > 1
    assert sampler.frames_dropped == sampler.frames_read - 1
    assert sampler.queue.qsize() == 1


def test_sampler_records_camera_failure():
    camera = FakeCamera(fail_after=1)
    sampler = FrameSampler(camera.read, interval_seconds=0.01)
    sampler.start()
    packet = sampler.get(timeout=1.0)
    deadline = time.monotonic() + 2.0
    while sampler.running and time.monotonic() < deadline:
        time.sleep(0.01)

    assert packet is not None and packet.frame_id == 1
    assert "unplugged" in str(sampler.error)
    assert sampler.stop_event.is_set()

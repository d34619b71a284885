from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from queue import Empty, Full, Queue
from typing import Callable, Optional, TypeVar

import numpy as np

from .exceptions import CameraUnavailable
from .logger import setup_logger

T = TypeVar("T")


def put_latest(queue_obj: Queue[T], item: T) -> bool:
    """Put ``item`` without blocking, evicting the oldest entry when full.

    Returns ``True`` when something was dropped to make room.
    """
    try:
        queue_obj.put_nowait(item)
        return False
    except Full:
        pass

    try:
        queue_obj.get_nowait()
    except Empty:
        pass

    try:
        queue_obj.put_nowait(item)
    except Full:
        pass
    return True


@dataclass(frozen=True)
class FramePacket:
    frame_id: int
    timestamp: float
    frame: np.ndarray


class FrameSampler:
    """Producer thread reading frames on a fixed cadence into a bounded channel.

    The consumer always sees the most recent frame; older unread frames are
    dropped instead of queued.
    """

    def __init__(
        self,
        read_frame: Callable[[], np.ndarray],
        interval_seconds: float = 0.5,
        maxsize: int = 1,
    ):
        self.read_frame = read_frame
        self.interval_seconds = interval_seconds
        self.queue: Queue[FramePacket] = Queue(maxsize=maxsize)
        self.stop_event = threading.Event()
        self.logger = setup_logger(self.__class__.__name__)

        self.frames_read = 0
        self.frames_dropped = 0
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "FrameSampler":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="frame-sampler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.5) -> None:
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def get(self, timeout: float = 0.2) -> Optional[FramePacket]:
        try:
            return self.queue.get(timeout=timeout)
        except Empty:
            return None

    def _run(self) -> None:
        frame_id = 0
        while not self.stop_event.is_set():
            started = time.perf_counter()
            try:
                frame = self.read_frame()
            except CameraUnavailable as exc:
                self.error = exc
                self.logger.error("Frame sampler stopped: %s", exc)
                self.stop_event.set()
                return

            frame_id += 1
            self.frames_read += 1
            if put_latest(self.queue, FramePacket(frame_id=frame_id, timestamp=time.perf_counter(), frame=frame)):
                self.frames_dropped += 1

            elapsed = time.perf_counter() - started
            self.stop_event.wait(max(0.0, self.interval_seconds - elapsed))

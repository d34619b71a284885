from __future__ import annotations

import threading
from enum import Enum
from typing import Optional

import numpy as np

from .exceptions import EmbeddingProviderError, ModelsNotLoaded
from .logger import setup_logger
from .types import Detection


class ProviderState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class EmbeddingProvider:
    """Handle around a pre-trained face detector + embedder.

    Construct once per process and pass the handle to every capture session.
    Until ``load()`` has succeeded the handle reports ``LOADING`` (or
    ``FAILED``) and refuses to run detection.
    """

    def __init__(self, descriptor_length: int):
        self.descriptor_length = descriptor_length
        self.logger = setup_logger(self.__class__.__name__)
        self._state = ProviderState.LOADING
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ProviderState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is ProviderState.READY

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def load(self) -> ProviderState:
        with self._lock:
            if self._state is ProviderState.READY:
                return self._state
            try:
                self._load_models()
            except EmbeddingProviderError as exc:
                self._state = ProviderState.FAILED
                self._error = exc
                self.logger.error("Model loading failed: %s", exc)
                return self._state
            self._state = ProviderState.READY
            self._error = None
            self.logger.info("Face models loaded (%d-d descriptors)", self.descriptor_length)
            return self._state

    def detect_faces(self, frame: np.ndarray) -> list[Detection]:
        if not self.ready:
            raise ModelsNotLoaded(f"Embedding provider is {self._state.value}.")
        return self._detect(frame)

    def _load_models(self) -> None:
        raise NotImplementedError

    def _detect(self, frame: np.ndarray) -> list[Detection]:
        raise NotImplementedError

from __future__ import annotations

from typing import List

import cv2
import numpy as np

from .embedding import EmbeddingProvider
from .exceptions import EmbeddingProviderError
from .types import Detection, FaceDescriptor

try:
    import mediapipe as mp
    import torch
    import torch.nn.functional as f
    import torchvision.models as models
    from torchvision.models import ResNet18_Weights
except ImportError:  # pragma: no cover - installed through the "vision" extra
    mp = None
    torch = None


class FaceEngine(EmbeddingProvider):
    """MediaPipe face detection + ResNet18 embeddings.

    The backbone's 512 channels are average-pooled down to
    ``descriptor_length`` and L2-normalized, so descriptors compare with the
    same Euclidean threshold regardless of backbone width.
    """

    def __init__(
        self,
        descriptor_length: int = 128,
        device: str = "auto",
        min_detection_confidence: float = 0.5,
        min_face_size: int = 60,
    ):
        super().__init__(descriptor_length)
        self.device_name = device
        self.min_detection_confidence = min_detection_confidence
        self.min_face_size = min_face_size
        self.detector = None
        self.embedder = None

    def _load_models(self) -> None:
        if mp is None or torch is None:
            raise EmbeddingProviderError(
                "mediapipe, torch and torchvision are required. Install the 'vision' extra."
            )

        if self.device_name == "auto":
            self.device_name = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = torch.device(self.device_name)

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=self.min_detection_confidence,
            )

            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
        except Exception as exc:
            raise EmbeddingProviderError(f"Failed to initialize face models: {exc}") from exc

    def _detect(self, frame: np.ndarray) -> list[Detection]:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise EmbeddingProviderError(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return []

        h, w = frame.shape[:2]
        crops: List[np.ndarray] = []
        boxes: List[tuple[int, int, int, int]] = []
        scores: List[float] = []

        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))

            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue

            crop = rgb[y1:y2, x1:x2]
            if crop.size == 0:
                continue

            crops.append(crop)
            boxes.append((x1, y1, x2, y2))
            scores.append(score)

        if not crops:
            return []

        try:
            batch = self._to_tensor_batch(crops)
            with torch.inference_mode():
                raw = self.embedder(batch)
                if raw.shape[1] != self.descriptor_length:
                    raw = f.adaptive_avg_pool1d(raw.unsqueeze(1), self.descriptor_length).squeeze(1)
                normed = f.normalize(raw, p=2, dim=1)
                emb = normed.detach().cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise EmbeddingProviderError(f"Embedding generation failed: {exc}") from exc

        return [
            Detection(
                descriptor=FaceDescriptor.from_values(emb[i]),
                detection_score=scores[i],
                box=boxes[i],
            )
            for i in range(emb.shape[0])
        ]

    def _to_tensor_batch(self, face_crops: List[np.ndarray]) -> "torch.Tensor":
        processed = []
        for crop in face_crops:
            resized = cv2.resize(crop, (224, 224), interpolation=cv2.INTER_AREA)
            tensor = torch.from_numpy(resized).permute(2, 0, 1).float() / 255.0
            processed.append(tensor)

        batch = torch.stack(processed, dim=0).to(self.device)
        return (batch - self.mean) / self.std

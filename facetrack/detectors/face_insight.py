"""InsightFace detection + embedding adapter producing engine detections."""

from __future__ import annotations

import logging
import os
import platform
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from facetrack.types import Detection

LOGGER = logging.getLogger("facetrack.detectors.face")


def _default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers for InsightFace."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def face_to_detection(face: Any, frame_idx: int = -1) -> Detection:
    """Convert an InsightFace ``Face`` into a Detection.

    Missing fields come through as ``None`` so the engine can drop the face.
    """
    bbox = getattr(face, "bbox", None)
    descriptor = getattr(face, "normed_embedding", None)
    if descriptor is None:
        descriptor = getattr(face, "embedding", None)
    landmarks = getattr(face, "kps", None)
    return Detection(
        bbox=tuple(float(v) for v in bbox) if bbox is not None else None,  # type: ignore[arg-type]
        score=float(getattr(face, "det_score", 0.0) or 0.0),
        descriptor=np.asarray(descriptor, dtype=np.float32).reshape(-1) if descriptor is not None else None,
        landmarks=np.asarray(landmarks, dtype=np.float32) if landmarks is not None else None,
        frame_idx=frame_idx,
    )


class InsightFaceDetector:
    """Wrapper around InsightFace FaceAnalysis running detection and recognition."""

    def __init__(
        self,
        model_name: str = "buffalo_l",
        providers: Optional[Sequence[str]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.5,
    ) -> None:
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("MKL_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "insightface is required for InsightFaceDetector. "
                "Install it via `pip install insightface`."
            ) from exc

        self.det_size = tuple(det_size)
        self.det_thresh = det_thresh
        provider_list: Tuple[str, ...]
        if providers is None:
            provider_list = _default_providers()
        else:
            provider_list = tuple(providers)
        self.providers = provider_list
        self.app = FaceAnalysis(
            name=model_name,
            allowed_modules=["detection", "recognition"],
            providers=list(provider_list),
        )
        self.app.prepare(ctx_id=0, det_size=self.det_size, det_thresh=det_thresh)
        self.frame_idx = 0
        LOGGER.info(
            "Loaded InsightFace %s det_size=%s det_thresh=%.2f providers=%s",
            model_name,
            self.det_size,
            det_thresh,
            provider_list,
        )

    def detect(self, image: np.ndarray) -> List[Detection]:
        """Run detection + embedding on a BGR frame."""
        faces = self.app.get(image)
        detections = [face_to_detection(face, self.frame_idx) for face in faces]
        self.frame_idx += 1
        return detections

    __call__ = detect

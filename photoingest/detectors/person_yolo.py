"""YOLO-based object detector used to locate the photo subject."""

from __future__ import annotations

import logging
import threading
from typing import Any, List, Optional

import numpy as np

from photoingest.errors import DetectionUnavailable
from photoingest.types import BBox, Detection

LOGGER = logging.getLogger("photoingest.detectors.person")

DEFAULT_WEIGHTS = "yolov8n.pt"


class YOLOPersonDetector:
    """Thin wrapper around Ultralytics YOLO returning labelled detections.

    A YOLO model instance is not safe to call from several threads, and the
    cropper runs on worker threads, so inference is serialised per detector.
    """

    def __init__(
        self,
        weights: str = DEFAULT_WEIGHTS,
        device: Optional[str] = None,
        conf_thres: float = 0.25,
        iou_thres: float = 0.5,
        model: Optional[Any] = None,
    ) -> None:
        self._predict_lock = threading.Lock()
        self.conf_thres = conf_thres
        self.iou_thres = iou_thres
        if model is not None:
            self.model = model
            self.device = device or "auto"
            return
        try:
            from ultralytics import YOLO
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "ultralytics is required for YOLOPersonDetector. "
                "Install it via `pip install ultralytics`."
            ) from exc

        self.model = YOLO(weights)
        resolved_device = device
        if resolved_device is None:
            try:
                import torch  # type: ignore

                if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
                    resolved_device = "mps"
                elif torch.cuda.is_available():
                    resolved_device = "cuda"
            except Exception:  # pragma: no cover - optional dependency
                resolved_device = None
        if resolved_device is not None:
            try:
                self.model.to(resolved_device)
            except Exception as exc:  # pragma: no cover - device probing
                LOGGER.warning(
                    "YOLO detector could not use device=%s (%s); falling back to auto.",
                    resolved_device,
                    exc,
                )
                resolved_device = None
        self.device = resolved_device or "auto"
        LOGGER.info(
            "Loaded YOLO detector weights=%s device=%s conf=%.2f",
            weights,
            self.device,
            conf_thres,
        )

    def detect(self, image: np.ndarray) -> List[Detection]:
        """Run inference on a single BGR image."""
        try:
            with self._predict_lock:
                results = self.model.predict(
                    source=image,
                    conf=self.conf_thres,
                    iou=self.iou_thres,
                    verbose=False,
                )
        except Exception as exc:
            raise DetectionUnavailable(f"YOLO inference failed: {exc}") from exc
        detections: List[Detection] = []
        for result in results:
            if result.boxes is None:
                continue
            names = getattr(result, "names", None) or {}
            for box in result.boxes:
                cls = int(box.cls.item()) if box.cls is not None else -1
                label = str(names.get(cls, cls)) if isinstance(names, dict) else str(cls)
                score = float(box.conf.item()) if box.conf is not None else 0.0
                xyxy = box.xyxy.cpu().numpy().flatten()
                bbox: BBox = tuple(float(x) for x in xyxy)  # type: ignore
                detections.append(Detection(label=label, score=score, bbox=bbox))
        return detections


def load_person_detector(
    weights: Optional[str] = DEFAULT_WEIGHTS,
    device: Optional[str] = None,
) -> Optional[YOLOPersonDetector]:
    """Load the detector, returning None when it is unavailable."""
    if not weights:
        return None
    try:
        return YOLOPersonDetector(weights=weights, device=device)
    except Exception as exc:
        LOGGER.warning(
            "Person detector unavailable (%s); crops will use the centered fallback.",
            exc,
        )
        LOGGER.debug("Person detector initialization stack trace", exc_info=True)
        return None

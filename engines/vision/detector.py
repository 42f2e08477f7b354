"""
Face Detector — OpenCV Haar cascade wrapper.
Locates face regions with a primary cascade and a relaxed fallback cascade,
then deduplicates overlapping boxes with non-maximum suppression.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from engines.vision.quality import to_grayscale
from engines.vision.settings import DetectionSettings

logger = logging.getLogger(__name__)

PRIMARY_CASCADE = 'haarcascade_frontalface_alt_tree.xml'
FALLBACK_CASCADE = 'haarcascade_frontalface_default.xml'

NMS_IOU_THRESHOLD = 0.35
MIN_DETECTION_SIZE = 24


@dataclass
class BoundingBox:
    """Axis-aligned face box in source-image pixel coordinates."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def to_dict(self) -> dict:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Intersection-over-Union of two boxes."""
    inter_w = min(a.right, b.right) - max(a.x, b.x)
    inter_h = min(a.bottom, b.bottom) - max(a.y, b.y)
    if inter_w <= 0 or inter_h <= 0:
        return 0.0
    intersection = inter_w * inter_h
    union = a.area + b.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def non_max_suppression(boxes: List[BoundingBox],
                        threshold: float = NMS_IOU_THRESHOLD) -> List[BoundingBox]:
    """
    Greedy NMS: keep the largest box, drop later boxes overlapping it.

    Args:
        boxes: candidate boxes in any order
        threshold: IoU above which a smaller box is suppressed

    Returns:
        Surviving boxes, largest first.
    """
    ordered = sorted(boxes, key=lambda b: b.area, reverse=True)
    kept: List[BoundingBox] = []
    for box in ordered:
        if all(iou(box, other) <= threshold for other in kept):
            kept.append(box)
    return kept


class HaarFaceDetector:
    """
    Detects faces with a pair of Haar cascades.

    Responsibilities:
        - Equalize and optionally downscale frames before detection
        - Run the primary cascade, fall back to the default cascade with relaxed neighbors
        - Map boxes back to source coordinates and suppress duplicates

    Classifier failures are logged and treated as zero detections.
    """

    def __init__(self, settings: Optional[DetectionSettings] = None,
                 model_dir: Optional[str] = None):
        self.settings = settings or DetectionSettings()
        self._clahe = cv2.createCLAHE()
        self._primary = self._load_cascade(PRIMARY_CASCADE, model_dir)
        self._fallback = self._load_cascade(FALLBACK_CASCADE, model_dir)

        if self._primary is None and self._fallback is None:
            logger.error("No Haar cascade could be loaded, face detection disabled")

    @staticmethod
    def _load_cascade(filename: str, model_dir: Optional[str]):
        candidates = []
        if model_dir:
            candidates.append(os.path.join(model_dir, filename))
        candidates.append(os.path.join(cv2.data.haarcascades, filename))

        for path in candidates:
            if not os.path.isfile(path):
                continue
            classifier = cv2.CascadeClassifier(path)
            if not classifier.empty():
                logger.info(f"Loaded cascade {path}")
                return classifier
            logger.warning(f"Cascade at {path} is empty")
        logger.warning(f"Cascade {filename} not found")
        return None

    @property
    def is_available(self) -> bool:
        return self._primary is not None or self._fallback is not None

    def update_settings(self, settings: DetectionSettings) -> None:
        self.settings = settings

    def detect(self, image: np.ndarray) -> List[BoundingBox]:
        """
        Detect faces in an image.

        Args:
            image: BGR or grayscale image

        Returns:
            List of BoundingBox in ``image`` coordinates, largest first.
        """
        if image is None or image.size == 0 or not self.is_available:
            return []

        settings = self.settings
        gray = self._clahe.apply(to_grayscale(image))

        scale = settings.downscale if settings.downscale > 0 else 1.0
        if scale != 1.0:
            interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
            gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=interpolation)

        height, width = image.shape[:2]
        min_face = max(settings.min_face, min(width, height) // 8)
        scaled_min = max(MIN_DETECTION_SIZE, int(round(min_face * scale)))
        min_size = (scaled_min, scaled_min)

        raw = self._run(self._primary, 'primary', gray,
                        settings.cascade_scale_factor, settings.cascade_min_neighbors, min_size)
        if not raw:
            relaxed = max(2, settings.cascade_min_neighbors - 2)
            raw = self._run(self._fallback, 'fallback', gray,
                            settings.cascade_scale_factor, relaxed, min_size)

        boxes = [
            BoundingBox(
                x=int(round(x / scale)),
                y=int(round(y / scale)),
                width=max(1, int(round(w / scale))),
                height=max(1, int(round(h / scale))),
            )
            for (x, y, w, h) in raw
        ]
        return non_max_suppression(boxes)

    def detect_largest(self, image: np.ndarray) -> Optional[BoundingBox]:
        """Return the largest detected face, or None."""
        faces = self.detect(image)
        return faces[0] if faces else None

    @staticmethod
    def _run(classifier, name: str, gray: np.ndarray, scale_factor: float,
             min_neighbors: int, min_size: tuple) -> list:
        if classifier is None:
            return []
        try:
            found = classifier.detectMultiScale(
                gray,
                scaleFactor=scale_factor,
                minNeighbors=min_neighbors,
                minSize=min_size,
            )
        except cv2.error as e:
            logger.warning(f"{name} cascade failed: {e}")
            return []
        return [tuple(int(v) for v in rect) for rect in found]

"""
Face Preprocessing — crop, grayscale, contrast equalization and resize.
Turns an arbitrary face photo into the canonical representation the
recognizer is trained on.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from engines.vision.detector import BoundingBox, HaarFaceDetector
from engines.vision.quality import to_grayscale
from engines.vision.settings import PreprocessingSettings

logger = logging.getLogger(__name__)

JPEG_QUALITY = 90
PADDING_RATIO = 0.05


class PreprocessStep:
    """Single image-in / image-out transform. Steps never modify their input."""
    name = 'step'

    def apply(self, image: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class GrayscaleStep(PreprocessStep):
    name = 'grayscale'

    def apply(self, image: np.ndarray) -> np.ndarray:
        return to_grayscale(image)


class ClaheStep(PreprocessStep):
    """Local contrast equalization (CLAHE) on a grayscale image."""
    name = 'clahe'

    def __init__(self, clip_limit: float = 40.0, tile_grid_size: tuple = (8, 8)):
        self._clahe = cv2.createCLAHE(clipLimit=clip_limit, tileGridSize=tile_grid_size)

    def apply(self, image: np.ndarray) -> np.ndarray:
        gray = image if image.ndim == 2 else to_grayscale(image)
        return self._clahe.apply(gray)


class ResizeStep(PreprocessStep):
    name = 'resize'

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height

    def apply(self, image: np.ndarray) -> np.ndarray:
        return cv2.resize(image, (self.width, self.height), interpolation=cv2.INTER_AREA)


def default_steps(settings: PreprocessingSettings) -> List[PreprocessStep]:
    return [GrayscaleStep(), ClaheStep(), ResizeStep(settings.width, settings.height)]


def _non_negative_or_none(value) -> Optional[int]:
    if value is None:
        return None
    value = int(value)
    return value if value >= 0 else None


@dataclass
class CropOptions:
    """
    Optional face location hint for cropping.

    The box is expressed in a reference frame of ``frame_width`` x ``frame_height``
    (e.g. the preview the capture UI drew on) and is scaled to the real image.
    Negative values are treated as missing.
    """
    frame_width: Optional[int] = None
    frame_height: Optional[int] = None
    x: Optional[int] = None
    y: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    def __post_init__(self):
        self.frame_width = _non_negative_or_none(self.frame_width)
        self.frame_height = _non_negative_or_none(self.frame_height)
        self.x = _non_negative_or_none(self.x)
        self.y = _non_negative_or_none(self.y)
        self.width = _non_negative_or_none(self.width)
        self.height = _non_negative_or_none(self.height)

    @property
    def has_frame_dimensions(self) -> bool:
        return bool(self.frame_width) and bool(self.frame_height)

    @property
    def has_bounding_box(self) -> bool:
        return (self.x is not None and self.y is not None
                and bool(self.width) and bool(self.height))


class FaceImageProcessor:
    """
    Normalizes face images for training and recognition.

    Responsibilities:
        - Crop a square region around the face (hinted, detected or centered)
        - Run the ordered preprocessing steps, skipping any step that fails
        - Encode processed faces as JPEG for storage

    Thread-safe: the step list is swapped under a lock on reconfiguration.
    """

    def __init__(self, settings: Optional[PreprocessingSettings] = None,
                 detector: Optional[HaarFaceDetector] = None,
                 steps: Optional[List[PreprocessStep]] = None):
        self.settings = settings or PreprocessingSettings()
        self.detector = detector
        self._lock = threading.Lock()
        self._steps = list(steps) if steps is not None else default_steps(self.settings)

    @property
    def steps(self) -> List[PreprocessStep]:
        with self._lock:
            return list(self._steps)

    def update_settings(self, settings: PreprocessingSettings) -> None:
        """Rebuild the default steps for a new target size."""
        with self._lock:
            self.settings = settings
            self._steps = default_steps(settings)
        logger.info(f"Preprocessing target set to {settings.width}x{settings.height}")

    def is_target_size(self, image: np.ndarray) -> bool:
        height, width = image.shape[:2]
        return width == self.settings.width and height == self.settings.height

    def preprocess(self, image: np.ndarray,
                   options: Optional[CropOptions] = None) -> np.ndarray:
        """
        Run the full pipeline on one image.

        Args:
            image: BGR or grayscale image (left untouched)
            options: optional face hint used by the crop

        Returns:
            Grayscale, equalized image of the configured target size.
        """
        if image is None or image.size == 0:
            raise ValueError("Cannot preprocess an empty image")

        current = image if self.is_target_size(image) else self.crop(image, options)
        for step in self.steps:
            try:
                current = step.apply(current)
            except (cv2.error, ValueError) as e:
                logger.debug(f"Preprocess step {step.name} skipped: {e}")
        return current

    def process(self, data: bytes, options: Optional[CropOptions] = None) -> bytes:
        """Decode image bytes, preprocess and re-encode as JPEG."""
        buffer = np.frombuffer(data, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if image is None or image.size == 0:
            raise ValueError("Unable to decode image data")

        processed = self.preprocess(image, options)
        ok, encoded = cv2.imencode('.jpg', processed, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
        if not ok:
            raise ValueError("Unable to encode processed face image")
        return encoded.tobytes()

    # ==================== CROPPING ====================

    def crop(self, image: np.ndarray, options: Optional[CropOptions] = None) -> np.ndarray:
        """
        Square crop around the face.

        Uses the hinted box when present, otherwise the largest detected face,
        otherwise a centered square of the whole image.
        """
        box = self._scaled_hint(image, options)
        if box is None and self.detector is not None:
            box = self.detector.detect_largest(image)
        if box is None:
            return self._center_square(image)
        return self._crop_around(image, box)

    @staticmethod
    def _scaled_hint(image: np.ndarray, options: Optional[CropOptions]) -> Optional[BoundingBox]:
        if options is None or not options.has_bounding_box:
            return None
        height, width = image.shape[:2]
        sx = width / options.frame_width if options.has_frame_dimensions else 1.0
        sy = height / options.frame_height if options.has_frame_dimensions else 1.0
        return BoundingBox(
            x=int(round(options.x * sx)),
            y=int(round(options.y * sy)),
            width=max(1, int(round(options.width * sx))),
            height=max(1, int(round(options.height * sy))),
        )

    def _crop_around(self, image: np.ndarray, box: BoundingBox) -> np.ndarray:
        height, width = image.shape[:2]
        face_size = max(box.width, box.height)
        padding = PADDING_RATIO * face_size
        target_edge = max(self.settings.width, self.settings.height)
        desired = min(max(face_size + 2 * padding, target_edge), min(width, height))
        side = max(1, int(round(desired)))

        cx = box.x + box.width / 2.0
        cy = box.y + box.height / 2.0
        x0 = int(round(cx - side / 2.0))
        y0 = int(round(cy - side / 2.0))
        x0 = min(max(0, x0), width - side)
        y0 = min(max(0, y0), height - side)
        return image[y0:y0 + side, x0:x0 + side].copy()

    @staticmethod
    def _center_square(image: np.ndarray) -> np.ndarray:
        height, width = image.shape[:2]
        side = min(width, height)
        x0 = (width - side) // 2
        y0 = (height - side) // 2
        return image[y0:y0 + side, x0:x0 + side].copy()

"""
Face Recognizer — trainable LBPH classifier over per-student image folders.
Produces (student id, distance) predictions; lower distance is a better match.
"""

import logging
import math
import os
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from engines.vision.augmenter import augment
from engines.vision.preprocess import FaceImageProcessor
from engines.vision.quality import is_sharp_enough
from engines.vision.settings import VisionSettings

logger = logging.getLogger(__name__)

MODEL_FILE = 'lbph.yml'
LABELS_FILE = 'labels.txt'
UNKNOWN_LABEL = 'unknown'
IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png')

MAX_VARIANTS_PER_IMAGE = 2
TRAIN_BATCH_SIZE = 30
MIN_TRAINING_IMAGES = 2


class RecognizerError(Exception):
    """Base class for recognizer failures."""


class IncrementalUpdateNotSupported(RecognizerError, NotImplementedError):
    """Raised when a recognizer cannot apply an in-place update or removal."""


class ModelLoadError(RecognizerError, OSError):
    """Raised when persisted model files exist but cannot be read."""


@dataclass
class Prediction:
    """Result of recognizing a single face."""
    label: str = UNKNOWN_LABEL
    distance: float = math.inf

    @property
    def is_known(self) -> bool:
        return self.label != UNKNOWN_LABEL and math.isfinite(self.distance)

    def to_dict(self) -> dict:
        return {
            'label': self.label,
            'distance': round(self.distance, 3) if math.isfinite(self.distance) else None,
        }


def list_student_dirs(root: str) -> List[str]:
    """Immediate student subdirectories of a dataset root, in name order."""
    if not root or not os.path.isdir(root):
        return []
    return [
        os.path.join(root, name)
        for name in sorted(os.listdir(root))
        if not name.startswith('.') and os.path.isdir(os.path.join(root, name))
    ]


def list_images(student_dir: str) -> List[str]:
    if not os.path.isdir(student_dir):
        return []
    return [
        os.path.join(student_dir, name)
        for name in sorted(os.listdir(student_dir))
        if name.lower().endswith(IMAGE_EXTENSIONS)
        and os.path.isfile(os.path.join(student_dir, name))
    ]


class Recognizer:
    """
    Trainable face classifier capability.

    Implementations that cannot mutate a trained model in place keep the
    default ``update_incremental``/``remove_student`` which raise
    IncrementalUpdateNotSupported.
    """

    @property
    def trained(self) -> bool:
        raise NotImplementedError

    @property
    def supports_incremental_update(self) -> bool:
        return False

    def train(self, dataset_root: str) -> int:
        raise NotImplementedError

    def recognize(self, face: np.ndarray) -> Prediction:
        raise NotImplementedError

    def update_incremental(self, student_dir: str, student_id: str) -> int:
        raise IncrementalUpdateNotSupported(f"{type(self).__name__} cannot update incrementally")

    def remove_student(self, student_id: str) -> None:
        raise IncrementalUpdateNotSupported(f"{type(self).__name__} cannot remove students")

    def save_model(self, model_dir: str) -> None:
        raise NotImplementedError

    def load_model(self, model_dir: str) -> bool:
        raise NotImplementedError


class LBPHRecognizer(Recognizer):
    """
    Local Binary Pattern Histogram recognizer backed by ``cv2.face``.

    Responsibilities:
        - Train from ``root/<studentId>/*.jpg|*.png`` with blur gating and augmentation
        - Add a single student to a trained model without touching the others
        - Persist the model plus an ``index,studentId`` label table

    Label indices grow monotonically; removal rebuilds the whole model from
    the remembered dataset root instead of reusing indices.
    """

    def __init__(self, processor: Optional[FaceImageProcessor] = None,
                 settings: Optional[VisionSettings] = None):
        self.settings = settings or VisionSettings()
        self.processor = processor or FaceImageProcessor(self.settings.preprocessing)
        self._model = self._create_model()
        self._labels: Dict[int, str] = {}
        self._next_label = 0
        self._trained = False
        self.training_root: Optional[str] = None

    def _create_model(self):
        lbph = self.settings.lbph
        return cv2.face.LBPHFaceRecognizer_create(
            radius=lbph.radius,
            neighbors=lbph.neighbors,
            grid_x=lbph.grid_x,
            grid_y=lbph.grid_y,
            threshold=sys.float_info.max,
        )

    @property
    def trained(self) -> bool:
        return self._trained

    @property
    def supports_incremental_update(self) -> bool:
        return True

    @property
    def labels(self) -> Dict[int, str]:
        return dict(self._labels)

    @property
    def blur_threshold(self) -> float:
        return self.settings.capture.training_blur_threshold()

    def _reset(self) -> None:
        self._model = self._create_model()
        self._labels = {}
        self._next_label = 0
        self._trained = False

    def _index_for(self, student_id: str) -> int:
        for index, known in self._labels.items():
            if known == student_id:
                return index
        index = self._next_label
        self._labels[index] = student_id
        self._next_label += 1
        return index

    # ==================== TRAINING ====================

    def _variants_for(self, path: str, max_variants: Optional[int]) -> List[np.ndarray]:
        image = cv2.imread(path, cv2.IMREAD_COLOR)
        if image is None or image.size == 0:
            logger.debug(f"Skipping unreadable image {path}")
            return []

        if not is_sharp_enough(image, self.blur_threshold):
            logger.debug(f"Skipping blurry image {path}")
            return []

        variants = augment(image, self.blur_threshold)
        if max_variants is not None:
            variants = variants[:max_variants]

        processed = []
        for variant in variants:
            try:
                processed.append(self.processor.preprocess(variant))
            except ValueError as e:
                logger.debug(f"Preprocess failed for {path}: {e}")
        return processed

    def _fit(self, images: List[np.ndarray], labels: List[int], first: bool) -> None:
        label_array = np.array(labels, dtype=np.int32)
        if first:
            self._model.train(images, label_array)
        else:
            self._model.update(images, label_array)

    def train(self, dataset_root: str) -> int:
        """
        Train a fresh model from a dataset directory.

        Args:
            dataset_root: directory containing one folder per student

        Returns:
            Number of processed images fed to the model (0 when training was rejected).
        """
        return self._train(dataset_root)

    def _train(self, dataset_root: str, excluded: Tuple[str, ...] = ()) -> int:
        self._reset()
        self.training_root = dataset_root

        batch_images: List[np.ndarray] = []
        batch_labels: List[int] = []
        total = 0
        fitted = False

        for student_dir in list_student_dirs(dataset_root):
            student_id = os.path.basename(student_dir)
            if student_id in excluded:
                continue
            index = self._index_for(student_id)
            for path in list_images(student_dir):
                for face in self._variants_for(path, MAX_VARIANTS_PER_IMAGE):
                    batch_images.append(face)
                    batch_labels.append(index)
                    total += 1
                    if len(batch_images) >= TRAIN_BATCH_SIZE:
                        self._fit(batch_images, batch_labels, first=not fitted)
                        fitted = True
                        batch_images, batch_labels = [], []

        if total < MIN_TRAINING_IMAGES:
            logger.error(f"Need at least {MIN_TRAINING_IMAGES} images to train, found {total} in {dataset_root}")
            self._reset()
            return 0

        if batch_images:
            self._fit(batch_images, batch_labels, first=not fitted)

        self._trained = True
        logger.info(f"LBPH trained on {total} images for {len(self._labels)} students")
        return total

    def update_incremental(self, student_dir: str, student_id: str) -> int:
        """
        Add or extend one student in the trained model.

        Falls back to a full train of the parent directory when the model
        has never been trained.
        """
        if not self._trained:
            return self.train(os.path.dirname(os.path.abspath(student_dir)))

        if self.training_root is None:
            self.training_root = os.path.dirname(os.path.abspath(student_dir))

        index = self._index_for(student_id)
        images: List[np.ndarray] = []
        for path in list_images(student_dir):
            images.extend(self._variants_for(path, None))

        if not images:
            logger.warning(f"No usable images for student {student_id} in {student_dir}")
            return 0

        self._fit(images, [index] * len(images), first=False)
        logger.info(f"LBPH updated with {len(images)} images for student {student_id}")
        return len(images)

    def remove_student(self, student_id: str) -> None:
        """
        Drop a student by rebuilding the model from the remembered dataset root.

        Raises:
            IncrementalUpdateNotSupported: no dataset root is known; the
                recognizer is left untrained so the caller can rebuild it.
        """
        if self.training_root is None:
            self._reset()
            raise IncrementalUpdateNotSupported(
                f"No dataset root remembered, cannot remove student {student_id}")

        logger.info(f"Removing student {student_id} by retraining from {self.training_root}")
        self._train(self.training_root, excluded=(student_id,))

    # ==================== RECOGNITION ====================

    def recognize(self, face: np.ndarray) -> Prediction:
        if not self._trained or face is None or face.size == 0:
            return Prediction()
        processed = self.processor.preprocess(face)
        index, distance = self._model.predict(processed)
        return Prediction(
            label=self._labels.get(int(index), UNKNOWN_LABEL),
            distance=max(0.0, float(distance)),
        )

    # ==================== PERSISTENCE ====================

    def save_model(self, model_dir: str) -> None:
        """
        Write ``lbph.yml`` and ``labels.txt`` into ``model_dir``.

        An untrained model only writes the label table.
        """
        os.makedirs(model_dir, exist_ok=True)
        if self._trained:
            self._model.write(os.path.join(model_dir, MODEL_FILE))
        with open(os.path.join(model_dir, LABELS_FILE), 'w', encoding='utf-8') as f:
            for index in sorted(self._labels):
                f.write(f"{index},{self._labels[index]}\n")

    def load_model(self, model_dir: str) -> bool:
        """
        Load a persisted model.

        Returns:
            True when both files were present and read. A missing file is a
            silent no-op; an empty model file loads as an untrained recognizer.

        Raises:
            ModelLoadError: the model file exists but OpenCV cannot read it.
        """
        model_path = os.path.join(model_dir, MODEL_FILE)
        labels_path = os.path.join(model_dir, LABELS_FILE)
        if not (os.path.isfile(model_path) and os.path.isfile(labels_path)):
            return False

        labels = self._read_labels(labels_path)
        self._reset()
        self._labels = labels
        self._next_label = max(labels) + 1 if labels else 0

        if os.path.getsize(model_path) == 0 or not labels:
            return True

        try:
            self._model.read(model_path)
        except cv2.error as e:
            self._reset()
            raise ModelLoadError(f"Unable to read model {model_path}: {e}") from e

        self._trained = True
        return True

    @staticmethod
    def _read_labels(path: str) -> Dict[int, str]:
        labels: Dict[int, str] = {}
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line or ',' not in line:
                    continue
                raw_index, student_id = line.split(',', 1)
                try:
                    labels[int(raw_index)] = student_id
                except ValueError:
                    logger.warning(f"Ignoring malformed label line: {line}")
        return labels


def read_label_table(model_dir: str) -> List[Tuple[int, str]]:
    """Return the persisted ``(index, studentId)`` pairs of a model directory."""
    path = os.path.join(model_dir, LABELS_FILE)
    if not os.path.isfile(path):
        return []
    return sorted(LBPHRecognizer._read_labels(path).items())

"""
Model Manager — owns the process-wide live recognizer.
All training, update and removal work runs on one dedicated worker thread;
readers only ever see a fully built recognizer swapped in atomically.
"""

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from engines.vision.detector import HaarFaceDetector
from engines.vision.preprocess import FaceImageProcessor
from engines.vision.recognizer import (
    IncrementalUpdateNotSupported,
    LABELS_FILE,
    LBPHRecognizer,
    MODEL_FILE,
    ModelLoadError,
    Recognizer,
    list_images,
    list_student_dirs,
)
from services.model_archive import delete_recursively, zip_directory
from services.runtime_config import RuntimeConfig, RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass
class DatasetStats:
    """Enrollment images currently on disk."""
    faces_dir: str
    images_per_student: Dict[str, int] = field(default_factory=dict)

    @property
    def student_count(self) -> int:
        return len(self.images_per_student)

    @property
    def image_count(self) -> int:
        return sum(self.images_per_student.values())

    def to_dict(self) -> dict:
        return {
            'faces_dir': self.faces_dir,
            'student_count': self.student_count,
            'image_count': self.image_count,
            'images_per_student': dict(self.images_per_student),
        }


class ModelManager:
    """
    Single global recognizer lifecycle.

    Responsibilities:
        - Load the persisted model on demand
        - Full retrain, per-student update and removal, persisted after each change
        - Follow faces/model directory changes from the runtime configuration
        - Push detection setting changes to the shared face detector

    Every mutating operation is queued on a single worker ("model-trainer")
    and returns a Future; ``*_quietly`` variants block and log failures.
    Updates are applied to a fresh copy loaded from disk, never to the
    published instance.
    """

    def __init__(self, runtime_config: RuntimeConfig,
                 recognizer_factory: Optional[Callable[[], Recognizer]] = None,
                 detector: Optional[HaarFaceDetector] = None):
        self.runtime_config = runtime_config
        self.detector = detector
        self._recognizer_factory = recognizer_factory
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='model-trainer')
        self._publish_lock = threading.Lock()
        self._current: Optional[Recognizer] = None

        directories = runtime_config.directories
        self.faces_dir = directories.faces_dir
        self.model_dir = directories.model_dir
        self._unsubscribe = runtime_config.on_change(self._on_settings_changed)

    # ==================== PUBLISHED STATE ====================

    def get_recognizer(self) -> Optional[Recognizer]:
        with self._publish_lock:
            return self._current

    def is_ready(self) -> bool:
        recognizer = self.get_recognizer()
        return recognizer is not None and recognizer.trained

    def _publish(self, recognizer: Optional[Recognizer]) -> None:
        with self._publish_lock:
            self._current = recognizer

    def create_processor(self) -> FaceImageProcessor:
        """Preprocessor for the current target size, cropping with the shared detector."""
        return FaceImageProcessor(self.runtime_config.vision.preprocessing, detector=self.detector)

    def create_recognizer(self) -> Recognizer:
        """New, untrained recognizer built with the current vision settings."""
        if self._recognizer_factory is not None:
            return self._recognizer_factory()
        return LBPHRecognizer(self.create_processor(), settings=self.runtime_config.vision)

    # ==================== WORKER ====================

    def _submit(self, name: str, fn: Callable, *args) -> Future:
        def run():
            try:
                return fn(*args)
            except Exception as e:
                logger.error(f"Model task {name} failed: {e}", exc_info=True)
                raise
        return self._executor.submit(run)

    def _wait_quietly(self, name: str, future: Future, timeout: Optional[float]) -> bool:
        try:
            future.result(timeout=timeout)
            return True
        except Exception as e:
            logger.warning(f"{name} did not complete: {e}")
            return False

    # ==================== OPERATIONS ====================

    def ensure_loaded(self) -> Future:
        return self._submit('ensure_loaded', self._ensure_loaded)

    def retrain_all(self) -> Future:
        return self._submit('retrain_all', self._retrain_all)

    def update_student(self, student_id: str) -> Future:
        return self._submit('update_student', self._update_student, student_id)

    def remove_student(self, student_id: str) -> Future:
        return self._submit('remove_student', self._remove_student, student_id)

    def train_temporary(self, dataset_root: str) -> Future:
        """Train a throwaway recognizer on the worker without publishing it."""
        return self._submit('train_temporary', self._train_temporary, dataset_root)

    def configure(self, faces_dir: Optional[str] = None, model_dir: Optional[str] = None) -> Future:
        return self._submit('configure', self._configure, faces_dir, model_dir)

    def ensure_loaded_quietly(self, timeout: Optional[float] = None) -> bool:
        return self._wait_quietly('ensure_loaded', self.ensure_loaded(), timeout)

    def retrain_all_quietly(self, timeout: Optional[float] = None) -> bool:
        return self._wait_quietly('retrain_all', self.retrain_all(), timeout)

    def update_student_quietly(self, student_id: str, timeout: Optional[float] = None) -> bool:
        return self._wait_quietly('update_student', self.update_student(student_id), timeout)

    def remove_student_quietly(self, student_id: str, timeout: Optional[float] = None) -> bool:
        return self._wait_quietly('remove_student', self.remove_student(student_id), timeout)

    # ==================== WORKER-SIDE IMPLEMENTATION ====================

    def _has_persisted_model(self) -> bool:
        return (os.path.isfile(os.path.join(self.model_dir, MODEL_FILE))
                and os.path.isfile(os.path.join(self.model_dir, LABELS_FILE)))

    def _load_persisted(self) -> Optional[Recognizer]:
        if not self._has_persisted_model():
            return None
        recognizer = self.create_recognizer()
        try:
            if not recognizer.load_model(self.model_dir):
                return None
        except ModelLoadError as e:
            logger.error(f"Persisted model unusable: {e}")
            return None
        if hasattr(recognizer, 'training_root'):
            recognizer.training_root = self.faces_dir
        return recognizer

    def _ensure_loaded(self) -> Optional[Recognizer]:
        current = self.get_recognizer()
        if current is not None:
            return current
        recognizer = self._load_persisted()
        if recognizer is None:
            logger.info(f"No persisted model in {self.model_dir}")
            return None
        self._publish(recognizer)
        logger.info(f"Loaded persisted model from {self.model_dir}")
        return recognizer

    def _clear_model_dir(self) -> None:
        """Remove the global model files; per-section models under model_dir stay."""
        for name in (MODEL_FILE, LABELS_FILE):
            delete_recursively(os.path.join(self.model_dir, name))
        os.makedirs(self.model_dir, exist_ok=True)

    def _retrain_all(self) -> Recognizer:
        self._clear_model_dir()
        recognizer = self.create_recognizer()

        if not list_student_dirs(self.faces_dir):
            logger.info(f"No students under {self.faces_dir}, publishing empty model")
            recognizer.save_model(self.model_dir)
            self._publish(recognizer)
            return recognizer

        total = recognizer.train(self.faces_dir)
        if not recognizer.trained:
            logger.warning(f"Full retrain produced no usable model ({total} images)")
        recognizer.save_model(self.model_dir)
        self._publish(recognizer)
        logger.info(f"Global model retrained from {self.faces_dir}")
        return recognizer

    def _working_copy(self) -> Optional[Recognizer]:
        """Load the recognizer to mutate, or None when a full retrain is needed."""
        if self.get_recognizer() is None:
            self._ensure_loaded()
        if self.get_recognizer() is None:
            return None
        return self._load_persisted()

    def _update_student(self, student_id: str) -> Recognizer:
        recognizer = self._working_copy()
        if recognizer is None or not recognizer.supports_incremental_update:
            return self._retrain_all()

        student_dir = os.path.join(self.faces_dir, student_id)
        recognizer.update_incremental(student_dir, student_id)
        recognizer.save_model(self.model_dir)
        self._publish(recognizer)
        logger.info(f"Global model updated for student {student_id}")
        return recognizer

    def _remove_student(self, student_id: str) -> Recognizer:
        recognizer = self._working_copy()
        if recognizer is None:
            return self._retrain_all()
        try:
            recognizer.remove_student(student_id)
        except IncrementalUpdateNotSupported as e:
            logger.info(f"Removal of {student_id} needs a full retrain: {e}")
            return self._retrain_all()

        self._clear_model_dir()
        recognizer.save_model(self.model_dir)
        self._publish(recognizer)
        logger.info(f"Student {student_id} removed from global model")
        return recognizer

    def _train_temporary(self, dataset_root: str) -> Recognizer:
        recognizer = self.create_recognizer()
        recognizer.train(dataset_root)
        return recognizer

    def _configure(self, faces_dir: Optional[str], model_dir: Optional[str]) -> None:
        changed_model_dir = model_dir is not None and model_dir != self.model_dir
        if faces_dir:
            self.faces_dir = faces_dir
            os.makedirs(faces_dir, exist_ok=True)
        if model_dir:
            self.model_dir = model_dir
            os.makedirs(model_dir, exist_ok=True)
        if changed_model_dir:
            self._publish(None)
            self._ensure_loaded()
        logger.info(f"Model manager using faces={self.faces_dir} model={self.model_dir}")

    def _on_settings_changed(self, settings: RuntimeSettings) -> None:
        if self.detector is not None:
            self.detector.update_settings(settings.vision.detection)
        directories = settings.directories
        if directories.faces_dir != self.faces_dir or directories.model_dir != self.model_dir:
            self.configure(directories.faces_dir, directories.model_dir)

    # ==================== DATASET TOOLS ====================

    def collect_dataset_stats(self) -> DatasetStats:
        stats = DatasetStats(faces_dir=self.faces_dir)
        for student_dir in list_student_dirs(self.faces_dir):
            stats.images_per_student[os.path.basename(student_dir)] = len(list_images(student_dir))
        return stats

    def export_model_archive(self) -> Optional[bytes]:
        """Zip of the persisted model files, or None when nothing is persisted."""
        if not self._has_persisted_model():
            return None
        return zip_directory(self.model_dir)

    def shutdown(self, wait: bool = True) -> None:
        self._unsubscribe()
        self._executor.shutdown(wait=wait)
        logger.info("Model manager stopped")

"""
Section Model Service — per-section recognizer lifecycle.
Builds each class section's LBPH model from its zipped enrollment photos,
publishes the artifacts to object storage and keeps a local loaded copy.
"""

import logging
import os
import tempfile
import time
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from engines.vision.recognizer import LABELS_FILE, MODEL_FILE, ModelLoadError, Recognizer
from services.model_archive import (
    UnsafeArchiveError,
    compress_entry,
    count_images_by_label,
    delete_recursively,
    ensure_placeholder_artifacts,
    extract_zip,
    read_entry,
    replace_directory,
    resolve_dataset_root,
    zip_directory,
)
from services.recognizer_cache import CachedRecognizer, RecognizerCache, SectionLocks
from services.storage_service import StorageDisabledError

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30
REFRESH_MAX_WAIT = 6.0
REFRESH_POLL_INTERVAL = 2.0
MIN_TRAINING_IMAGES = 2

CURRENT_VERSION = 'current'
MODEL_ARCHIVE_NAME = 'lbph.zip'
FACES_ARCHIVE_NAME = 'faces.zip'
ZIP_CONTENT_TYPE = 'application/zip'
ALLOWED_ARTIFACTS = (MODEL_FILE, LABELS_FILE)
ARTIFACT_URL = '/api/section-models/{section_id}/artifacts/{name}'


class SectionModelError(Exception):
    """Base class for section model failures."""


class SectionModelTrainingError(SectionModelError):
    """Training could not produce a model; lists students with no usable images."""

    def __init__(self, message: str, missing_student_ids: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_student_ids = list(missing_student_ids or [])

    def to_dict(self) -> dict:
        return {'error': str(self), 'missing_student_ids': self.missing_student_ids}


@dataclass
class SectionRetrainResult:
    """Outcome of a successful section retrain."""
    section_id: str
    storage_prefix: str
    image_count: int
    images_per_student: Dict[str, int] = field(default_factory=dict)
    missing_student_ids: List[str] = field(default_factory=list)
    label_display_names: Dict[str, str] = field(default_factory=dict)
    trained_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def model_download_path(self) -> str:
        return ARTIFACT_URL.format(section_id=self.section_id, name=MODEL_FILE)

    @property
    def labels_download_path(self) -> str:
        return ARTIFACT_URL.format(section_id=self.section_id, name=LABELS_FILE)

    def to_dict(self) -> dict:
        return {
            'section_id': self.section_id,
            'storage_prefix': self.storage_prefix,
            'image_count': self.image_count,
            'images_per_student': dict(self.images_per_student),
            'missing_student_ids': list(self.missing_student_ids),
            'label_display_names': dict(self.label_display_names),
            'model_download_path': self.model_download_path,
            'labels_download_path': self.labels_download_path,
            'trained_at': self.trained_at.isoformat(),
        }


class SectionModelService:
    """
    Orchestrates per-section recognizers.

    Responsibilities:
        - Resolve a section's recognizer, reloading when its storage pointer moves
        - Bootstrap an empty model for sections that have none
        - Retrain from the section's face archive and publish the artifacts
        - Purge artifacts and cache entries for deactivated or deleted sections

    Bootstrap, retrain and purge of one section are serialized by that
    section's lock; different sections run in parallel on the training pool.
    """

    def __init__(self, repository, storage, model_manager, runtime_config,
                 archive_refresher=None,
                 model_bucket: str = 'face-models',
                 archive_bucket: str = 'face-archives',
                 max_workers: int = 2,
                 download_timeout: int = DOWNLOAD_TIMEOUT,
                 refresh_max_wait: float = REFRESH_MAX_WAIT,
                 refresh_poll_interval: float = REFRESH_POLL_INTERVAL,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.repository = repository
        self.storage = storage
        self.model_manager = model_manager
        self.runtime_config = runtime_config
        self.archive_refresher = archive_refresher
        self.model_bucket = model_bucket
        self.archive_bucket = archive_bucket
        self.download_timeout = download_timeout
        self.refresh_max_wait = refresh_max_wait
        self.refresh_poll_interval = refresh_poll_interval
        self._sleep = sleep
        self._clock = clock

        self.cache = RecognizerCache()
        self.locks = SectionLocks()
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix='section-model-trainer')

    # ==================== LAYOUT ====================

    @property
    def sections_root(self) -> str:
        root = os.path.join(self.runtime_config.directories.model_dir, 'sections')
        os.makedirs(root, exist_ok=True)
        return root

    def local_dir(self, section_id: str) -> str:
        return os.path.join(self.sections_root, str(section_id))

    @staticmethod
    def storage_prefix(section_id: str) -> str:
        return f"{section_id}/{CURRENT_VERSION}"

    @staticmethod
    def model_object_path(storage_prefix: str) -> str:
        return f"{storage_prefix.rstrip('/')}/{MODEL_ARCHIVE_NAME}"

    @staticmethod
    def faces_archive_path(section_id: str) -> str:
        return f"{section_id}/{FACES_ARCHIVE_NAME}"

    def _staging_dir(self, section_id: str, purpose: str) -> str:
        return tempfile.mkdtemp(prefix=f".{section_id}-{purpose}-", dir=self.sections_root)

    # ==================== RESOLUTION ====================

    def resolve_recognizer(self, section_id: str) -> Optional[Recognizer]:
        """
        Recognizer for a section, reloading it if its storage path changed.

        Returns:
            The loaded recognizer, or None when the section has no model.
        """
        storage_path = self.repository.get_model_storage_path(section_id)
        if not storage_path:
            self.cache.pop(section_id)
            return None

        entry = self.cache.matches(section_id, storage_path)
        if entry is not None:
            return entry.recognizer

        with self.locks.hold(section_id):
            entry = self.cache.matches(section_id, storage_path)
            if entry is not None:
                return entry.recognizer
            return self._load_from_storage(section_id, storage_path)

    def _load_from_storage(self, section_id: str, storage_path: str) -> Optional[Recognizer]:
        if not self.storage.is_enabled():
            return self._load_local(section_id, storage_path)

        data = self.storage.download_bytes(
            self.model_bucket, self.model_object_path(storage_path), self.download_timeout)
        if not data:
            logger.warning(f"Model archive for section {section_id} missing at {storage_path}")
            return None

        staging = self._staging_dir(section_id, 'download')
        try:
            try:
                extract_zip(data, staging)
                recognizer = self.model_manager.create_recognizer()
                recognizer.load_model(staging)
            except (zipfile.BadZipFile, UnsafeArchiveError, ModelLoadError) as e:
                logger.error(f"Model archive for section {section_id} at {storage_path} is unusable: {e}")
                return None
            local_dir = self.local_dir(section_id)
            replace_directory(staging, local_dir)
            self.cache.put(section_id, CachedRecognizer(recognizer, storage_path, local_dir))
            logger.info(f"Loaded model for section {section_id} from {storage_path}")
            return recognizer
        finally:
            delete_recursively(staging)

    def _load_local(self, section_id: str, storage_path: str) -> Optional[Recognizer]:
        local_dir = self.local_dir(section_id)
        recognizer = self.model_manager.create_recognizer()
        try:
            loaded = recognizer.load_model(local_dir)
        except ModelLoadError as e:
            logger.error(f"Local model for section {section_id} is unusable: {e}")
            return None
        if not loaded:
            logger.warning(f"Storage disabled and no local model for section {section_id}")
            return None
        self.cache.put(section_id, CachedRecognizer(recognizer, storage_path, local_dir))
        return recognizer

    def cached_section_ids(self) -> List[str]:
        return self.cache.section_ids()

    # ==================== BOOTSTRAP ====================

    def ensure_section_model_initialized(self, section_id: str) -> Optional[Recognizer]:
        """Make sure an active section has at least an empty published model."""
        if not self.storage.is_enabled():
            logger.info(f"Storage disabled, skipping model bootstrap for section {section_id}")
            return None

        section = self.repository.find_section(section_id)
        if section is None:
            logger.warning(f"Section {section_id} not found, skipping model bootstrap")
            return None
        if not section.is_active:
            logger.info(f"Section {section_id} inactive, skipping model bootstrap")
            return None
        if section.model_storage_path:
            return self.resolve_recognizer(section_id)

        with self.locks.hold(section_id):
            if self.repository.get_model_storage_path(section_id):
                return self.resolve_recognizer(section_id)

            staging = self._staging_dir(section_id, 'bootstrap')
            try:
                empty = self.model_manager.create_recognizer()
                empty.save_model(staging)
                ensure_placeholder_artifacts(staging)

                prefix = self.storage_prefix(section_id)
                self._upload_model(prefix, staging)
                self.repository.set_model_storage_path(section_id, prefix)

                recognizer = self.model_manager.create_recognizer()
                recognizer.load_model(staging)
                local_dir = self.local_dir(section_id)
                replace_directory(staging, local_dir)
                self.cache.put(section_id, CachedRecognizer(recognizer, prefix, local_dir))
                logger.info(f"Bootstrapped empty model for section {section_id}")
                return recognizer
            finally:
                delete_recursively(staging)

    def _upload_model(self, storage_prefix: str, model_dir: str) -> None:
        self.storage.delete(self.model_bucket, [storage_prefix.rstrip('/') + '/'])
        self.storage.upload(
            self.model_bucket,
            self.model_object_path(storage_prefix),
            ZIP_CONTENT_TYPE,
            zip_directory(model_dir),
            True,
        )

    # ==================== RETRAINING ====================

    def retrain_section_async(self, section_id: str) -> Future:
        """Queue a retrain; the Future resolves to a SectionRetrainResult."""
        return self._executor.submit(self._retrain_logged, section_id)

    def retrain_section_sync(self, section_id: str) -> SectionRetrainResult:
        return self.retrain_section_async(section_id).result()

    def retrain_sections_for_student(self, student_id: str) -> Dict[str, Future]:
        """Queue a retrain of every active section the student is enrolled in."""
        section_ids = self.repository.find_active_section_ids_for_student(student_id)
        logger.info(f"Retraining {len(section_ids)} sections for student {student_id}")
        return {section_id: self.retrain_section_async(section_id) for section_id in section_ids}

    def _retrain_logged(self, section_id: str) -> SectionRetrainResult:
        try:
            return self._retrain(section_id)
        except SectionModelTrainingError as e:
            logger.warning(f"Retrain of section {section_id} rejected: {e} "
                           f"(missing: {', '.join(e.missing_student_ids) or 'none'})")
            raise
        except Exception as e:
            logger.error(f"Retrain of section {section_id} failed: {e}", exc_info=True)
            raise

    def _retrain(self, section_id: str) -> SectionRetrainResult:
        with self.locks.hold(section_id):
            if not self.storage.is_enabled():
                raise StorageDisabledError("Object storage is disabled, cannot retrain sections")

            student_ids = self.repository.find_active_student_ids(section_id)
            if not student_ids:
                raise SectionModelTrainingError(f"Section {section_id} has no active enrollments")

            started = time.monotonic()
            temp_root = tempfile.mkdtemp(prefix=f"section-{section_id}-")
            staging = None
            try:
                dataset_root = self._prepare_dataset(section_id, student_ids, temp_root)

                counts = count_images_by_label(dataset_root)
                total = sum(counts.values())
                missing = [s for s in student_ids if counts.get(s, 0) == 0]
                if total < MIN_TRAINING_IMAGES:
                    raise SectionModelTrainingError(
                        f"Section {section_id} needs at least {MIN_TRAINING_IMAGES} face images, found {total}",
                        missing)

                recognizer = self.model_manager.create_recognizer()
                recognizer.train(dataset_root)
                if not recognizer.trained:
                    raise SectionModelTrainingError(
                        f"No usable face images for section {section_id}", missing)

                staging = self._staging_dir(section_id, 'train')
                recognizer.save_model(staging)
                if not os.path.isfile(os.path.join(staging, MODEL_FILE)):
                    raise SectionModelError(f"Model file was not written for section {section_id}")

                prefix = self.storage_prefix(section_id)
                self._upload_model(prefix, staging)
                self.repository.set_model_storage_path(section_id, prefix)

                local_dir = self.local_dir(section_id)
                replace_directory(staging, local_dir)
                staging = None

                loaded = self.model_manager.create_recognizer()
                loaded.load_model(local_dir)
                self.cache.put(section_id, CachedRecognizer(loaded, prefix, local_dir))

                label_ids = [s for s in counts if counts[s] > 0]
                result = SectionRetrainResult(
                    section_id=section_id,
                    storage_prefix=prefix,
                    image_count=total,
                    images_per_student=counts,
                    missing_student_ids=missing,
                    label_display_names=self.repository.find_student_display_names(label_ids),
                )
                logger.info(f"Section {section_id} retrained on {total} images "
                            f"in {time.monotonic() - started:.1f}s")
                return result
            finally:
                delete_recursively(temp_root)
                delete_recursively(staging)

    def _prepare_dataset(self, section_id: str, student_ids: List[str], temp_root: str) -> str:
        self._await_archive_refresh(section_id)

        data = self.storage.download_bytes(
            self.archive_bucket, self.faces_archive_path(section_id), self.download_timeout)
        if not data:
            raise SectionModelTrainingError(
                f"Face archive for section {section_id} is missing", student_ids)

        extract_dir = os.path.join(temp_root, 'dataset')
        try:
            extract_zip(data, extract_dir)
        except (UnsafeArchiveError, zipfile.BadZipFile, OSError) as e:
            raise SectionModelTrainingError(
                f"Face archive for section {section_id} is invalid: {e}") from e
        return resolve_dataset_root(extract_dir, student_ids)

    def _await_archive_refresh(self, section_id: str) -> Optional[datetime]:
        """
        Ask for a fresh face archive and give it a bounded chance to land.

        Returns:
            The new last-modified time if a newer archive was observed.
        """
        if self.archive_refresher is None or not self.archive_refresher.enabled:
            return None

        path = self.faces_archive_path(section_id)
        before = self.storage.head(self.archive_bucket, path)
        self.archive_refresher.request_refresh(section_id)

        if not before.accessible:
            self._sleep(self.refresh_max_wait)
            return None

        deadline = self._clock() + self.refresh_max_wait
        while self._clock() < deadline:
            self._sleep(self.refresh_poll_interval)
            current = self.storage.head(self.archive_bucket, path)
            if not current.accessible:
                return None
            if not current.exists or current.last_modified is None:
                continue
            if (not before.exists or before.last_modified is None
                    or current.last_modified > before.last_modified):
                logger.info(f"Face archive for section {section_id} refreshed at {current.last_modified}")
                return current.last_modified
        logger.info(f"Face archive for section {section_id} not refreshed in time, using current copy")
        return None

    # ==================== PURGE ====================

    def deactivate_section(self, section_id: str, known_storage_path: Optional[str] = None) -> None:
        """Drop a deactivated section's model and clear its storage pointer."""
        self._purge(section_id, known_storage_path, clear_pointer=True)

    def handle_section_deleted(self, section_id: str, known_storage_path: Optional[str] = None) -> None:
        """Drop a deleted section's model and forget its lock."""
        self._purge(section_id, known_storage_path, clear_pointer=False)
        self.locks.discard(section_id)

    def _purge(self, section_id: str, known_storage_path: Optional[str], clear_pointer: bool) -> None:
        with self.locks.hold(section_id):
            storage_path = (known_storage_path
                            or self.repository.get_model_storage_path(section_id)
                            or self.storage_prefix(section_id))

            if self.storage.is_enabled():
                self.storage.delete(self.model_bucket, [storage_path.rstrip('/') + '/'])

            self.cache.pop(section_id)
            delete_recursively(self.local_dir(section_id))

            if clear_pointer:
                self.repository.set_model_storage_path(section_id, None)
        logger.info(f"Purged model for section {section_id}")

    # ==================== ARTIFACTS ====================

    def fetch_model_artifact(self, section_id: str, name: str) -> Optional[bytes]:
        """
        Read ``lbph.yml`` or ``labels.txt`` from the section's published archive.

        Raises:
            ValueError: ``name`` is not a model artifact.
        """
        if name not in ALLOWED_ARTIFACTS:
            raise ValueError(f"Unsupported model artifact: {name}")

        storage_path = self.repository.get_model_storage_path(section_id)
        if not storage_path:
            return None
        data = self.storage.download_bytes(
            self.model_bucket, self.model_object_path(storage_path), self.download_timeout)
        if not data:
            return None
        return read_entry(data, name)

    def fetch_compressed_model_artifact(self, section_id: str, name: str) -> Optional[bytes]:
        data = self.fetch_model_artifact(section_id, name)
        if data is None:
            return None
        return compress_entry(name, data)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("Section model service stopped")

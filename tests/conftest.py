"""
Shared fakes for the service tests: in-memory storage and repository,
and a lightweight recognizer that only counts files.
"""

import io
import os
import threading
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from engines.vision.recognizer import (
    IncrementalUpdateNotSupported, LABELS_FILE, MODEL_FILE, Prediction, Recognizer,
    list_images, list_student_dirs,
)
from services.runtime_config import RuntimeConfig
from services.section_repository import SectionRecord
from services.storage_service import StorageDisabledError, StorageError, StorageObject, StorageObjectHead

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class InMemoryStorage:
    def __init__(self, enabled=True):
        self.enabled = enabled
        self.objects = {}
        self.fail_uploads = False
        self.fail_downloads = False
        self.head_accessible = True
        self.uploads = []
        self._lock = threading.Lock()
        self._tick = 0

    def is_enabled(self):
        return self.enabled

    def _check(self):
        if not self.enabled:
            raise StorageDisabledError("disabled")

    def put(self, bucket, path, data, last_modified=None):
        with self._lock:
            self._tick += 1
            stamp = last_modified or BASE_TIME + timedelta(seconds=self._tick)
            self.objects[(bucket, path)] = (data, stamp)

    def upload(self, bucket, path, content_type, data, upsert=True):
        self._check()
        if self.fail_uploads:
            raise StorageError("upload refused")
        self.uploads.append((bucket, path))
        self.put(bucket, path, data)
        return path

    def download_bytes(self, bucket, path, timeout=None):
        self._check()
        if self.fail_downloads:
            raise StorageError("download refused")
        with self._lock:
            entry = self.objects.get((bucket, path))
        return entry[0] if entry else None

    def head(self, bucket, path):
        self._check()
        if not self.head_accessible:
            return StorageObjectHead(exists=False, accessible=False)
        with self._lock:
            entry = self.objects.get((bucket, path))
        if entry is None:
            return StorageObjectHead(exists=False, accessible=True)
        return StorageObjectHead(exists=True, last_modified=entry[1], accessible=True)

    def list(self, bucket, prefix='', limit=100, offset=0):
        self._check()
        with self._lock:
            keys = sorted(k for (b, k) in self.objects if b == bucket and k.startswith(prefix))
        return [StorageObject(key=k) for k in keys]

    def delete(self, bucket, paths):
        self._check()
        removed = 0
        with self._lock:
            for path in paths:
                doomed = [key for key in self.objects
                          if key[0] == bucket and (key[1] == path
                                                   or (path.endswith('/') and key[1].startswith(path)))]
                for key in doomed:
                    del self.objects[key]
                    removed += 1
        return removed

    def keys(self, bucket):
        with self._lock:
            return sorted(k for (b, k) in self.objects if b == bucket)


class FakeRepository:
    def __init__(self):
        self.sections = {}
        self.enrollments = {}

    def add_section(self, section_id, students=(), active=True, storage_path=None):
        self.sections[section_id] = SectionRecord(section_id, f"CODE-{section_id}", active, storage_path)
        self.enrollments[section_id] = list(students)

    def find_section(self, section_id):
        return self.sections.get(section_id)

    def get_model_storage_path(self, section_id):
        section = self.sections.get(section_id)
        return section.model_storage_path if section else None

    def set_model_storage_path(self, section_id, storage_path):
        self.sections[section_id].model_storage_path = storage_path

    def find_active_student_ids(self, section_id):
        return list(self.enrollments.get(section_id, []))

    def find_active_section_ids_for_student(self, student_id):
        return sorted(s for s, students in self.enrollments.items()
                      if student_id in students and self.sections[s].is_active)

    def find_student_display_names(self, student_ids):
        return {s: f"Student {s}" for s in student_ids}


class FakeRecognizer(Recognizer):
    """Counts image files; 'trains' when at least two are present."""

    def __init__(self, incremental=True, on_train=None):
        self.incremental = incremental
        self.on_train = on_train
        self.labels = {}
        self.training_root = None
        self._trained = False
        self.train_calls = 0
        self.update_calls = []

    @property
    def trained(self):
        return self._trained

    @property
    def supports_incremental_update(self):
        return self.incremental

    def train(self, dataset_root):
        self.train_calls += 1
        self.training_root = dataset_root
        if self.on_train is not None:
            self.on_train(dataset_root)
        self.labels = {}
        total = 0
        for index, student_dir in enumerate(list_student_dirs(dataset_root)):
            self.labels[index] = os.path.basename(student_dir)
            total += len(list_images(student_dir))
        self._trained = total >= 2
        return total if self._trained else 0

    def recognize(self, face):
        if not self._trained:
            return Prediction()
        return Prediction(self.labels[0], 1.0)

    def update_incremental(self, student_dir, student_id):
        if not self.incremental:
            raise IncrementalUpdateNotSupported("fake")
        self.update_calls.append(student_id)
        if student_id not in self.labels.values():
            self.labels[max(self.labels, default=-1) + 1] = student_id
        return len(list_images(student_dir))

    def remove_student(self, student_id):
        if not self.incremental:
            raise IncrementalUpdateNotSupported("fake")
        self.labels = {i: s for i, s in self.labels.items() if s != student_id}

    def save_model(self, model_dir):
        os.makedirs(model_dir, exist_ok=True)
        if self._trained:
            with open(os.path.join(model_dir, MODEL_FILE), 'w') as f:
                f.write('fake-model\n')
        with open(os.path.join(model_dir, LABELS_FILE), 'w') as f:
            for index in sorted(self.labels):
                f.write(f"{index},{self.labels[index]}\n")

    def load_model(self, model_dir):
        model_path = os.path.join(model_dir, MODEL_FILE)
        labels_path = os.path.join(model_dir, LABELS_FILE)
        if not (os.path.isfile(model_path) and os.path.isfile(labels_path)):
            return False
        with open(labels_path) as f:
            pairs = [line.strip().split(',', 1) for line in f if line.strip()]
        self.labels = {int(i): s for i, s in pairs}
        self._trained = os.path.getsize(model_path) > 0 and bool(self.labels)
        return True


class FakeModelManager:
    def __init__(self, **recognizer_kwargs):
        self.recognizer_kwargs = recognizer_kwargs
        self.created = []

    def create_recognizer(self):
        recognizer = FakeRecognizer(**self.recognizer_kwargs)
        self.created.append(recognizer)
        return recognizer


def make_faces_zip(images_per_student, wrapper=None, extra_entries=None):
    """Zip bytes laid out as ``[wrapper/]<student>/<n>.jpg``."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        for student, count in images_per_student.items():
            for i in range(count):
                name = f"{student}/{i}.jpg"
                if wrapper:
                    name = f"{wrapper}/{name}"
                archive.writestr(name, b'\xff\xd8fake-jpeg')
        for name, data in (extra_entries or {}).items():
            archive.writestr(name, data)
    return buffer.getvalue()


def write_faces(root, images_per_student):
    for student, count in images_per_student.items():
        student_dir = os.path.join(root, student)
        os.makedirs(student_dir, exist_ok=True)
        for i in range(count):
            with open(os.path.join(student_dir, f"{i}.jpg"), 'wb') as f:
                f.write(b'\xff\xd8fake-jpeg')


@pytest.fixture
def runtime_config(tmp_path):
    config_file = tmp_path / 'runtime.properties'
    config_file.write_text(
        f"data.dir={tmp_path / 'data'}\n"
        f"faces.dir={tmp_path / 'data' / 'faces'}\n"
        f"model.dir={tmp_path / 'data' / 'model'}\n"
    )
    return RuntimeConfig(str(config_file))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def repository():
    return FakeRepository()

"""
Tests for the global model manager.
"""

import os
import threading
from unittest.mock import MagicMock

import pytest

from conftest import FakeRecognizer, write_faces
from engines.vision.detector import HaarFaceDetector
from engines.vision.recognizer import LABELS_FILE, MODEL_FILE
from services.model_manager import ModelManager


def _factory(created, **kwargs):
    def create():
        recognizer = FakeRecognizer(**kwargs)
        created.append(recognizer)
        return recognizer
    return create


@pytest.fixture
def created():
    return []


@pytest.fixture
def manager(runtime_config, created):
    mgr = ModelManager(runtime_config, recognizer_factory=_factory(created))
    yield mgr
    mgr.shutdown()


class TestLoading:
    def test_ensure_loaded_without_model(self, manager):
        assert manager.ensure_loaded().result(timeout=5) is None
        assert manager.get_recognizer() is None
        assert manager.is_ready() is False

    def test_ensure_loaded_reads_persisted_model(self, manager, created):
        trainer = FakeRecognizer()
        write_faces(manager.faces_dir, {'A': 2})
        trainer.train(manager.faces_dir)
        trainer.save_model(manager.model_dir)

        recognizer = manager.ensure_loaded().result(timeout=5)

        assert recognizer is manager.get_recognizer()
        assert manager.is_ready()
        assert recognizer.training_root == manager.faces_dir


class TestRetrainAll:
    def test_empty_faces_publishes_untrained(self, manager):
        recognizer = manager.retrain_all().result(timeout=5)
        assert manager.get_recognizer() is recognizer
        assert recognizer.trained is False
        assert os.path.isfile(os.path.join(manager.model_dir, LABELS_FILE))

    def test_trains_and_persists(self, manager):
        write_faces(manager.faces_dir, {'A': 2, 'B': 1})

        recognizer = manager.retrain_all().result(timeout=5)

        assert recognizer.trained
        assert manager.is_ready()
        assert os.path.isfile(os.path.join(manager.model_dir, MODEL_FILE))

    def test_clears_stale_model_files(self, manager):
        stale = os.path.join(manager.model_dir, MODEL_FILE)
        with open(stale, 'w') as f:
            f.write('old')
        manager.retrain_all().result(timeout=5)
        assert not os.path.exists(stale)

    def test_keeps_section_models(self, manager):
        section_dir = os.path.join(manager.model_dir, 'sections', 'S1')
        staging_dir = os.path.join(manager.model_dir, 'sections', '.S2-train-abc')
        for directory in (section_dir, staging_dir):
            os.makedirs(directory)
            with open(os.path.join(directory, MODEL_FILE), 'w') as f:
                f.write('section-model')
        write_faces(manager.faces_dir, {'A': 2})

        manager.retrain_all().result(timeout=5)

        assert os.path.isfile(os.path.join(section_dir, MODEL_FILE))
        assert os.path.isfile(os.path.join(staging_dir, MODEL_FILE))

    def test_runs_on_single_worker(self, runtime_config):
        threads = []

        def record(root):
            threads.append(threading.current_thread().name)

        mgr = ModelManager(runtime_config, recognizer_factory=lambda: FakeRecognizer(on_train=record))
        write_faces(mgr.faces_dir, {'A': 2})
        try:
            futures = [mgr.retrain_all() for _ in range(3)]
            for future in futures:
                future.result(timeout=5)
        finally:
            mgr.shutdown()

        assert len(threads) == 3
        assert all(name.startswith('model-trainer') for name in threads)
        assert len(set(threads)) == 1


class TestStudentUpdates:
    def test_incremental_update_publishes_new_instance(self, manager):
        write_faces(manager.faces_dir, {'A': 2})
        first = manager.retrain_all().result(timeout=5)
        write_faces(manager.faces_dir, {'B': 2})

        updated = manager.update_student('B').result(timeout=5)

        assert updated is not first
        assert updated.update_calls == ['B']
        assert 'B' in updated.labels.values()
        assert 'B' not in first.labels.values()
        assert manager.get_recognizer() is updated

    def test_update_without_model_retrains(self, manager):
        write_faces(manager.faces_dir, {'A': 2})
        recognizer = manager.update_student('A').result(timeout=5)
        assert recognizer.trained
        assert recognizer.train_calls == 1

    def test_non_incremental_falls_back_to_full_retrain(self, runtime_config):
        created = []
        mgr = ModelManager(runtime_config, recognizer_factory=_factory(created, incremental=False))
        write_faces(mgr.faces_dir, {'A': 2})
        try:
            mgr.retrain_all().result(timeout=5)
            recognizer = mgr.update_student('A').result(timeout=5)
        finally:
            mgr.shutdown()
        assert recognizer.train_calls == 1
        assert recognizer.update_calls == []

    def test_remove_student(self, manager):
        write_faces(manager.faces_dir, {'A': 2, 'B': 2})
        manager.retrain_all().result(timeout=5)

        recognizer = manager.remove_student('B').result(timeout=5)

        assert 'B' not in recognizer.labels.values()
        assert manager.get_recognizer() is recognizer

    def test_remove_not_supported_falls_back(self, runtime_config):
        created = []
        mgr = ModelManager(runtime_config, recognizer_factory=_factory(created, incremental=False))
        write_faces(mgr.faces_dir, {'A': 2})
        try:
            mgr.retrain_all().result(timeout=5)
            recognizer = mgr.remove_student('A').result(timeout=5)
        finally:
            mgr.shutdown()
        assert recognizer.train_calls == 1

    def test_quietly_swallows_failures(self, runtime_config):
        def broken():
            raise RuntimeError("factory down")

        mgr = ModelManager(runtime_config, recognizer_factory=broken)
        try:
            assert mgr.retrain_all_quietly(timeout=5) is False
        finally:
            mgr.shutdown()

    def test_quietly_reports_success(self, manager):
        assert manager.retrain_all_quietly(timeout=5) is True


class TestConfiguration:
    def test_directory_change_applied_live(self, manager, runtime_config, tmp_path):
        new_model_dir = tmp_path / 'other-model'
        with open(runtime_config.config_file, 'a') as f:
            f.write(f"model.dir={new_model_dir}\n")

        runtime_config.reload()
        manager.ensure_loaded().result(timeout=5)

        assert manager.model_dir == str(new_model_dir)
        assert new_model_dir.is_dir()

    def test_train_temporary_does_not_publish(self, manager, tmp_path):
        root = str(tmp_path / 'scratch')
        write_faces(root, {'A': 2})
        recognizer = manager.train_temporary(root).result(timeout=5)
        assert recognizer.trained
        assert manager.get_recognizer() is None


class TestSharedDetector:
    def _manager(self, runtime_config, **kwargs):
        detector = MagicMock(spec=HaarFaceDetector)
        return detector, ModelManager(runtime_config, detector=detector, **kwargs)

    def test_receives_current_detection_settings(self, runtime_config):
        detector, mgr = self._manager(runtime_config)
        try:
            detector.update_settings.assert_called_once_with(runtime_config.vision.detection)
        finally:
            mgr.shutdown()

    def test_follows_detection_reload(self, runtime_config):
        detector, mgr = self._manager(runtime_config)
        with open(runtime_config.config_file, 'a') as f:
            f.write("detect.min_face=100\n")
        try:
            runtime_config.reload()
        finally:
            mgr.shutdown()

        assert detector.update_settings.call_count == 2
        assert detector.update_settings.call_args.args[0].min_face == 100

    def test_processors_crop_with_shared_detector(self, runtime_config):
        detector, mgr = self._manager(runtime_config)
        try:
            assert mgr.create_processor().detector is detector
            assert mgr.create_recognizer().processor.detector is detector
        finally:
            mgr.shutdown()

    def test_unsubscribed_after_shutdown(self, runtime_config):
        detector, mgr = self._manager(runtime_config)
        mgr.shutdown()
        with open(runtime_config.config_file, 'a') as f:
            f.write("detect.min_face=100\n")
        runtime_config.reload()
        assert detector.update_settings.call_count == 1


class TestDatasetTools:
    def test_collect_dataset_stats(self, manager):
        write_faces(manager.faces_dir, {'A': 2, 'B': 3})
        stats = manager.collect_dataset_stats()
        assert stats.student_count == 2
        assert stats.image_count == 5
        assert stats.to_dict()['images_per_student'] == {'A': 2, 'B': 3}

    def test_export_model_archive(self, manager):
        assert manager.export_model_archive() is None
        write_faces(manager.faces_dir, {'A': 2})
        manager.retrain_all().result(timeout=5)
        assert manager.export_model_archive()[:2] == b'PK'

"""
Runtime Configuration — hot-reloadable vision and directory settings.
Reads a ``key=value`` properties file and notifies listeners when it changes.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from dotenv import dotenv_values

from engines.vision.settings import (
    CaptureSettings,
    DetectionSettings,
    LbphSettings,
    PreprocessingSettings,
    VisionSettings,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0


@dataclass(frozen=True)
class Directories:
    data_dir: str = 'data'
    faces_dir: str = os.path.join('data', 'faces')
    model_dir: str = os.path.join('data', 'model')


@dataclass(frozen=True)
class RuntimeSettings:
    """Immutable snapshot of everything the properties file controls."""
    directories: Directories = field(default_factory=Directories)
    vision: VisionSettings = field(default_factory=VisionSettings)


def _read_float(values: Dict[str, Optional[str]], key: str, default: float) -> float:
    raw = values.get(key)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {key}: {raw!r}, using {default}")
        return default


def _read_int(values: Dict[str, Optional[str]], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid value for {key}: {raw!r}, using {default}")
        return default


def _read_path(values: Dict[str, Optional[str]], key: str, default: str) -> str:
    raw = values.get(key)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip()


def parse_settings(values: Dict[str, Optional[str]]) -> RuntimeSettings:
    """Build a settings snapshot from raw properties, falling back to defaults."""
    data_dir = _read_path(values, 'data.dir', Directories.data_dir)
    directories = Directories(
        data_dir=data_dir,
        faces_dir=_read_path(values, 'faces.dir', os.path.join(data_dir, 'faces')),
        model_dir=_read_path(values, 'model.dir', os.path.join(data_dir, 'model')),
    )

    detection = DetectionSettings(
        downscale=_read_float(values, 'detect.scale', DetectionSettings.downscale),
        min_face=_read_int(values, 'detect.min_face', DetectionSettings.min_face),
        cascade_scale_factor=_read_float(values, 'detect.cascade.scale_factor',
                                         DetectionSettings.cascade_scale_factor),
        cascade_min_neighbors=_read_int(values, 'detect.cascade.min_neighbors',
                                        DetectionSettings.cascade_min_neighbors),
    )
    preprocessing = PreprocessingSettings(
        width=_read_int(values, 'preproc.width', PreprocessingSettings.width),
        height=_read_int(values, 'preproc.height', PreprocessingSettings.height),
    )
    capture = CaptureSettings(
        blur_variance_threshold=_read_float(values, 'capture.blur.variance_threshold',
                                            CaptureSettings.blur_variance_threshold),
        post_capture_blur_variance_threshold=_read_float(
            values, 'capture.post_blur.variance_threshold',
            CaptureSettings.post_capture_blur_variance_threshold),
    )
    lbph = LbphSettings(
        radius=_read_int(values, 'recognition.lbph.radius', LbphSettings.radius),
        neighbors=_read_int(values, 'recognition.lbph.neighbors', LbphSettings.neighbors),
        grid_x=_read_int(values, 'recognition.lbph.grid_x', LbphSettings.grid_x),
        grid_y=_read_int(values, 'recognition.lbph.grid_y', LbphSettings.grid_y),
    )
    return RuntimeSettings(
        directories=directories,
        vision=VisionSettings(detection, preprocessing, capture, lbph),
    )


class RuntimeConfig:
    """
    Hot-reloadable settings provider.

    Responsibilities:
        - Parse the properties file into an immutable RuntimeSettings snapshot
        - Create the configured data directories
        - Poll the file and notify listeners when the snapshot changes

    Listeners run on the thread that triggered the reload.
    """

    def __init__(self, config_file: Optional[str] = None,
                 poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.config_file = config_file
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._listeners: List[Callable[[RuntimeSettings], None]] = []
        self._settings = self._load()
        self._mtime = self._file_mtime()
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    def _file_mtime(self) -> Optional[float]:
        if not self.config_file or not os.path.isfile(self.config_file):
            return None
        return os.path.getmtime(self.config_file)

    def _load(self) -> RuntimeSettings:
        values: Dict[str, Optional[str]] = {}
        if self.config_file and os.path.isfile(self.config_file):
            values = dotenv_values(self.config_file)
        elif self.config_file:
            logger.info(f"Runtime config {self.config_file} not found, using defaults")

        settings = parse_settings(values)
        for directory in (settings.directories.data_dir,
                          settings.directories.faces_dir,
                          settings.directories.model_dir):
            os.makedirs(directory, exist_ok=True)
        return settings

    def snapshot(self) -> RuntimeSettings:
        with self._lock:
            return self._settings

    @property
    def directories(self) -> Directories:
        return self.snapshot().directories

    @property
    def vision(self) -> VisionSettings:
        return self.snapshot().vision

    def on_change(self, listener: Callable[[RuntimeSettings], None]) -> Callable[[], None]:
        """
        Subscribe to settings changes.

        The listener is invoked immediately with the current snapshot.

        Returns:
            A callable that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)
            current = self._settings
        self._notify_one(listener, current)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def reload(self) -> RuntimeSettings:
        """Re-read the file; listeners are notified only if something changed."""
        settings = self._load()
        with self._lock:
            changed = settings != self._settings
            self._settings = settings
            self._mtime = self._file_mtime()
            listeners = list(self._listeners)

        if changed:
            logger.info(f"Runtime configuration reloaded from {self.config_file}")
            for listener in listeners:
                self._notify_one(listener, settings)
        return settings

    @staticmethod
    def _notify_one(listener, settings: RuntimeSettings) -> None:
        try:
            listener(settings)
        except Exception as e:
            logger.error(f"Runtime config listener failed: {e}", exc_info=True)

    # ==================== FILE WATCHING ====================

    def start_watching(self) -> None:
        if self._watcher is not None and self._watcher.is_alive():
            return
        self._stop.clear()
        self._watcher = threading.Thread(
            target=self._watch_loop, name='runtime-config-watcher', daemon=True)
        self._watcher.start()
        logger.info(f"Watching {self.config_file} for changes")

    def stop_watching(self) -> None:
        self._stop.set()
        if self._watcher is not None:
            self._watcher.join(timeout=self.poll_interval * 2)
            self._watcher = None

    def _watch_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                if self._file_mtime() != self._mtime:
                    self.reload()
            except OSError as e:
                logger.warning(f"Runtime config reload failed: {e}")

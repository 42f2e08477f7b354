"""
Recognizer Cache — process-local registry of loaded per-section recognizers
and the per-section locks that serialize their lifecycle.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

from engines.vision.recognizer import Recognizer


@dataclass(frozen=True)
class CachedRecognizer:
    """A loaded recognizer and where its artifacts came from."""
    recognizer: Recognizer
    storage_path: str
    local_path: str


class RecognizerCache:
    """
    Thread-safe map of section id to CachedRecognizer.

    Entries are immutable; replacing an entry swaps the whole value, so a
    reader holding an entry always sees a fully-loaded recognizer.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, CachedRecognizer] = {}

    def get(self, section_id: str) -> Optional[CachedRecognizer]:
        with self._lock:
            return self._entries.get(section_id)

    def put(self, section_id: str, entry: CachedRecognizer) -> None:
        with self._lock:
            self._entries[section_id] = entry

    def pop(self, section_id: str) -> Optional[CachedRecognizer]:
        with self._lock:
            return self._entries.pop(section_id, None)

    def matches(self, section_id: str, storage_path: str) -> Optional[CachedRecognizer]:
        """Return the entry only if it was loaded from ``storage_path``."""
        with self._lock:
            entry = self._entries.get(section_id)
        if entry is not None and entry.storage_path == storage_path:
            return entry
        return None

    def section_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SectionLocks:
    """
    Lazily-created reentrant lock per section.

    Bootstrap, retrain and purge of one section all take the same lock, so at
    most one of them runs for that section at a time.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, section_id: str):
        with self._guard:
            lock = self._locks.get(section_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[section_id] = lock
            return lock

    @contextmanager
    def hold(self, section_id: str):
        lock = self.lock_for(section_id)
        with lock:
            yield lock

    def discard(self, section_id: str) -> None:
        with self._guard:
            self._locks.pop(section_id, None)

    def __contains__(self, section_id: str) -> bool:
        with self._guard:
            return section_id in self._locks

"""
Model Archive Helpers — zip packing/unpacking and directory swaps for
model artifacts and face datasets.
"""

import io
import logging
import os
import shutil
import uuid
import zipfile
from typing import Dict, Iterable, Optional

from engines.vision.recognizer import IMAGE_EXTENSIONS, LABELS_FILE, MODEL_FILE

logger = logging.getLogger(__name__)

IGNORED_ARCHIVE_DIRS = {'__MACOSX'}


class UnsafeArchiveError(ValueError):
    """Raised when a zip entry would be written outside the target directory."""


def _is_within(root: str, candidate: str) -> bool:
    root = os.path.realpath(root)
    candidate = os.path.realpath(candidate)
    return candidate == root or candidate.startswith(root + os.sep)


def extract_zip(data: bytes, target_dir: str) -> int:
    """
    Extract a zip archive into ``target_dir``.

    Every entry is validated before anything is written, so a hostile
    archive leaves the target untouched.

    Returns:
        Number of files extracted.

    Raises:
        UnsafeArchiveError: an entry resolves outside ``target_dir``.
        zipfile.BadZipFile: the data is not a zip archive.
    """
    os.makedirs(target_dir, exist_ok=True)
    extracted = 0
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        members = archive.infolist()
        for member in members:
            destination = os.path.join(target_dir, member.filename)
            if os.path.isabs(member.filename) or not _is_within(target_dir, destination):
                raise UnsafeArchiveError(f"Zip entry escapes target directory: {member.filename}")

        for member in members:
            destination = os.path.join(target_dir, member.filename)
            if member.is_dir():
                os.makedirs(destination, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            with archive.open(member) as source, open(destination, 'wb') as sink:
                shutil.copyfileobj(source, sink)
            extracted += 1
    return extracted


def zip_directory(directory: str) -> bytes:
    """Zip the regular files of ``directory`` (recursively) into memory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as archive:
        for current, _dirs, files in os.walk(directory):
            for name in sorted(files):
                path = os.path.join(current, name)
                archive.write(path, os.path.relpath(path, directory).replace(os.sep, '/'))
    return buffer.getvalue()


def read_entry(data: bytes, name: str) -> Optional[bytes]:
    """Return one entry of a zip archive, matching by basename; None if absent."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for member in archive.infolist():
            if member.is_dir():
                continue
            if member.filename == name or member.filename.rsplit('/', 1)[-1] == name:
                return archive.read(member)
    return None


def compress_entry(name: str, data: bytes) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(name, data)
    return buffer.getvalue()


# ==================== DATASETS ====================

def _visible_children(directory: str):
    return [
        name for name in sorted(os.listdir(directory))
        if not name.startswith('.') and name not in IGNORED_ARCHIVE_DIRS
    ]


def resolve_dataset_root(extract_dir: str, expected_ids: Iterable[str]) -> str:
    """
    Find the directory that actually holds the per-student folders.

    Archives built by hand often wrap everything in one extra top-level
    folder; descend through such single wrappers until a student folder,
    a file, or several entries appear.
    """
    expected = set(expected_ids)
    current = extract_dir
    while True:
        children = _visible_children(current)
        if len(children) != 1:
            return current
        only = children[0]
        path = os.path.join(current, only)
        if only in expected or not os.path.isdir(path):
            return current
        current = path


def count_images_by_label(root: str) -> Dict[str, int]:
    """Count image files per top-level folder of a dataset root."""
    counts: Dict[str, int] = {}
    if not os.path.isdir(root):
        return counts
    for label in _visible_children(root):
        label_dir = os.path.join(root, label)
        if not os.path.isdir(label_dir):
            continue
        total = 0
        for _current, _dirs, files in os.walk(label_dir):
            total += sum(1 for name in files
                         if not name.startswith('.') and name.lower().endswith(IMAGE_EXTENSIONS))
        counts[label] = total
    return counts


# ==================== LOCAL DIRECTORIES ====================

def ensure_placeholder_artifacts(model_dir: str) -> None:
    """Make sure both model files exist, creating empty ones if needed."""
    os.makedirs(model_dir, exist_ok=True)
    for name in (MODEL_FILE, LABELS_FILE):
        path = os.path.join(model_dir, name)
        if not os.path.exists(path):
            open(path, 'wb').close()


def delete_recursively(path: Optional[str]) -> None:
    if not path or not os.path.exists(path):
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to delete {path}: {e}")


def replace_directory(source: str, target: str) -> None:
    """
    Move ``source`` into place as ``target``.

    The old target is renamed aside first and only removed once the new
    directory is in place; on failure the old target is restored.
    """
    parent = os.path.dirname(os.path.abspath(target))
    os.makedirs(parent, exist_ok=True)
    backup = None
    if os.path.exists(target):
        backup = os.path.join(parent, f".{os.path.basename(target)}.old-{uuid.uuid4().hex[:8]}")
        os.replace(target, backup)
    try:
        shutil.move(source, target)
    except OSError:
        if backup is not None and not os.path.exists(target):
            os.replace(backup, target)
        raise
    delete_recursively(backup)

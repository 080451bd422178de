# app/x402/storage.py
"""
Durable JSON document storage for the gateway.

Each store wraps a single JSON file (an array or an object). Writes go to a
temporary file in the same directory and are swapped in with os.replace, so a
reader never observes a half-written document.

Every resolved path owns one process-wide re-entrant lock, and update() holds
it for the whole read-modify-write cycle. Two writers on the same document
are therefore serialized.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from app.x402.errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# One lock per resolved file path, shared by every store instance on that file
_path_locks: Dict[str, threading.RLock] = {}
_path_locks_guard = threading.Lock()


def get_path_lock(path: Union[str, Path]) -> threading.RLock:
    """Return the lock guarding the given file path."""
    key = str(Path(path).resolve())
    with _path_locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _path_locks[key] = lock
        return lock


class JsonDocumentStore:
    """
    A single JSON document on disk with locked read-modify-write access.

    Args:
        path: File holding the document
        default_factory: Builds the empty document (list or dict) when the file is missing
    """

    def __init__(self, path: Union[str, Path], default_factory: Callable[[], Any] = list):
        self.path = Path(path)
        self._default_factory = default_factory
        self.lock = get_path_lock(self.path)

    def _ensure_file(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._write_unlocked(self._default_factory())
        logger.info(f"Created data file: {self.path}")

    def _read_unlocked(self) -> Any:
        self._ensure_file()
        raw = self.path.read_text(encoding="utf-8")
        cleaned = raw.lstrip("\ufeff").strip()
        if not cleaned:
            return self._default_factory()
        document = json.loads(cleaned)
        expected = type(self._default_factory())
        if not isinstance(document, expected):
            raise ValueError(f"expected a JSON {expected.__name__}, found {type(document).__name__}")
        return document

    def _write_unlocked(self, document: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def read(self) -> Any:
        """Read the current document."""
        with self.lock:
            try:
                return self._read_unlocked()
            except (OSError, ValueError) as e:
                logger.error(f"Failed to read {self.path}: {e}")
                raise StorageError(str(self.path), f"read failed: {e}") from e

    def write(self, document: Any) -> None:
        """Replace the whole document."""
        with self.lock:
            try:
                self._write_unlocked(document)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to write {self.path}: {e}")
                raise StorageError(str(self.path), f"write failed: {e}") from e

    def update(self, mutator: Callable[[Any], Optional[T]]) -> Optional[T]:
        """
        Run a read-modify-write cycle atomically.

        The mutator receives the current document and changes it in place.
        Its return value is handed back to the caller. The document is
        written back only if the mutator returns without raising.
        """
        with self.lock:
            document = self.read()
            result = mutator(document)
            self.write(document)
            return result

#!/usr/bin/env python3
"""
Key-value storage for the federation server

Two backends share one small interface:
- MemoryKvStore: a lock-protected dict, used by tests and throwaway instances
- FileKvStore: one JSON file per key under a data directory

Keys are plain strings using '/' as namespace separator, e.g.
'key/me' or 'followers/https://remote.example/activities/1'.
Values must be JSON serializable.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the persistence layer cannot be read or written"""


class KvStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value or None"""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value"""

    @abstractmethod
    def set_if_absent(self, key: str, value: Any) -> bool:
        """Store value only if key is unset. Return True if this call stored it."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key. Return True if something was deleted."""

    @abstractmethod
    def list(self, prefix: str = '') -> Iterator[Tuple[str, Any]]:
        """Yield (key, value) pairs whose key starts with prefix, ordered by key"""


class MemoryKvStore(KvStore):
    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            value = self._data.get(key)
        # Hand out copies so callers cannot mutate stored state
        return json.loads(value) if value is not None else None

    def set(self, key, value):
        encoded = json.dumps(value)
        with self._lock:
            self._data[key] = encoded

    def set_if_absent(self, key, value):
        encoded = json.dumps(value)
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = encoded
            return True

    def delete(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def list(self, prefix=''):
        with self._lock:
            snapshot = sorted((k, v) for k, v in self._data.items() if k.startswith(prefix))
        for key, value in snapshot:
            yield key, json.loads(value)


class FileKvStore(KvStore):
    """
    Stores each key as a JSON file named after the SHA-256 of the key

    Each file holds {"key": ..., "value": ...} so prefix listing can recover
    the original key. Writes go to a temp file first and are moved into place
    with os.replace (set) or os.link (set_if_absent), so readers never see a
    half-written record.
    """

    def __init__(self, directory: str):
        self.directory = directory
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {directory}: {e}") from e

    def _path(self, key: str) -> str:
        digest = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return os.path.join(self.directory, f"{digest}.json")

    def _write_temp(self, key: str, value: Any) -> str:
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix='.tmp-', suffix='.json')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump({'key': key, 'value': value}, f)
        except (OSError, TypeError, ValueError):
            os.unlink(tmp_path)
            raise
        return tmp_path

    def _read(self, path: str) -> Optional[dict]:
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def get(self, key):
        record = self._read(self._path(key))
        if record is None:
            return None
        return record.get('value')

    def set(self, key, value):
        try:
            tmp_path = self._write_temp(key, value)
        except OSError as e:
            raise StorageError(f"Cannot write {key}: {e}") from e
        try:
            os.replace(tmp_path, self._path(key))
        except OSError as e:
            os.unlink(tmp_path)
            raise StorageError(f"Cannot write {key}: {e}") from e

    def set_if_absent(self, key, value):
        try:
            tmp_path = self._write_temp(key, value)
        except OSError as e:
            raise StorageError(f"Cannot write {key}: {e}") from e
        try:
            os.link(tmp_path, self._path(key))
            return True
        except FileExistsError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot write {key}: {e}") from e
        finally:
            os.unlink(tmp_path)

    def delete(self, key):
        try:
            os.unlink(self._path(key))
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot delete {key}: {e}") from e

    def list(self, prefix=''):
        try:
            filenames = [f for f in os.listdir(self.directory)
                         if f.endswith('.json') and not f.startswith('.tmp-')]
        except OSError as e:
            raise StorageError(f"Cannot list {self.directory}: {e}") from e

        records = []
        for filename in filenames:
            record = self._read(os.path.join(self.directory, filename))
            # Deleted between listdir and open
            if record is None:
                continue
            key = record.get('key')
            if isinstance(key, str) and key.startswith(prefix):
                records.append((key, record.get('value')))

        records.sort(key=lambda item: item[0])
        return iter(records)


def create_store(config: dict) -> KvStore:
    """
    Build the storage backend named in config['storage']

    Args:
        config: Configuration dictionary

    Returns:
        KvStore: MemoryKvStore for backend 'memory', FileKvStore otherwise
    """
    storage = config.get('storage', {})
    backend = storage.get('backend', 'file')
    if backend == 'memory':
        logger.warning("Using in-memory storage; followers and keys are lost on restart")
        return MemoryKvStore()
    if backend != 'file':
        raise StorageError(f"Unknown storage backend: {backend}")
    return FileKvStore(storage.get('directory', 'data'))

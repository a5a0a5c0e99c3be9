"""
Key-value persistence substrate for the snapshot cache and pending queue.

The engine needs only get/put/delete/list-by-prefix semantics. Two
implementations are provided:

    MemoryStore   - dict-backed, used by tests and ephemeral sessions
    JsonFileStore - one JSON document per key under a data directory,
                    written atomically (temp file + rename) for crash safety

Values are plain JSON-serializable dicts. Both stores guard their own state
with a lock so request threads and the sync thread can share one instance.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote

from .exceptions import StorageError
from logging_config import get_logger


logger = get_logger(__name__)


class MemoryStore:
    """In-process key-value store."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._data.get(key)
            return json.loads(json.dumps(value)) if value is not None else None

    def put(self, key: str, value: Dict[str, Any]) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not serializable: {e}", key=key)
        with self._lock:
            self._data[key] = json.loads(encoded)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class JsonFileStore:
    """
    File-backed key-value store.

    Each key maps to ``<data_dir>/<quoted key>.json``. Keys are percent-encoded
    so ``pending/…`` and ``package/…`` keys stay flat in one directory.

    Raises:
        StorageError: On any I/O or decode failure
    """

    SUFFIX = ".json"

    def __init__(self, data_dir: Path):
        self._dir = Path(data_dir)
        self._lock = threading.Lock()
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {self._dir}: {e}")
        logger.info(f"JsonFileStore opened at {self._dir}")

    @property
    def data_dir(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        return self._dir / f"{quote(key, safe='')}{self.SUFFIX}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise StorageError(f"Failed to read {key}: {e}", key=key)

    def put(self, key: str, value: Dict[str, Any]) -> None:
        path = self._path(key)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            payload = json.dumps(value, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not serializable: {e}", key=key)

        with self._lock:
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_path, path)
            except OSError as e:
                raise StorageError(f"Failed to write {key}: {e}", key=key)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StorageError(f"Failed to delete {key}: {e}", key=key)

    def list_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            try:
                names = [p.name for p in self._dir.iterdir() if p.name.endswith(self.SUFFIX)]
            except OSError as e:
                raise StorageError(f"Failed to list {self._dir}: {e}")
        keys = [unquote(name[: -len(self.SUFFIX)]) for name in names]
        return sorted(k for k in keys if k.startswith(prefix))

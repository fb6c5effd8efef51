"""Local key-value persistence surfaces used underneath the collection cache."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Synchronous string key-value storage. Any method may raise."""

    def get(self, key: str) -> Optional[str]:  # pragma: no cover - protocol definition
        ...

    def set(self, key: str, value: str) -> None:  # pragma: no cover - protocol definition
        ...

    def remove(self, key: str) -> None:  # pragma: no cover - protocol definition
        ...

    def keys(self) -> List[str]:  # pragma: no cover - protocol definition
        ...


class MemoryKeyValueStore:
    """Process-local store, used for tests and when no cache path is configured."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._values)


class JsonFileKeyValueStore:
    """Single JSON document on disk mapping keys to raw string values."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_unlocked(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError(f"Key-value file {self._path} does not hold a JSON object.")
        return {str(key): value for key, value in raw.items() if isinstance(value, str)}

    def _write_unlocked(self, values: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(values, handle, indent=2)
        tmp_path.replace(self._path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load_unlocked().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            values = self._load_unlocked()
            values[key] = value
            self._write_unlocked(values)

    def remove(self, key: str) -> None:
        with self._lock:
            values = self._load_unlocked()
            if values.pop(key, None) is not None:
                self._write_unlocked(values)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._load_unlocked())


def build_store(path: Optional[str]) -> KeyValueStore:
    if not path:
        return MemoryKeyValueStore()
    logger.debug("Using JSON key-value store at %s", path)
    return JsonFileKeyValueStore(Path(path))


__all__ = ["JsonFileKeyValueStore", "KeyValueStore", "MemoryKeyValueStore", "build_store"]

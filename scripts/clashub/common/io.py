from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from .errors import StoreError


class KVStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str) -> None: ...


def load_json(path: Path, default):
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return data
    except Exception:
        return default


def save_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MemoryKVStore:
    """Process-local store, mostly for tests and throwaway instances."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def put(self, key: str, value: str) -> None:
        self.data[key] = str(value)


class JsonFileKVStore:
    """All keys in one JSON object on disk, each value kept as an opaque string.

    The lock only serializes single get/put calls. A caller doing
    read-modify-write across two calls can still lose updates.
    Reads of an unreadable file see an empty store; writes refuse to
    replace it.
    """

    def __init__(self, file_path: Path) -> None:
        self.file_path = Path(file_path)
        self.lock = threading.Lock()

    def _load_unlocked(self) -> dict[str, str]:
        loaded = load_json(self.file_path, {})
        if not isinstance(loaded, dict):
            return {}
        return {str(key): value for key, value in loaded.items() if isinstance(value, str)}

    def _load_for_write_unlocked(self) -> dict:
        if not self.file_path.exists():
            return {}
        try:
            with self.file_path.open("r", encoding="utf-8") as fh:
                loaded = json.load(fh)
        except (OSError, ValueError) as exc:
            raise StoreError(f"store file {self.file_path} is unreadable, refusing to overwrite: {exc}") from exc
        if not isinstance(loaded, dict):
            raise StoreError(f"store file {self.file_path} does not hold a JSON object, refusing to overwrite")
        return loaded

    def get(self, key: str) -> str | None:
        with self.lock:
            return self._load_unlocked().get(key)

    def put(self, key: str, value: str) -> None:
        with self.lock:
            data = self._load_for_write_unlocked()
            data[key] = str(value)
            save_json(self.file_path, data)

"""
Key-Ordered Store

Minimal persistence boundary for the offline queue and cached content:
get / put / delete plus prefix iteration in ascending key order.

Two implementations:
- InMemoryStore: process-local, used in tests and when no path is configured
- JsonFileStore: a single JSON document rewritten atomically on every change
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol


class KeyOrderedStore(Protocol):
    def get(self, key: str) -> Optional[dict[str, Any]]:
        ...

    def put(self, key: str, value: dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def items(self, prefix: str = "") -> Iterator[tuple[str, dict[str, Any]]]:
        """Yield (key, value) pairs whose key starts with ``prefix``, ascending."""
        ...


class InMemoryStore:
    """Dict-backed store."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            value = self._data.get(key)
            return json.loads(json.dumps(value)) if value is not None else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def items(self, prefix: str = "") -> Iterator[tuple[str, dict[str, Any]]]:
        with self._lock:
            snapshot = sorted(
                ((k, v) for k, v in self._data.items() if k.startswith(prefix)),
                key=lambda kv: kv[0],
            )
        for key, value in snapshot:
            yield key, json.loads(json.dumps(value))


class JsonFileStore(InMemoryStore):
    """InMemoryStore persisted to a JSON file after each write.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so a crash never leaves a half-written document.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                self._data = json.load(f)

    def put(self, key: str, value: dict[str, Any]) -> None:
        super().put(key, value)
        self._flush()

    def delete(self, key: str) -> None:
        super().delete(key)
        self._flush()

    def _flush(self) -> None:
        with self._lock:
            payload = json.dumps(self._data, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

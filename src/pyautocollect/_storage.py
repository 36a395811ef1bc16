"""Opaque key/value persistence used by the config and cooldown store."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pyautocollect.exceptions import AutoCollectStorageError

_logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Structural storage interface.

    Implementations raise :class:`AutoCollectStorageError` when the
    backing medium is unavailable; callers decide whether that matters.
    """

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...


class MemoryStorage:
    """Process-local storage, lost on exit."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]


class JsonFileStorage:
    """Storage backed by a single JSON object on disk.

    The file is read lazily on first access and rewritten through a
    temporary file + ``os.replace`` so a crash never leaves half a file.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._data: dict[str, str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._data = {}
            return self._data
        except OSError as exc:
            raise AutoCollectStorageError(f"Cannot read {self._path}: {exc}") from exc

        try:
            parsed = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as exc:
            raise AutoCollectStorageError(f"Corrupt storage file {self._path}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise AutoCollectStorageError(f"Storage file {self._path} does not hold a JSON object")

        self._data = {str(k): str(v) for k, v in parsed.items()}
        return self._data

    def _flush(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".autocollect-", dir=self._path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, separators=(",", ":"), sort_keys=True)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            raise AutoCollectStorageError(f"Cannot write {self._path}: {exc}") from exc
        _logger.debug("Flushed %d keys to %s", len(data), self._path)

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._flush(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._flush(data)

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._load() if key.startswith(prefix)]

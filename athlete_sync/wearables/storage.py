"""Local persistent key/value storage.

A single JSON file holds every key.  Writes go to a temporary file in the
same directory and are swapped in with ``os.replace`` so a reader never
observes a half-written file.  ``path=None`` keeps everything in memory.
Access is serialized with a lock so worker-thread writes are safe.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger("athlete_sync.wearables.storage")


class LocalStorage:
    """JSON-file backed key/value store.

    Usage::

        storage = LocalStorage(Path(".athlete_sync/storage.json"))
        storage.set("tokens:acct:cloud_fitness", {"access_token": "..."})
        storage.get("tokens:acct:cloud_fitness")
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._data: dict[str, Any] | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self._load().get(key, default)
            return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = dict(self._load())
            data[key] = copy.deepcopy(value)
            self._flush(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key not in data:
                return
            data = dict(data)
            del data[key]
            self._flush(data)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        if self._path is None or not self._path.exists():
            self._data = {}
            return self._data
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                loaded = json.load(fh)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Could not read local storage %s: %s; starting empty", self._path, exc)
            loaded = {}
        self._data = loaded if isinstance(loaded, dict) else {}
        return self._data

    def _flush(self, data: dict[str, Any]) -> None:
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh)
                os.replace(tmp_name, self._path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        # Swap the in-memory view only once the file is durable.
        self._data = data

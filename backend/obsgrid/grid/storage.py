# backend/obsgrid/grid/storage.py
"""
Session-scoped key/value storage for grid state that must survive a reload
but not a session (the measurement column set, hidden columns).
"""
import json
import logging
import re
from pathlib import Path
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

MEASUREMENT_COLUMNS = "observations-measurement-columns"
HIDDEN_COLUMNS = "observations-hidden-columns"


def survey_storage_key(survey_id: int, purpose: str) -> str:
    return f"survey-{survey_id}:{purpose}"


class ScopedKeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class InMemoryStore:
    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStore:
    """One JSON file per key inside a session directory. Write errors propagate as OSError."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / (re.sub(r"[^A-Za-z0-9_.-]", "_", key) + ".json")

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(key).write_text(value, encoding="utf-8")


def load_json(store: ScopedKeyValueStore, key: str, default: Any = None) -> Any:
    raw = store.get(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        # 壊れた値は無視して既定値から始める
        logger.warning("ignoring unreadable stored value for %s", key)
        return default

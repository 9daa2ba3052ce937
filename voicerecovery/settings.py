import json
import os
from pathlib import Path
from typing import Any, Protocol

from .logging import root_logger

logger = root_logger.getChild(__name__)


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryStorage:
    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStorage:
    """Key/value strings kept in a single JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data = self._load()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring settings file %s: top level is not an object", self.path)
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        os.makedirs(self.path.parent, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)


class SettingsReader:
    """Typed access to JSON values held in a ``KeyValueStorage``.

    Malformed or missing values read as the supplied default.
    """

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.storage.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Malformed JSON stored under %r, treating as absent", key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.storage.set(key, json.dumps(value))

    def get_key(self, key: str, default: Any) -> Any:
        value = self.get_json(key, default)
        match default:
            case bool():
                return value if isinstance(value, bool) else default
            case int() | float():
                return value if isinstance(value, (int, float)) and not isinstance(value, bool) else default
            case str():
                return value if isinstance(value, str) else default
            case list():
                return value if isinstance(value, list) else default
            case _:
                return value

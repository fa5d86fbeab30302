"""Local key-value persistence for client state that survives restarts."""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import structlog

logger = structlog.get_logger()

SESSION_KEY = "chamorro_session_id"
ACTIVE_CONVERSATION_KEY = "active_conversation_id"


class LocalStore(ABC):
    """Abstract string key-value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""
        pass


class MemoryStore(LocalStore):
    """Process-lifetime store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileStore(LocalStore):
    """Best-effort store backed by a JSON file.

    Values are cached in memory. If the file cannot be read or written the
    store keeps working from the cache and stops touching the disk.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._available = True
        self._values: Dict[str, str] = self._load()

    @property
    def available(self) -> bool:
        """Whether values are still being persisted."""
        return self._available

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("local_store_unreadable", path=str(self.path), error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning("local_store_invalid", path=str(self.path))
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        if not self._available:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(self._values, indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            self._available = False
            logger.warning("local_store_unavailable", path=str(self.path), error=str(e))

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._values.pop(key, None) is not None:
                self._flush()
